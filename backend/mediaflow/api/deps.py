"""
FastAPI 依赖模块

从 app.state 取出在 lifespan 中构造的流水线组件，并提供请求体的通用校验。
"""

from typing import List

from fastapi import HTTPException, Request

from ..core.schemas import DeliveredEventIn
from ..services.media.event_source import DatabaseEventSource
from ..services.media.orchestrator import PipelineOrchestrator

# 推送式批次允许的最大事件数量
MAX_PUSH_BATCH_SIZE = 100


def get_orchestrator(request: Request) -> PipelineOrchestrator:
    """获取流水线编排器

    Raises:
        HTTPException: 应用尚未完成初始化时抛出503错误
    """
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="流水线尚未初始化")
    return orchestrator


def get_event_source(request: Request) -> DatabaseEventSource:
    """获取事件源

    Raises:
        HTTPException: 应用尚未完成初始化时抛出503错误
    """
    event_source = getattr(request.app.state, "event_source", None)
    if event_source is None:
        raise HTTPException(status_code=503, detail="事件源尚未初始化")
    return event_source


def validate_push_batch(events: List[DeliveredEventIn]) -> List[DeliveredEventIn]:
    """
    验证推送批次的大小

    Raises:
        HTTPException: 批次为空或超过上限时抛出400错误
    """
    if not events:
        raise HTTPException(status_code=400, detail="事件列表不能为空")

    if len(events) > MAX_PUSH_BATCH_SIZE:
        raise HTTPException(
            status_code=400,
            detail=f"单个批次的事件数量不能超过{MAX_PUSH_BATCH_SIZE}个",
        )

    return events
