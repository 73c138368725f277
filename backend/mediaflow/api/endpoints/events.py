"""
存储事件API路由模块

- POST /api/events: 把一条存储变更通知写入事件源，由后台消费者异步处理
- POST /api/events/batch: 推送式投递，同步处理整个批次并返回逐条结果
"""

import asyncio
from typing import List

from fastapi import APIRouter, Depends
from loguru import logger

from ...core.schemas import (
    BatchOutcomeItem,
    BatchOutcomeResponse,
    DeliveredEventIn,
    EnqueueResponse,
    StorageEventPayload,
)
from ...services.media.event_source import DatabaseEventSource
from ...services.media.orchestrator import PipelineOrchestrator
from ...services.media.types import DeliveredEvent
from ..deps import get_event_source, get_orchestrator, validate_push_batch


events_router = APIRouter(prefix="/api", tags=["events"])


@events_router.post("/events", response_model=EnqueueResponse, status_code=202)
async def enqueue_event(
    payload: StorageEventPayload,
    event_source: DatabaseEventSource = Depends(get_event_source),
):
    """
    入队一条存储变更事件。

    负载在入队前完成字段校验，非法负载直接返回422，不会进入事件源。

    Returns:
        dict: 包含实际使用的 eventId
    """
    message = payload.model_dump(by_alias=True, mode="json", exclude_none=True)
    event_id = await asyncio.to_thread(event_source.send, message, payload.event_id)
    logger.info(f"存储事件已入队: event_id={event_id}, storage_key={payload.storage_key}")
    return {"event_id": event_id, "queued": True}


@events_router.post("/events/batch", response_model=BatchOutcomeResponse)
async def process_event_batch(
    events: List[DeliveredEventIn] = Depends(validate_push_batch),
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
):
    """
    推送式处理一个事件批次。

    每条事件独立处理，返回与请求顺序一致的 ack / release 结果，
    调用方据此确认或重投对应的消息。
    """
    batch = [
        DeliveredEvent(
            event_id=item.event_id,
            payload=item.payload,
            delivery_handle=item.delivery_handle,
            receive_count=item.receive_count,
        )
        for item in events
    ]
    report = await orchestrator.process_batch(batch)

    return {
        "items": [
            BatchOutcomeItem(event_id=outcome.event_id, action=outcome.action.value)
            for outcome in report.outcomes
        ],
        "acked": len(report.acked),
        "released": len(report.released),
    }
