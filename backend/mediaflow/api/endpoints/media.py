"""
媒体记录API路由模块

提供失败记录的手动重试端点。
"""

import asyncio

from fastapi import APIRouter, Depends, HTTPException
from loguru import logger
from sqlmodel import Session

from ...core.models import ChangeType, MediaState, utc_now
from ...core.schemas import RetryResponse
from ...crud import get_media_record
from ...db import get_db
from ...services.media.event_source import DatabaseEventSource
from ..deps import get_event_source


# 可重试的记录状态（使用元组确保只读）
RETRYABLE_STATES = (MediaState.FAILED,)


media_router = APIRouter(prefix="/api", tags=["media"])


def build_retry_event_id(media_id: str, version: int) -> str:
    """重试事件ID与记录版本绑定，同一失败版本重复点击只会处理一次"""
    return f"retry-{media_id}-v{version}"


@media_router.post("/media/{media_id}/retry", response_model=RetryResponse)
async def retry_media(
    media_id: str,
    db: Session = Depends(get_db),
    event_source: DatabaseEventSource = Depends(get_event_source),
):
    """
    手动重试处理失败的媒体记录。

    该接口不直接修改记录，只向事件源写入一条 retried 事件，
    由后台消费者经同一条流水线把记录从 FAILED 推进到 PROCESSING 并重新执行处理步骤。

    Args:
        media_id: 媒体ID
        db: 数据库会话依赖
        event_source: 事件源依赖

    Returns:
        dict: 包含以下字段的操作结果：
            - message: 操作结果描述
            - mediaId: 媒体ID
            - previousState: 重试前的状态
            - eventId: 入队的重试事件ID

    Raises:
        HTTPException:
            - 404: 当记录不存在时
            - 400: 当记录状态不允许重试时（非 FAILED）
    """
    record = get_media_record(db, media_id)
    if not record:
        raise HTTPException(
            status_code=404,
            detail=f"媒体记录不存在: mediaId={media_id}"
        )

    if record.state not in RETRYABLE_STATES:
        raise HTTPException(
            status_code=400,
            detail=f"记录状态不允许重试: 当前状态={record.state}, 可重试状态: {', '.join(RETRYABLE_STATES)}"
        )

    previous_state = record.state
    payload = {
        "mediaId": record.media_id,
        "changeType": ChangeType.RETRIED,
        "storageKey": record.storage_key,
        "sizeBytes": record.size_bytes,
        "contentType": record.content_type,
        "timestamp": utc_now().isoformat(),
    }
    event_id = await asyncio.to_thread(
        event_source.send, payload, build_retry_event_id(record.media_id, record.version)
    )

    logger.info(f"媒体记录 {media_id} 已提交重试事件 {event_id}，等待后台消费者处理")

    return {
        "message": "重试事件已入队，等待后台重新处理",
        "media_id": media_id,
        "previous_state": previous_state,
        "event_id": event_id,
    }
