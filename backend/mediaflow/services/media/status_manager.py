"""媒体记录状态管理模块

负责以版本守卫的方式写入状态转换。所有函数都接收调用方读取到的记录，
以该记录的 version 作为期望版本写入；冲突时返回 None，由调用方决定是否重读重试。
成功时返回写入后的记录副本（version 已加一）。
"""

import datetime
from typing import Any

from ...core.models import MediaRecord, MediaState
from .record_store import MediaRecordStore, evolve


def _write(
    store: MediaRecordStore,
    record: MediaRecord,
    **changes: Any,
) -> MediaRecord | None:
    """统一的版本守卫写入入口"""
    updated = evolve(record, **changes, version=record.version + 1)
    if not store.put_if_version(updated, record.version):
        return None
    return updated


def create_pending(
    store: MediaRecordStore,
    *,
    media_id: str,
    storage_key: str,
    size_bytes: int,
    content_type: str,
    event_id: str,
    now: datetime.datetime,
) -> MediaRecord | None:
    """首次观察到对象时创建 PENDING 记录，记录已存在时返回 None"""
    record = MediaRecord(
        media_id=media_id,
        state=MediaState.PENDING,
        version=0,
        storage_key=storage_key,
        size_bytes=size_bytes,
        content_type=content_type,
        created_at=now,
        updated_at=now,
        last_event_id=event_id,
    )
    return _write(store, record)


def set_processing(
    store: MediaRecordStore,
    record: MediaRecord,
    *,
    event_id: str,
    now: datetime.datetime,
    attributes: dict | None = None,
) -> MediaRecord | None:
    """设置为处理中状态（首次进入、重新进入或外部重试）

    Args:
        attributes: 事件携带的对象属性（storage_key / size_bytes / content_type），可选
    """
    return _write(
        store,
        record,
        **(attributes or {}),
        state=MediaState.PROCESSING,
        last_error=None,
        last_event_id=event_id,
        updated_at=now,
    )


def set_completed(
    store: MediaRecordStore,
    record: MediaRecord,
    *,
    metadata: dict,
    event_id: str,
    now: datetime.datetime,
) -> MediaRecord | None:
    """设置为完成状态并保存处理结果"""
    return _write(
        store,
        record,
        state=MediaState.COMPLETED,
        processed_data=metadata,
        last_error=None,
        last_event_id=event_id,
        updated_at=now,
    )


def set_failed(
    store: MediaRecordStore,
    record: MediaRecord,
    error_message: str,
    *,
    event_id: str,
    now: datetime.datetime,
) -> MediaRecord | None:
    """设置为失败状态"""
    return _write(
        store,
        record,
        state=MediaState.FAILED,
        last_error=error_message,
        last_event_id=event_id,
        updated_at=now,
    )


def set_removed(
    store: MediaRecordStore,
    record: MediaRecord,
    *,
    event_id: str,
    now: datetime.datetime,
) -> MediaRecord | None:
    """设置为删除墓碑状态，保留记录本身"""
    return _write(
        store,
        record,
        state=MediaState.REMOVED,
        last_event_id=event_id,
        updated_at=now,
    )


def note_retryable_error(
    store: MediaRecordStore,
    record: MediaRecord,
    error_message: str,
    *,
    event_id: str,
    now: datetime.datetime,
) -> MediaRecord | None:
    """记录可重试故障：保持 PROCESSING，只写入 last_error，等待重新投递"""
    return _write(
        store,
        record,
        last_error=error_message,
        last_event_id=event_id,
        updated_at=now,
    )
