"""存储事件解析模块

负责把事件源投递的原始负载转换为结构化的 ParsedEvent：
1. 拆开扇出通道的外层信封（{"Message": "<json>"}）
2. 使用 Pydantic 校验字段
3. 负载缺少 mediaId 时从 storageKey 推导
4. 确定稳定的 eventId（投递层 > 负载 > 内容哈希）
"""

from __future__ import annotations

import datetime
import hashlib
import json
from typing import Any, NamedTuple

from pydantic import ValidationError

from ...core.errors import MalformedEvent
from ...core.schemas import StorageEventPayload
from .types import DeliveredEvent

# 上传对象的键前缀，格式: uploads/{mediaId}/{filename}
UPLOADS_PREFIX = "uploads/"


class ParsedEvent(NamedTuple):
    """解析后的存储事件"""
    event_id: str
    media_id: str
    change_type: str
    storage_key: str
    size_bytes: int
    content_type: str
    timestamp: datetime.datetime


def unwrap_payload(raw: Any) -> dict:
    """把原始负载还原为字典

    Raises:
        MalformedEvent: 负载不是合法 UTF-8 编码的 JSON 对象
    """
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedEvent(f"负载不是有效的UTF-8编码: {e}") from e
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as e:
            raise MalformedEvent(f"负载不是有效JSON: {e}") from e

    if not isinstance(raw, dict):
        raise MalformedEvent(f"负载必须是JSON对象，实际为 {type(raw).__name__}")

    # 扇出通道会把真实事件包在 Message 字段里
    message = raw.get("Message")
    if "changeType" not in raw and isinstance(message, str):
        return unwrap_payload(message)

    return raw


def extract_media_id(storage_key: str) -> str | None:
    """从存储键中推导 mediaId

    支持两种布局:
    - uploads/{mediaId}/{filename}
    - {mediaId}/{variant}.{ext}
    """
    if not storage_key:
        return None

    parts = storage_key.split("/")
    if storage_key.startswith(UPLOADS_PREFIX):
        if len(parts) >= 3 and parts[1]:
            return parts[1]
        return None

    if len(parts) == 2 and parts[0] and parts[1]:
        return parts[0]
    return None


def derive_event_id(payload: dict) -> str | None:
    """基于存储事件内容生成稳定的 eventId，同一逻辑事件重投时结果不变"""
    storage_key = payload.get("storageKey")
    change_type = payload.get("changeType")
    timestamp = payload.get("timestamp")
    if not storage_key or not change_type or not timestamp:
        return None
    digest = hashlib.sha256(f"{storage_key}|{change_type}|{timestamp}".encode("utf-8")).hexdigest()
    return f"evt-{digest[:32]}"


def resolve_event_id(event: DeliveredEvent) -> str | None:
    """尽力确定事件ID，不抛出异常（用于账本检查与非法负载的记录）"""
    if event.event_id:
        return event.event_id
    try:
        payload = unwrap_payload(event.payload)
    except MalformedEvent:
        return None
    payload_event_id = payload.get("eventId")
    if isinstance(payload_event_id, str) and payload_event_id:
        return payload_event_id
    return derive_event_id(payload)


def parse_event(event: DeliveredEvent) -> ParsedEvent:
    """解析投递的事件

    Raises:
        MalformedEvent: 负载非法或无法确定 mediaId / eventId
    """
    event_id = resolve_event_id(event)
    payload = unwrap_payload(event.payload)

    try:
        model = StorageEventPayload.model_validate(payload)
    except ValidationError as e:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
        raise MalformedEvent(f"负载字段校验失败: {fields}", event_id=event_id) from e

    media_id = model.media_id or extract_media_id(model.storage_key)
    if not media_id:
        raise MalformedEvent(
            f"无法确定 mediaId: storageKey='{model.storage_key}'", event_id=event_id
        )

    if not event_id:
        raise MalformedEvent("无法确定 eventId")

    timestamp = model.timestamp
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=datetime.timezone.utc)

    return ParsedEvent(
        event_id=event_id,
        media_id=media_id,
        change_type=model.change_type,
        storage_key=model.storage_key,
        size_bytes=model.size_bytes,
        content_type=model.content_type,
        timestamp=timestamp,
    )
