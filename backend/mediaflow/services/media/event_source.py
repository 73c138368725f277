"""存储事件源模块

对上游通知队列的抽象：按批次投递事件，每条事件携带投递句柄，
处理完成后通过句柄确认（ack）或释放（release）。

DatabaseEventSource 是基于 SQLite 的实现，语义与托管消息队列一致：
- 领取后在可见性超时内对其他消费者不可见
- 释放后按投递次数指数退避再次可见
- 超过最大投递次数后进入死信，不再投递
- 句柄在每次领取时重新生成，过期句柄的确认/释放不生效
"""

from __future__ import annotations

import datetime
import json
import uuid
from typing import Any, Callable, Protocol

from loguru import logger
from sqlmodel import Session

from ... import crud
from ...config import Settings
from ...core.models import utc_now
from .event_parser import derive_event_id
from .types import DeliveredEvent


class StorageEventSource(Protocol):
    """事件源接口"""

    def receive_batch(self, max_messages: int) -> list[DeliveredEvent]:
        ...

    def ack(self, delivery_handle: str) -> bool:
        ...

    def release(self, delivery_handle: str) -> bool:
        ...


class DatabaseEventSource:
    """基于 DeliveryItem 表的事件源"""

    def __init__(
        self,
        db_session_factory: Callable[[], Session],
        *,
        visibility_timeout_seconds: float = 120,
        base_delay_seconds: float = 5.0,
        max_delay_seconds: float = 300.0,
        max_receive_count: int = 5,
        clock: Callable[[], datetime.datetime] = utc_now,
    ) -> None:
        self._db_session_factory = db_session_factory
        self.visibility_timeout = datetime.timedelta(seconds=visibility_timeout_seconds)
        self.base_delay_seconds = base_delay_seconds
        self.max_delay_seconds = max_delay_seconds
        self.max_receive_count = max_receive_count
        self._clock = clock

    @classmethod
    def from_settings(
        cls, db_session_factory: Callable[[], Session], settings: Settings
    ) -> "DatabaseEventSource":
        return cls(
            db_session_factory,
            visibility_timeout_seconds=settings.VISIBILITY_TIMEOUT_SECONDS,
            base_delay_seconds=settings.RELEASE_BASE_DELAY_SECONDS,
            max_delay_seconds=settings.RELEASE_MAX_DELAY_SECONDS,
            max_receive_count=settings.MAX_RECEIVE_COUNT,
        )

    # ------------------------------------------------------------------
    # 生产端
    # ------------------------------------------------------------------
    def send(self, payload: dict[str, Any] | str, event_id: str | None = None) -> str:
        """入队一条存储事件

        Args:
            payload: 事件负载（字典或 JSON 字符串）
            event_id: 显式的事件ID；缺省时依次取负载中的 eventId、内容哈希、随机ID

        Returns:
            str: 实际使用的事件ID
        """
        if isinstance(payload, str):
            body = payload
            try:
                parsed = json.loads(payload)
            except json.JSONDecodeError:
                parsed = None
        else:
            body = json.dumps(payload, ensure_ascii=False, default=str)
            parsed = payload

        if not event_id and isinstance(parsed, dict):
            event_id = parsed.get("eventId") or derive_event_id(parsed)
        if not event_id:
            event_id = f"evt-{uuid.uuid4().hex}"

        with self._db_session_factory() as db:
            item = crud.insert_delivery_item(db, event_id, body, self._clock())

        logger.debug(f"事件已入队: event_id={event_id}, item_id={item.id}")
        return event_id

    # ------------------------------------------------------------------
    # 消费端
    # ------------------------------------------------------------------
    def receive_batch(self, max_messages: int) -> list[DeliveredEvent]:
        """领取至多 max_messages 条可见消息"""
        now = self._clock()
        visible_until = now + self.visibility_timeout
        batch: list[DeliveredEvent] = []

        with self._db_session_factory() as db:
            for item_id in crud.list_ready_delivery_ids(db, now, max_messages):
                handle = uuid.uuid4().hex
                item = crud.claim_delivery_item(
                    db, item_id, now=now, handle=handle, visible_until=visible_until
                )
                if item is None:
                    # 已被其他消费者领取
                    continue
                batch.append(
                    DeliveredEvent(
                        event_id=item.event_id,
                        payload=item.body,
                        delivery_handle=handle,
                        receive_count=item.receive_count,
                    )
                )

        return batch

    def ack(self, delivery_handle: str) -> bool:
        """确认消息，将其从后续投递中移除"""
        with self._db_session_factory() as db:
            deleted = crud.delete_delivery_item_by_handle(db, delivery_handle)
        if not deleted:
            logger.warning(f"确认失败，句柄已失效: {delivery_handle}")
        return deleted

    def release(self, delivery_handle: str) -> bool:
        """释放消息，按退避策略延迟后再次可见；超过最大投递次数则进入死信"""
        now = self._clock()
        with self._db_session_factory() as db:
            item = crud.get_delivery_item_by_handle(db, delivery_handle)
            if item is None:
                logger.warning(f"释放失败，句柄已失效: {delivery_handle}")
                return False

            event_id = item.event_id
            receive_count = item.receive_count
            dead_letter = receive_count >= self.max_receive_count
            delay = self.backoff_delay(receive_count)
            released = crud.release_delivery_item(
                db,
                delivery_handle,
                visible_at=now + datetime.timedelta(seconds=delay),
                dead_letter=dead_letter,
            )

        if dead_letter and released:
            logger.warning(f"事件进入死信: event_id={event_id}, 投递次数={receive_count}")
        return released

    def backoff_delay(self, receive_count: int) -> float:
        """第 receive_count 次投递失败后的重新可见延迟（秒）"""
        exponent = max(receive_count - 1, 0)
        return min(self.base_delay_seconds * (2 ** exponent), self.max_delay_seconds)
