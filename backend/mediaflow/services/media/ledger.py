"""幂等账本模块

记录已经生效的事件ID。条目只插入不修改，插入本身就是条件写入
（主键冲突即表示已存在），不需要锁。

账本只影响重复抑制的效率：过期清理后即使同一事件重投，媒体记录的
状态转换本身也是幂等的。
"""

import asyncio
import datetime
from typing import Callable

from loguru import logger
from sqlmodel import Session

from ... import crud
from ...core.models import utc_now


class IdempotencyLedger:
    """基于 SQLModel 的幂等账本"""

    def __init__(self, db_session_factory: Callable[[], Session]):
        self._db_session_factory = db_session_factory

    def contains(self, event_id: str) -> bool:
        with self._db_session_factory() as db:
            return crud.get_idempotency_entry(db, event_id) is not None

    def record(
        self,
        event_id: str,
        outcome: str,
        *,
        media_id: str | None = None,
        now: datetime.datetime | None = None,
    ) -> bool:
        """写入账本条目

        Returns:
            bool: True 新写入；False 条目已存在（并发的重复投递先一步写入）
        """
        with self._db_session_factory() as db:
            inserted = crud.insert_idempotency_entry(
                db,
                {
                    "event_id": event_id,
                    "outcome": outcome,
                    "media_id": media_id,
                    "processed_at": now or utc_now(),
                },
            )
        if not inserted:
            logger.debug(f"账本条目已存在: event_id={event_id}")
        return inserted

    def purge_expired(
        self, retention: datetime.timedelta, now: datetime.datetime | None = None
    ) -> int:
        """删除超过保留期的条目，返回删除数量"""
        cutoff = (now or utc_now()) - retention
        with self._db_session_factory() as db:
            return crud.delete_idempotency_entries_before(db, cutoff)


async def ledger_gc_loop(
    ledger: IdempotencyLedger,
    retention_hours: int,
    interval_seconds: float,
    stop_event: asyncio.Event | None = None,
) -> None:
    """账本清理后台任务

    Args:
        ledger: 幂等账本
        retention_hours: 保留时长（小时）
        interval_seconds: 两次清理之间的等待时间（秒）
        stop_event: 可选的停止信号
    """
    retention = datetime.timedelta(hours=retention_hours)
    logger.info(f"账本清理任务启动，保留期: {retention_hours} 小时, 间隔: {interval_seconds} 秒")

    while stop_event is None or not stop_event.is_set():
        try:
            purged = await asyncio.to_thread(ledger.purge_expired, retention)
            if purged:
                logger.info(f"账本清理: 删除 {purged} 个过期条目")
        except asyncio.CancelledError:
            logger.info("账本清理任务被取消")
            raise
        except Exception as e:
            logger.error(f"账本清理出错: {e}")

        await asyncio.sleep(interval_seconds)
