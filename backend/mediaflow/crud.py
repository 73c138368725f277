"""
数据库CRUD操作模块

提供数据库交互的封装函数，覆盖媒体记录、幂等账本与投递队列三张表。
所有写操作都是单行条件写入（主键插入或带条件的 UPDATE/DELETE），
通过返回值告知调用方是否命中，不使用任何锁。
"""

import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from .core.models import MediaRecord, IdempotencyEntry, DeliveryItem


# ---------------------------------------------------------------------------
#   媒体记录
# ---------------------------------------------------------------------------

def get_media_record(db: Session, media_id: str) -> Optional[MediaRecord]:
    """
    根据 media_id 查询媒体记录。

    Args:
        db: 数据库会话
        media_id: 媒体ID

    Returns:
        Optional[MediaRecord]: 匹配的记录，如果不存在则返回None
    """
    return db.get(MediaRecord, media_id)


def insert_media_record(db: Session, fields: Dict[str, Any]) -> bool:
    """
    插入新的媒体记录，主键已存在时返回 False。

    Args:
        db: 数据库会话
        fields: 记录字段

    Returns:
        bool: 是否插入成功
    """
    db.add(MediaRecord(**fields))
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        return False
    return True


def update_media_record_if_version(
    db: Session, media_id: str, expected_version: int, fields: Dict[str, Any]
) -> bool:
    """
    仅当当前版本号等于 expected_version 时更新记录，并把版本号加一。

    Args:
        db: 数据库会话
        media_id: 媒体ID
        expected_version: 调用方读取到的版本号
        fields: 要更新的字段（不含 media_id 与 version）

    Returns:
        bool: 是否命中（False 表示版本冲突或记录不存在）
    """
    statement = (
        update(MediaRecord)
        .where(MediaRecord.media_id == media_id, MediaRecord.version == expected_version)
        .values(**fields, version=expected_version + 1)
    )
    result = db.connection().execute(statement)
    db.commit()
    return result.rowcount == 1


# ---------------------------------------------------------------------------
#   幂等账本
# ---------------------------------------------------------------------------

def get_idempotency_entry(db: Session, event_id: str) -> Optional[IdempotencyEntry]:
    """根据 event_id 查询账本条目"""
    return db.get(IdempotencyEntry, event_id)


def insert_idempotency_entry(db: Session, fields: Dict[str, Any]) -> bool:
    """插入账本条目，条目已存在时返回 False"""
    db.add(IdempotencyEntry(**fields))
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        return False
    return True


def delete_idempotency_entries_before(db: Session, cutoff: datetime.datetime) -> int:
    """删除 processed_at 早于 cutoff 的账本条目，返回删除数量"""
    statement = delete(IdempotencyEntry).where(IdempotencyEntry.processed_at < cutoff)
    result = db.connection().execute(statement)
    db.commit()
    return result.rowcount


# ---------------------------------------------------------------------------
#   投递队列
# ---------------------------------------------------------------------------

def insert_delivery_item(
    db: Session, event_id: str, body: str, visible_at: datetime.datetime
) -> DeliveryItem:
    """插入一条待投递消息"""
    item = DeliveryItem(event_id=event_id, body=body, visible_at=visible_at, created_at=visible_at)
    db.add(item)
    db.commit()
    db.refresh(item)
    return item


def list_ready_delivery_ids(db: Session, now: datetime.datetime, limit: int) -> List[int]:
    """按入队顺序列出当前可见且未进入死信的消息ID"""
    statement = (
        select(DeliveryItem.id)
        .where(DeliveryItem.dead_lettered == False)  # noqa: E712
        .where(DeliveryItem.visible_at <= now)
        .order_by(DeliveryItem.id)
        .limit(limit)
    )
    return list(db.exec(statement).all())


def claim_delivery_item(
    db: Session,
    item_id: int,
    *,
    now: datetime.datetime,
    handle: str,
    visible_until: datetime.datetime,
) -> Optional[DeliveryItem]:
    """
    条件领取一条消息：仅当它仍然可见时写入新句柄并递增投递次数。

    Returns:
        Optional[DeliveryItem]: 领取成功返回最新的消息，已被其他消费者领取时返回 None
    """
    statement = (
        update(DeliveryItem)
        .where(
            DeliveryItem.id == item_id,
            DeliveryItem.dead_lettered == False,  # noqa: E712
            DeliveryItem.visible_at <= now,
        )
        .values(
            handle=handle,
            receive_count=DeliveryItem.receive_count + 1,
            visible_at=visible_until,
        )
    )
    result = db.connection().execute(statement)
    db.commit()
    if result.rowcount != 1:
        return None
    return get_delivery_item_by_handle(db, handle)


def get_delivery_item_by_handle(db: Session, handle: str) -> Optional[DeliveryItem]:
    """根据投递句柄查询消息"""
    statement = select(DeliveryItem).where(DeliveryItem.handle == handle)
    return db.exec(statement).first()


def delete_delivery_item_by_handle(db: Session, handle: str) -> bool:
    """确认消息：按句柄删除，句柄已失效时返回 False"""
    statement = delete(DeliveryItem).where(DeliveryItem.handle == handle)
    result = db.connection().execute(statement)
    db.commit()
    return result.rowcount == 1


def release_delivery_item(
    db: Session,
    handle: str,
    *,
    visible_at: datetime.datetime,
    dead_letter: bool = False,
) -> bool:
    """释放消息：清空句柄并设置下次可见时间，句柄已失效时返回 False"""
    statement = (
        update(DeliveryItem)
        .where(DeliveryItem.handle == handle)
        .values(handle=None, visible_at=visible_at, dead_lettered=dead_letter)
    )
    result = db.connection().execute(statement)
    db.commit()
    return result.rowcount == 1
