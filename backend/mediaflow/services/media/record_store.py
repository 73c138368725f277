"""媒体记录存储模块

对 MediaRecord 表的键值式封装，提供乐观并发控制：
- get(media_id) 返回记录（版本号在记录上）
- put_if_version(record, expected_version) 仅在版本匹配时写入

expected_version == 0 表示"仅当记录不存在时插入"，插入后版本号为 1。
"""

from typing import Any, Callable

from loguru import logger
from sqlmodel import Session

from ... import crud
from ...core.models import MediaRecord

# 更新时可写的字段；media_id、created_at、version 由存储层维护
_MUTABLE_FIELDS = (
    "state",
    "storage_key",
    "size_bytes",
    "content_type",
    "updated_at",
    "processed_data",
    "last_error",
    "last_event_id",
)


def evolve(record: MediaRecord, **changes: Any) -> MediaRecord:
    """返回修改了部分字段的记录副本，原记录保持不变"""
    fields = record.model_dump()
    fields.update(changes)
    return MediaRecord(**fields)


class MediaRecordStore:
    """基于 SQLModel 的媒体记录存储"""

    def __init__(self, db_session_factory: Callable[[], Session]):
        self._db_session_factory = db_session_factory

    def get(self, media_id: str) -> MediaRecord | None:
        with self._db_session_factory() as db:
            return crud.get_media_record(db, media_id)

    def put_if_version(self, record: MediaRecord, expected_version: int) -> bool:
        """版本守卫写入

        Args:
            record: 要写入的记录
            expected_version: 调用方读取到的版本号，新记录为 0

        Returns:
            bool: True 写入成功；False 版本冲突
        """
        with self._db_session_factory() as db:
            if expected_version == 0:
                fields = record.model_dump()
                fields["version"] = 1
                written = crud.insert_media_record(db, fields)
            else:
                fields = {name: getattr(record, name) for name in _MUTABLE_FIELDS}
                written = crud.update_media_record_if_version(
                    db, record.media_id, expected_version, fields
                )

        if not written:
            logger.debug(
                f"版本冲突: media_id={record.media_id}, expected_version={expected_version}"
            )
        return written
