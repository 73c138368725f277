"""
媒体记录存储与状态写入测试

覆盖版本守卫：插入只在记录不存在时成功，更新只在版本匹配时成功，
并发写入者中恰好一个成功。
"""

import datetime

from mediaflow.core.models import MediaRecord, MediaState
from mediaflow.services.media import status_manager
from mediaflow.services.media.record_store import evolve


NOW = datetime.datetime(2024, 5, 1, 12, 0, tzinfo=datetime.timezone.utc)


def _new_record(media_id="m1"):
    return MediaRecord(
        media_id=media_id,
        state=MediaState.PENDING,
        version=0,
        storage_key=f"uploads/{media_id}/a.jpg",
        size_bytes=100,
        content_type="image/jpeg",
        created_at=NOW,
        updated_at=NOW,
    )


class TestMediaRecordStore:

    def test_get_missing_returns_none(self, store):
        assert store.get("missing") is None

    def test_insert_sets_version_one(self, store):
        assert store.put_if_version(_new_record(), 0) is True

        record = store.get("m1")
        assert record.version == 1
        assert record.state == MediaState.PENDING

    def test_second_insert_conflicts(self, store):
        assert store.put_if_version(_new_record(), 0) is True
        assert store.put_if_version(_new_record(), 0) is False

    def test_update_requires_matching_version(self, store):
        store.put_if_version(_new_record(), 0)
        current = store.get("m1")

        updated = evolve(current, state=MediaState.PROCESSING, version=2)
        assert store.put_if_version(updated, 1) is True
        assert store.get("m1").version == 2

        stale = evolve(current, state=MediaState.FAILED, version=2)
        assert store.put_if_version(stale, 1) is False
        assert store.get("m1").state == MediaState.PROCESSING

    def test_evolve_does_not_mutate_original(self):
        record = _new_record()
        copy = evolve(record, state=MediaState.COMPLETED)
        assert record.state == MediaState.PENDING
        assert copy.state == MediaState.COMPLETED
        assert copy.media_id == record.media_id

    def test_writers_from_same_snapshot_exactly_one_wins(self, store):
        store.put_if_version(_new_record(), 0)
        snapshot = store.get("m1")

        def _writer(index):
            candidate = evolve(snapshot, last_error=f"writer-{index}", version=snapshot.version + 1)
            return store.put_if_version(candidate, snapshot.version)

        # 所有写入者都基于同一快照
        results = [_writer(i) for i in range(8)]

        assert results.count(True) == 1
        assert store.get("m1").version == 2


class TestStatusManager:

    def test_lifecycle_increments_version(self, store):
        pending = status_manager.create_pending(
            store,
            media_id="m1",
            storage_key="uploads/m1/a.jpg",
            size_bytes=100,
            content_type="image/jpeg",
            event_id="e1",
            now=NOW,
        )
        assert pending.version == 1

        processing = status_manager.set_processing(store, pending, event_id="e1", now=NOW)
        assert processing.version == 2
        assert processing.state == MediaState.PROCESSING

        completed = status_manager.set_completed(
            store, processing, metadata={"kind": "image"}, event_id="e1", now=NOW
        )
        assert completed.version == 3

        stored = store.get("m1")
        assert stored.state == MediaState.COMPLETED
        assert stored.processed_data == {"kind": "image"}
        assert stored.last_event_id == "e1"

    def test_create_pending_conflicts_when_record_exists(self, store):
        kwargs = dict(
            media_id="m1",
            storage_key="uploads/m1/a.jpg",
            size_bytes=100,
            content_type="image/jpeg",
            event_id="e1",
            now=NOW,
        )
        assert status_manager.create_pending(store, **kwargs) is not None
        assert status_manager.create_pending(store, **kwargs) is None

    def test_stale_write_returns_none(self, store):
        pending = status_manager.create_pending(
            store,
            media_id="m1",
            storage_key="uploads/m1/a.jpg",
            size_bytes=100,
            content_type="image/jpeg",
            event_id="e1",
            now=NOW,
        )
        assert status_manager.set_removed(store, pending, event_id="e2", now=NOW) is not None
        assert status_manager.set_failed(store, pending, "boom", event_id="e1", now=NOW) is None
        assert store.get("m1").state == MediaState.REMOVED

    def test_note_retryable_error_keeps_processing(self, store):
        pending = status_manager.create_pending(
            store,
            media_id="m1",
            storage_key="uploads/m1/a.jpg",
            size_bytes=100,
            content_type="image/jpeg",
            event_id="e1",
            now=NOW,
        )
        processing = status_manager.set_processing(store, pending, event_id="e1", now=NOW)
        noted = status_manager.note_retryable_error(
            store, processing, "timeout", event_id="e1", now=NOW
        )
        assert noted.state == MediaState.PROCESSING
        assert store.get("m1").last_error == "timeout"

    def test_set_processing_clears_last_error_and_updates_attributes(self, store):
        pending = status_manager.create_pending(
            store,
            media_id="m1",
            storage_key="uploads/m1/a.jpg",
            size_bytes=100,
            content_type="image/jpeg",
            event_id="e1",
            now=NOW,
        )
        failed = status_manager.set_failed(store, pending, "bad", event_id="e1", now=NOW)
        retried = status_manager.set_processing(
            store, failed, event_id="e2", now=NOW, attributes={"size_bytes": 200}
        )
        stored = store.get("m1")
        assert retried.version == 3
        assert stored.last_error is None
        assert stored.size_bytes == 200
