"""
编排器单元测试

覆盖批次处理的核心场景：正常处理、重复投递、部分失败的批次、删除、
业务失败与可重试故障、外部重试、版本冲突以及基础设施故障。
"""

import asyncio
import datetime
import json

import pytest
from sqlalchemy.exc import OperationalError

from mediaflow.core.errors import ProcessingStepFailure
from mediaflow.core.models import LedgerOutcome, MediaState
from mediaflow.core.steps import StepResult
from mediaflow.services.media import status_manager
from mediaflow.services.media.types import DeliveredEvent, EventAction, OutcomeKind

from conftest import make_event, make_payload


class ScriptedStep:
    """按 mediaId 预设行为的处理步骤"""

    name = "scripted"

    def __init__(self, behaviors=None):
        self.behaviors = behaviors or {}
        self.calls = []

    async def execute(self, record):
        self.calls.append(record.media_id)
        behavior = self.behaviors.get(record.media_id)
        if behavior == "slow":
            await asyncio.sleep(5)
        elif isinstance(behavior, Exception):
            raise behavior
        elif callable(behavior):
            behavior(record)
        return StepResult(metadata={"mediaId": record.media_id, "size": record.size_bytes})


def _event_types(publisher):
    return [(envelope.media_id, envelope.event_type) for _topic, envelope in publisher.published]


class TestHappyPath:

    @pytest.mark.asyncio
    async def test_created_event_completes_record(self, orchestrator, store, ledger, publisher):
        report = await orchestrator.process_batch([make_event("e1", "m1")])

        assert report.actions() == ["ack"]
        assert report.outcomes[0].kind is OutcomeKind.APPLIED

        record = store.get("m1")
        assert record.state == MediaState.COMPLETED
        assert record.version == 3
        assert record.processed_data["kind"] == "image"
        assert record.last_event_id == "e1"

        assert ledger.contains("e1")
        assert _event_types(publisher) == [("m1", "completed")]
        topic, envelope = publisher.published[0]
        assert topic == "media-events"
        assert envelope.to_message()["mediaId"] == "m1"
        assert envelope.to_message()["state"] == MediaState.COMPLETED

    @pytest.mark.asyncio
    async def test_empty_batch(self, orchestrator):
        report = await orchestrator.process_batch([])
        assert report.outcomes == []

    @pytest.mark.asyncio
    async def test_many_media_ids_in_one_batch(self, orchestrator, store, publisher):
        batch = [make_event(f"e{i}", f"m{i}") for i in range(12)]

        report = await orchestrator.process_batch(batch)

        assert report.actions() == ["ack"] * 12
        assert [o.event_id for o in report.outcomes] == [f"e{i}" for i in range(12)]
        assert all(store.get(f"m{i}").state == MediaState.COMPLETED for i in range(12))
        assert len(publisher.published) == 12


class TestIdempotence:

    @pytest.mark.asyncio
    async def test_redelivered_event_has_no_effect(self, orchestrator, store, publisher):
        event = make_event("e1", "m1")
        await orchestrator.process_batch([event])
        version_after_first = store.get("m1").version
        published_after_first = len(publisher.published)

        report = await orchestrator.process_batch([event._replace(receive_count=2)])

        assert report.actions() == ["ack"]
        assert report.outcomes[0].kind is OutcomeKind.DUPLICATE
        assert store.get("m1").version == version_after_first
        assert len(publisher.published) == published_after_first

    @pytest.mark.asyncio
    async def test_new_event_id_for_completed_record_is_noop(self, orchestrator, store, ledger, publisher):
        await orchestrator.process_batch([make_event("e1", "m1")])

        report = await orchestrator.process_batch([make_event("e2", "m1")])

        assert report.outcomes[0].kind is OutcomeKind.NOOP
        assert store.get("m1").version == 3
        assert len(publisher.published) == 1
        assert ledger.contains("e2")

    @pytest.mark.asyncio
    async def test_event_id_derived_from_content_deduplicates(self, orchestrator, store, publisher):
        event = make_event("", "m1")._replace(event_id="")

        await orchestrator.process_batch([event])
        report = await orchestrator.process_batch([event])

        assert report.outcomes[0].kind is OutcomeKind.DUPLICATE
        assert report.outcomes[0].event_id.startswith("evt-")
        assert len(publisher.published) == 1

    @pytest.mark.asyncio
    async def test_two_replicas_processing_the_same_event(self, make_orchestrator, store, publisher):
        first = make_orchestrator()
        second = make_orchestrator()
        event = make_event("e1", "m1")

        reports = await asyncio.gather(
            first.process_batch([event]),
            second.process_batch([event]),
        )

        assert store.get("m1").state == MediaState.COMPLETED
        completed = [e for e in _event_types(publisher) if e[1] == "completed"]
        assert completed == [("m1", "completed")]
        assert any(r.actions() == ["ack"] for r in reports)


class TestPartialBatch:

    @pytest.mark.asyncio
    async def test_one_malformed_and_one_timeout(self, make_orchestrator, store, ledger, publisher):
        step = ScriptedStep({"m5": "slow"})
        orchestrator = make_orchestrator(processing_step=step, step_timeout_seconds=0.1)
        batch = [
            make_event("e1", "m1"),
            make_event("e2", "m2"),
            DeliveredEvent(event_id="e3", payload="{not json", delivery_handle="h-e3"),
            make_event("e4", "m4"),
            make_event("e5", "m5"),
        ]

        report = await orchestrator.process_batch(batch)

        assert report.actions() == ["ack", "ack", "ack", "ack", "release"]
        assert report.outcomes[2].kind is OutcomeKind.REJECTED
        assert report.outcomes[4].kind is OutcomeKind.TRANSIENT
        assert report.acked == ["e1", "e2", "e3", "e4"]
        assert report.released == ["e5"]

        for media_id in ("m1", "m2", "m4"):
            assert store.get(media_id).state == MediaState.COMPLETED

        timed_out = store.get("m5")
        assert timed_out.state == MediaState.PROCESSING
        assert "超时" in timed_out.last_error

        assert ledger.contains("e3")
        assert not ledger.contains("e5")
        assert ("m5", "completed") not in _event_types(publisher)

    @pytest.mark.asyncio
    async def test_timed_out_step_is_cancelled(self, make_orchestrator, store):
        cancelled = []

        class HangingStep:
            name = "hanging"

            async def execute(self, record):
                try:
                    await asyncio.sleep(5)
                except asyncio.CancelledError:
                    cancelled.append(record.media_id)
                    raise
                return StepResult(metadata={})

        orchestrator = make_orchestrator(processing_step=HangingStep(), step_timeout_seconds=0.1)

        report = await orchestrator.process_batch([make_event("e1", "m1")])

        assert report.actions() == ["release"]
        assert cancelled == ["m1"]
        assert store.get("m1").state == MediaState.PROCESSING

    @pytest.mark.asyncio
    async def test_unexpected_error_only_releases_that_event(self, orchestrator, store, monkeypatch):
        original_get = store.get

        def _flaky_get(media_id):
            if media_id == "m2":
                raise OperationalError("SELECT", {}, Exception("database is locked"))
            return original_get(media_id)

        monkeypatch.setattr(store, "get", _flaky_get)

        report = await orchestrator.process_batch([make_event("e1", "m1"), make_event("e2", "m2")])

        assert report.actions() == ["ack", "release"]
        assert report.outcomes[1].kind is OutcomeKind.TRANSIENT

    @pytest.mark.asyncio
    async def test_malformed_event_without_id_is_acked(self, orchestrator, ledger):
        event = DeliveredEvent(event_id="", payload="garbage", delivery_handle="h1")

        report = await orchestrator.process_batch([event])

        assert report.actions() == ["ack"]
        assert report.outcomes[0].kind is OutcomeKind.REJECTED

    @pytest.mark.asyncio
    async def test_size_beyond_int64_is_rejected(self, orchestrator, store, ledger):
        event = make_event("big", "m9", size_bytes=2**63)

        report = await orchestrator.process_batch([event])

        assert report.actions() == ["ack"]
        assert report.outcomes[0].kind is OutcomeKind.REJECTED
        assert store.get("m9") is None
        assert ledger.contains("big")

    @pytest.mark.asyncio
    async def test_invalid_utf8_payload_is_rejected(self, orchestrator, store, ledger):
        body = json.dumps(make_payload("m8", event_id="bad-utf8")).encode("utf-8")
        event = DeliveredEvent(
            event_id="bad-utf8",
            payload=body.replace(b"photo.jpg", b"ph\xff.jpg"),
            delivery_handle="h1",
        )

        report = await orchestrator.process_batch([event])

        assert report.actions() == ["ack"]
        assert report.outcomes[0].kind is OutcomeKind.REJECTED
        assert store.get("m8") is None
        assert ledger.contains("bad-utf8")


class TestRemoval:

    @pytest.mark.asyncio
    async def test_removal_of_unknown_object_is_noop(self, orchestrator, store, publisher):
        report = await orchestrator.process_batch([make_event("e1", "m1", "removed")])

        assert report.outcomes[0].kind is OutcomeKind.NOOP
        assert store.get("m1") is None
        assert publisher.published == []

    @pytest.mark.asyncio
    async def test_created_then_removed_in_same_batch(self, orchestrator, store, publisher):
        report = await orchestrator.process_batch(
            [make_event("e1", "m1"), make_event("e2", "m1", "removed")]
        )

        assert report.actions() == ["ack", "ack"]
        assert store.get("m1").state == MediaState.REMOVED
        assert _event_types(publisher) == [("m1", "completed"), ("m1", "removed")]

    @pytest.mark.asyncio
    async def test_created_after_removed_is_noop(self, orchestrator, store):
        await orchestrator.process_batch([make_event("e1", "m1"), make_event("e2", "m1", "removed")])

        report = await orchestrator.process_batch([make_event("e3", "m1")])

        assert report.outcomes[0].kind is OutcomeKind.NOOP
        assert store.get("m1").state == MediaState.REMOVED

    @pytest.mark.asyncio
    async def test_removal_during_processing_wins(self, make_orchestrator, store, publisher):
        def _remove_concurrently(record):
            current = store.get(record.media_id)
            status_manager.set_removed(
                store,
                current,
                event_id="e-remove",
                now=datetime.datetime.now(datetime.timezone.utc),
            )

        orchestrator = make_orchestrator(processing_step=ScriptedStep({"m1": _remove_concurrently}))

        report = await orchestrator.process_batch([make_event("e1", "m1")])

        assert report.actions() == ["ack"]
        assert report.outcomes[0].kind is OutcomeKind.NOOP
        assert store.get("m1").state == MediaState.REMOVED
        assert ("m1", "completed") not in _event_types(publisher)


class TestFailures:

    @pytest.mark.asyncio
    async def test_business_failure_is_acked_as_failed(self, make_orchestrator, store, publisher):
        step = ScriptedStep({"m1": ProcessingStepFailure("unsupported codec")})
        orchestrator = make_orchestrator(processing_step=step)

        report = await orchestrator.process_batch([make_event("e1", "m1")])

        assert report.actions() == ["ack"]
        record = store.get("m1")
        assert record.state == MediaState.FAILED
        assert record.last_error == "unsupported codec"
        assert _event_types(publisher) == [("m1", "failed")]

    @pytest.mark.asyncio
    async def test_validation_failure_from_real_step(self, orchestrator, store):
        report = await orchestrator.process_batch(
            [make_event("e1", "m1", content_type="application/pdf", storage_key="uploads/m1/doc.pdf")]
        )

        assert report.actions() == ["ack"]
        assert store.get("m1").state == MediaState.FAILED

    @pytest.mark.asyncio
    async def test_retryable_failure_releases(self, make_orchestrator, store, ledger):
        step = ScriptedStep({"m1": ProcessingStepFailure("storage unreachable", retryable=True)})
        orchestrator = make_orchestrator(processing_step=step)

        report = await orchestrator.process_batch([make_event("e1", "m1")])

        assert report.actions() == ["release"]
        record = store.get("m1")
        assert record.state == MediaState.PROCESSING
        assert record.last_error == "storage unreachable"
        assert not ledger.contains("e1")

    @pytest.mark.asyncio
    async def test_redelivery_after_release_completes(self, make_orchestrator, store):
        step = ScriptedStep({"m1": ProcessingStepFailure("storage unreachable", retryable=True)})
        orchestrator = make_orchestrator(processing_step=step)
        await orchestrator.process_batch([make_event("e1", "m1")])

        step.behaviors.clear()
        report = await orchestrator.process_batch([make_event("e1", "m1", receive_count=2)])

        assert report.actions() == ["ack"]
        record = store.get("m1")
        assert record.state == MediaState.COMPLETED
        assert record.last_error is None

    @pytest.mark.asyncio
    async def test_retryable_failure_on_final_attempt_fails_record(self, make_orchestrator, store, publisher):
        step = ScriptedStep({"m1": ProcessingStepFailure("storage unreachable", retryable=True)})
        orchestrator = make_orchestrator(processing_step=step, max_receive_count=3)

        report = await orchestrator.process_batch([make_event("e1", "m1", receive_count=3)])

        assert report.actions() == ["ack"]
        assert store.get("m1").state == MediaState.FAILED
        assert _event_types(publisher) == [("m1", "failed")]

    @pytest.mark.asyncio
    async def test_publish_failure_does_not_block_ack(self, orchestrator, store, ledger, publisher):
        def _broken_subscriber(topic, envelope):
            raise RuntimeError("subscriber down")

        publisher.subscribe("media-events", _broken_subscriber)

        report = await orchestrator.process_batch([make_event("e1", "m1")])

        assert report.actions() == ["ack"]
        assert store.get("m1").state == MediaState.COMPLETED
        assert ledger.contains("e1")


class TestExternalRetry:

    @pytest.mark.asyncio
    async def test_failed_record_can_be_retried(self, make_orchestrator, store, publisher):
        step = ScriptedStep({"m1": ProcessingStepFailure("transient upstream bug")})
        orchestrator = make_orchestrator(processing_step=step)
        await orchestrator.process_batch([make_event("e1", "m1")])
        assert store.get("m1").state == MediaState.FAILED

        # 重新投递同一个 created 事件不会恢复失败记录
        report = await orchestrator.process_batch([make_event("e1b", "m1")])
        assert report.outcomes[0].kind is OutcomeKind.NOOP

        step.behaviors.clear()
        report = await orchestrator.process_batch([make_event("retry-m1-v3", "m1", "retried")])

        assert report.actions() == ["ack"]
        assert store.get("m1").state == MediaState.COMPLETED
        assert _event_types(publisher) == [("m1", "failed"), ("m1", "completed")]

    @pytest.mark.asyncio
    async def test_retry_of_completed_record_is_noop(self, orchestrator, ledger):
        await orchestrator.process_batch([make_event("e1", "m1")])

        report = await orchestrator.process_batch([make_event("r1", "m1", "retried")])

        assert report.outcomes[0].kind is OutcomeKind.NOOP
        assert ledger.contains("r1")


class TestLedgerOutcomes:

    @pytest.mark.asyncio
    async def test_ledger_records_outcome_kind(self, orchestrator, db_session_factory):
        from mediaflow.crud import get_idempotency_entry

        await orchestrator.process_batch(
            [
                make_event("applied", "m1"),
                make_event("skipped", "m2", "removed"),
                DeliveredEvent(event_id="rejected", payload="{", delivery_handle="h"),
            ]
        )

        with db_session_factory() as db:
            assert get_idempotency_entry(db, "applied").outcome == LedgerOutcome.APPLIED
            assert get_idempotency_entry(db, "skipped").outcome == LedgerOutcome.SKIPPED
            assert get_idempotency_entry(db, "rejected").outcome == LedgerOutcome.REJECTED
            assert get_idempotency_entry(db, "applied").media_id == "m1"


def test_event_action_values():
    assert EventAction.ACK == "ack"
    assert EventAction.RELEASE == "release"
