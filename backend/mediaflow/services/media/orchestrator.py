"""媒体事件编排器模块

消费事件源投递的批次，对每条事件独立执行：
账本检查 -> 解析负载 -> 读取记录 -> 计划转换 -> 版本守卫写入 PROCESSING
-> 带超时执行处理步骤 -> 版本守卫写入终态 -> 发布通知 -> 写入账本。

编排器本身无状态：每个批次都从存储重新读取，进程内除配置外没有共享可变状态，
多个副本可以同时处理重叠甚至相同的事件，协调完全依赖版本守卫写入与账本的条件插入。

每条事件的结果互相独立，一条事件失败绝不会阻塞同批次其他事件的确认。

处理步骤通过 asyncio.wait_for 执行：超时后步骤协程会被取消，其结果被丢弃，
记录保持 PROCESSING 并写入 last_error，事件释放后由重新投递再次执行步骤。
因此步骤实现必须可以安全地被中途取消并重复执行。
"""

from __future__ import annotations

import asyncio
import datetime
from typing import Any, Callable, Sequence

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from ...config import Settings
from ...core.errors import (
    MalformedEvent,
    ProcessingStepFailure,
    ProcessingStepTimeout,
    TransientStoreConflict,
)
from ...core.models import ChangeType, LedgerOutcome, MediaRecord, MediaState, utc_now
from ...core.schemas import NotificationEnvelope
from ...core.state_machine import TransitionAction, notification_event_type, plan_transition
from ...core.steps import ProcessingStep, build_processing_step
from . import status_manager
from .event_parser import ParsedEvent, parse_event, resolve_event_id
from .ledger import IdempotencyLedger
from .publisher import NotificationPublisher, build_publisher
from .record_store import MediaRecordStore
from .types import BatchOutcomeReport, DeliveredEvent, EventAction, EventOutcome, OutcomeKind


class _Deferred(Exception):
    """处理步骤遇到可重试故障，事件需要释放等待重投"""


class PipelineOrchestrator:
    """流水线编排器"""

    def __init__(
        self,
        *,
        record_store: MediaRecordStore,
        ledger: IdempotencyLedger,
        publisher: NotificationPublisher,
        processing_step: ProcessingStep,
        topic: str = "media-events",
        step_timeout_seconds: float = 30.0,
        max_receive_count: int = 5,
        batch_concurrency: int = 4,
        clock: Callable[[], datetime.datetime] = utc_now,
    ) -> None:
        self.record_store = record_store
        self.ledger = ledger
        self.publisher = publisher
        self.processing_step = processing_step
        self.topic = topic
        self.step_timeout_seconds = step_timeout_seconds
        self.max_receive_count = max_receive_count
        self.batch_concurrency = max(1, batch_concurrency)
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        db_session_factory: Callable[[], Session],
        settings: Settings,
        *,
        publisher: NotificationPublisher | None = None,
        processing_step: ProcessingStep | None = None,
    ) -> "PipelineOrchestrator":
        return cls(
            record_store=MediaRecordStore(db_session_factory),
            ledger=IdempotencyLedger(db_session_factory),
            publisher=publisher or build_publisher(settings),
            processing_step=processing_step or build_processing_step(settings.PROCESSING_STEP, settings),
            topic=settings.NOTIFICATION_TOPIC,
            step_timeout_seconds=settings.STEP_TIMEOUT_SECONDS,
            max_receive_count=settings.MAX_RECEIVE_COUNT,
            batch_concurrency=settings.BATCH_CONCURRENCY,
        )

    # ------------------------------------------------------------------
    # 批次入口
    # ------------------------------------------------------------------
    async def process_batch(self, batch: Sequence[DeliveredEvent]) -> BatchOutcomeReport:
        """处理一个批次，返回与输入顺序一致的逐条结果

        同一 mediaId 的事件按到达顺序串行执行，不同 mediaId 之间并发执行。
        """
        outcomes: list[EventOutcome | None] = [None] * len(batch)
        parsed_events: list[ParsedEvent | MalformedEvent] = []
        groups: dict[str, list[int]] = {}

        for index, event in enumerate(batch):
            try:
                parsed: ParsedEvent | MalformedEvent = parse_event(event)
                group_key = f"media:{parsed.media_id}"
            except MalformedEvent as e:
                parsed = e
                group_key = f"malformed:{index}"
            parsed_events.append(parsed)
            groups.setdefault(group_key, []).append(index)

        semaphore = asyncio.Semaphore(self.batch_concurrency)

        async def _run_group(indices: list[int]) -> None:
            async with semaphore:
                for i in indices:
                    outcomes[i] = await self._process_event_safely(batch[i], parsed_events[i])

        await asyncio.gather(*(_run_group(indices) for indices in groups.values()))

        report = BatchOutcomeReport(outcomes=[o for o in outcomes if o is not None])
        logger.info(
            f"批次处理完成: 共 {len(batch)} 条, ack {len(report.acked)} 条, release {len(report.released)} 条"
        )
        return report

    async def _process_event_safely(
        self, event: DeliveredEvent, parsed: ParsedEvent | MalformedEvent
    ) -> EventOutcome:
        """处理单条事件，任何异常都只影响本事件"""
        event_id = resolve_event_id(event) or ""
        media_id = parsed.media_id if isinstance(parsed, ParsedEvent) else None
        ctx_logger = logger.bind(event_id=event_id, media_id=media_id)

        try:
            return await self._process_event(event, event_id, parsed, ctx_logger)
        except TransientStoreConflict as e:
            ctx_logger.warning(f"重读后仍然版本冲突，释放等待重投: {e}")
            return EventOutcome(event_id, EventAction.RELEASE, OutcomeKind.TRANSIENT, str(e))
        except SQLAlchemyError as e:
            ctx_logger.error(f"存储不可用，释放等待重投: {e}")
            return EventOutcome(event_id, EventAction.RELEASE, OutcomeKind.TRANSIENT, f"存储错误: {e}")
        except Exception as e:
            ctx_logger.exception(f"处理事件时发生未预期异常: {e}")
            return EventOutcome(event_id, EventAction.RELEASE, OutcomeKind.TRANSIENT, str(e))

    # ------------------------------------------------------------------
    # 单事件流程
    # ------------------------------------------------------------------
    async def _process_event(
        self,
        event: DeliveredEvent,
        event_id: str,
        parsed: ParsedEvent | MalformedEvent,
        ctx_logger: Any,
    ) -> EventOutcome:
        # 1. 账本检查
        if event_id and await asyncio.to_thread(self.ledger.contains, event_id):
            ctx_logger.info("事件已处理过，跳过")
            return EventOutcome(event_id, EventAction.ACK, OutcomeKind.DUPLICATE, "重复事件")

        # 2. 非法负载：永久失败，确认并记录
        if isinstance(parsed, MalformedEvent):
            ctx_logger.error(f"事件负载非法，确认且不再重试: {parsed}")
            if event_id:
                await self._record_ledger(event_id, LedgerOutcome.REJECTED, None)
            return EventOutcome(event_id, EventAction.ACK, OutcomeKind.REJECTED, str(parsed))

        # 3-7. 读取记录并执行转换（冲突时重读重试一次）
        record = await self._read(parsed.media_id)
        for attempt in (1, 2):
            plan = plan_transition(record.state if record else None, parsed.change_type)

            if plan.action is TransitionAction.NOOP:
                ctx_logger.info(f"无需转换: {plan.reason}")
                await self._record_ledger(event_id, LedgerOutcome.SKIPPED, parsed.media_id)
                return EventOutcome(event_id, EventAction.ACK, OutcomeKind.NOOP, plan.reason)

            if plan.action is TransitionAction.REMOVE:
                written = await self._write(
                    status_manager.set_removed, record, event_id=event_id, now=self._clock()
                )
            else:
                written = await self._claim_processing(parsed, record, plan.action)

            if written is not None:
                break

            ctx_logger.info(f"版本冲突 (第 {attempt} 次)，重读记录")
            record = await self._read(parsed.media_id)
        else:
            raise TransientStoreConflict(parsed.media_id, record.version if record else 0)

        if plan.action is TransitionAction.REMOVE:
            final = written
            ctx_logger.info("媒体记录已标记为 REMOVED")
        else:
            ctx_logger.info(f"已将媒体记录状态更新为 PROCESSING (version={written.version})")
            try:
                final = await self._execute_step(parsed, written, event.receive_count, ctx_logger)
            except _Deferred as e:
                return EventOutcome(event_id, EventAction.RELEASE, OutcomeKind.TRANSIENT, str(e))
            if final is None:
                reason = "终态已被其他投递写入"
                await self._record_ledger(event_id, LedgerOutcome.SKIPPED, parsed.media_id)
                return EventOutcome(event_id, EventAction.ACK, OutcomeKind.NOOP, reason)

        # 8. 发布通知（失败只记录日志）
        await self._publish(final, ctx_logger)

        # 9. 所有持久副作用完成后写入账本
        await self._record_ledger(event_id, LedgerOutcome.APPLIED, parsed.media_id)
        return EventOutcome(event_id, EventAction.ACK, OutcomeKind.APPLIED, final.state)

    async def _claim_processing(
        self,
        parsed: ParsedEvent,
        record: MediaRecord | None,
        action: TransitionAction,
    ) -> MediaRecord | None:
        """在执行处理步骤之前写入 PROCESSING，冲突时返回 None"""
        now = self._clock()
        if action is TransitionAction.CREATE_AND_PROCESS:
            record = await self._write(
                status_manager.create_pending,
                media_id=parsed.media_id,
                storage_key=parsed.storage_key,
                size_bytes=parsed.size_bytes,
                content_type=parsed.content_type,
                event_id=parsed.event_id,
                now=now,
            )
            if record is None:
                return None
            attributes = None
        elif parsed.change_type == ChangeType.CREATED:
            attributes = {
                "storage_key": parsed.storage_key,
                "size_bytes": parsed.size_bytes,
                "content_type": parsed.content_type,
            }
        else:
            attributes = None

        return await self._write(
            status_manager.set_processing,
            record,
            event_id=parsed.event_id,
            now=now,
            attributes=attributes,
        )

    async def _execute_step(
        self,
        parsed: ParsedEvent,
        processing: MediaRecord,
        receive_count: int,
        ctx_logger: Any,
    ) -> MediaRecord | None:
        """带超时执行处理步骤并写入终态

        Returns:
            MediaRecord | None: 写入后的终态记录；终态已被其他投递写入时返回 None

        Raises:
            _Deferred: 可重试故障且尚未到最后一次投递
        """
        final_attempt = receive_count >= self.max_receive_count
        metadata: dict | None = None
        error_message: str | None = None

        try:
            result = await asyncio.wait_for(
                self.processing_step.execute(processing), timeout=self.step_timeout_seconds
            )
            metadata = dict(result.metadata)
        except asyncio.TimeoutError:
            error = ProcessingStepTimeout(self.step_timeout_seconds)
            if not final_attempt:
                await self._note_retryable_error(processing, str(error), parsed.event_id, ctx_logger)
                raise _Deferred(str(error))
            error_message = str(error)
        except ProcessingStepFailure as e:
            if e.retryable and not final_attempt:
                await self._note_retryable_error(processing, str(e), parsed.event_id, ctx_logger)
                raise _Deferred(str(e))
            error_message = str(e)
        except Exception as e:
            ctx_logger.error(f"处理步骤发生未知错误: {type(e).__name__}: {e}")
            error_message = str(e) or type(e).__name__

        if error_message is not None:
            ctx_logger.warning(f"处理步骤失败，记录 FAILED: {error_message}")
            return await self._write_terminal(
                status_manager.set_failed, processing, error_message, event_id=parsed.event_id
            )

        ctx_logger.info("处理步骤成功，记录 COMPLETED")
        return await self._write_terminal(
            status_manager.set_completed, processing, metadata=metadata, event_id=parsed.event_id
        )

    async def _write_terminal(
        self, writer: Callable[..., MediaRecord | None], processing: MediaRecord, *args: Any, **kwargs: Any
    ) -> MediaRecord | None:
        """版本守卫写入终态，冲突时重读并重试一次

        重读发现记录已不在 PROCESSING（其他投递已完成或记录被删除）时放弃本次结果。
        """
        record = processing
        for _attempt in (1, 2):
            written = await self._write(writer, record, *args, now=self._clock(), **kwargs)
            if written is not None:
                return written

            record = await self._read(processing.media_id)
            if record is None or record.state != MediaState.PROCESSING:
                logger.bind(media_id=processing.media_id).info(
                    f"终态写入冲突，记录已是 {record.state if record else '不存在'}，放弃本次结果"
                )
                return None

        raise TransientStoreConflict(processing.media_id, record.version)

    async def _note_retryable_error(
        self, processing: MediaRecord, error_message: str, event_id: str, ctx_logger: Any
    ) -> None:
        """保持 PROCESSING 并写入 last_error，冲突时忽略（记录已被其他投递推进）"""
        ctx_logger.warning(f"处理步骤可重试故障，释放等待重投: {error_message}")
        written = await self._write(
            status_manager.note_retryable_error,
            processing,
            error_message,
            event_id=event_id,
            now=self._clock(),
        )
        if written is None:
            ctx_logger.debug("写入 last_error 时版本冲突，忽略")

    # ------------------------------------------------------------------
    # 存储 / 发布辅助
    # ------------------------------------------------------------------
    async def _read(self, media_id: str) -> MediaRecord | None:
        return await asyncio.to_thread(self.record_store.get, media_id)

    async def _write(self, writer: Callable[..., MediaRecord | None], *args: Any, **kwargs: Any) -> MediaRecord | None:
        return await asyncio.to_thread(writer, self.record_store, *args, **kwargs)

    async def _record_ledger(self, event_id: str, outcome: str, media_id: str | None) -> None:
        await asyncio.to_thread(self.ledger.record, event_id, outcome, media_id=media_id, now=self._clock())

    async def _publish(self, record: MediaRecord, ctx_logger: Any) -> None:
        event_type = notification_event_type(record.state)
        if event_type is None:
            return
        envelope = NotificationEnvelope(
            media_id=record.media_id,
            event_type=event_type,
            state=record.state,
            timestamp=record.updated_at,
        )
        try:
            await self.publisher.publish(self.topic, envelope)
            ctx_logger.info(f"已发布通知: {event_type}")
        except Exception as e:
            ctx_logger.warning(f"发布通知失败，事件仍然确认: {e}")
