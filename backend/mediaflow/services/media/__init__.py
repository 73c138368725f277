"""媒体事件流水线服务模块

由多个专职子模块组成：
- types: 数据结构和类型定义
- event_parser: 事件负载解析
- record_store: 带版本守卫的媒体记录存储
- ledger: 幂等账本
- status_manager: 状态写入
- publisher: 通知发布
- event_source: 事件源（投递 / 确认 / 释放）
- orchestrator: 批次编排
- consumer: 后台消费循环
"""

from .types import BatchOutcomeReport, DeliveredEvent, EventAction, EventOutcome, OutcomeKind
from .record_store import MediaRecordStore
from .ledger import IdempotencyLedger, ledger_gc_loop
from .publisher import InMemoryPublisher, WebhookPublisher, build_publisher
from .event_source import DatabaseEventSource
from .orchestrator import PipelineOrchestrator
from .consumer import consumer_loop, consumer_single_run
from . import status_manager

__all__ = [
    "BatchOutcomeReport",
    "DeliveredEvent",
    "EventAction",
    "EventOutcome",
    "OutcomeKind",
    "MediaRecordStore",
    "IdempotencyLedger",
    "ledger_gc_loop",
    "InMemoryPublisher",
    "WebhookPublisher",
    "build_publisher",
    "DatabaseEventSource",
    "PipelineOrchestrator",
    "consumer_loop",
    "consumer_single_run",
    "status_manager",
]
