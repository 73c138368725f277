"""服务层包

按领域组织的服务层模块：
- media: 媒体事件的解析、编排、发布与消费
"""

from .media import (
    PipelineOrchestrator,
    DatabaseEventSource,
    consumer_loop,
    ledger_gc_loop,
)

__all__ = [
    "PipelineOrchestrator",
    "DatabaseEventSource",
    "consumer_loop",
    "ledger_gc_loop",
]
