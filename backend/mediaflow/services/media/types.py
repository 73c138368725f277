"""媒体事件流水线相关的数据结构和类型定义"""

from enum import StrEnum
from typing import Any, NamedTuple


class EventAction(StrEnum):
    """事件处理完成后对投递层的动作"""

    ACK = "ack"
    RELEASE = "release"


class OutcomeKind(StrEnum):
    """事件处理结果分类（用于日志与测试断言，不对外暴露）"""

    APPLIED = "applied"
    """状态转换已持久化"""

    DUPLICATE = "duplicate"
    """账本中已存在该事件"""

    NOOP = "noop"
    """终态已满足，无需写入"""

    REJECTED = "rejected"
    """负载非法，永久失败"""

    TRANSIENT = "transient"
    """基础设施故障或持续冲突，等待重投"""


class DeliveredEvent(NamedTuple):
    """事件源投递的一条事件"""
    event_id: str
    payload: Any
    delivery_handle: str | None
    receive_count: int = 1


class EventOutcome(NamedTuple):
    """单条事件的处理结果"""
    event_id: str
    action: EventAction
    kind: OutcomeKind
    message: str = ""


class BatchOutcomeReport(NamedTuple):
    """批次处理结果，顺序与输入批次一致"""
    outcomes: list[EventOutcome]

    def actions(self) -> list[str]:
        return [outcome.action.value for outcome in self.outcomes]

    @property
    def acked(self) -> list[str]:
        return [o.event_id for o in self.outcomes if o.action is EventAction.ACK]

    @property
    def released(self) -> list[str]:
        return [o.event_id for o in self.outcomes if o.action is EventAction.RELEASE]
