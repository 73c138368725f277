"""媒体状态机模块

以一张显式的转换表描述 (当前状态, 变更类型) -> 转换计划。
表对所有状态与变更类型的组合都有定义，不存在的组合一律视为 NOOP。
本模块是纯函数，不访问存储。
"""

from __future__ import annotations

from enum import StrEnum
from typing import NamedTuple

from .models import MediaState, ChangeType


class TransitionAction(StrEnum):
    """转换计划的动作类型"""

    CREATE_AND_PROCESS = "create_and_process"
    """首次观察到对象：创建记录并执行处理步骤"""

    PROCESS = "process"
    """写入 PROCESSING 并执行处理步骤（含重新进入与外部重试）"""

    REMOVE = "remove"
    """写入 REMOVED 墓碑状态"""

    NOOP = "noop"
    """终态已满足，无需任何写入"""


class TransitionPlan(NamedTuple):
    """转换计划"""
    action: TransitionAction
    next_state: str | None
    reason: str


_NONE = None

# (当前状态, 变更类型) -> 转换计划
_TRANSITIONS: dict[tuple[str | None, str], TransitionPlan] = {
    # —— 记录不存在 ——
    (_NONE, ChangeType.CREATED): TransitionPlan(
        TransitionAction.CREATE_AND_PROCESS, MediaState.PROCESSING, "首次观察到对象"),
    (_NONE, ChangeType.REMOVED): TransitionPlan(
        TransitionAction.NOOP, None, "从未见过的对象被删除，缺席状态已满足"),
    (_NONE, ChangeType.RETRIED): TransitionPlan(
        TransitionAction.NOOP, None, "重试的对象不存在"),

    # —— PENDING ——
    (MediaState.PENDING, ChangeType.CREATED): TransitionPlan(
        TransitionAction.PROCESS, MediaState.PROCESSING, "待处理记录开始处理"),
    (MediaState.PENDING, ChangeType.REMOVED): TransitionPlan(
        TransitionAction.REMOVE, MediaState.REMOVED, "待处理记录被删除"),
    (MediaState.PENDING, ChangeType.RETRIED): TransitionPlan(
        TransitionAction.NOOP, None, "仅 FAILED 状态允许重试"),

    # —— PROCESSING ——
    (MediaState.PROCESSING, ChangeType.CREATED): TransitionPlan(
        TransitionAction.PROCESS, MediaState.PROCESSING, "重新投递，重新进入处理"),
    (MediaState.PROCESSING, ChangeType.REMOVED): TransitionPlan(
        TransitionAction.REMOVE, MediaState.REMOVED, "处理中记录被删除"),
    (MediaState.PROCESSING, ChangeType.RETRIED): TransitionPlan(
        TransitionAction.NOOP, None, "仅 FAILED 状态允许重试"),

    # —— COMPLETED ——
    (MediaState.COMPLETED, ChangeType.CREATED): TransitionPlan(
        TransitionAction.NOOP, None, "记录已完成"),
    (MediaState.COMPLETED, ChangeType.REMOVED): TransitionPlan(
        TransitionAction.REMOVE, MediaState.REMOVED, "已完成记录被删除"),
    (MediaState.COMPLETED, ChangeType.RETRIED): TransitionPlan(
        TransitionAction.NOOP, None, "仅 FAILED 状态允许重试"),

    # —— FAILED ——
    (MediaState.FAILED, ChangeType.CREATED): TransitionPlan(
        TransitionAction.NOOP, None, "失败记录只能通过外部重试恢复"),
    (MediaState.FAILED, ChangeType.REMOVED): TransitionPlan(
        TransitionAction.REMOVE, MediaState.REMOVED, "失败记录被删除"),
    (MediaState.FAILED, ChangeType.RETRIED): TransitionPlan(
        TransitionAction.PROCESS, MediaState.PROCESSING, "外部重试"),

    # —— REMOVED ——
    (MediaState.REMOVED, ChangeType.CREATED): TransitionPlan(
        TransitionAction.NOOP, None, "记录已删除"),
    (MediaState.REMOVED, ChangeType.REMOVED): TransitionPlan(
        TransitionAction.NOOP, None, "记录已删除"),
    (MediaState.REMOVED, ChangeType.RETRIED): TransitionPlan(
        TransitionAction.NOOP, None, "记录已删除"),
}

# 终态 -> 通知事件类型
NOTIFICATION_EVENT_TYPES: dict[str, str] = {
    MediaState.COMPLETED: "completed",
    MediaState.FAILED: "failed",
    MediaState.REMOVED: "removed",
}


def plan_transition(current_state: str | None, change_type: str) -> TransitionPlan:
    """计算状态转换计划

    Args:
        current_state: 当前状态，记录不存在时为 None
        change_type: 事件的变更类型

    Returns:
        TransitionPlan: 转换计划

    Raises:
        ValueError: 状态或变更类型不在已知集合内
    """
    if current_state is not None and current_state not in MediaState.ALL:
        raise ValueError(f"未知的媒体状态: {current_state}")
    if change_type not in ChangeType.ALL:
        raise ValueError(f"未知的变更类型: {change_type}")
    return _TRANSITIONS[(current_state, change_type)]


def is_terminal(state: str | None) -> bool:
    """判断状态是否为终态"""
    return state in MediaState.TERMINAL


def notification_event_type(state: str) -> str | None:
    """返回终态对应的通知事件类型，非终态返回 None"""
    return NOTIFICATION_EVENT_TYPES.get(state)
