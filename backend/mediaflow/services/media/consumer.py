"""事件消费者模块

定期从事件源领取一批事件交给编排器处理，再按批次报告逐条确认或释放。
多个消费者可以同时运行：事件源的条件领取保证同一条消息同一时刻只属于一个消费者，
即便可见性超时后被重复投递，编排器的版本守卫与账本也能保证结果正确。
"""

import asyncio
from typing import Sequence

from loguru import logger

from .event_source import StorageEventSource
from .orchestrator import PipelineOrchestrator
from .types import BatchOutcomeReport, DeliveredEvent, EventAction


async def consumer_loop(
    source: StorageEventSource,
    orchestrator: PipelineOrchestrator,
    batch_size: int,
    interval_seconds: float,
    stop_event: asyncio.Event | None = None,
    consumer_id: int = 1,
) -> None:
    """Consumer 主循环

    领取到事件时立即进入下一轮，队列为空时等待 interval_seconds 再轮询。

    Args:
        source: 事件源
        orchestrator: 流水线编排器
        batch_size: 每次领取的最大事件数量
        interval_seconds: 空闲时的轮询间隔（秒）
        stop_event: 可选的停止信号
        consumer_id: 消费者编号（用于日志标识）
    """
    consumer_logger = logger.bind(consumer_id=consumer_id)
    consumer_logger.info(f"Consumer-{consumer_id} 启动，批量大小: {batch_size}, 轮询间隔: {interval_seconds}秒")

    while stop_event is None or not stop_event.is_set():
        try:
            processed_count = await _process_batch(source, orchestrator, batch_size)

            if processed_count > 0:
                consumer_logger.info(f"Consumer-{consumer_id} 处理了 {processed_count} 个事件")
                continue

            await asyncio.sleep(interval_seconds)

        except asyncio.CancelledError:
            consumer_logger.info(f"Consumer-{consumer_id} 被取消")
            raise
        except Exception as e:
            consumer_logger.error(f"Consumer-{consumer_id} 循环出错: {e}")
            # 出错后等待更长时间再重试
            await asyncio.sleep(interval_seconds * 2)


async def _process_batch(
    source: StorageEventSource,
    orchestrator: PipelineOrchestrator,
    batch_size: int,
) -> int:
    """领取并处理一批事件，返回领取到的事件数量"""
    batch = await asyncio.to_thread(source.receive_batch, batch_size)
    if not batch:
        return 0

    logger.debug(f"领取到 {len(batch)} 个事件")
    report = await orchestrator.process_batch(batch)
    await apply_batch_report(source, batch, report)
    return len(batch)


async def apply_batch_report(
    source: StorageEventSource,
    batch: Sequence[DeliveredEvent],
    report: BatchOutcomeReport,
) -> tuple[int, int]:
    """按批次报告逐条确认或释放

    报告与批次按位置一一对应。没有投递句柄的事件（例如直接推送的批次）跳过。

    Returns:
        tuple[int, int]: (确认数量, 释放数量)
    """
    acked = released = 0
    for event, outcome in zip(batch, report.outcomes):
        if not event.delivery_handle:
            continue
        if outcome.action is EventAction.ACK:
            if await asyncio.to_thread(source.ack, event.delivery_handle):
                acked += 1
        else:
            if await asyncio.to_thread(source.release, event.delivery_handle):
                released += 1
    return acked, released


async def consumer_single_run(
    source: StorageEventSource,
    orchestrator: PipelineOrchestrator,
    batch_size: int,
) -> int:
    """Consumer 单次运行

    用于测试或手动触发，执行一次领取和处理。

    Returns:
        实际处理的事件数量
    """
    return await _process_batch(source, orchestrator, batch_size)
