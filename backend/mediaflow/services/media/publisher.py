"""通知发布模块

把媒体状态变更的 NotificationEnvelope 扇出给所有订阅者，至少一次投递。
对编排器来说发布是"发出即忘"：任何订阅者失败都汇总为 PublishFailure 抛出，
由编排器记录日志，绝不影响事件的确认。

实现：
- InMemoryPublisher: 进程内回调扇出，开发与测试使用
- WebhookPublisher: 通过 httpx 向配置的 webhook 地址 POST JSON
"""

from __future__ import annotations

import inspect
from collections import defaultdict
from typing import Any, Awaitable, Callable, Protocol

import httpx
from loguru import logger
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from ...config import Settings, NotificationBackend
from ...core.errors import PublishFailure
from ...core.schemas import NotificationEnvelope


class NotificationPublisher(Protocol):
    """通知发布能力接口"""

    async def publish(self, topic: str, envelope: NotificationEnvelope) -> None:
        ...


Subscriber = Callable[[str, NotificationEnvelope], Awaitable[Any] | Any]


class InMemoryPublisher:
    """进程内发布者，按主题把通知扇出给注册的回调"""

    def __init__(self) -> None:
        self.published: list[tuple[str, NotificationEnvelope]] = []
        self._subscribers: dict[str, list[Subscriber]] = defaultdict(list)

    def subscribe(self, topic: str, callback: Subscriber) -> None:
        """注册订阅回调，支持同步和异步函数"""
        self._subscribers[topic].append(callback)

    async def publish(self, topic: str, envelope: NotificationEnvelope) -> None:
        self.published.append((topic, envelope))

        errors: list[str] = []
        for callback in list(self._subscribers.get(topic, ())):
            try:
                result = callback(topic, envelope)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                errors.append(f"{getattr(callback, '__name__', repr(callback))}: {e}")

        if errors:
            raise PublishFailure(f"{len(errors)} 个订阅者处理失败: {'; '.join(errors)}")


# 重试装饰器配置：只重试网络层错误
retry_config = {
    'stop': stop_after_attempt(3),
    'wait': wait_exponential(multiplier=0.5, min=0.5, max=5),
    'retry': retry_if_exception_type(httpx.TransportError),
    'reraise': True,
}


class WebhookPublisher:
    """向 webhook 订阅者 POST 通知"""

    TOPIC_HEADER = "X-Notification-Topic"

    def __init__(
        self,
        urls: list[str],
        *,
        timeout_seconds: float = 5.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.urls = list(urls)
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)

    @retry(**retry_config)
    async def _post(self, url: str, topic: str, message: dict) -> None:
        response = await self._client.post(url, json=message, headers={self.TOPIC_HEADER: topic})
        response.raise_for_status()

    async def publish(self, topic: str, envelope: NotificationEnvelope) -> None:
        message = envelope.to_message()
        errors: list[str] = []
        for url in self.urls:
            try:
                await self._post(url, topic, message)
            except httpx.HTTPError as e:
                logger.warning(f"webhook 发布失败: url={url}, 错误: {e}")
                errors.append(f"{url}: {e}")

        if errors:
            raise PublishFailure(f"{len(errors)}/{len(self.urls)} 个 webhook 发布失败")

    async def aclose(self) -> None:
        await self._client.aclose()


def build_publisher(settings: Settings) -> NotificationPublisher:
    """根据配置构造发布者"""
    if settings.NOTIFICATION_BACKEND == NotificationBackend.WEBHOOK:
        urls = settings.get_webhook_urls()
        if not urls:
            logger.warning("NOTIFICATION_BACKEND=webhook 但未配置 NOTIFICATION_WEBHOOK_URLS，通知将被丢弃")
        return WebhookPublisher(urls)
    return InMemoryPublisher()
