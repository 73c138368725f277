"""流水线异常模块

按处理策略区分的异常层级：
- 业务失败（确认消息并记录 FAILED）：ProcessingStepFailure(retryable=False)
- 基础设施失败（释放消息等待重投）：TransientStoreConflict、ProcessingStepTimeout、
  ProcessingStepFailure(retryable=True)
- 永久失败（确认消息，永不重试）：MalformedEvent
- 仅记录日志：PublishFailure
"""


class MediaPipelineError(Exception):
    """流水线异常基类"""


class MalformedEvent(MediaPipelineError):
    """事件负载无法解析，重试也不会成功"""

    def __init__(self, message: str, *, event_id: str | None = None):
        super().__init__(message)
        self.event_id = event_id


class TransientStoreConflict(MediaPipelineError):
    """版本号冲突，重读后仍然冲突"""

    def __init__(self, media_id: str, expected_version: int):
        super().__init__(f"媒体记录 {media_id} 版本冲突 (expected_version={expected_version})")
        self.media_id = media_id
        self.expected_version = expected_version


class ProcessingStepFailure(MediaPipelineError):
    """处理步骤执行失败

    Args:
        message: 失败原因，会写入 MediaRecord.last_error
        retryable: 是否属于可重试的基础设施故障
    """

    def __init__(self, message: str, *, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


class ProcessingStepTimeout(MediaPipelineError):
    """处理步骤超时"""

    def __init__(self, timeout_seconds: float):
        super().__init__(f"处理步骤超时: 超过 {timeout_seconds} 秒")
        self.timeout_seconds = timeout_seconds


class PublishFailure(MediaPipelineError):
    """通知发布失败"""
