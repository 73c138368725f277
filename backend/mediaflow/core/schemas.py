"""
Pydantic模型（Schemas）模块

定义事件负载、通知信封以及API请求/响应的数据校验与序列化模型。
与数据库模型（models.py）分离，外部接口统一使用 camelCase 字段名。
"""

import datetime
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """外部接口模型基类：JSON 字段为 camelCase，Python 属性为 snake_case"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# 存储变更事件负载（消费）
class StorageEventPayload(CamelModel):
    event_id: Optional[str] = None
    media_id: Optional[str] = None
    change_type: Literal["created", "removed", "retried"]
    storage_key: str = Field(..., min_length=1)
    size_bytes: int = Field(0, ge=0, le=2**63 - 1)
    content_type: str = "application/octet-stream"
    timestamp: datetime.datetime


# 状态变更通知（生产）
class NotificationEnvelope(CamelModel):
    media_id: str
    event_type: Literal["completed", "failed", "removed"]
    state: str
    timestamp: datetime.datetime

    def to_message(self) -> Dict[str, Any]:
        """序列化为对外发布的 JSON 字典"""
        return self.model_dump(by_alias=True, mode="json")


# 推送式投递的单条事件
class DeliveredEventIn(CamelModel):
    event_id: str = ""
    payload: Union[Dict[str, Any], str]
    delivery_handle: Optional[str] = None
    receive_count: int = Field(1, ge=1)


# 批次处理结果中的单项
class BatchOutcomeItem(CamelModel):
    event_id: str
    action: Literal["ack", "release"]


# 批次处理结果响应模型
class BatchOutcomeResponse(CamelModel):
    items: List[BatchOutcomeItem]
    acked: int
    released: int


# 事件入队响应模型
class EnqueueResponse(CamelModel):
    event_id: str
    queued: bool


# 媒体重试操作响应模型
class RetryResponse(CamelModel):
    message: str
    media_id: str
    previous_state: str
    event_id: str
