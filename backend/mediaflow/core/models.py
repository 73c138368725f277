import datetime
from typing import Optional
from sqlmodel import Field, SQLModel, JSON, Column


def utc_now() -> datetime.datetime:
    """获取当前UTC时间，用于数据库时间戳"""
    return datetime.datetime.now(datetime.timezone.utc)


# 定义媒体记录状态的枚举值，便于管理和引用
class MediaState:
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REMOVED = "REMOVED"

    ALL = (PENDING, PROCESSING, COMPLETED, FAILED, REMOVED)
    TERMINAL = (COMPLETED, FAILED, REMOVED)


# 存储事件的变更类型
class ChangeType:
    CREATED = "created"
    REMOVED = "removed"
    RETRIED = "retried"

    ALL = (CREATED, REMOVED, RETRIED)


# 幂等账本条目的处理结果
class LedgerOutcome:
    APPLIED = "applied"
    SKIPPED = "skipped"
    REJECTED = "rejected"


class MediaRecord(SQLModel, table=True):
    """
    代表一个被存储事件观察到的媒体对象及其处理生命周期。

    每次持久化变更都必须携带读取时的 version，存储层据此拒绝过期写入。
    """
    # --------------------------------------------------------------------------
    # 唯一标识
    # --------------------------------------------------------------------------
    media_id: str = Field(primary_key=True, nullable=False, description="媒体对象的唯一标识")

    # --------------------------------------------------------------------------
    # 状态与并发控制 (核心逻辑驱动字段)
    # --------------------------------------------------------------------------
    state: str = Field(
        default=MediaState.PENDING,
        index=True,
        nullable=False,
        description=f"媒体当前状态: {', '.join(MediaState.ALL)}"
    )
    version: int = Field(default=0, nullable=False, description="乐观并发版本号，每次写入严格递增")

    # 对象存储信息
    storage_key: str = Field(index=True, nullable=False, description="对象存储中的键")
    size_bytes: int = Field(default=0, nullable=False, description="对象大小（字节）")
    content_type: str = Field(default="application/octet-stream", nullable=False, description="对象的内容类型")

    created_at: datetime.datetime = Field(default_factory=utc_now, nullable=False)
    updated_at: datetime.datetime = Field(default_factory=utc_now, nullable=False)

    # --------------------------------------------------------------------------
    # 处理结果
    # --------------------------------------------------------------------------
    processed_data: Optional[dict] = Field(default=None, sa_column=Column(JSON), description="处理步骤产出的元数据")

    # --------------------------------------------------------------------------
    # 错误与诊断
    # --------------------------------------------------------------------------
    last_error: Optional[str] = Field(default=None, description="记录最后一次失败的原因")
    last_event_id: Optional[str] = Field(default=None, description="最后一次写入本记录的事件ID，仅用于排查")


class IdempotencyEntry(SQLModel, table=True):
    """
    幂等账本条目。

    存在即表示该事件的副作用已经持久化，不得重复执行。条目只插入不修改，
    过了保留期可以被清理。
    """
    event_id: str = Field(primary_key=True, nullable=False, description="投递唯一的事件ID")
    processed_at: datetime.datetime = Field(default_factory=utc_now, index=True, nullable=False)
    outcome: str = Field(default=LedgerOutcome.APPLIED, nullable=False, description="applied/skipped/rejected")
    media_id: Optional[str] = Field(default=None, index=True, description="事件关联的媒体ID")


class DeliveryItem(SQLModel, table=True):
    """
    事件投递队列中的一条消息。

    被领取后在 visible_at 之前对其他消费者不可见；handle 每次领取都会重新生成。
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    event_id: str = Field(index=True, nullable=False, description="消息携带的事件ID")
    body: str = Field(nullable=False, description="事件负载，JSON字符串")

    handle: Optional[str] = Field(default=None, index=True, description="当前投递句柄")
    receive_count: int = Field(default=0, nullable=False, description="已被领取的次数")
    visible_at: datetime.datetime = Field(default_factory=utc_now, index=True, nullable=False)
    dead_lettered: bool = Field(default=False, index=True, nullable=False, description="超过最大投递次数后进入死信")

    created_at: datetime.datetime = Field(default_factory=utc_now, nullable=False)
