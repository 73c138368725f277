from typing import Callable

from sqlmodel import create_engine, Session, SQLModel

from .config import settings

# 后台消费者与账本清理任务通过 asyncio.to_thread 在线程池中访问数据库，
# SQLite 连接必须允许跨线程使用
engine = create_engine(
    settings.DATABASE_URL,
    echo=settings.SQLITE_ECHO,
    connect_args={"check_same_thread": False},
)

# 建表之后补充的索引，重复执行无副作用
_INDEX_STATEMENTS = (
    # 消费者按可见时间领取未进入死信的消息
    "CREATE INDEX IF NOT EXISTS idx_delivery_ready ON deliveryitem (dead_lettered, visible_at, id)",
)


def create_db_and_tables():
    """创建媒体记录、幂等账本与投递队列三张表及其索引"""
    SQLModel.metadata.create_all(engine)

    with engine.begin() as conn:
        for stmt in _INDEX_STATEMENTS:
            conn.exec_driver_sql(stmt)


def get_db():
    """FastAPI 依赖：每个请求一个会话，请求结束后关闭"""
    with Session(engine) as session:
        yield session


def get_session_factory() -> Callable[[], Session]:
    """返回会话工厂，供编排器、事件源等在请求之外运行的组件使用"""
    return lambda: Session(engine)
