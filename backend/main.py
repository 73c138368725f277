from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

import asyncio
from loguru import logger

from mediaflow.config import settings
from mediaflow.api import router as api_router, tags_metadata
from mediaflow.db import create_db_and_tables, get_session_factory
from mediaflow.services.media.consumer import consumer_loop
from mediaflow.services.media.event_source import DatabaseEventSource
from mediaflow.services.media.ledger import ledger_gc_loop
from mediaflow.services.media.orchestrator import PipelineOrchestrator

# 配置日志
logger.remove()
logger.add(
    sink=lambda msg: print(msg, end=""),
    level=settings.LOG_LEVEL.value,
    format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
            "<level>{level}</level> | "
            "{extra} {message}"
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("应用启动，开始初始化...")
    create_db_and_tables()
    logger.info("数据库和表初始化完成")

    # ------------------------------------------------------------------
    # 1) 创建数据库会话工厂与流水线组件
    # ------------------------------------------------------------------
    db_session_factory = get_session_factory()

    orchestrator = PipelineOrchestrator.from_settings(db_session_factory, settings)
    event_source = DatabaseEventSource.from_settings(db_session_factory, settings)
    logger.info(
        f"流水线组件初始化完成 - 处理步骤: {orchestrator.processing_step.name}, "
        f"通知后端: {settings.NOTIFICATION_BACKEND.value}"
    )

    # 保存到 app.state 中，供API路由访问
    app.state.orchestrator = orchestrator
    app.state.event_source = event_source

    # ------------------------------------------------------------------
    # 2) 启动后台任务
    # ------------------------------------------------------------------
    background_tasks = []

    # 1. 启动 Consumers（从事件源领取批次并交给编排器处理）
    for i in range(settings.CONSUMER_COUNT):
        consumer_task = asyncio.create_task(
            consumer_loop(
                source=event_source,
                orchestrator=orchestrator,
                batch_size=settings.BATCH_SIZE,
                interval_seconds=settings.POLL_INTERVAL_SECONDS,
                consumer_id=i + 1,
            )
        )
        consumer_task.set_name(f"consumer-{i+1}")
        background_tasks.append(consumer_task)
        logger.info(f"启动 Consumer-{i+1}")

    # 2. 启动账本清理任务
    gc_task = asyncio.create_task(
        ledger_gc_loop(
            ledger=orchestrator.ledger,
            retention_hours=settings.LEDGER_RETENTION_HOURS,
            interval_seconds=settings.LEDGER_GC_INTERVAL_SECONDS,
        )
    )
    gc_task.set_name("ledger-gc")
    background_tasks.append(gc_task)
    logger.info(f"启动账本清理任务（保留期: {settings.LEDGER_RETENTION_HOURS} 小时）")

    logger.info(f"所有后台任务启动完成 - Consumers: {settings.CONSUMER_COUNT}, LedgerGC: 1")

    yield

    # Shutdown
    logger.info("正在关闭所有后台任务...")

    # 取消所有后台任务
    for task in background_tasks:
        task.cancel()

    # 等待所有任务完成
    try:
        await asyncio.gather(*background_tasks, return_exceptions=True)
    except Exception as e:
        logger.error(f"关闭任务时发生异常: {e}")

    # 关闭发布者持有的网络连接
    aclose = getattr(orchestrator.publisher, "aclose", None)
    if aclose is not None:
        await aclose()

    logger.info("所有后台任务已关闭")


app = FastAPI(title="MediaFlow API", lifespan=lifespan, openapi_tags=tags_metadata)

# 添加 CORS 中间件
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.get_cors_origins_list(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# 引入API路由
app.include_router(api_router)

@app.get("/")
def read_root():
    return {"message": "Welcome to MediaFlow API"}
