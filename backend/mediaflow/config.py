from __future__ import annotations

from enum import Enum

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from loguru import logger


class LogLevel(str, Enum):
    """日志级别枚举"""
    TRACE = "TRACE"
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class AppEnv(str, Enum):
    """应用运行环境枚举"""
    DEV = "development"
    PROD = "production"


class NotificationBackend(str, Enum):
    """通知发布后端"""
    MEMORY = "memory"
    WEBHOOK = "webhook"


# 可选的处理步骤名称，与 core/steps.py 中的注册表保持一致
PROCESSING_STEP_NAMES = ("validation", "metadata", "derivative")


class Settings(BaseSettings):
    """项目全局配置。

    所有字段均可通过环境变量或 `.env` 文件注入，启动时加载一次。
    在 FastAPI、后台消费者等模块中，直接 `from mediaflow.config import settings` 获取单例。
    """

    # —— 数据库 ——
    DATABASE_URL: str = "sqlite:///mediaflow.db"
    SQLITE_ECHO: bool = False

    # —— 批处理 ——
    BATCH_SIZE: int = Field(
        10,
        description="每次从事件源拉取的最大事件数",
        ge=1,
        le=100
    )
    BATCH_CONCURRENCY: int = Field(
        4,
        description="同一批次内并发处理的 mediaId 分组数量",
        ge=1,
        le=64
    )

    # —— 处理步骤 ——
    PROCESSING_STEP: str = Field(
        "metadata",
        description=f"处理步骤实现: {', '.join(PROCESSING_STEP_NAMES)}"
    )
    STEP_TIMEOUT_SECONDS: float = Field(
        30.0,
        description="单次处理步骤的超时时间（秒），超时视为可重试的基础设施故障",
        gt=0
    )
    MAX_FILE_SIZE_MB: int = Field(
        1024,
        description="允许处理的最大文件大小（MB）",
        ge=1
    )
    ALLOWED_CONTENT_TYPES: str = Field(
        default="image/jpeg,image/png,image/gif,image/webp,image/bmp,video/mp4,video/quicktime,audio/mpeg",
        description="允许处理的内容类型，逗号分隔格式"
    )
    DERIVATIVE_WIDTHS: str = Field(
        default="150,500,1024",
        description="派生缩略图宽度列表，逗号分隔格式"
    )

    # —— 幂等账本 ——
    LEDGER_RETENTION_HOURS: int = Field(
        72,
        description="幂等账本条目保留时长（小时），过期后可被清理",
        ge=1
    )
    LEDGER_GC_INTERVAL_SECONDS: int = Field(
        3600,
        description="账本清理任务的执行间隔（秒）",
        ge=1
    )

    # —— 事件投递 ——
    VISIBILITY_TIMEOUT_SECONDS: int = Field(
        120,
        description="事件被领取后对其他消费者不可见的时长（秒）",
        ge=1
    )
    RELEASE_BASE_DELAY_SECONDS: float = Field(
        5.0,
        description="释放后重新投递的基础延迟（秒），按投递次数指数退避",
        ge=0
    )
    RELEASE_MAX_DELAY_SECONDS: float = Field(
        300.0,
        description="释放后重新投递的最大延迟（秒）",
        ge=0
    )
    MAX_RECEIVE_COUNT: int = Field(
        5,
        description="单个事件的最大投递次数，超过后进入死信",
        ge=1
    )
    CONSUMER_COUNT: int = Field(
        default=2,
        description="后台消费者协程数量",
        ge=1,
        le=10
    )
    POLL_INTERVAL_SECONDS: float = Field(
        default=2.0,
        description="事件源为空时的轮询间隔（秒）",
        gt=0
    )

    # —— 通知 ——
    NOTIFICATION_TOPIC: str = Field(
        "media-events",
        description="媒体状态变更通知的主题名称"
    )
    NOTIFICATION_BACKEND: NotificationBackend = Field(
        NotificationBackend.MEMORY,
        description="通知发布后端: memory/webhook"
    )
    NOTIFICATION_WEBHOOK_URLS: str = Field(
        default="",
        description="webhook 订阅者地址，逗号分隔格式"
    )

    # —— 运行环境 & 日志 ——
    LOG_LEVEL: LogLevel = Field(
        LogLevel.INFO,
        description="日志级别"
    )
    APP_ENV: AppEnv = Field(
        AppEnv.DEV,
        description="运行环境: development/production"
    )

    # —— CORS 跨域配置 ——
    CORS_ORIGINS: str = Field(
        default="*",
        description="允许跨域访问的源地址，逗号分隔格式，如: http://localhost:3000,https://example.com"
    )

    model_config = SettingsConfigDict(
        env_file=(".env", ".env.local"),
        env_file_encoding="utf-8",
        env_prefix="",
        case_sensitive=True,
        validate_default=True,
        extra="ignore",
    )

    # —— 验证器 ——
    @field_validator("DATABASE_URL")
    @classmethod
    def validate_database_url(cls, v: str) -> str:
        """验证SQLite数据库URL格式"""
        if not v.startswith("sqlite:///"):
            raise ValueError("仅支持SQLite数据库，URL必须以'sqlite:///'开头")
        return v

    @field_validator("PROCESSING_STEP")
    @classmethod
    def validate_processing_step(cls, v: str) -> str:
        """验证处理步骤名称"""
        name = v.strip().lower()
        if name not in PROCESSING_STEP_NAMES:
            raise ValueError(f"不支持的处理步骤: {v}。支持: {', '.join(PROCESSING_STEP_NAMES)}")
        return name

    @field_validator("ALLOWED_CONTENT_TYPES")
    @classmethod
    def validate_content_types(cls, v: str) -> str:
        """验证内容类型格式"""
        types = [t.strip().lower() for t in v.split(',') if t.strip()]
        if not types:
            raise ValueError("内容类型列表不能为空")
        for content_type in types:
            major, _, minor = content_type.partition("/")
            if not major or not minor:
                raise ValueError(f"内容类型必须为 'type/subtype' 格式: {content_type}")
        return ','.join(types)

    @field_validator("DERIVATIVE_WIDTHS")
    @classmethod
    def validate_derivative_widths(cls, v: str) -> str:
        """验证派生宽度列表"""
        widths = []
        for part in v.split(','):
            part = part.strip()
            if not part:
                continue
            if not part.isdigit() or int(part) <= 0:
                raise ValueError(f"派生宽度必须为正整数: {part}")
            widths.append(str(int(part)))
        return ','.join(widths)

    @field_validator("NOTIFICATION_WEBHOOK_URLS")
    @classmethod
    def validate_webhook_urls(cls, v: str) -> str:
        """验证 webhook 地址格式"""
        urls = [url.strip() for url in v.split(',') if url.strip()]
        for url in urls:
            if not (url.startswith("http://") or url.startswith("https://")):
                raise ValueError(f"webhook 地址必须以http://或https://开头: {url}")
        return ','.join(urls)

    @field_validator("CORS_ORIGINS")
    @classmethod
    def validate_cors_origins(cls, v: str) -> str:
        """验证CORS源地址格式"""
        if not v:
            raise ValueError("CORS源地址不能为空")

        if v.strip() == "*":
            return "*"

        origins = [origin.strip() for origin in v.split(',') if origin.strip()]

        if not origins:
            raise ValueError("CORS源地址列表不能为空")

        for origin in origins:
            if origin != "*" and not (origin.startswith("http://") or origin.startswith("https://")):
                raise ValueError(f"CORS源地址必须以http://或https://开头，或使用通配符*: {origin}")

        return ','.join(origins)

    def get_cors_origins_list(self) -> list[str]:
        """获取CORS_ORIGINS的列表形式"""
        return self.CORS_ORIGINS.split(',')

    def get_allowed_content_types(self) -> set[str]:
        """获取允许的内容类型集合"""
        return set(self.ALLOWED_CONTENT_TYPES.split(','))

    def get_derivative_widths(self) -> list[int]:
        """获取派生宽度列表（升序去重）"""
        if not self.DERIVATIVE_WIDTHS:
            return []
        return sorted({int(w) for w in self.DERIVATIVE_WIDTHS.split(',')})

    def get_webhook_urls(self) -> list[str]:
        """获取 webhook 订阅者地址列表"""
        if not self.NOTIFICATION_WEBHOOK_URLS:
            return []
        return self.NOTIFICATION_WEBHOOK_URLS.split(',')


# 全局单例
_settings: Settings | None = None


def get_settings(force_reload: bool = False) -> Settings:
    """返回全局配置单例，如果不存在则创建。

    Args:
        force_reload: 是否强制重新加载配置

    Returns:
        Settings实例
    """
    global _settings
    if _settings is None or force_reload:
        _settings = Settings()
        logger.debug(
            f"配置已加载: step={_settings.PROCESSING_STEP}, batch_size={_settings.BATCH_SIZE}, "
            f"backend={_settings.NOTIFICATION_BACKEND.value}"
        )
    return _settings


# 初始化单例
settings = get_settings()

__all__ = [
    "Settings",
    "LogLevel",
    "AppEnv",
    "NotificationBackend",
    "PROCESSING_STEP_NAMES",
    "settings",
    "get_settings",
]
