"""测试配置和共享fixture"""

import datetime
import json

import pytest
from sqlmodel import Session, SQLModel, create_engine
from sqlalchemy.pool import StaticPool

from mediaflow.config import Settings
from mediaflow.core.steps import MetadataExtractionStep
from mediaflow.services.media.ledger import IdempotencyLedger
from mediaflow.services.media.orchestrator import PipelineOrchestrator
from mediaflow.services.media.publisher import InMemoryPublisher
from mediaflow.services.media.record_store import MediaRecordStore
from mediaflow.services.media.types import DeliveredEvent


@pytest.fixture
def in_memory_db():
    """创建内存SQLite数据库用于测试（单连接，只适合串行访问）"""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    return engine


@pytest.fixture
def file_db(tmp_path):
    """创建临时文件SQLite数据库，每个线程独立连接，供并发处理的测试使用"""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'mediaflow-test.db'}",
        connect_args={"check_same_thread": False, "timeout": 10},
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session_factory(file_db):
    """数据库会话工厂"""
    def _get_session():
        return Session(file_db)
    return _get_session


@pytest.fixture
def test_settings():
    """不读取 .env 文件的测试配置"""
    return Settings(
        _env_file=None,
        DATABASE_URL="sqlite:///:memory:",
        STEP_TIMEOUT_SECONDS=0.5,
        MAX_RECEIVE_COUNT=3,
        RELEASE_BASE_DELAY_SECONDS=5.0,
        RELEASE_MAX_DELAY_SECONDS=60.0,
    )


@pytest.fixture
def store(db_session_factory):
    return MediaRecordStore(db_session_factory)


@pytest.fixture
def ledger(db_session_factory):
    return IdempotencyLedger(db_session_factory)


@pytest.fixture
def publisher():
    return InMemoryPublisher()


@pytest.fixture
def step():
    return MetadataExtractionStep(
        allowed_content_types={"image/jpeg", "image/png", "video/mp4"},
        max_size_bytes=10 * 1024 * 1024,
    )


@pytest.fixture
def make_orchestrator(store, ledger, publisher, step):
    """按需替换处理步骤或超时时间构造编排器"""
    def _make(**overrides):
        options = {
            "record_store": store,
            "ledger": ledger,
            "publisher": publisher,
            "processing_step": step,
            "topic": "media-events",
            "step_timeout_seconds": 0.5,
            "max_receive_count": 3,
            "batch_concurrency": 4,
        }
        options.update(overrides)
        return PipelineOrchestrator(**options)
    return _make


@pytest.fixture
def orchestrator(make_orchestrator):
    return make_orchestrator()


def make_payload(
    media_id="m1",
    change_type="created",
    *,
    event_id=None,
    storage_key=None,
    size_bytes=2048,
    content_type="image/jpeg",
    timestamp="2024-05-01T12:00:00Z",
):
    """构造 camelCase 存储事件负载"""
    payload = {
        "mediaId": media_id,
        "changeType": change_type,
        "storageKey": storage_key or f"uploads/{media_id}/photo.jpg",
        "sizeBytes": size_bytes,
        "contentType": content_type,
        "timestamp": timestamp,
    }
    if event_id:
        payload["eventId"] = event_id
    return payload


def make_event(event_id, media_id="m1", change_type="created", *, receive_count=1, handle=None, **kwargs):
    """构造一条投递事件，负载为 JSON 字符串（与事件源一致）"""
    payload = make_payload(media_id, change_type, event_id=event_id, **kwargs)
    return DeliveredEvent(
        event_id=event_id,
        payload=json.dumps(payload),
        delivery_handle=handle or f"h-{event_id}",
        receive_count=receive_count,
    )


class FixedClock:
    """可手动推进的时钟"""

    def __init__(self, start=None):
        self.now = start or datetime.datetime(2024, 5, 1, 12, 0, 0, tzinfo=datetime.timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now = self.now + datetime.timedelta(seconds=seconds)
