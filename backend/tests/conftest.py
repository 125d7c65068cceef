import os
import tempfile

# Settings and the engine are built at import time
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("CELERY_ENABLED", "false")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("DATA_DIR", tempfile.mkdtemp(prefix="adreel-tests-"))
os.environ.setdefault("PUBLIC_BASE_URL", "http://test")
os.environ.setdefault("ENVIRONMENT", "test")

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from adreel import models
from adreel.db import Base
from adreel.services.job_tracker import JobTracker
from adreel.settings import get_settings


class RecordingNotifier:
    """Collects notifications instead of calling Telegram."""

    def __init__(self):
        self.events = []

    async def notify_video_completed(self, video_id, title, duration_sec=None):
        self.events.append(("video_completed", video_id))

    async def notify_video_failed(self, video_id, title, error_message=None):
        self.events.append(("video_failed", video_id, error_message))

    async def notify_post_published(self, platform, url):
        self.events.append(("post_published", platform, url))

    async def notify_post_failed(self, platform, post_id, error_message=None):
        self.events.append(("post_failed", platform, post_id))


@pytest.fixture
def settings():
    return get_settings().model_copy(
        update={
            "retry_max_attempts": 2,
            "retry_timeout_ms": 2000,
            "retry_initial_backoff_ms": 1,
            "retry_max_backoff_ms": 2,
            "generation_timeout_ms": 2000,
            "publish_item_delay_sec": 0,
            "publish_batch_size": 50,
            "publish_max_parallel_platforms": 1,
            "tiktok_status_poll_attempts": 3,
            "tiktok_status_poll_interval_sec": 0,
        }
    )


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def tracker():
    return JobTracker()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def storage_folders():
    return {
        "root": "root-folder",
        "videos": {
            "root": "videos",
            "originals": "originals",
            "optimized": "optimized",
            "thumbnails": "thumbnails",
        },
        "audio": "audio",
    }


@pytest_asyncio.fixture
async def owner(session_factory, storage_folders):
    async with session_factory() as session:
        session.add(models.UserAccount(id="owner-1", email="shop@example.com", storage_folders=storage_folders))
        session.add(models.UserAccount(id="owner-2", email="other@example.com", storage_folders=storage_folders))
        await session.commit()
    return "owner-1"


@pytest_asyncio.fixture
async def product(session_factory, owner):
    async with session_factory() as session:
        item = models.Product(
            owner_id=owner,
            name="Jasmine Rice 5kg",
            description="Fragrant Thai hom mali rice",
            price=249,
            category="grocery",
            images=["https://cdn.example.com/rice-1.jpg", "https://cdn.example.com/rice-2.jpg"],
        )
        session.add(item)
        await session.commit()
        return item.id
