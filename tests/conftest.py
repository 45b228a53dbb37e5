"""
Pytest configuration and shared fixtures.
"""

import os
from collections.abc import AsyncGenerator
from datetime import timedelta
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession

from delayed_jobs.db import Base, close_db, connection, get_engine, init_db
from delayed_jobs.types.job import HandlerConfig
from delayed_jobs.worker.handlers import HandlerRegistry
from delayed_jobs.worker.main import Dispatcher
from delayed_jobs.worker.retry import RetryPolicy

# Optional PostgreSQL test database; a throwaway SQLite file is used otherwise
TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL")


class RecordingHandler:
    """Handler double that records the actor ids it ran for."""

    def __init__(
        self,
        queue_name: str = "TestJobHandler",
        priority: int = 5,
        error: Exception | None = None,
    ):
        self.config = HandlerConfig(queue_name=queue_name, priority=priority)
        self.error = error
        self.calls: list[str] = []

    async def run(self, actor_id: str) -> None:
        self.calls.append(actor_id)
        if self.error is not None:
            raise self.error


@pytest.fixture
def database_url(tmp_path: Path) -> str:
    """Get the test database URL."""
    if TEST_DATABASE_URL:
        return TEST_DATABASE_URL
    return f"sqlite+aiosqlite:///{tmp_path / 'delayed_jobs.db'}"


@pytest_asyncio.fixture
async def database(database_url: str) -> AsyncGenerator[None]:
    """Initialize the global engine and recreate the schema for each test."""
    await init_db(database_url)

    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield

    await close_db()


@pytest_asyncio.fixture
async def db_session(database: None) -> AsyncGenerator[AsyncSession]:
    """Create a database session for tests."""
    async with connection.AsyncSessionLocal() as session:
        yield session

        # Rollback any uncommitted changes
        await session.rollback()


@pytest.fixture
def retry_policy() -> RetryPolicy:
    """Short backoff with a small attempt budget."""
    return RetryPolicy(
        base_delay=timedelta(seconds=1),
        max_delay=timedelta(seconds=60),
        max_attempts=3,
    )


@pytest.fixture
def handler() -> RecordingHandler:
    return RecordingHandler()


@pytest.fixture
def registry(handler: RecordingHandler) -> HandlerRegistry:
    """Registry holding the default recording handler."""
    return HandlerRegistry([(handler, None)])


@pytest.fixture
def make_dispatcher(retry_policy: RetryPolicy):
    """Build dispatchers with test-friendly timings."""

    def _make(registry: HandlerRegistry, worker_id: str = "test-worker", **kwargs) -> Dispatcher:
        options = {
            "batch_size": 10,
            "concurrency": 4,
            "poll_interval": 0.01,
            "lease_timeout": timedelta(minutes=5),
            "retry_policy": retry_policy,
        }
        options.update(kwargs)
        return Dispatcher(registry, worker_id=worker_id, **options)

    return _make


@pytest.fixture
def make_handler():
    """Factory for handlers bound to other queue names or failing with an error."""
    return RecordingHandler
