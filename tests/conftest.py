"""
Pytest configuration and shared fixtures.
"""

import os
from collections.abc import AsyncGenerator
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from jobqueue.config import Settings
from jobqueue.db.connection import create_session_factory, get_test_engine, provision_schema
from jobqueue.db.models import Base
from jobqueue.queue import JobQueue
from jobqueue.types.job import JobContext, JobResult
from jobqueue.worker.handlers import JobRegistry

# Set TEST_DATABASE_URL to run against Postgres; defaults to a SQLite file per test
TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL")


@pytest.fixture
def database_url(tmp_path: Path) -> str:
    """Get the test database URL."""
    return TEST_DATABASE_URL or f"sqlite+aiosqlite:///{tmp_path / 'queue.db'}"


@pytest_asyncio.fixture
async def async_engine(database_url: str) -> AsyncGenerator[AsyncEngine]:
    """Create an async engine with the queue tables provisioned."""
    engine = get_test_engine(database_url)
    await provision_schema(engine)

    yield engine

    if TEST_DATABASE_URL:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture
async def empty_engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine]:
    """An engine on a database with no queue tables."""
    engine = get_test_engine(f"sqlite+aiosqlite:///{tmp_path / 'empty.db'}")
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(async_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create the session factory the queue runs on."""
    return create_session_factory(async_engine)


@pytest_asyncio.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession]:
    """Create a database session for tests."""
    async with session_factory() as session:
        yield session

        # Rollback any uncommitted changes
        await session.rollback()


@pytest.fixture
def test_settings(database_url: str) -> Settings:
    """Create test settings with immediate retries."""
    return Settings(
        database_url=database_url,
        log_level="DEBUG",
        log_format="console",
        retry_delay_seconds=0,
        worker_max_jobs=100,
        worker_poll_interval_seconds=0.05,
        worker_heartbeat_interval_seconds=60,
        worker_timeout_seconds=300,
        reaper_interval_seconds=1,
    )


@pytest.fixture
def test_registry() -> JobRegistry:
    """A job registry with deterministic handlers."""
    job_registry = JobRegistry()

    @job_registry.register("echo")
    async def echo(context: JobContext) -> JobResult:
        return JobResult.ok(output={"echo": context.data})

    @job_registry.register("failing", max_attempts=3)
    async def failing(context: JobContext) -> JobResult:
        return JobResult.failure(f"Intentional failure on attempt {context.attempt}")

    @job_registry.register("raising")
    async def raising(context: JobContext) -> JobResult:
        raise RuntimeError("boom")

    @job_registry.register("fatal")
    async def fatal(context: JobContext) -> JobResult:
        return JobResult.failure("Bad input", retryable=False)

    return job_registry


@pytest.fixture
def job_queue(
    session_factory: async_sessionmaker[AsyncSession],
    test_settings: Settings,
    test_registry: JobRegistry,
) -> JobQueue:
    """Create a queue bound to the test database."""
    return JobQueue(
        session_factory=session_factory,
        settings=test_settings,
        job_registry=test_registry,
    )
