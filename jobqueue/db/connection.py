"""
Database connection management.
Handles async SQLAlchemy engine and session creation, and one-time schema
provisioning kept apart from the runtime queue API.
"""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy import inspect
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncConnection,
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from jobqueue.config import get_settings
from jobqueue.constants import REQUIRED_TABLES
from jobqueue.db.models import Base
from jobqueue.exceptions import SchemaNotProvisionedError, StorageError

logger = logging.getLogger(__name__)

# Global engine instance
_engine: AsyncEngine | None = None
AsyncSessionLocal: async_sessionmaker[AsyncSession] | None = None


def get_engine() -> AsyncEngine:
    """
    Get or create the async database engine.

    Returns:
        AsyncEngine: The SQLAlchemy async engine instance.
    """
    global _engine
    if _engine is None:
        settings = get_settings()
        options: dict = {
            "echo": settings.log_level == "DEBUG",
            "pool_pre_ping": True,
        }
        if not settings.database_url.startswith("sqlite"):
            options["pool_size"] = settings.database_pool_size
            options["max_overflow"] = settings.database_max_overflow
        _engine = create_async_engine(settings.database_url, **options)
    return _engine


def get_test_engine(database_url: str) -> AsyncEngine:
    """
    Create a test database engine with NullPool.

    Args:
        database_url: The database URL for testing.

    Returns:
        AsyncEngine: The test SQLAlchemy async engine instance.
    """
    return create_async_engine(
        database_url,
        poolclass=NullPool,
        echo=False,
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Build a session factory with the settings the queue relies on."""
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def init_db() -> None:
    """
    Initialize the database connection and session factory.
    Should be called on process startup.
    """
    global AsyncSessionLocal
    engine = get_engine()
    AsyncSessionLocal = create_session_factory(engine)
    logger.info("Database connection initialized")


async def close_db() -> None:
    """
    Close the database connection.
    Should be called on process shutdown.
    """
    global _engine, AsyncSessionLocal
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        AsyncSessionLocal = None
        logger.info("Database connection closed")


@asynccontextmanager
async def get_session_context(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> AsyncGenerator[AsyncSession]:
    """
    Context manager for a transactional session.

    Commits on clean exit and rolls back on error. SQLAlchemy errors are
    re-raised as StorageError so callers see one storage failure type.

    Args:
        session_factory: Factory to use instead of the global one.

    Yields:
        AsyncSession: An async database session.
    """
    factory = session_factory or AsyncSessionLocal
    if factory is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")

    async with factory() as session:
        try:
            yield session
            await session.commit()
        except SQLAlchemyError as e:
            await session.rollback()
            raise StorageError(str(e)) from e
        except Exception:
            await session.rollback()
            raise


async def provision_schema(engine: AsyncEngine | None = None) -> None:
    """
    Create the queue tables if they do not exist.

    Production deployments use the Alembic migration; this is for
    development databases and tests.
    """
    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Queue schema provisioned")


def _table_names(sync_conn) -> set[str]:
    return set(inspect(sync_conn).get_table_names())


async def verify_schema(bind: AsyncEngine | AsyncConnection | None = None) -> None:
    """
    Fail fast if any queue table is missing.

    Args:
        bind: Engine or open connection to inspect; defaults to the global engine.

    Raises:
        SchemaNotProvisionedError: Naming the missing tables.
    """
    if isinstance(bind, AsyncConnection):
        existing = await bind.run_sync(_table_names)
    else:
        engine = bind or get_engine()
        async with engine.connect() as conn:
            existing = await conn.run_sync(_table_names)

    missing = [table for table in REQUIRED_TABLES if table not in existing]
    if missing:
        logger.error("Queue schema missing tables", extra={"missing": missing})
        raise SchemaNotProvisionedError(missing)
