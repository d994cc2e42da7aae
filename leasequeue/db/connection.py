"""
Database connection management.
Handles async SQLAlchemy engine and session creation.
"""

import logging
from typing import Any

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from leasequeue.config import Settings, get_settings
from leasequeue.db.models import Base

logger = logging.getLogger(__name__)

# Seconds SQLite waits on a locked database before raising
SQLITE_BUSY_TIMEOUT = 30


def _is_sqlite(database_url: str) -> bool:
    return make_url(database_url).get_backend_name() == "sqlite"


def create_engine(settings: Settings | None = None) -> AsyncEngine:
    """
    Create the async database engine from settings.

    Args:
        settings: Queue settings. Defaults to the cached environment settings.

    Returns:
        AsyncEngine: The SQLAlchemy async engine instance.
    """
    settings = settings or get_settings()
    kwargs: dict[str, Any] = {"echo": settings.database_echo}

    if _is_sqlite(settings.database_url):
        kwargs["connect_args"] = {"timeout": SQLITE_BUSY_TIMEOUT}
    else:
        kwargs.update(
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            pool_pre_ping=True,
        )

    return create_async_engine(settings.database_url, **kwargs)


def get_test_engine(database_url: str) -> AsyncEngine:
    """
    Create a test database engine with NullPool.

    Args:
        database_url: The database URL for testing.

    Returns:
        AsyncEngine: The test SQLAlchemy async engine instance.
    """
    connect_args = {"timeout": SQLITE_BUSY_TIMEOUT} if _is_sqlite(database_url) else {}
    return create_async_engine(
        database_url,
        poolclass=NullPool,
        connect_args=connect_args,
        echo=False,
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create the session factory used by the job repository."""
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def create_schema(engine: AsyncEngine) -> None:
    """Create the jobs table and its indexes if they do not exist."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database schema ready")


async def drop_schema(engine: AsyncEngine) -> None:
    """Drop the jobs table."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
