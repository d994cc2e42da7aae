"""
Pytest configuration and shared fixtures.

Every test gets a fresh file-backed SQLite database (via aiosqlite), so
concurrent workers really do race through separate connections.
"""

from collections.abc import AsyncGenerator
from datetime import datetime, timedelta
from pathlib import Path

import pytest
import pytest_asyncio
from prometheus_client import CollectorRegistry
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from leasequeue.config import Settings
from leasequeue.db import (
    JobRepository,
    create_schema,
    create_session_factory,
    drop_schema,
    get_test_engine,
)
from leasequeue.observability.metrics import MetricsCollector
from leasequeue.queue import JobQueue


class FakeClock:
    """Manually advanced clock returning naive UTC datetimes."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def database_url(tmp_path: Path) -> str:
    """Get a database URL for a fresh per-test SQLite file."""
    return f"sqlite+aiosqlite:///{tmp_path / 'jobs.db'}"


@pytest_asyncio.fixture
async def async_engine(database_url: str) -> AsyncGenerator[AsyncEngine]:
    """Create an async database engine with the jobs table."""
    engine = get_test_engine(database_url)
    await create_schema(engine)

    yield engine

    await drop_schema(engine)
    await engine.dispose()


@pytest.fixture
def session_factory(async_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(async_engine)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2024, 1, 1, 12, 0, 0))


@pytest.fixture
def metrics() -> MetricsCollector:
    """Metrics collector on a private registry."""
    return MetricsCollector(CollectorRegistry())


@pytest.fixture
def repo(session_factory, clock: FakeClock) -> JobRepository:
    return JobRepository(session_factory, clock=clock)


@pytest.fixture
def queue(repo: JobRepository, clock: FakeClock, metrics: MetricsCollector) -> JobQueue:
    """Queue driven by the fake clock."""
    return JobQueue(repo, clock=clock, metrics=metrics)


@pytest.fixture
def live_queue(session_factory, metrics: MetricsCollector) -> JobQueue:
    """Queue on the real clock, for worker pool tests."""
    return JobQueue(JobRepository(session_factory), metrics=metrics)


@pytest.fixture
def test_settings(database_url: str) -> Settings:
    """Create test settings."""
    return Settings(
        database_url=database_url,
        log_level="DEBUG",
        log_format="console",
        lease_duration_seconds=5,
        worker_pool_size=4,
        worker_poll_interval_seconds=0.01,
        worker_shutdown_grace_seconds=1,
        worker_storage_backoff_seconds=0.01,
        reaper_interval_seconds=1,
    )
