"""Pytest configuration and shared fixtures.

Store tests run against a temporary SQLite database through the aiosqlite
driver; the schema is the same ORM metadata the Alembic migration mirrors.
The store's clock is injectable, so lease expiry and delays are tested by
moving a fake clock instead of sleeping.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from jobqueue.core.config import QueueSettings
from jobqueue.core.settings import clear_settings_cache
from jobqueue.db import create_schema, create_session_factory
from jobqueue.services.job_queue import JobStore
from tests.factories import FakeClock


@pytest.fixture(autouse=True)
def clean_settings_cache():
    """Clear settings cache before and after each test."""
    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def queue_settings() -> QueueSettings:
    """Queue settings with the reference defaults and a fast poll interval."""
    return QueueSettings(poll_interval=0.01)


@pytest_asyncio.fixture
async def engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """Async engine on a fresh SQLite database file with the schema created."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'jobqueue.db'}")
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest.fixture
def store(session_factory, queue_settings, clock) -> JobStore:
    """Store driven by the fake clock."""
    return JobStore(session_factory, queue_settings, clock=clock)


@pytest.fixture
def live_store(session_factory) -> JobStore:
    """Store on the real clock with immediate retries, for worker pool runs."""
    return JobStore(session_factory, QueueSettings(poll_interval=0.02, backoff_base_seconds=0))
