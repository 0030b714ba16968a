"""jobqueue database module.

- SQLAlchemy 2.x async engine and session factory construction
- ORM models (see jobqueue.db.models)
- Alembic migrations (see jobqueue.db.migrations)

Engines are created explicitly and handed to the store; nothing here keeps
process-wide state, so several independent queues can coexist (tests do).
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from jobqueue.db.models import Base

if TYPE_CHECKING:
    from jobqueue.core.config import DatabaseSettings


def create_engine_from_settings(settings: DatabaseSettings) -> AsyncEngine:
    """Create the async engine for the configured PostgreSQL database.

    Args:
        settings: Database connection settings.

    Returns:
        AsyncEngine using the psycopg async driver.
    """
    return create_async_engine(
        settings.async_url,
        pool_size=settings.pool_size,
        max_overflow=settings.max_overflow,
        pool_timeout=settings.pool_timeout,
        pool_pre_ping=True,
        echo=settings.echo,
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Build the session factory used by the job store.

    expire_on_commit is off so jobs returned from a finished transaction
    stay readable by the worker.
    """
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


async def create_schema(engine: AsyncEngine) -> None:
    """Create all job queue tables that do not exist yet.

    Production deployments use the Alembic migrations; this is for
    development databases and tests.
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
