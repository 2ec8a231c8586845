# =============================================================================
# Database Engine & Session Management
# =============================================================================
#
# The engine only reads: receipts, warranties, conversation transcripts and
# spending aggregates are exposed through SQL functions (see
# services/vectorstore.py). There are no ORM models in this package.
#
# DESIGN DECISION: Async SQLAlchemy engine with asyncpg.
# Every retrieval source runs concurrently inside one assemble() call, so
# each issues its query on its own AsyncSession from the shared pool.
#
# DESIGN DECISION: Lazy initialisation.
# create_async_engine() loads the asyncpg dialect; deferring it keeps
# imports cheap for tests and for the Celery worker, which never touches
# the database.
# =============================================================================

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from context_engine.config import Settings, get_settings

_async_engine: AsyncEngine | None = None
_async_session_factory: async_sessionmaker[AsyncSession] | None = None


def get_async_engine(settings: Settings | None = None) -> AsyncEngine:
    """Lazily create and cache the async engine."""
    global _async_engine
    if _async_engine is None:
        settings = settings or get_settings()
        # pool_size covers one connection per retrieval source for a few
        # concurrent assemble() calls; max_overflow absorbs bursts.
        _async_engine = create_async_engine(
            settings.database_url,
            echo=settings.debug,
            pool_size=10,
            max_overflow=10,
            pool_pre_ping=True,
        )
    return _async_engine


def get_async_session_factory(
    settings: Settings | None = None,
) -> async_sessionmaker[AsyncSession]:
    """Lazily create and cache the session factory."""
    global _async_session_factory
    if _async_session_factory is None:
        _async_session_factory = async_sessionmaker(
            bind=get_async_engine(settings),
            class_=AsyncSession,
            expire_on_commit=False,
        )
    return _async_session_factory


@asynccontextmanager
async def read_session(
    factory: async_sessionmaker[AsyncSession] | None = None,
) -> AsyncGenerator[AsyncSession, None]:
    """
    Provide a read-only session; the transaction is always rolled back.

    Usage:
        async with read_session() as session:
            result = await session.execute(text("SELECT 1"))
    """
    factory = factory or get_async_session_factory()
    async with factory() as session:
        try:
            yield session
        finally:
            await session.rollback()


async def dispose_engine() -> None:
    """Close pooled connections (process shutdown)."""
    global _async_engine, _async_session_factory
    if _async_engine is not None:
        await _async_engine.dispose()
    _async_engine = None
    _async_session_factory = None
