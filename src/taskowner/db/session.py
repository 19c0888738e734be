"""Async database session management.

The engine is built on first use so that importing the package never
requires a database driver; tests and tools can install their own
session factory with ``configure_engine``.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from taskowner.config import settings

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def configure_engine(database_url: str | None = None, **engine_kwargs) -> AsyncEngine:
    """Create (or replace) the process-wide engine and session factory."""
    global _engine, _session_factory
    url = database_url or settings.database_url
    if url.startswith("postgresql"):
        # Pool sizing for a mixed webhook + background-loop workload
        engine_kwargs.setdefault("pool_size", 10)
        engine_kwargs.setdefault("max_overflow", 10)
        engine_kwargs.setdefault("pool_recycle", 3600)
        engine_kwargs.setdefault("pool_pre_ping", True)
    _engine = create_async_engine(url, future=True, **engine_kwargs)
    _session_factory = make_session_factory(_engine)
    return _engine


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,  # Prevent lazy loading issues
        autoflush=False,
    )


def get_engine() -> AsyncEngine:
    if _engine is None:
        configure_engine()
    assert _engine is not None
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    if _session_factory is None:
        configure_engine()
    assert _session_factory is not None
    return _session_factory


@asynccontextmanager
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """Context manager for manual session handling.

    Usage:
        async with db_session() as db:
            result = await db.execute(...)
    """
    async with get_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db() -> None:
    """Create all tables. In production, use Alembic migrations."""
    from taskowner.db.models import Base

    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Clean shutdown: dispose of all connections."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None
