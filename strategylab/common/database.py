"""Async database engine and session factory.

Uses SQLAlchemy 2.0+ async with asyncpg for PostgreSQL
and aiosqlite for testing.

Usage:
    from strategylab.common.database import get_session_factory
    from strategylab.data.store import DatabaseBarProvider

    provider = DatabaseBarProvider(get_session_factory())
"""

from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from strategylab.common.config import get_settings

# Create engine lazily on first use
_engine = None
_session_factory = None


def _get_engine():
    """Get or create the async engine (lazy singleton)."""
    global _engine
    if _engine is None:
        settings = get_settings()
        kwargs: dict = {"echo": False, "pool_pre_ping": True}
        if not settings.database_url.startswith("sqlite"):
            kwargs["pool_size"] = settings.db_pool_size
            kwargs["max_overflow"] = settings.db_max_overflow
        _engine = create_async_engine(settings.database_url, **kwargs)
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get or create the session factory (lazy singleton)."""
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(
            bind=_get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
        )
    return _session_factory


def reset_engine() -> None:
    """Reset the engine and session factory. Used in tests."""
    global _engine, _session_factory
    _engine = None
    _session_factory = None
