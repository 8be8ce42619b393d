"""Root test configuration: shared fixtures for all test modules.

IMPORTANT: Environment variables are set BEFORE any strategylab imports
so that config.py can load Settings without a .env file.
"""

from __future__ import annotations

import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")  # In-memory SQLite
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("LOG_LEVEL", "INFO")
os.environ.pop("MASSIVE_API_KEY", None)

# Now safe to import strategylab modules
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from strategylab.common.config import Settings, get_settings
from strategylab.data.models import Base

# ─── Clear cached settings so test env vars are used ───
get_settings.cache_clear()


# ─── Test Database ───


@pytest_asyncio.fixture
async def engine():
    """In-memory SQLite engine with the warehouse tables created."""
    test_engine = create_async_engine("sqlite+aiosqlite://", echo=False)

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield test_engine

    await test_engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the test engine."""
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


# ─── Test Settings ───


@pytest.fixture
def test_settings() -> Settings:
    """Settings loaded from the test environment (no real keys)."""
    return get_settings()
