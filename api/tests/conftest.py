"""Shared fixtures: in-memory SQLite database, fixed clock, config store."""

from datetime import datetime, timezone

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from factories import TEST_PASSPHRASE, FixedClock
from ticketpulse.models import Base
from ticketpulse.services.secure_config import SecureConfigStore


@pytest_asyncio.fixture
async def db_engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(db_engine, expire_on_commit=False, class_=AsyncSession)


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(datetime(2025, 6, 15, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def store(session_factory) -> SecureConfigStore:
    return SecureConfigStore(
        session_factory,
        passphrase=TEST_PASSPHRASE,
        cache_ttl_seconds=60,
        env_fallback=None,
    )
