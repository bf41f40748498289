"""Shared test fixtures for the healthsync test suite."""

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession

from healthsync.core.config import Settings
from healthsync.core.database import Base
# Import all models so their metadata is registered on Base
import healthsync.models.database  # noqa: F401
import healthsync.models.sync_log  # noqa: F401


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        db_path=":memory:",
        app_url="https://health.example.com",
        withings_client_id="withings-client",
        withings_client_secret="withings-secret",
        google_client_id="google-client",
        google_client_secret="google-secret",
        apple_health_webhook_secret="hook-secret",
        tz="UTC",
    )


@pytest_asyncio.fixture
async def async_session():
    """
    Provide an in-memory SQLite async session for tests.

    Creates all tables before the test, drops them after. Each test gets
    a clean database.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_factory = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    async with session_factory() as session:
        yield session

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()
