"""
Pytest fixtures for testing.

Provides:
- A controllable clock shared by every engine component
- Feature service on the in-memory backend
- Async SQLite session and database-backed service
- Test client wired to the in-memory service
"""

from datetime import datetime, timedelta
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from flagkit.core.features import (
    DatabaseFeatureBackend,
    FeatureService,
    MemoryFeatureBackend,
    UserContext,
    get_feature_service,
)
from flagkit.core.features import models  # noqa: F401
from flagkit.main import app
from flagkit.models.base import Base
from flagkit.utils.timezone import UTC


# Test database URL (SQLite in-memory for speed)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

START = datetime(2024, 1, 15, 12, 0, tzinfo=UTC)


class FakeClock:
    """Clock that only moves when told to."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def backend() -> MemoryFeatureBackend:
    return MemoryFeatureBackend()


@pytest.fixture
def service(backend: MemoryFeatureBackend, clock: FakeClock) -> FeatureService:
    return FeatureService(backend, clock=clock)


@pytest.fixture
def user() -> UserContext:
    return UserContext(user_id="user-1")


# ============ Database Fixtures ============


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    """Create test database engine."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db(db_engine) -> AsyncGenerator[AsyncSession, None]:
    """Database session; the backend under test commits through it."""
    session_factory = async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def db_service(db: AsyncSession, clock: FakeClock) -> FeatureService:
    return FeatureService(DatabaseFeatureBackend(db), clock=clock)


# ============ API Fixtures ============


@pytest_asyncio.fixture(scope="function")
async def client(service: FeatureService) -> AsyncGenerator[AsyncClient, None]:
    """
    Test client with the feature service override.
    """

    async def override_get_feature_service():
        return service

    app.dependency_overrides[get_feature_service] = override_get_feature_service

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as client:
        yield client

    app.dependency_overrides.clear()
