"""
Async engine and session management.

PostgreSQL (asyncpg) in deployment. SQLite (aiosqlite) URLs are accepted
for local runs; they get no pool sizing since SQLite pools are per file.
"""

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    create_async_engine,
    async_sessionmaker,
)

from flagkit.core.config import settings


def engine_options(url: str) -> dict[str, Any]:
    """Engine keyword arguments for a database URL."""
    options: dict[str, Any] = {"echo": settings.database.echo}
    if make_url(url).get_backend_name() == "sqlite":
        return options
    options.update(
        pool_size=settings.database.pool_size,
        max_overflow=settings.database.pool_overflow,
        pool_timeout=settings.database.pool_timeout,
        pool_pre_ping=True,
    )
    return options


DATABASE_URL = str(settings.database.url)

engine = create_async_engine(DATABASE_URL, **engine_options(DATABASE_URL))

async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


@asynccontextmanager
async def session_scope() -> AsyncIterator[AsyncSession]:
    """
    Session that commits on success and rolls back on error.

    Shared by the request dependency and the rollout worker. The flag
    backend commits its own transactions; this only closes out whatever
    is left pending.
    """
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db() -> None:
    """Create the flag tables if they do not exist."""
    from flagkit.core.features import models  # noqa: F401
    from .base import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    await engine.dispose()
