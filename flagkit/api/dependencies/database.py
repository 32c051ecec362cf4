"""
Request-scoped database session.
"""

from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession

from flagkit.models import database


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Session for the database flag backend, closed after the response."""
    async with database.session_scope() as session:
        yield session
