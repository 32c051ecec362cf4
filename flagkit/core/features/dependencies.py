"""
FastAPI dependencies for the flag engine.

Usage:
    from flagkit.core.features import Feature

    @router.get("/dashboard")
    async def dashboard(feature: Feature, user: UserContext):
        if await feature.is_enabled("new_dashboard", user):
            return new_dashboard()
        return old_dashboard()
"""

from typing import Annotated

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from flagkit.api.dependencies.database import get_db
from flagkit.core.config import settings

from .audit import static_user_count
from .backends.database import DatabaseFeatureBackend
from .backends.memory import MemoryFeatureBackend
from .cache import FlagCache
from .interfaces import FeatureBackend
from .invalidation import GenerationStore, LocalGenerationStore, RedisGenerationStore
from .service import FeatureService


# ============================================================
# BACKEND FACTORY
# ============================================================

# In-memory backend singleton (for development)
_memory_backend: MemoryFeatureBackend | None = None

# Process-wide read-through cache, shared by every request
_flag_cache: FlagCache | None = None


def get_memory_backend() -> MemoryFeatureBackend:
    """Get or create memory backend singleton."""
    global _memory_backend
    if _memory_backend is None:
        _memory_backend = MemoryFeatureBackend()
    return _memory_backend


def build_generation_store() -> GenerationStore:
    """
    Generation store from FEATURE_CACHE_INVALIDATION.

    The memory backend lives in one process, so it never needs Redis.
    """
    features = settings.features
    if features.backend == "memory" or features.cache_invalidation == "local":
        return LocalGenerationStore()
    return RedisGenerationStore(str(settings.redis.url), prefix=features.cache_key_prefix)


def get_flag_cache() -> FlagCache:
    """Get or create the flag cache singleton."""
    global _flag_cache
    if _flag_cache is None:
        _flag_cache = FlagCache(
            ttl=settings.features.cache_ttl,
            generations=build_generation_store(),
        )
    return _flag_cache


async def close_flag_cache() -> None:
    global _flag_cache
    if _flag_cache is not None:
        await _flag_cache.generations.close()
        _flag_cache = None


async def get_feature_backend(
    db: AsyncSession = Depends(get_db),
) -> FeatureBackend:
    """
    Get feature backend based on configuration.

    Uses FEATURE_BACKEND setting:
    - "database": PostgreSQL (default, production)
    - "memory": In-memory (development/testing)
    """
    backend_type = settings.features.backend

    if backend_type == "memory":
        return get_memory_backend()
    else:
        return DatabaseFeatureBackend(db)


# ============================================================
# FEATURE SERVICE DEPENDENCY
# ============================================================

def build_feature_service(
    backend: FeatureBackend,
    cache: FlagCache | None = None,
) -> FeatureService:
    """Feature service configured from settings."""
    features = settings.features
    user_count = None
    if features.estimated_user_base > 0:
        user_count = static_user_count(features.estimated_user_base)

    return FeatureService(
        backend,
        cache=cache,
        user_count=user_count,
        max_conflict_retries=features.max_conflict_retries,
        premium_tiers=features.premium_tiers,
    )


async def get_feature_service(
    backend: FeatureBackend = Depends(get_feature_backend),
) -> FeatureService:
    """Get feature service instance."""
    return build_feature_service(backend, cache=get_flag_cache())


# Type alias for cleaner injection
Feature = Annotated[FeatureService, Depends(get_feature_service)]
