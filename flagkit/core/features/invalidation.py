"""
Flag generation counters for cache invalidation.

Every committed write to a flag bumps its generation. A cached definition
is served only while the generation it was loaded under is still current,
so a write made by any process that shares the store (the API, the
rollout worker) evicts it on the next read.

Implementations:
- LocalGenerationStore: one process (memory backend, single worker)
- RedisGenerationStore: shared by every API and worker process
"""

from __future__ import annotations

from typing import Protocol

import redis.asyncio as redis
import structlog
from redis.exceptions import RedisError

logger = structlog.get_logger()


class GenerationStore(Protocol):
    """Per-flag write counters."""

    async def current(self, feature_name: str) -> int | None:
        """Current generation. None when it cannot be determined."""
        ...

    async def bump(self, *feature_names: str) -> None:
        """Advance the generation of every named flag."""
        ...

    async def close(self) -> None:
        ...


class LocalGenerationStore:
    """In-process counters."""

    def __init__(self):
        self._generations: dict[str, int] = {}

    async def current(self, feature_name: str) -> int | None:
        return self._generations.get(feature_name, 0)

    async def bump(self, *feature_names: str) -> None:
        for name in feature_names:
            self._generations[name] = self._generations.get(name, 0) + 1

    async def close(self) -> None:
        pass


class RedisGenerationStore:
    """
    Counters kept in Redis, one INCR key per flag.

    Usage:
        store = RedisGenerationStore(redis_url="redis://localhost:6379/0")
        cache = FlagCache(ttl=60, generations=store)
        ...
        await store.close()

    The client connects lazily, on the event loop of its first command.
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        prefix: str = "flagkit:flag-gen:",
        client: redis.Redis | None = None,
    ):
        self.redis_url = redis_url
        self.prefix = prefix
        self._client = client

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            self._client = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self._client

    def _key(self, feature_name: str) -> str:
        return f"{self.prefix}{feature_name}"

    async def current(self, feature_name: str) -> int | None:
        try:
            value = await self.client.get(self._key(feature_name))
        except RedisError as e:
            # reads fall through to the backend until Redis is back
            logger.warning("Flag generation unavailable", feature_name=feature_name, error=str(e))
            return None
        return int(value) if value is not None else 0

    async def bump(self, *feature_names: str) -> None:
        if not feature_names:
            return
        pipe = self.client.pipeline()
        for name in feature_names:
            pipe.incr(self._key(name))
        try:
            await pipe.execute()
        except RedisError:
            logger.error("Flag cache invalidation failed", feature_names=list(feature_names))
            raise

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
