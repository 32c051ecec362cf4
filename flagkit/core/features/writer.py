"""
Flag writes with optimistic locking.

Each change is a read-modify-write cycle inside one backend transaction:

    read flag -> conditional update (version CAS) -> append history

A ConflictError (someone else updated the flag in between) rolls the
cycle back and re-runs it, up to `max_retries` times.

Cached definitions of the flags a transaction touched are invalidated
only after the outermost `FlagWriter.transaction()` block has closed.
Invalidating earlier would let a concurrent reader re-cache the row the
commit is about to replace.
"""

from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import datetime
from typing import AsyncIterator, Awaitable, Callable, TypeVar

import structlog

from flagkit.utils.timezone import utc_now

from .audit import AuditRecorder
from .cache import FlagCache
from .exceptions import ConflictError, NotFoundError
from .interfaces import ChangeType, FeatureBackend, FeatureFlag
from .validation import validate_percentage

logger = structlog.get_logger()

T = TypeVar("T")


class FlagWriter:
    """Every percentage / state change to a flag goes through here."""

    def __init__(
        self,
        backend: FeatureBackend,
        audit: AuditRecorder,
        cache: FlagCache | None = None,
        clock: Callable[[], datetime] = utc_now,
        max_retries: int = 3,
    ):
        self.backend = backend
        self.audit = audit
        self.cache = cache
        self.clock = clock
        self.max_retries = max_retries
        self._touched: ContextVar[set[str] | None] = ContextVar(
            f"flag_writer_touched_{id(self)}", default=None
        )

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        """
        Backend transaction that invalidates the flags it touched once closed.

        Nested blocks join the outermost one. Invalidation also runs after a
        rollback, which is harmless.
        """
        if self._touched.get() is not None:
            async with self.backend.transaction():
                yield
            return

        touched: set[str] = set()
        token = self._touched.set(touched)
        try:
            async with self.backend.transaction():
                yield
        finally:
            self._touched.reset(token)
            if touched:
                await self.invalidate(*sorted(touched))

    async def with_retries(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run `operation` in a transaction, retrying on version conflicts."""
        attempt = 0
        while True:
            try:
                async with self.transaction():
                    return await operation()
            except ConflictError:
                if attempt >= self.max_retries:
                    logger.warning("Version conflict, giving up", attempts=attempt + 1)
                    raise
                attempt += 1
                logger.info("Version conflict, retrying", attempt=attempt)

    async def invalidate(self, *feature_names: str) -> None:
        if self.cache is not None:
            await self.cache.invalidate(*feature_names)

    def touch(self, feature_name: str) -> None:
        """Mark a flag for invalidation when the current transaction closes."""
        touched = self._touched.get()
        if touched is None:
            raise RuntimeError("touch() needs an open FlagWriter.transaction()")
        touched.add(feature_name)

    async def _load(self, feature_name: str) -> FeatureFlag:
        flag = await self.backend.get_flag(feature_name)
        if flag is None:
            raise NotFoundError(f"Feature flag '{feature_name}' not found")
        return flag

    async def _store(self, flag: FeatureFlag) -> FeatureFlag:
        flag.updated_at = self.clock()
        updated = await self.backend.update_flag(flag, expected_version=flag.version)
        self.touch(flag.feature_name)
        return updated

    # ============================================================
    # PERCENTAGE
    # ============================================================

    async def set_percentage(
        self,
        feature_name: str,
        percentage: int,
        reason: str = "",
        *,
        skip_unchanged: bool = True,
    ) -> FeatureFlag:
        """
        Set a flag's rollout percentage and record the change.

        With `skip_unchanged`, setting the current value is a no-op and
        writes no history.
        """
        validate_percentage(percentage)

        async def apply() -> FeatureFlag:
            flag = await self._load(feature_name)
            old = flag.rollout_percentage
            if skip_unchanged and old == percentage:
                return flag

            flag.rollout_percentage = percentage
            updated = await self._store(flag)
            await self.audit.record(feature_name, old, percentage, reason)
            return updated

        return await self.with_retries(apply)

    # ============================================================
    # STATE
    # ============================================================

    async def set_enabled(
        self,
        feature_name: str,
        enabled: bool,
        reason: str | None = None,
        *,
        skip_unchanged: bool = True,
    ) -> FeatureFlag:
        """Flip a flag's master switch and record the change."""

        async def apply() -> FeatureFlag:
            flag = await self._load(feature_name)
            if skip_unchanged and flag.is_enabled == enabled:
                return flag

            flag.is_enabled = enabled
            updated = await self._store(flag)
            await self.audit.record(
                feature_name,
                flag.rollout_percentage,
                flag.rollout_percentage,
                reason or ("Flag enabled" if enabled else "Flag disabled"),
                change_type=ChangeType.STATE,
            )
            return updated

        return await self.with_retries(apply)

    # ============================================================
    # FULL DEFINITION
    # ============================================================

    async def save_definition(self, definition: FeatureFlag, reason: str = "") -> FeatureFlag:
        """
        Create or replace a flag definition by name.

        Replacing keeps the id and creation time; percentage and state
        changes are recorded like any other change.
        """

        async def apply() -> FeatureFlag:
            now = self.clock()
            existing = await self.backend.get_flag(definition.feature_name)

            if existing is None:
                definition.version = 1
                definition.created_at = now
                definition.updated_at = now
                created = await self.backend.create_flag(definition)
                self.touch(created.feature_name)
                logger.info("Feature flag created", feature_name=created.feature_name)
                return created

            definition.id = existing.id
            definition.created_at = existing.created_at
            definition.version = existing.version
            updated = await self._store(definition)

            if existing.rollout_percentage != definition.rollout_percentage:
                await self.audit.record(
                    definition.feature_name,
                    existing.rollout_percentage,
                    definition.rollout_percentage,
                    reason,
                )
            if existing.is_enabled != definition.is_enabled:
                await self.audit.record(
                    definition.feature_name,
                    definition.rollout_percentage,
                    definition.rollout_percentage,
                    reason or ("Flag enabled" if definition.is_enabled else "Flag disabled"),
                    change_type=ChangeType.STATE,
                )
            logger.info("Feature flag updated", feature_name=definition.feature_name)
            return updated

        return await self.with_retries(apply)
