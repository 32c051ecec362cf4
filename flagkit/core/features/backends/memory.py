"""
In-memory backend for the flag engine.

For development and testing. Data is lost on restart.
"""

import asyncio
import copy
import itertools
from contextlib import asynccontextmanager
from contextvars import ContextVar
from typing import AsyncIterator
from uuid import UUID

from ..exceptions import ConflictError, NotFoundError
from ..interfaces import (
    FeatureBackend,
    FeatureFlag,
    RolloutHistoryEntry,
    RolloutSchedule,
    ScheduleStatus,
    UserFeatureOverride,
)


class MemoryFeatureBackend(FeatureBackend):
    """
    In-memory flag engine storage.

    Useful for:
    - Development without database
    - Unit testing
    - Quick prototyping

    Transactions take a lock and snapshot every table; an error inside the
    block restores the snapshot.
    """

    def __init__(self):
        self._flags: dict[str, FeatureFlag] = {}
        self._overrides: dict[tuple[str, str], UserFeatureOverride] = {}
        self._history: list[RolloutHistoryEntry] = []
        self._schedules: dict[UUID, RolloutSchedule] = {}
        self._history_ids = itertools.count(1)
        self._lock = asyncio.Lock()
        self._depth: ContextVar[int] = ContextVar(f"memory_tx_depth_{id(self)}", default=0)

    # ============================================================
    # TRANSACTIONS
    # ============================================================

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["MemoryFeatureBackend"]:
        depth = self._depth.get()
        if depth == 0:
            await self._lock.acquire()
        snapshot = self._snapshot()
        token = self._depth.set(depth + 1)
        try:
            yield self
        except BaseException:
            self._restore(snapshot)
            raise
        finally:
            self._depth.reset(token)
            if depth == 0:
                self._lock.release()

    def _snapshot(self) -> tuple:
        return (
            copy.deepcopy(self._flags),
            copy.deepcopy(self._overrides),
            list(self._history),
            copy.deepcopy(self._schedules),
        )

    def _restore(self, snapshot: tuple) -> None:
        self._flags, self._overrides, self._history, self._schedules = snapshot

    # ============================================================
    # FLAG OPERATIONS
    # ============================================================

    async def get_flag(self, feature_name: str) -> FeatureFlag | None:
        flag = self._flags.get(feature_name)
        return copy.deepcopy(flag) if flag else None

    async def get_flag_by_id(self, flag_id: UUID) -> FeatureFlag | None:
        for flag in self._flags.values():
            if flag.id == flag_id:
                return copy.deepcopy(flag)
        return None

    async def list_flags(self) -> list[FeatureFlag]:
        return [copy.deepcopy(self._flags[name]) for name in sorted(self._flags)]

    async def list_children(self, parent_id: UUID) -> list[FeatureFlag]:
        return [
            flag for flag in await self.list_flags()
            if flag.parent_feature_id == parent_id
        ]

    async def create_flag(self, flag: FeatureFlag) -> FeatureFlag:
        if flag.feature_name in self._flags:
            raise ConflictError(f"Feature flag '{flag.feature_name}' already exists")
        self._flags[flag.feature_name] = copy.deepcopy(flag)
        return copy.deepcopy(flag)

    async def update_flag(self, flag: FeatureFlag, expected_version: int) -> FeatureFlag:
        stored = self._flags.get(flag.feature_name)
        if stored is None:
            raise NotFoundError(f"Feature flag '{flag.feature_name}' not found")
        if stored.version != expected_version:
            raise ConflictError(
                f"Feature flag '{flag.feature_name}' was modified concurrently"
            )

        updated = copy.deepcopy(flag)
        updated.version = expected_version + 1
        self._flags[flag.feature_name] = updated
        return copy.deepcopy(updated)

    async def delete_flag(self, feature_name: str) -> bool:
        if feature_name in self._flags:
            del self._flags[feature_name]
            return True
        return False

    # ============================================================
    # OVERRIDE OPERATIONS
    # ============================================================

    async def get_override(self, user_id: str, feature_name: str) -> UserFeatureOverride | None:
        override = self._overrides.get((user_id, feature_name))
        return copy.deepcopy(override) if override else None

    async def set_override(self, override: UserFeatureOverride) -> UserFeatureOverride:
        self._overrides[(override.user_id, override.feature_name)] = copy.deepcopy(override)
        return copy.deepcopy(override)

    async def remove_override(self, user_id: str, feature_name: str) -> bool:
        key = (user_id, feature_name)
        if key in self._overrides:
            del self._overrides[key]
            return True
        return False

    async def list_overrides(self, feature_name: str) -> list[UserFeatureOverride]:
        return [
            copy.deepcopy(override)
            for (user_id, name), override in sorted(self._overrides.items())
            if name == feature_name
        ]

    async def delete_overrides(self, feature_name: str) -> int:
        keys = [key for key in self._overrides if key[1] == feature_name]
        for key in keys:
            del self._overrides[key]
        return len(keys)

    # ============================================================
    # HISTORY
    # ============================================================

    async def append_history(self, entry: RolloutHistoryEntry) -> RolloutHistoryEntry:
        stored = copy.deepcopy(entry)
        stored.id = next(self._history_ids)
        self._history.append(stored)
        return copy.deepcopy(stored)

    async def list_history(self, feature_name: str) -> list[RolloutHistoryEntry]:
        entries = [e for e in self._history if e.feature_name == feature_name]
        entries.sort(key=lambda e: (e.created_at, e.id))
        return [copy.deepcopy(e) for e in entries]

    # ============================================================
    # SCHEDULES
    # ============================================================

    async def create_schedule(self, schedule: RolloutSchedule) -> RolloutSchedule:
        self._schedules[schedule.id] = copy.deepcopy(schedule)
        return copy.deepcopy(schedule)

    async def get_schedule(self, schedule_id: UUID) -> RolloutSchedule | None:
        schedule = self._schedules.get(schedule_id)
        return copy.deepcopy(schedule) if schedule else None

    async def list_schedules(
        self,
        feature_name: str | None = None,
        status: ScheduleStatus | None = None,
    ) -> list[RolloutSchedule]:
        return [
            copy.deepcopy(s) for s in self._schedules.values()
            if (feature_name is None or s.feature_name == feature_name)
            and (status is None or s.status == status)
        ]

    async def update_schedule(
        self,
        schedule: RolloutSchedule,
        expected_step: int,
        expected_status: ScheduleStatus,
    ) -> RolloutSchedule:
        stored = self._schedules.get(schedule.id)
        if stored is None:
            raise NotFoundError(f"Rollout schedule {schedule.id} not found")
        if stored.current_step != expected_step or stored.status != expected_status:
            raise ConflictError(f"Rollout schedule {schedule.id} was modified concurrently")

        self._schedules[schedule.id] = copy.deepcopy(schedule)
        return copy.deepcopy(schedule)

    # ============================================================
    # TEST HELPERS
    # ============================================================

    def clear(self) -> None:
        """Clear all data. Useful for testing."""
        self._flags.clear()
        self._overrides.clear()
        self._history.clear()
        self._schedules.clear()

    def seed(self, flags: list[FeatureFlag]) -> None:
        """Seed with initial flags. Useful for testing."""
        for flag in flags:
            self._flags[flag.feature_name] = copy.deepcopy(flag)
