"""
Rollout audit trail.

Every percentage or state change goes through `AuditRecorder.record()`
inside the same backend transaction as the flag write, so history and
flag state never diverge.
"""

from datetime import datetime
from typing import Awaitable, Callable

import structlog

from flagkit.utils.timezone import utc_now

from .interfaces import ChangeType, FeatureBackend, RolloutHistoryEntry

logger = structlog.get_logger()

UserCountProvider = Callable[[], Awaitable[int]]


def static_user_count(total: int) -> UserCountProvider:
    """User count provider returning a configured constant."""

    async def provider() -> int:
        return total

    return provider


class AuditRecorder:
    """Appends immutable history entries and estimates their impact."""

    def __init__(
        self,
        backend: FeatureBackend,
        user_count: UserCountProvider | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.backend = backend
        self.user_count = user_count
        self.clock = clock

    async def estimate_impact(self, old_percentage: int, new_percentage: int) -> int | None:
        """
        Users whose decision flips with this change.

        Advisory only. None when no user count is available.
        """
        if self.user_count is None:
            return None
        total = await self.user_count()
        return total * abs(new_percentage - old_percentage) // 100

    async def record(
        self,
        feature_name: str,
        old_percentage: int,
        new_percentage: int,
        reason: str = "",
        change_type: ChangeType = ChangeType.PERCENTAGE,
        estimated_impact: int | None = None,
    ) -> RolloutHistoryEntry:
        if estimated_impact is None and change_type == ChangeType.PERCENTAGE:
            estimated_impact = await self.estimate_impact(old_percentage, new_percentage)

        entry = await self.backend.append_history(
            RolloutHistoryEntry(
                feature_name=feature_name,
                old_percentage=old_percentage,
                new_percentage=new_percentage,
                change_reason=reason or "",
                change_type=change_type,
                user_impact_estimate=estimated_impact,
                created_at=self.clock(),
            )
        )

        logger.info(
            "Rollout change recorded",
            feature_name=feature_name,
            change_type=change_type.value,
            old=old_percentage,
            new=new_percentage,
            impact=estimated_impact,
        )
        return entry

    async def history(self, feature_name: str) -> list[RolloutHistoryEntry]:
        return await self.backend.list_history(feature_name)
