"""
Feature Flag Service - the flag engine's public surface.

Read path:
    evaluate / is_enabled / get_all_flags
    (flags read through FlagCache, decision by evaluate_flag)

Write path:
    upsert_flag, set_rollout_percentage, toggle_flag,
    toggle_parent_and_children, bulk_*, schedules, overrides
    (all through FlagWriter: CAS update + audit entry in one transaction)
"""

from collections.abc import Collection, Iterable
from datetime import datetime
from typing import Any, Callable
from uuid import UUID

import structlog

from flagkit.utils.timezone import to_utc, utc_now

from .audit import AuditRecorder, UserCountProvider
from .bulk import BulkOperationCoordinator, BulkResult
from .cache import FlagCache
from .evaluator import DEFAULT_PREMIUM_TIERS, evaluate_flag
from .exceptions import CycleError, NotFoundError, ValidationError
from .hierarchy import HierarchyManager
from .interfaces import (
    EvaluationResult,
    EvaluationSource,
    FeatureBackend,
    FeatureFlag,
    RolloutHistoryEntry,
    RolloutSchedule,
    RolloutStrategy,
    ScheduleStatus,
    TargetAudience,
    UserContext,
    UserFeatureOverride,
)
from .scheduler import ExecutionReport, RolloutScheduler
from .targeting import parse_ab_test_config, parse_cohort_rules
from .validation import (
    parse_enum,
    validate_feature_name,
    validate_percentage,
    validate_rollout_window,
)
from .writer import FlagWriter

logger = structlog.get_logger()


class FeatureService:
    """
    Feature flag engine service.

    Evaluation order (first "disabled" wins):
    1. Individual override (highest priority)
    2. Global enabled check
    3. Parent chain enabled check
    4. Rollout window
    5. Target audience
    6. Cohort rules
    7. Percentage rollout
    8. A/B variant
    """

    def __init__(
        self,
        backend: FeatureBackend,
        *,
        cache: FlagCache | None = None,
        clock: Callable[[], datetime] = utc_now,
        user_count: UserCountProvider | None = None,
        max_conflict_retries: int = 3,
        premium_tiers: Collection[str] = DEFAULT_PREMIUM_TIERS,
    ):
        self.backend = backend
        self.cache = cache
        self.clock = clock
        self.premium_tiers = frozenset(premium_tiers)

        self.audit = AuditRecorder(backend, user_count, clock)
        self.writer = FlagWriter(backend, self.audit, cache, clock, max_conflict_retries)
        self.hierarchy = HierarchyManager(backend, self.writer)
        self.scheduler = RolloutScheduler(backend, self.writer, clock, max_conflict_retries)
        self.bulk = BulkOperationCoordinator(self.writer)

    # ============================================================
    # MAIN EVALUATION
    # ============================================================

    async def _load_flag(self, feature_name: str) -> FeatureFlag | None:
        if self.cache is None:
            return await self.backend.get_flag(feature_name)
        return await self.cache.get_or_load(
            feature_name, lambda: self.backend.get_flag(feature_name)
        )

    async def _load_flag_by_id(self, flag_id: UUID) -> FeatureFlag | None:
        if self.cache is None:
            return await self.backend.get_flag_by_id(flag_id)
        return await self.cache.get_or_load_by_id(
            flag_id,
            lambda: self.backend.get_flag_by_id(flag_id),
            self.backend.get_flag,
        )

    async def evaluate(
        self,
        feature_name: str,
        user: UserContext | None = None,
    ) -> EvaluationResult:
        """
        Evaluate a feature flag with detailed result.

        A missing flag is disabled, even for users with an override.
        """
        user_id = user.user_id if user else None

        flag = await self._load_flag(feature_name)
        if flag is None:
            return EvaluationResult.no(
                feature_name, "Flag not found", user_id, source=EvaluationSource.DEFAULT
            )

        override = None
        if user is not None:
            override = await self.backend.get_override(user.user_id, feature_name)

        try:
            ancestors = await self.hierarchy.get_ancestors(flag, lookup=self._load_flag_by_id)
        except CycleError:
            logger.warning("Hierarchy cycle detected", feature_name=feature_name)
            ancestors = None

        return evaluate_flag(
            flag,
            ancestors,
            user,
            self.clock(),
            override=override,
            premium_tiers=self.premium_tiers,
        )

    async def is_enabled(self, feature_name: str, user: UserContext | None = None) -> bool:
        result = await self.evaluate(feature_name, user)
        return result.enabled

    async def get_variant(self, feature_name: str, user: UserContext) -> str | None:
        """Assigned A/B variant, or None if the flag is off for the user."""
        result = await self.evaluate(feature_name, user)
        return result.variant if result.enabled else None

    async def get_all_flags(self, user: UserContext | None = None) -> dict[str, bool]:
        """
        Get all flags and their status for a user.

        Useful for sending to frontend.
        """
        flags = await self.backend.list_flags()
        result = {}

        for flag in flags:
            result[flag.feature_name] = await self.is_enabled(flag.feature_name, user)

        return result

    # ============================================================
    # DEFINITIONS
    # ============================================================

    async def get_flag(self, feature_name: str) -> FeatureFlag | None:
        return await self.backend.get_flag(feature_name)

    async def require_flag(self, feature_name: str) -> FeatureFlag:
        flag = await self.backend.get_flag(feature_name)
        if flag is None:
            raise NotFoundError(f"Feature flag '{feature_name}' not found")
        return flag

    async def list_flags(
        self,
        *,
        enabled: bool | None = None,
        target_audience: TargetAudience | str | None = None,
        rollout_strategy: RolloutStrategy | str | None = None,
        parent_name: str | None = None,
        roots_only: bool = False,
    ) -> list[FeatureFlag]:
        """List flags ordered by name, optionally filtered."""
        if target_audience is not None:
            target_audience = parse_enum(TargetAudience, target_audience, "target audience")
        if rollout_strategy is not None:
            rollout_strategy = parse_enum(RolloutStrategy, rollout_strategy, "rollout strategy")

        if parent_name is not None:
            flags = await self.hierarchy.get_children_by_name(parent_name)
        else:
            flags = await self.backend.list_flags()

        return [
            flag for flag in flags
            if (enabled is None or flag.is_enabled == enabled)
            and (target_audience is None or flag.target_audience == target_audience)
            and (rollout_strategy is None or flag.rollout_strategy == rollout_strategy)
            and (not roots_only or flag.parent_feature_id is None)
        ]

    async def upsert_flag(
        self,
        feature_name: str,
        *,
        description: str | None = None,
        is_enabled: bool = False,
        rollout_percentage: int = 100,
        target_audience: TargetAudience | str = TargetAudience.ALL,
        cohort_rules: Any = None,
        ab_test_config: Any = None,
        rollout_strategy: RolloutStrategy | str = RolloutStrategy.IMMEDIATE,
        rollout_start_date: datetime | None = None,
        rollout_end_date: datetime | None = None,
        parent_feature: str | None = None,
        reason: str = "",
    ) -> FeatureFlag:
        """
        Create or fully replace a flag definition.

        `parent_feature` is the parent's name. Percentage and state
        changes against the stored definition are recorded in history.
        """
        validate_feature_name(feature_name)
        validate_percentage(rollout_percentage)
        start, end = validate_rollout_window(rollout_start_date, rollout_end_date)

        definition = FeatureFlag(
            feature_name=feature_name,
            description=description,
            is_enabled=bool(is_enabled),
            rollout_percentage=rollout_percentage,
            target_audience=parse_enum(TargetAudience, target_audience, "target audience"),
            cohort_rules=parse_cohort_rules(cohort_rules),
            ab_test_config=parse_ab_test_config(ab_test_config),
            rollout_strategy=parse_enum(RolloutStrategy, rollout_strategy, "rollout strategy"),
            rollout_start_date=start,
            rollout_end_date=end,
        )

        if parent_feature is not None:
            if parent_feature == feature_name:
                raise CycleError("A feature flag cannot be its own parent")
            parent = await self.backend.get_flag(parent_feature)
            if parent is None:
                raise NotFoundError(f"Parent feature flag '{parent_feature}' not found")
            existing = await self.backend.get_flag(feature_name)
            await self.hierarchy.validate_parent(existing.id if existing else None, parent.id)
            definition.parent_feature_id = parent.id

        return await self.writer.save_definition(definition, reason)

    async def delete_flag(self, feature_name: str) -> bool:
        """
        Delete a flag, its overrides, and cancel its open schedules.

        Rejected while child flags reference it. History is kept.
        """
        async with self.writer.transaction():
            flag = await self.backend.get_flag(feature_name)
            if flag is None:
                return False

            children = await self.backend.list_children(flag.id)
            if children:
                names = ", ".join(child.feature_name for child in children)
                raise ValidationError(
                    f"Feature flag '{feature_name}' still has child flags: {names}"
                )

            now = self.clock()
            for schedule in await self.backend.list_schedules(feature_name=feature_name):
                if schedule.status.is_terminal:
                    continue
                previous = schedule.status
                schedule.status = ScheduleStatus.CANCELLED
                schedule.updated_at = now
                await self.backend.update_schedule(
                    schedule,
                    expected_step=schedule.current_step,
                    expected_status=previous,
                )

            await self.backend.delete_overrides(feature_name)
            await self.backend.delete_flag(feature_name)
            self.writer.touch(feature_name)

        logger.info("Feature flag deleted", feature_name=feature_name)
        return True

    # ============================================================
    # CHANGES
    # ============================================================

    async def set_rollout_percentage(
        self,
        feature_name: str,
        percentage: int,
        reason: str = "",
    ) -> FeatureFlag:
        validate_feature_name(feature_name)
        flag = await self.writer.set_percentage(feature_name, percentage, reason)
        logger.info(
            "Rollout percentage updated",
            feature_name=feature_name,
            percentage=percentage,
        )
        return flag

    async def toggle_flag(
        self,
        feature_name: str,
        enabled: bool,
        reason: str | None = None,
    ) -> FeatureFlag:
        validate_feature_name(feature_name)
        flag = await self.writer.set_enabled(feature_name, enabled, reason)
        logger.info("Feature flag toggled", feature_name=feature_name, enabled=enabled)
        return flag

    async def toggle_parent_and_children(
        self,
        parent_name: str,
        enabled: bool,
    ) -> list[FeatureFlag]:
        validate_feature_name(parent_name)
        return await self.hierarchy.toggle_parent_and_children(parent_name, enabled)

    async def bulk_set_rollout_percentage(
        self,
        feature_names: Iterable[str],
        percentage: int,
        reason: str = "",
    ) -> BulkResult:
        return await self.bulk.set_rollout_percentage(feature_names, percentage, reason)

    async def bulk_toggle(
        self,
        feature_names: Iterable[str],
        enabled: bool,
        reason: str | None = None,
    ) -> BulkResult:
        return await self.bulk.set_enabled(feature_names, enabled, reason)

    # ============================================================
    # HIERARCHY
    # ============================================================

    async def get_children(self, feature_name: str) -> list[FeatureFlag]:
        return await self.hierarchy.get_children_by_name(feature_name)

    async def get_parent_features(self) -> list[FeatureFlag]:
        return await self.hierarchy.get_parent_features()

    async def has_children(self, feature_name: str) -> bool:
        return await self.hierarchy.has_children(feature_name)

    # ============================================================
    # SCHEDULES
    # ============================================================

    async def create_schedule(
        self,
        feature_name: str,
        schedule_name: str,
        steps: Iterable[Any],
    ) -> RolloutSchedule:
        return await self.scheduler.create_schedule(feature_name, schedule_name, steps)

    async def update_schedule_status(
        self,
        schedule_id: UUID,
        new_status: ScheduleStatus | str,
    ) -> RolloutSchedule:
        return await self.scheduler.update_status(schedule_id, new_status)

    async def execute_pending_schedules(self) -> ExecutionReport:
        return await self.scheduler.execute_pending()

    async def get_schedule(self, schedule_id: UUID) -> RolloutSchedule:
        return await self.scheduler.get_schedule(schedule_id)

    async def list_schedules(
        self,
        feature_name: str | None = None,
        status: ScheduleStatus | str | None = None,
    ) -> list[RolloutSchedule]:
        return await self.scheduler.list_schedules(feature_name, status)

    # ============================================================
    # OVERRIDES
    # ============================================================

    async def set_user_override(
        self,
        user_id: str,
        feature_name: str,
        is_enabled: bool,
        reason: str | None = None,
        expires_at: datetime | None = None,
    ) -> UserFeatureOverride:
        """Upsert the override for (user, flag)."""
        if not isinstance(user_id, str) or not user_id.strip():
            raise ValidationError("User id must not be empty")
        validate_feature_name(feature_name)

        now = self.clock()
        expires_at = to_utc(expires_at)
        if expires_at is not None and expires_at <= now:
            raise ValidationError("Override expiry must be in the future")

        async with self.backend.transaction():
            await self.require_flag(feature_name)
            override = await self.backend.set_override(
                UserFeatureOverride(
                    user_id=user_id,
                    feature_name=feature_name,
                    is_enabled=bool(is_enabled),
                    reason=reason,
                    expires_at=expires_at,
                    created_at=now,
                )
            )

        logger.info(
            "User override set",
            feature_name=feature_name,
            user_id=user_id,
            enabled=override.is_enabled,
        )
        return override

    async def remove_user_override(self, user_id: str, feature_name: str) -> bool:
        async with self.backend.transaction():
            removed = await self.backend.remove_override(user_id, feature_name)
        if removed:
            logger.info("User override removed", feature_name=feature_name, user_id=user_id)
        return removed

    async def list_overrides(
        self,
        feature_name: str,
        include_expired: bool = False,
    ) -> list[UserFeatureOverride]:
        overrides = await self.backend.list_overrides(feature_name)
        if include_expired:
            return overrides
        now = self.clock()
        return [o for o in overrides if o.is_active(now)]

    async def bulk_set_user_override(
        self,
        feature_name: str,
        user_ids: Iterable[str],
        is_enabled: bool,
        reason: str | None = None,
        expires_at: datetime | None = None,
    ) -> BulkResult:
        """Set the same override for many users; failures are per user."""

        async def apply(user_id: str) -> None:
            await self.set_user_override(user_id, feature_name, is_enabled, reason, expires_at)

        return await self.bulk.apply_to_many(user_ids, apply)

    # ============================================================
    # AUDIT
    # ============================================================

    async def get_rollout_history(self, feature_name: str) -> list[RolloutHistoryEntry]:
        return await self.audit.history(feature_name)
