"""
Database backend for the flag engine.

Uses PostgreSQL for persistent storage (SQLite works for tests).
"""

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator
from uuid import UUID

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from flagkit.utils.timezone import to_utc, utc_now

from ..exceptions import ConflictError, NotFoundError
from ..interfaces import (
    ChangeType,
    FeatureBackend,
    FeatureFlag,
    RolloutHistoryEntry,
    RolloutSchedule,
    RolloutStrategy,
    ScheduleStatus,
    ScheduleStep,
    TargetAudience,
    UserFeatureOverride,
)
from ..models import (
    FeatureFlagModel,
    FeatureFlagOverride,
    RolloutHistoryModel,
    RolloutScheduleModel,
)
from ..targeting import parse_ab_test_config, parse_cohort_rules


class DatabaseFeatureBackend(FeatureBackend):
    """
    SQLAlchemy-backed flag engine storage.

    Conditional updates are single UPDATE statements guarded by the
    expected version (flags) or expected step and status (schedules);
    zero affected rows means another writer got there first.

    `transaction()` commits when the outermost block exits and rolls back
    if it raises. Nested blocks join the outer one.
    """

    def __init__(self, db: AsyncSession):
        self.db = db
        self._depth = 0

    # ============================================================
    # TRANSACTIONS
    # ============================================================

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["DatabaseFeatureBackend"]:
        if self._depth:
            self._depth += 1
            try:
                yield self
            finally:
                self._depth -= 1
            return

        self._depth = 1
        try:
            yield self
            await self.db.commit()
        except BaseException:
            await self.db.rollback()
            raise
        finally:
            self._depth = 0

    # ============================================================
    # FLAG OPERATIONS
    # ============================================================

    async def get_flag(self, feature_name: str) -> FeatureFlag | None:
        query = (
            select(FeatureFlagModel)
            .where(FeatureFlagModel.feature_name == feature_name)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(query)
        model = result.scalar_one_or_none()
        return self._model_to_flag(model) if model else None

    async def get_flag_by_id(self, flag_id: UUID) -> FeatureFlag | None:
        query = (
            select(FeatureFlagModel)
            .where(FeatureFlagModel.id == flag_id)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(query)
        model = result.scalar_one_or_none()
        return self._model_to_flag(model) if model else None

    async def list_flags(self) -> list[FeatureFlag]:
        query = (
            select(FeatureFlagModel)
            .order_by(FeatureFlagModel.feature_name)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(query)
        return [self._model_to_flag(m) for m in result.scalars().all()]

    async def list_children(self, parent_id: UUID) -> list[FeatureFlag]:
        query = (
            select(FeatureFlagModel)
            .where(FeatureFlagModel.parent_feature_id == parent_id)
            .order_by(FeatureFlagModel.feature_name)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(query)
        return [self._model_to_flag(m) for m in result.scalars().all()]

    async def create_flag(self, flag: FeatureFlag) -> FeatureFlag:
        model = FeatureFlagModel(id=flag.id, version=flag.version, **self._flag_values(flag))
        self.db.add(model)
        try:
            await self.db.flush()
        except IntegrityError:
            raise ConflictError(
                f"Feature flag '{flag.feature_name}' already exists"
            ) from None
        await self.db.refresh(model)
        return self._model_to_flag(model)

    async def update_flag(self, flag: FeatureFlag, expected_version: int) -> FeatureFlag:
        result = await self.db.execute(
            update(FeatureFlagModel)
            .where(FeatureFlagModel.feature_name == flag.feature_name)
            .where(FeatureFlagModel.version == expected_version)
            .values(**self._flag_values(flag), version=expected_version + 1)
            .execution_options(synchronize_session=False)
        )

        if result.rowcount == 0:
            if await self.get_flag(flag.feature_name) is None:
                raise NotFoundError(f"Feature flag '{flag.feature_name}' not found")
            raise ConflictError(
                f"Feature flag '{flag.feature_name}' was modified concurrently"
            )

        return await self.get_flag(flag.feature_name)

    async def delete_flag(self, feature_name: str) -> bool:
        query = delete(FeatureFlagModel).where(FeatureFlagModel.feature_name == feature_name)
        result = await self.db.execute(query)
        await self.db.flush()
        return result.rowcount > 0

    # ============================================================
    # OVERRIDE OPERATIONS
    # ============================================================

    async def _get_override_model(
        self,
        user_id: str,
        feature_name: str,
    ) -> FeatureFlagOverride | None:
        query = select(FeatureFlagOverride).where(
            FeatureFlagOverride.user_id == user_id,
            FeatureFlagOverride.feature_name == feature_name,
        )
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def get_override(self, user_id: str, feature_name: str) -> UserFeatureOverride | None:
        model = await self._get_override_model(user_id, feature_name)
        return self._model_to_override(model) if model else None

    async def set_override(self, override: UserFeatureOverride) -> UserFeatureOverride:
        """Set override for a user (upsert)."""
        model = await self._get_override_model(override.user_id, override.feature_name)

        if model:
            model.is_enabled = override.is_enabled
            model.reason = override.reason
            model.expires_at = override.expires_at
        else:
            model = FeatureFlagOverride(
                user_id=override.user_id,
                feature_name=override.feature_name,
                is_enabled=override.is_enabled,
                reason=override.reason,
                expires_at=override.expires_at,
                created_at=override.created_at or utc_now(),
            )
            self.db.add(model)

        await self.db.flush()
        return self._model_to_override(model)

    async def remove_override(self, user_id: str, feature_name: str) -> bool:
        query = delete(FeatureFlagOverride).where(
            FeatureFlagOverride.user_id == user_id,
            FeatureFlagOverride.feature_name == feature_name,
        )
        result = await self.db.execute(query)
        await self.db.flush()
        return result.rowcount > 0

    async def list_overrides(self, feature_name: str) -> list[UserFeatureOverride]:
        query = (
            select(FeatureFlagOverride)
            .where(FeatureFlagOverride.feature_name == feature_name)
            .order_by(FeatureFlagOverride.user_id)
        )
        result = await self.db.execute(query)
        return [self._model_to_override(m) for m in result.scalars().all()]

    async def delete_overrides(self, feature_name: str) -> int:
        query = delete(FeatureFlagOverride).where(
            FeatureFlagOverride.feature_name == feature_name
        )
        result = await self.db.execute(query)
        await self.db.flush()
        return result.rowcount

    # ============================================================
    # HISTORY
    # ============================================================

    async def append_history(self, entry: RolloutHistoryEntry) -> RolloutHistoryEntry:
        model = RolloutHistoryModel(
            feature_name=entry.feature_name,
            old_percentage=entry.old_percentage,
            new_percentage=entry.new_percentage,
            change_reason=entry.change_reason,
            change_type=entry.change_type.value,
            user_impact_estimate=entry.user_impact_estimate,
            created_at=entry.created_at or utc_now(),
        )
        self.db.add(model)
        await self.db.flush()
        return self._model_to_history(model)

    async def list_history(self, feature_name: str) -> list[RolloutHistoryEntry]:
        query = (
            select(RolloutHistoryModel)
            .where(RolloutHistoryModel.feature_name == feature_name)
            .order_by(RolloutHistoryModel.created_at, RolloutHistoryModel.id)
        )
        result = await self.db.execute(query)
        return [self._model_to_history(m) for m in result.scalars().all()]

    # ============================================================
    # SCHEDULES
    # ============================================================

    async def create_schedule(self, schedule: RolloutSchedule) -> RolloutSchedule:
        model = RolloutScheduleModel(id=schedule.id, **self._schedule_values(schedule))
        self.db.add(model)
        await self.db.flush()
        await self.db.refresh(model)
        return self._model_to_schedule(model)

    async def get_schedule(self, schedule_id: UUID) -> RolloutSchedule | None:
        query = (
            select(RolloutScheduleModel)
            .where(RolloutScheduleModel.id == schedule_id)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(query)
        model = result.scalar_one_or_none()
        return self._model_to_schedule(model) if model else None

    async def list_schedules(
        self,
        feature_name: str | None = None,
        status: ScheduleStatus | None = None,
    ) -> list[RolloutSchedule]:
        query = select(RolloutScheduleModel).execution_options(populate_existing=True)
        if feature_name is not None:
            query = query.where(RolloutScheduleModel.feature_name == feature_name)
        if status is not None:
            query = query.where(RolloutScheduleModel.status == status.value)
        query = query.order_by(RolloutScheduleModel.created_at)

        result = await self.db.execute(query)
        return [self._model_to_schedule(m) for m in result.scalars().all()]

    async def update_schedule(
        self,
        schedule: RolloutSchedule,
        expected_step: int,
        expected_status: ScheduleStatus,
    ) -> RolloutSchedule:
        result = await self.db.execute(
            update(RolloutScheduleModel)
            .where(RolloutScheduleModel.id == schedule.id)
            .where(RolloutScheduleModel.current_step == expected_step)
            .where(RolloutScheduleModel.status == expected_status.value)
            .values(**self._schedule_values(schedule))
            .execution_options(synchronize_session=False)
        )

        if result.rowcount == 0:
            if await self.get_schedule(schedule.id) is None:
                raise NotFoundError(f"Rollout schedule {schedule.id} not found")
            raise ConflictError(f"Rollout schedule {schedule.id} was modified concurrently")

        return await self.get_schedule(schedule.id)

    # ============================================================
    # HELPERS
    # ============================================================

    def _flag_values(self, flag: FeatureFlag) -> dict[str, Any]:
        values = {
            "feature_name": flag.feature_name,
            "description": flag.description,
            "is_enabled": flag.is_enabled,
            "rollout_percentage": flag.rollout_percentage,
            "target_audience": flag.target_audience.value,
            "rollout_strategy": flag.rollout_strategy.value,
            "cohort_rules": flag.cohort_rules.to_dict() if flag.cohort_rules else None,
            "ab_test_config": flag.ab_test_config.to_dict() if flag.ab_test_config else None,
            "rollout_start_date": flag.rollout_start_date,
            "rollout_end_date": flag.rollout_end_date,
            "parent_feature_id": flag.parent_feature_id,
        }
        if flag.created_at is not None:
            values["created_at"] = flag.created_at
        if flag.updated_at is not None:
            values["updated_at"] = flag.updated_at
        return values

    def _model_to_flag(self, model: FeatureFlagModel) -> FeatureFlag:
        """Convert SQLAlchemy model to dataclass."""
        return FeatureFlag(
            id=model.id,
            feature_name=model.feature_name,
            description=model.description,
            is_enabled=model.is_enabled,
            rollout_percentage=model.rollout_percentage,
            target_audience=TargetAudience(model.target_audience),
            cohort_rules=parse_cohort_rules(model.cohort_rules),
            ab_test_config=parse_ab_test_config(model.ab_test_config),
            rollout_strategy=RolloutStrategy(model.rollout_strategy),
            rollout_start_date=to_utc(model.rollout_start_date),
            rollout_end_date=to_utc(model.rollout_end_date),
            parent_feature_id=model.parent_feature_id,
            version=model.version,
            created_at=to_utc(model.created_at),
            updated_at=to_utc(model.updated_at),
        )

    def _model_to_override(self, model: FeatureFlagOverride) -> UserFeatureOverride:
        return UserFeatureOverride(
            user_id=model.user_id,
            feature_name=model.feature_name,
            is_enabled=model.is_enabled,
            reason=model.reason,
            expires_at=to_utc(model.expires_at),
            created_at=to_utc(model.created_at),
        )

    def _model_to_history(self, model: RolloutHistoryModel) -> RolloutHistoryEntry:
        return RolloutHistoryEntry(
            id=model.id,
            feature_name=model.feature_name,
            old_percentage=model.old_percentage,
            new_percentage=model.new_percentage,
            change_reason=model.change_reason,
            change_type=ChangeType(model.change_type),
            user_impact_estimate=model.user_impact_estimate,
            created_at=to_utc(model.created_at),
        )

    def _schedule_values(self, schedule: RolloutSchedule) -> dict[str, Any]:
        values = {
            "feature_name": schedule.feature_name,
            "schedule_name": schedule.schedule_name,
            "status": schedule.status.value,
            "current_step": schedule.current_step,
            "schedule_data": [step.to_dict() for step in schedule.steps],
            "completed_at": schedule.completed_at,
        }
        if schedule.created_at is not None:
            values["created_at"] = schedule.created_at
        if schedule.updated_at is not None:
            values["updated_at"] = schedule.updated_at
        return values

    def _model_to_schedule(self, model: RolloutScheduleModel) -> RolloutSchedule:
        return RolloutSchedule(
            id=model.id,
            feature_name=model.feature_name,
            schedule_name=model.schedule_name,
            steps=[ScheduleStep.from_dict(step) for step in model.schedule_data],
            status=ScheduleStatus(model.status),
            current_step=model.current_step,
            completed_at=to_utc(model.completed_at),
            created_at=to_utc(model.created_at),
            updated_at=to_utc(model.updated_at),
        )
