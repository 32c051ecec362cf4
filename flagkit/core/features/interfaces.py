"""
Feature Flag Interfaces - Core abstractions.

These define the data model of the flag engine and the contract every
storage backend implements.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, AsyncContextManager
from uuid import UUID, uuid4

from flagkit.utils.timezone import from_iso8601, to_iso8601, to_utc

from .targeting import ABTestConfig, CohortRule


# ============================================================
# ENUMS
# ============================================================

class TargetAudience(str, Enum):
    ALL = "all"
    PREMIUM = "premium"
    BETA = "beta"


class RolloutStrategy(str, Enum):
    IMMEDIATE = "immediate"
    GRADUAL = "gradual"
    SCHEDULED = "scheduled"


class ScheduleStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (ScheduleStatus.COMPLETED, ScheduleStatus.CANCELLED)


class ChangeType(str, Enum):
    """What a history entry records."""

    PERCENTAGE = "percentage"
    STATE = "state"


class EvaluationSource(str, Enum):
    """Where an evaluation decision came from."""

    USER_OVERRIDE = "user_override"
    FEATURE_FLAG = "feature_flag"
    DEFAULT = "default"


# ============================================================
# DATA MODEL
# ============================================================

@dataclass
class UserContext:
    """
    The user a flag is evaluated for.

    Attributes:
        user_id: Stable identifier used for bucketing
        subscription_tier: e.g. "free", "premium"
        level: Progression level used by cohort rules
        is_beta_tester: Member of the beta audience
        attributes: Free-form attributes for `attribute_in` cohort rules
    """
    user_id: str
    subscription_tier: str | None = None
    level: int = 0
    is_beta_tester: bool = False
    attributes: dict[str, Any] = field(default_factory=dict)


@dataclass
class FeatureFlag:
    """
    Feature flag definition.

    A flag with a parent is effectively enabled only while every
    ancestor up to the root is enabled too.
    """
    feature_name: str
    id: UUID = field(default_factory=uuid4)
    description: str | None = None
    is_enabled: bool = False
    rollout_percentage: int = 100
    target_audience: TargetAudience = TargetAudience.ALL
    cohort_rules: CohortRule | None = None
    ab_test_config: ABTestConfig | None = None
    rollout_strategy: RolloutStrategy = RolloutStrategy.IMMEDIATE
    rollout_start_date: datetime | None = None
    rollout_end_date: datetime | None = None
    parent_feature_id: UUID | None = None
    version: int = 1
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class UserFeatureOverride:
    """
    Individual user override for a feature flag.

    Overrides take highest priority - if active, all other rules are ignored.
    """
    user_id: str
    feature_name: str
    is_enabled: bool
    reason: str | None = None
    expires_at: datetime | None = None
    created_at: datetime | None = None

    def is_active(self, now: datetime) -> bool:
        return self.expires_at is None or self.expires_at > now


@dataclass
class RolloutHistoryEntry:
    """Immutable record of one percentage or state change."""
    feature_name: str
    old_percentage: int
    new_percentage: int
    change_reason: str = ""
    change_type: ChangeType = ChangeType.PERCENTAGE
    user_impact_estimate: int | None = None
    created_at: datetime | None = None
    id: int | None = None


@dataclass
class ScheduleStep:
    percentage: int
    execute_at: datetime
    executed: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "percentage": self.percentage,
            "execute_at": to_iso8601(self.execute_at),
            "executed": self.executed,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ScheduleStep":
        execute_at = data["execute_at"]
        if isinstance(execute_at, str):
            execute_at = from_iso8601(execute_at)
        return cls(
            percentage=data["percentage"],
            execute_at=to_utc(execute_at),
            executed=bool(data.get("executed", False)),
        )


@dataclass
class RolloutSchedule:
    """
    Ordered percentage steps for one flag.

    `current_step` indexes the next step to run and only moves forward.
    """
    feature_name: str
    schedule_name: str
    steps: list[ScheduleStep]
    id: UUID = field(default_factory=uuid4)
    status: ScheduleStatus = ScheduleStatus.ACTIVE
    current_step: int = 0
    completed_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def next_step(self) -> ScheduleStep | None:
        if self.current_step < len(self.steps):
            return self.steps[self.current_step]
        return None

    @property
    def progress(self) -> int:
        """Executed steps as a percentage of all steps."""
        if not self.steps:
            return 100
        return self.current_step * 100 // len(self.steps)


@dataclass
class EvaluationResult:
    """
    Result of feature flag evaluation.

    Includes the decision and reason for debugging/logging.
    """
    enabled: bool
    reason: str
    feature_name: str
    user_id: str | None = None
    variant: str | None = None
    source: EvaluationSource = EvaluationSource.FEATURE_FLAG

    @classmethod
    def yes(
        cls,
        feature_name: str,
        reason: str,
        user_id: str | None = None,
        variant: str | None = None,
        source: EvaluationSource = EvaluationSource.FEATURE_FLAG,
    ) -> "EvaluationResult":
        return cls(True, reason, feature_name, user_id, variant, source)

    @classmethod
    def no(
        cls,
        feature_name: str,
        reason: str,
        user_id: str | None = None,
        source: EvaluationSource = EvaluationSource.FEATURE_FLAG,
    ) -> "EvaluationResult":
        return cls(False, reason, feature_name, user_id, None, source)


# ============================================================
# STORAGE CONTRACT
# ============================================================

class FeatureBackend(ABC):
    """
    Abstract backend for flag engine storage.

    Implementations:
    - MemoryFeatureBackend: In-memory (dev/testing)
    - DatabaseFeatureBackend: SQLAlchemy (PostgreSQL)

    Objects returned are detached copies; mutating them has no effect
    until passed back through an update method. Conditional updates
    raise ConflictError when the stored row moved on.
    """

    @abstractmethod
    def transaction(self) -> AsyncContextManager["FeatureBackend"]:
        """
        Group writes into one all-or-nothing unit.

        Re-entrant: a nested transaction joins the outer one.
        """

    # Flags

    @abstractmethod
    async def get_flag(self, feature_name: str) -> FeatureFlag | None:
        """Get a flag by name."""

    @abstractmethod
    async def get_flag_by_id(self, flag_id: UUID) -> FeatureFlag | None:
        """Get a flag by id."""

    @abstractmethod
    async def list_flags(self) -> list[FeatureFlag]:
        """List all flags ordered by name."""

    @abstractmethod
    async def list_children(self, parent_id: UUID) -> list[FeatureFlag]:
        """List flags whose parent is `parent_id`."""

    @abstractmethod
    async def create_flag(self, flag: FeatureFlag) -> FeatureFlag:
        """Create a flag. Raises ConflictError if the name is taken."""

    @abstractmethod
    async def update_flag(self, flag: FeatureFlag, expected_version: int) -> FeatureFlag:
        """
        Store `flag` if the stored version still equals `expected_version`.

        Returns the stored flag with its version bumped.
        Raises NotFoundError or ConflictError.
        """

    @abstractmethod
    async def delete_flag(self, feature_name: str) -> bool:
        """Delete a flag."""

    # Overrides

    @abstractmethod
    async def get_override(self, user_id: str, feature_name: str) -> UserFeatureOverride | None:
        """Get the override for a user and flag, expired or not."""

    @abstractmethod
    async def set_override(self, override: UserFeatureOverride) -> UserFeatureOverride:
        """Upsert by (user_id, feature_name)."""

    @abstractmethod
    async def remove_override(self, user_id: str, feature_name: str) -> bool:
        """Remove override for a user."""

    @abstractmethod
    async def list_overrides(self, feature_name: str) -> list[UserFeatureOverride]:
        """List overrides of a flag."""

    @abstractmethod
    async def delete_overrides(self, feature_name: str) -> int:
        """Delete all overrides of a flag."""

    # History

    @abstractmethod
    async def append_history(self, entry: RolloutHistoryEntry) -> RolloutHistoryEntry:
        """Append an entry. Entries are never updated."""

    @abstractmethod
    async def list_history(self, feature_name: str) -> list[RolloutHistoryEntry]:
        """History of a flag, oldest first."""

    # Schedules

    @abstractmethod
    async def create_schedule(self, schedule: RolloutSchedule) -> RolloutSchedule:
        """Create a schedule."""

    @abstractmethod
    async def get_schedule(self, schedule_id: UUID) -> RolloutSchedule | None:
        """Get a schedule by id."""

    @abstractmethod
    async def list_schedules(
        self,
        feature_name: str | None = None,
        status: ScheduleStatus | None = None,
    ) -> list[RolloutSchedule]:
        """List schedules, oldest first."""

    @abstractmethod
    async def update_schedule(
        self,
        schedule: RolloutSchedule,
        expected_step: int,
        expected_status: ScheduleStatus,
    ) -> RolloutSchedule:
        """
        Store `schedule` if the stored row still has `expected_step`
        and `expected_status`.

        Raises NotFoundError or ConflictError.
        """
