"""
Feature Flag Models - SQLAlchemy models for the flag engine.

Tables:
- feature_flags: Flag definitions with targeting rules
- feature_flag_overrides: Individual user overrides
- rollout_history: Append-only audit trail of percentage/state changes
- rollout_schedules: Timed percentage steps per flag
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from flagkit.models.base import Base, TimestampMixin, UUIDMixin, VersionMixin

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


class FeatureFlagModel(Base, UUIDMixin, TimestampMixin, VersionMixin):
    """
    Feature flag definition.

    Stores the flag configuration and targeting rules.
    """

    __tablename__ = "feature_flags"
    __table_args__ = (
        Index("idx_feature_flags_parent", "parent_feature_id"),
    )

    feature_name: Mapped[str] = mapped_column(
        String(100),
        unique=True,
        nullable=False,
        index=True,
    )
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Global settings
    is_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    rollout_percentage: Mapped[int] = mapped_column(Integer, default=100, nullable=False)
    target_audience: Mapped[str] = mapped_column(String(20), default="all", nullable=False)
    rollout_strategy: Mapped[str] = mapped_column(
        String(20), default="immediate", nullable=False
    )

    # Targeting
    # Example: {"type": "tier_in", "tiers": ["premium", "pro"]}
    cohort_rules: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    # Example: {"variants": [{"name": "control", "weight": 50}, ...]}
    ab_test_config: Mapped[dict | None] = mapped_column(JSONType, nullable=True)

    # Rollout window
    rollout_start_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    rollout_end_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Hierarchy
    parent_feature_id: Mapped[UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("feature_flags.id", ondelete="RESTRICT"),
        nullable=True,
    )

    def __repr__(self) -> str:
        status = "ON" if self.is_enabled else "OFF"
        return f"<FeatureFlag {self.feature_name} [{status} {self.rollout_percentage}%]>"


class FeatureFlagOverride(Base):
    """
    Individual user override for a feature flag.

    Overrides have highest priority:
    - is_enabled=True: Force feature ON for user
    - is_enabled=False: Force feature OFF for user
    """

    __tablename__ = "feature_flag_overrides"
    __table_args__ = (
        Index("idx_feature_flag_overrides_feature", "feature_name"),
    )

    user_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    feature_name: Mapped[str] = mapped_column(String(100), primary_key=True)
    is_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False)
    reason: Mapped[str | None] = mapped_column(String(500), nullable=True)

    # Optional expiration
    expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )

    def __repr__(self) -> str:
        status = "ON" if self.is_enabled else "OFF"
        return f"<FeatureFlagOverride {self.feature_name}={status} for {self.user_id}>"


class RolloutHistoryModel(Base):
    """
    One percentage or state change of a flag.

    Never updated or deleted by the engine. The integer key keeps entries
    with equal timestamps in insertion order.
    """

    __tablename__ = "rollout_history"
    __table_args__ = (
        Index("idx_rollout_history_feature_created", "feature_name", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    feature_name: Mapped[str] = mapped_column(String(100), nullable=False)
    old_percentage: Mapped[int] = mapped_column(Integer, nullable=False)
    new_percentage: Mapped[int] = mapped_column(Integer, nullable=False)
    change_reason: Mapped[str] = mapped_column(Text, default="", nullable=False)
    change_type: Mapped[str] = mapped_column(String(20), default="percentage", nullable=False)
    user_impact_estimate: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    def __repr__(self) -> str:
        return (
            f"<RolloutHistory {self.feature_name} "
            f"{self.old_percentage}->{self.new_percentage}>"
        )


class RolloutScheduleModel(Base, UUIDMixin, TimestampMixin):
    """
    Scheduled gradual rollout of one flag.

    schedule_data holds the ordered steps:
        [{"percentage": 25, "execute_at": "2024-01-15T14:30:00.000000Z", "executed": false}, ...]
    """

    __tablename__ = "rollout_schedules"
    __table_args__ = (
        Index("idx_rollout_schedules_feature", "feature_name"),
        Index("idx_rollout_schedules_status", "status"),
    )

    feature_name: Mapped[str] = mapped_column(String(100), nullable=False)
    schedule_name: Mapped[str] = mapped_column(String(200), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="active", nullable=False)
    current_step: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    schedule_data: Mapped[list] = mapped_column(JSONType, nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    def __repr__(self) -> str:
        return f"<RolloutSchedule {self.schedule_name} [{self.status}] step {self.current_step}>"
