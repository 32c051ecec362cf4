"""Feature flag schemas."""

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from flagkit.core.features import (
    ChangeType,
    EvaluationSource,
    FeatureFlag,
    RolloutStrategy,
    TargetAudience,
    UserContext,
)


# ============================================================
# EVALUATION
# ============================================================

class UserContextSchema(BaseModel):
    """User a flag is evaluated for."""

    user_id: str = Field(..., min_length=1, max_length=100)
    subscription_tier: Optional[str] = None
    level: int = Field(default=0, ge=0)
    is_beta_tester: bool = False
    attributes: dict[str, Any] = Field(default_factory=dict)

    def to_context(self) -> UserContext:
        return UserContext(
            user_id=self.user_id,
            subscription_tier=self.subscription_tier,
            level=self.level,
            is_beta_tester=self.is_beta_tester,
            attributes=dict(self.attributes),
        )


class EvaluateRequest(BaseModel):
    user: Optional[UserContextSchema] = None


class EvaluationResponse(BaseModel):
    feature_name: str
    enabled: bool
    variant: Optional[str] = None
    reason: str
    source: EvaluationSource

    model_config = {"from_attributes": True}


# ============================================================
# DEFINITIONS
# ============================================================

class FeatureFlagUpsert(BaseModel):
    """Full flag definition (PUT semantics: omitted fields take defaults)."""

    description: Optional[str] = None
    is_enabled: bool = False
    rollout_percentage: int = Field(default=100, ge=0, le=100)
    target_audience: TargetAudience = TargetAudience.ALL
    cohort_rules: Optional[dict[str, Any]] = None
    ab_test_config: Optional[dict[str, Any]] = None
    rollout_strategy: RolloutStrategy = RolloutStrategy.IMMEDIATE
    rollout_start_date: Optional[datetime] = None
    rollout_end_date: Optional[datetime] = None
    parent_feature: Optional[str] = Field(default=None, description="Parent flag name")
    reason: str = ""


class FeatureFlagResponse(BaseModel):
    """Feature flag response."""

    id: UUID
    feature_name: str
    description: Optional[str]
    is_enabled: bool
    rollout_percentage: int
    target_audience: TargetAudience
    rollout_strategy: RolloutStrategy
    cohort_rules: Optional[dict[str, Any]]
    ab_test_config: Optional[dict[str, Any]]
    rollout_start_date: Optional[datetime]
    rollout_end_date: Optional[datetime]
    parent_feature_id: Optional[UUID]
    version: int
    created_at: Optional[datetime]
    updated_at: Optional[datetime]

    @classmethod
    def from_flag(cls, flag: FeatureFlag) -> "FeatureFlagResponse":
        return cls(
            id=flag.id,
            feature_name=flag.feature_name,
            description=flag.description,
            is_enabled=flag.is_enabled,
            rollout_percentage=flag.rollout_percentage,
            target_audience=flag.target_audience,
            rollout_strategy=flag.rollout_strategy,
            cohort_rules=flag.cohort_rules.to_dict() if flag.cohort_rules else None,
            ab_test_config=flag.ab_test_config.to_dict() if flag.ab_test_config else None,
            rollout_start_date=flag.rollout_start_date,
            rollout_end_date=flag.rollout_end_date,
            parent_feature_id=flag.parent_feature_id,
            version=flag.version,
            created_at=flag.created_at,
            updated_at=flag.updated_at,
        )


# ============================================================
# CHANGES
# ============================================================

class RolloutUpdate(BaseModel):
    percentage: int
    reason: str = ""


class ToggleRequest(BaseModel):
    enabled: bool
    reason: Optional[str] = None


class CascadeRequest(BaseModel):
    enabled: bool


class BulkRolloutRequest(BaseModel):
    feature_names: list[str] = Field(..., min_length=1)
    percentage: int
    reason: str = ""


class BulkToggleRequest(BaseModel):
    feature_names: list[str] = Field(..., min_length=1)
    enabled: bool
    reason: Optional[str] = None


class BulkFailureResponse(BaseModel):
    name: str
    error: str
    error_code: str

    model_config = {"from_attributes": True}


class BulkResultResponse(BaseModel):
    succeeded: list[str]
    failed: list[BulkFailureResponse]

    model_config = {"from_attributes": True}


# ============================================================
# OVERRIDES
# ============================================================

class OverrideRequest(BaseModel):
    is_enabled: bool
    reason: Optional[str] = Field(default=None, max_length=500)
    expires_at: Optional[datetime] = None


class BulkOverrideRequest(OverrideRequest):
    user_ids: list[str] = Field(..., min_length=1)


class OverrideResponse(BaseModel):
    user_id: str
    feature_name: str
    is_enabled: bool
    reason: Optional[str]
    expires_at: Optional[datetime]
    created_at: Optional[datetime]

    model_config = {"from_attributes": True}


# ============================================================
# HISTORY
# ============================================================

class RolloutHistoryResponse(BaseModel):
    id: Optional[int]
    feature_name: str
    old_percentage: int
    new_percentage: int
    change_reason: str
    change_type: ChangeType
    user_impact_estimate: Optional[int]
    created_at: Optional[datetime]

    model_config = {"from_attributes": True}
