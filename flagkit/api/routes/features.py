"""
Feature flags API routes.
"""

from typing import Optional

from fastapi import APIRouter, Query, Response, status

from flagkit.core.features import Feature, NotFoundError, RolloutStrategy, TargetAudience
from flagkit.schemas.feature import (
    BulkOverrideRequest,
    BulkResultResponse,
    BulkRolloutRequest,
    BulkToggleRequest,
    CascadeRequest,
    EvaluateRequest,
    EvaluationResponse,
    FeatureFlagResponse,
    FeatureFlagUpsert,
    OverrideRequest,
    OverrideResponse,
    RolloutHistoryResponse,
    RolloutUpdate,
    ToggleRequest,
    UserContextSchema,
)

router = APIRouter()


# ============================================================
# EVALUATION
# ============================================================

@router.post("/evaluate-all")
async def evaluate_all(
    user: UserContextSchema,
    feature: Feature,
) -> dict[str, bool]:
    """
    Get all feature flags for a user.

    Returns a dictionary of feature_name -> enabled status.
    Useful for frontend to fetch all flags at once.
    """
    return await feature.get_all_flags(user.to_context())


@router.post("/{feature_name}/evaluate")
async def evaluate_flag(
    feature_name: str,
    data: EvaluateRequest,
    feature: Feature,
) -> EvaluationResponse:
    """Evaluate one flag for a user, with the reason for the decision."""
    user = data.user.to_context() if data.user else None
    result = await feature.evaluate(feature_name, user)
    return EvaluationResponse.model_validate(result)


# ============================================================
# BULK
# ============================================================

@router.post("/bulk/rollout")
async def bulk_set_rollout(
    data: BulkRolloutRequest,
    feature: Feature,
) -> BulkResultResponse:
    """Set the same rollout percentage on many flags; failures are per flag."""
    result = await feature.bulk_set_rollout_percentage(
        data.feature_names, data.percentage, data.reason
    )
    return BulkResultResponse.model_validate(result)


@router.post("/bulk/enabled")
async def bulk_toggle(
    data: BulkToggleRequest,
    feature: Feature,
) -> BulkResultResponse:
    result = await feature.bulk_toggle(data.feature_names, data.enabled, data.reason)
    return BulkResultResponse.model_validate(result)


# ============================================================
# DEFINITIONS
# ============================================================

@router.get("")
async def list_flags(
    feature: Feature,
    enabled: Optional[bool] = None,
    target_audience: Optional[TargetAudience] = None,
    rollout_strategy: Optional[RolloutStrategy] = None,
    parent: Optional[str] = Query(default=None, description="Only children of this flag"),
    roots_only: bool = False,
) -> list[FeatureFlagResponse]:
    """List feature flags, optionally filtered."""
    flags = await feature.list_flags(
        enabled=enabled,
        target_audience=target_audience,
        rollout_strategy=rollout_strategy,
        parent_name=parent,
        roots_only=roots_only,
    )
    return [FeatureFlagResponse.from_flag(f) for f in flags]


@router.put("/{feature_name}")
async def upsert_flag(
    feature_name: str,
    data: FeatureFlagUpsert,
    feature: Feature,
) -> FeatureFlagResponse:
    """Create or replace a feature flag definition."""
    flag = await feature.upsert_flag(feature_name, **data.model_dump())
    return FeatureFlagResponse.from_flag(flag)


@router.get("/{feature_name}")
async def get_flag(
    feature_name: str,
    feature: Feature,
) -> FeatureFlagResponse:
    flag = await feature.require_flag(feature_name)
    return FeatureFlagResponse.from_flag(flag)


@router.delete("/{feature_name}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_flag(
    feature_name: str,
    feature: Feature,
) -> Response:
    """
    Delete a feature flag.

    Rejected (422) while child flags reference it.
    """
    if not await feature.delete_flag(feature_name):
        raise NotFoundError(f"Feature flag '{feature_name}' not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ============================================================
# CHANGES
# ============================================================

@router.put("/{feature_name}/rollout")
async def set_rollout_percentage(
    feature_name: str,
    data: RolloutUpdate,
    feature: Feature,
) -> FeatureFlagResponse:
    flag = await feature.set_rollout_percentage(feature_name, data.percentage, data.reason)
    return FeatureFlagResponse.from_flag(flag)


@router.put("/{feature_name}/enabled")
async def toggle_flag(
    feature_name: str,
    data: ToggleRequest,
    feature: Feature,
) -> FeatureFlagResponse:
    flag = await feature.toggle_flag(feature_name, data.enabled, data.reason)
    return FeatureFlagResponse.from_flag(flag)


@router.put("/{feature_name}/cascade")
async def toggle_parent_and_children(
    feature_name: str,
    data: CascadeRequest,
    feature: Feature,
) -> list[FeatureFlagResponse]:
    """Toggle a flag and all its direct children together (all or nothing)."""
    flags = await feature.toggle_parent_and_children(feature_name, data.enabled)
    return [FeatureFlagResponse.from_flag(f) for f in flags]


# ============================================================
# HIERARCHY / HISTORY
# ============================================================

@router.get("/{feature_name}/children")
async def get_children(
    feature_name: str,
    feature: Feature,
) -> list[FeatureFlagResponse]:
    flags = await feature.get_children(feature_name)
    return [FeatureFlagResponse.from_flag(f) for f in flags]


@router.get("/{feature_name}/history")
async def get_rollout_history(
    feature_name: str,
    feature: Feature,
) -> list[RolloutHistoryResponse]:
    """Percentage and state changes, oldest first."""
    entries = await feature.get_rollout_history(feature_name)
    return [RolloutHistoryResponse.model_validate(e) for e in entries]


# ============================================================
# OVERRIDES
# ============================================================

@router.get("/{feature_name}/overrides")
async def list_overrides(
    feature_name: str,
    feature: Feature,
    include_expired: bool = False,
) -> list[OverrideResponse]:
    overrides = await feature.list_overrides(feature_name, include_expired)
    return [OverrideResponse.model_validate(o) for o in overrides]


@router.post("/{feature_name}/overrides/bulk")
async def bulk_set_overrides(
    feature_name: str,
    data: BulkOverrideRequest,
    feature: Feature,
) -> BulkResultResponse:
    result = await feature.bulk_set_user_override(
        feature_name,
        data.user_ids,
        data.is_enabled,
        data.reason,
        data.expires_at,
    )
    return BulkResultResponse.model_validate(result)


@router.put("/{feature_name}/overrides/{user_id}")
async def set_override(
    feature_name: str,
    user_id: str,
    data: OverrideRequest,
    feature: Feature,
) -> OverrideResponse:
    override = await feature.set_user_override(
        user_id,
        feature_name,
        data.is_enabled,
        data.reason,
        data.expires_at,
    )
    return OverrideResponse.model_validate(override)


@router.delete("/{feature_name}/overrides/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_override(
    feature_name: str,
    user_id: str,
    feature: Feature,
) -> Response:
    if not await feature.remove_user_override(user_id, feature_name):
        raise NotFoundError(f"No override for user '{user_id}' on '{feature_name}'")
    return Response(status_code=status.HTTP_204_NO_CONTENT)
