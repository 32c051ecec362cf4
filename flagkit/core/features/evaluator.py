"""
Flag evaluation - the single boolean decision for (flag, user, now).

Evaluation order (first "disabled" wins):
1. Active user override (bypasses everything else)
2. Flag master switch
3. Every ancestor's master switch
4. Rollout window (start/end dates)
5. Target audience (premium / beta)
6. Cohort rules
7. Percentage rollout (deterministic bucket)
8. A/B variant assignment

Pure: no I/O, no clock reads. The service loads the flag, its ancestor
chain and the override, then calls `evaluate_flag`.
"""

from collections.abc import Collection, Sequence
from datetime import datetime

from .bucketing import assign_variant, in_rollout
from .interfaces import (
    EvaluationResult,
    EvaluationSource,
    FeatureFlag,
    TargetAudience,
    UserContext,
    UserFeatureOverride,
)

DEFAULT_PREMIUM_TIERS = frozenset({"premium", "pro", "enterprise"})


def matches_audience(
    audience: TargetAudience,
    user: UserContext | None,
    premium_tiers: Collection[str] = DEFAULT_PREMIUM_TIERS,
) -> bool:
    if audience == TargetAudience.ALL:
        return True
    if user is None:
        return False
    if audience == TargetAudience.PREMIUM:
        return user.subscription_tier in premium_tiers
    if audience == TargetAudience.BETA:
        return user.is_beta_tester
    return False


def evaluate_flag(
    flag: FeatureFlag,
    ancestors: Sequence[FeatureFlag] | None,
    user: UserContext | None,
    now: datetime,
    override: UserFeatureOverride | None = None,
    premium_tiers: Collection[str] = DEFAULT_PREMIUM_TIERS,
) -> EvaluationResult:
    """
    Evaluate a flag for a user.

    Args:
        flag: The flag definition
        ancestors: Parent chain up to the root, or None if the chain
            could not be resolved (treated as disabled)
        user: User context (None for anonymous checks)
        now: Evaluation time (timezone-aware)
        override: The stored override for (user, flag), if any
        premium_tiers: Tiers matching the premium audience

    Returns:
        EvaluationResult with the decision and reason
    """
    name = flag.feature_name
    user_id = user.user_id if user else None

    # 1. Individual override
    if user is not None and override is not None and override.is_active(now):
        return EvaluationResult(
            enabled=override.is_enabled,
            reason=f"Override: {override.reason or 'User override'}",
            feature_name=name,
            user_id=user_id,
            source=EvaluationSource.USER_OVERRIDE,
        )

    # 2. Master switch
    if not flag.is_enabled:
        return EvaluationResult.no(name, "Flag disabled globally", user_id)

    # 3. Hierarchy
    if ancestors is None:
        return EvaluationResult.no(name, "Parent chain could not be resolved", user_id)
    for ancestor in ancestors:
        if not ancestor.is_enabled:
            return EvaluationResult.no(
                name, f"Parent '{ancestor.feature_name}' disabled", user_id
            )

    # 4. Rollout window
    if flag.rollout_start_date and now < flag.rollout_start_date:
        return EvaluationResult.no(name, "Rollout has not started", user_id)
    if flag.rollout_end_date and now > flag.rollout_end_date:
        return EvaluationResult.no(name, "Rollout has ended", user_id)

    # 5. Audience
    if not matches_audience(flag.target_audience, user, premium_tiers):
        return EvaluationResult.no(
            name, f"User not in '{flag.target_audience.value}' audience", user_id
        )

    # 6. Cohort rules
    if flag.cohort_rules is not None:
        if user is None:
            return EvaluationResult.no(name, "Cohort rules require user", user_id)
        if not flag.cohort_rules.matches(user):
            return EvaluationResult.no(name, "User not in cohort", user_id)

    # 7. Percentage rollout
    percentage = flag.rollout_percentage
    if percentage < 100:
        if user is None:
            return EvaluationResult.no(name, "Percentage rollout requires user", user_id)
        if not in_rollout(user.user_id, name, percentage):
            return EvaluationResult.no(name, f"Outside {percentage}% rollout", user_id)

    # 8. A/B variant
    variant = None
    if flag.ab_test_config is not None and user is not None:
        variant = assign_variant(user.user_id, name, flag.ab_test_config)

    return EvaluationResult.yes(name, "All conditions met", user_id, variant=variant)
