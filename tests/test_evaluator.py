"""
Tests for the pure flag evaluation.
"""

from datetime import datetime, timedelta

import pytest

from flagkit.core.features import (
    ABTestConfig,
    EvaluationSource,
    FeatureFlag,
    MinLevel,
    TargetAudience,
    UserContext,
    UserFeatureOverride,
    Variant,
    bucket,
    evaluate_flag,
)
from flagkit.utils.timezone import UTC

START = datetime(2024, 1, 15, 12, 0, tzinfo=UTC)


def make_flag(**kwargs) -> FeatureFlag:
    kwargs.setdefault("feature_name", "f")
    kwargs.setdefault("is_enabled", True)
    return FeatureFlag(**kwargs)


def user_with_bucket(feature_name: str, below: int) -> UserContext:
    """First synthetic user whose bucket is below `below`."""
    for i in range(10_000):
        if bucket(f"user-{i}", feature_name) < below:
            return UserContext(f"user-{i}")
    raise AssertionError("no user found")


def user_outside(feature_name: str, at_least: int) -> UserContext:
    for i in range(10_000):
        if bucket(f"user-{i}", feature_name) >= at_least:
            return UserContext(f"user-{i}")
    raise AssertionError("no user found")


def test_enabled_flag_for_everyone():
    result = evaluate_flag(make_flag(), [], UserContext("u"), START)

    assert result.enabled
    assert result.source == EvaluationSource.FEATURE_FLAG
    assert result.reason == "All conditions met"


def test_disabled_flag():
    result = evaluate_flag(make_flag(is_enabled=False), [], UserContext("u"), START)

    assert not result.enabled
    assert result.reason == "Flag disabled globally"


def test_override_beats_everything():
    """An enabling override wins even over a disabled 0% flag."""
    flag = make_flag(is_enabled=False, rollout_percentage=0)
    override = UserFeatureOverride("u", "f", is_enabled=True, reason="support ticket")

    result = evaluate_flag(flag, [], UserContext("u"), START, override=override)

    assert result.enabled
    assert result.source == EvaluationSource.USER_OVERRIDE
    assert "support ticket" in result.reason


def test_disabling_override():
    override = UserFeatureOverride("u", "f", is_enabled=False)
    result = evaluate_flag(make_flag(), [], UserContext("u"), START, override=override)

    assert not result.enabled
    assert result.source == EvaluationSource.USER_OVERRIDE


def test_expired_override_is_ignored():
    flag = make_flag(is_enabled=False)
    override = UserFeatureOverride(
        "u", "f", is_enabled=True, expires_at=START - timedelta(seconds=1)
    )

    result = evaluate_flag(flag, [], UserContext("u"), START, override=override)

    assert not result.enabled
    assert result.source == EvaluationSource.FEATURE_FLAG


def test_override_expiring_exactly_now_is_ignored():
    override = UserFeatureOverride("u", "f", is_enabled=True, expires_at=START)
    result = evaluate_flag(
        make_flag(is_enabled=False), [], UserContext("u"), START, override=override
    )
    assert not result.enabled


def test_disabled_ancestor_disables_child():
    root = make_flag(feature_name="root", is_enabled=False)
    parent = make_flag(feature_name="parent")
    result = evaluate_flag(make_flag(), [parent, root], UserContext("u"), START)

    assert not result.enabled
    assert result.reason == "Parent 'root' disabled"


def test_unresolvable_parent_chain_is_disabled():
    result = evaluate_flag(make_flag(), None, UserContext("u"), START)
    assert not result.enabled


def test_rollout_window():
    flag = make_flag(
        rollout_start_date=START + timedelta(days=1),
        rollout_end_date=START + timedelta(days=2),
    )
    user = UserContext("u")

    assert not evaluate_flag(flag, [], user, START).enabled
    assert evaluate_flag(flag, [], user, START + timedelta(days=1, hours=1)).enabled
    assert not evaluate_flag(flag, [], user, START + timedelta(days=3)).enabled


@pytest.mark.parametrize(
    "tier,expected",
    [("premium", True), ("pro", True), ("enterprise", True), ("free", False), (None, False)],
)
def test_premium_audience(tier, expected):
    flag = make_flag(target_audience=TargetAudience.PREMIUM)
    result = evaluate_flag(flag, [], UserContext("u", subscription_tier=tier), START)
    assert result.enabled is expected


def test_premium_tiers_are_configurable():
    flag = make_flag(target_audience=TargetAudience.PREMIUM)
    user = UserContext("u", subscription_tier="gold")

    assert not evaluate_flag(flag, [], user, START).enabled
    assert evaluate_flag(flag, [], user, START, premium_tiers={"gold"}).enabled


def test_beta_audience():
    flag = make_flag(target_audience=TargetAudience.BETA)

    assert evaluate_flag(flag, [], UserContext("u", is_beta_tester=True), START).enabled
    assert not evaluate_flag(flag, [], UserContext("u"), START).enabled
    assert not evaluate_flag(flag, [], None, START).enabled


def test_cohort_rules():
    flag = make_flag(cohort_rules=MinLevel(5))

    assert evaluate_flag(flag, [], UserContext("u", level=5), START).enabled
    result = evaluate_flag(flag, [], UserContext("u", level=4), START)
    assert not result.enabled
    assert result.reason == "User not in cohort"
    assert not evaluate_flag(flag, [], None, START).enabled


def test_percentage_rollout():
    flag = make_flag(rollout_percentage=30)

    inside = user_with_bucket("f", 30)
    outside = user_outside("f", 30)

    assert evaluate_flag(flag, [], inside, START).enabled
    result = evaluate_flag(flag, [], outside, START)
    assert not result.enabled
    assert result.reason == "Outside 30% rollout"


def test_zero_percent_disables_everyone():
    flag = make_flag(rollout_percentage=0)
    assert not any(
        evaluate_flag(flag, [], UserContext(f"user-{i}"), START).enabled
        for i in range(500)
    )


def test_partial_rollout_needs_a_user():
    flag = make_flag(rollout_percentage=50)
    assert not evaluate_flag(flag, [], None, START).enabled
    assert evaluate_flag(make_flag(), [], None, START).enabled


def test_variant_assigned_when_enabled():
    flag = make_flag(ab_test_config=ABTestConfig((Variant("control"), Variant("variantA"))))

    variants = {
        evaluate_flag(flag, [], UserContext(f"user-{i}"), START).variant
        for i in range(100)
    }
    assert variants == {"control", "variantA"}


def test_no_variant_when_disabled():
    flag = make_flag(
        is_enabled=False,
        ab_test_config=ABTestConfig((Variant("control"),)),
    )
    assert evaluate_flag(flag, [], UserContext("u"), START).variant is None
