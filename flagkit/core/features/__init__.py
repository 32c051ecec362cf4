"""
Feature Flag Engine.

Progressive rollouts with:
- Deterministic percentage bucketing
- Audience and cohort targeting
- Parent/child flag hierarchies
- Weighted A/B variants
- Scheduled gradual rollouts
- Individual overrides
- Append-only audit trail

Usage Levels:

Level 1 - Check a flag for a user:
    from flagkit.core.features import Feature, UserContext

    @router.get("/analytics")
    async def analytics(feature: Feature):
        user = UserContext(user_id="u-42", subscription_tier="premium")
        if await feature.is_enabled("advanced_analytics", user):
            return advanced_data()
        return basic_data()

Level 2 - Decorator style:
    from flagkit.core.features import require_feature

    @router.get("/beta")
    @require_feature("beta_feature")
    async def beta_endpoint(feature: Feature, user: UserContext):
        return beta_data()

Level 3 - Targeting:
    await feature.upsert_flag(
        "premium_reports",
        is_enabled=True,
        rollout_percentage=50,
        target_audience="premium",
        cohort_rules={"type": "min_level", "level": 5},
        ab_test_config={"variants": ["control", "variantA"]},
    )

Level 4 - Gradual rollout:
    await feature.create_schedule(
        "premium_reports",
        "Q3 rollout",
        [
            {"percentage": 25, "execute_at": monday},
            {"percentage": 100, "execute_at": friday},
        ],
    )
    # executed by the Celery beat task `execute_rollout_schedules`
"""

from .exceptions import (
    FeatureFlagError,
    ValidationError,
    InvalidTransitionError,
    NotFoundError,
    ConflictError,
    CycleError,
)

from .interfaces import (
    ChangeType,
    EvaluationResult,
    EvaluationSource,
    FeatureBackend,
    FeatureFlag,
    RolloutHistoryEntry,
    RolloutSchedule,
    RolloutStrategy,
    ScheduleStatus,
    ScheduleStep,
    TargetAudience,
    UserContext,
    UserFeatureOverride,
)

from .targeting import (
    ABTestConfig,
    And,
    AttributeIn,
    BetaTester,
    CohortRule,
    MinLevel,
    Or,
    TierIn,
    Variant,
    parse_ab_test_config,
    parse_cohort_rules,
)

from .bucketing import bucket, in_rollout, assign_variant
from .evaluator import evaluate_flag
from .cache import FlagCache
from .invalidation import GenerationStore, LocalGenerationStore, RedisGenerationStore
from .bulk import BulkFailure, BulkResult
from .scheduler import ExecutionReport, ScheduleFailure
from .service import FeatureService

from .dependencies import (
    Feature,
    build_feature_service,
    get_feature_service,
    get_feature_backend,
)

from .decorators import (
    require_feature,
    feature_variant,
)

from .backends import (
    DatabaseFeatureBackend,
    MemoryFeatureBackend,
)

__all__ = [
    # Errors
    "FeatureFlagError",
    "ValidationError",
    "InvalidTransitionError",
    "NotFoundError",
    "ConflictError",
    "CycleError",
    # Interfaces
    "ChangeType",
    "EvaluationResult",
    "EvaluationSource",
    "FeatureBackend",
    "FeatureFlag",
    "RolloutHistoryEntry",
    "RolloutSchedule",
    "RolloutStrategy",
    "ScheduleStatus",
    "ScheduleStep",
    "TargetAudience",
    "UserContext",
    "UserFeatureOverride",
    # Targeting
    "ABTestConfig",
    "And",
    "AttributeIn",
    "BetaTester",
    "CohortRule",
    "MinLevel",
    "Or",
    "TierIn",
    "Variant",
    "parse_ab_test_config",
    "parse_cohort_rules",
    # Engine
    "bucket",
    "in_rollout",
    "assign_variant",
    "evaluate_flag",
    "FlagCache",
    "GenerationStore",
    "LocalGenerationStore",
    "RedisGenerationStore",
    "BulkFailure",
    "BulkResult",
    "ExecutionReport",
    "ScheduleFailure",
    "FeatureService",
    # Dependencies
    "Feature",
    "build_feature_service",
    "get_feature_service",
    "get_feature_backend",
    # Decorators
    "require_feature",
    "feature_variant",
    # Backends
    "DatabaseFeatureBackend",
    "MemoryFeatureBackend",
]
