"""
Feature flag engine errors.

All errors are recoverable at the call site. The HTTP layer maps them to
status codes in `flagkit.main`.
"""


class FeatureFlagError(Exception):
    """Base class for all flag engine errors."""

    error_code = "feature_flag_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(FeatureFlagError):
    """Malformed input. Raised before any store write."""

    error_code = "validation_error"


class InvalidTransitionError(ValidationError):
    """Schedule status change not allowed by the state machine."""

    error_code = "invalid_transition"


class NotFoundError(FeatureFlagError):
    """Referenced flag, schedule or override does not exist."""

    error_code = "not_found"


class ConflictError(FeatureFlagError):
    """A conditional write lost a race (version mismatch)."""

    error_code = "conflict"


class CycleError(FeatureFlagError):
    """A parent/child assignment would make a flag its own ancestor."""

    error_code = "hierarchy_cycle"
