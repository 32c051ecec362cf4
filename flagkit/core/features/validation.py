"""
Input validation for flag engine writes.

Everything here raises ValidationError before any store write happens.
"""

import re
from datetime import datetime
from enum import Enum
from typing import Any, Iterable, TypeVar

from flagkit.utils.timezone import to_utc

from .exceptions import ValidationError
from .interfaces import ScheduleStep

E = TypeVar("E", bound=Enum)

FEATURE_NAME_MAX_LENGTH = 100
FEATURE_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.\-]*$")


def validate_feature_name(feature_name: Any) -> str:
    if not isinstance(feature_name, str) or not feature_name.strip():
        raise ValidationError("Feature name must not be empty")
    if len(feature_name) > FEATURE_NAME_MAX_LENGTH:
        raise ValidationError(
            f"Feature name must be at most {FEATURE_NAME_MAX_LENGTH} characters"
        )
    if not FEATURE_NAME_PATTERN.match(feature_name):
        raise ValidationError(
            f"Invalid feature name {feature_name!r}: use letters, digits, '_', '-' or '.'"
        )
    return feature_name


def validate_percentage(percentage: Any) -> int:
    if isinstance(percentage, bool) or not isinstance(percentage, int):
        raise ValidationError("Rollout percentage must be an integer")
    if not 0 <= percentage <= 100:
        raise ValidationError(
            f"Rollout percentage must be between 0 and 100, got {percentage}"
        )
    return percentage


def parse_enum(enum_cls: type[E], value: Any, label: str) -> E:
    """Coerce a raw value into `enum_cls`."""
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ValidationError(
            f"Unknown {label} {value!r} (expected one of: {allowed})"
        ) from None


def validate_rollout_window(
    start: datetime | None,
    end: datetime | None,
) -> tuple[datetime | None, datetime | None]:
    start, end = to_utc(start), to_utc(end)
    if start and end and end < start:
        raise ValidationError("Rollout end date must not be before the start date")
    return start, end


def _coerce_step(raw: Any) -> ScheduleStep:
    if isinstance(raw, ScheduleStep):
        return ScheduleStep(raw.percentage, raw.execute_at)
    if isinstance(raw, dict):
        if "percentage" not in raw or "execute_at" not in raw:
            raise ValidationError("Schedule step needs 'percentage' and 'execute_at'")
        return ScheduleStep(raw["percentage"], raw["execute_at"])
    raise ValidationError("Schedule step must have a percentage and an execution time")


def validate_schedule_steps(raw_steps: Iterable[Any], now: datetime) -> list[ScheduleStep]:
    """
    Normalise schedule steps.

    Execution times must be in the future and strictly increasing.
    Percentages may go up or down between steps.
    """
    steps = [_coerce_step(raw) for raw in raw_steps]
    if not steps:
        raise ValidationError("Schedule needs at least one step")

    previous: datetime | None = None
    for index, step in enumerate(steps, start=1):
        validate_percentage(step.percentage)
        if not isinstance(step.execute_at, datetime):
            raise ValidationError(f"Step {index}: execution time must be a datetime")
        step.execute_at = to_utc(step.execute_at)
        if step.execute_at < now:
            raise ValidationError(f"Step {index}: execution time is in the past")
        if previous is not None and step.execute_at <= previous:
            raise ValidationError(
                f"Step {index}: execution times must be strictly increasing"
            )
        previous = step.execute_at

    return steps
