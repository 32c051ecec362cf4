"""
Timezone Utilities.

Golden Rules:
1. Storage: Always UTC
2. API: ISO 8601 with Z suffix
3. Comparisons: only between timezone-aware datetimes

Rollout windows, schedule steps and override expiry are all compared
against `utc_now()` (or an injected clock returning aware datetimes).
"""

from datetime import datetime, timezone

# UTC constant
UTC = timezone.utc


def utc_now() -> datetime:
    """
    Get current time in UTC (timezone-aware).

    Always use this instead of datetime.utcnow() which returns
    naive datetime.
    """
    return datetime.now(UTC)


def to_utc(dt: datetime | None) -> datetime | None:
    """
    Convert datetime to UTC.

    Naive datetimes are assumed to already be UTC. SQLite hands back
    naive values for `DateTime(timezone=True)` columns, so every value
    read from storage goes through here.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def to_iso8601(dt: datetime) -> str:
    """
    Format as ISO 8601 with Z suffix.

    Usage:
        iso = to_iso8601(step.execute_at)
        # "2024-01-15T14:30:00.000000Z"
    """
    return to_utc(dt).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def from_iso8601(iso_string: str) -> datetime:
    """
    Parse ISO 8601 string to UTC datetime.

    Handles:
    - "2024-01-15T14:30:00Z"
    - "2024-01-15T09:30:00-05:00"
    """
    if iso_string.endswith("Z"):
        iso_string = iso_string[:-1] + "+00:00"
    return to_utc(datetime.fromisoformat(iso_string))
