"""
Deterministic user bucketing.

A user's bucket for a flag is derived from a hash of the user id and the
flag name only, so it is stable across evaluations and restarts and needs
no stored per-user assignment.
"""

import hashlib

from .targeting import ABTestConfig

VARIANT_SALT = "variant"


def _hash(value: str) -> int:
    return int(hashlib.md5(value.encode()).hexdigest(), 16)


def bucket(user_id: str, feature_name: str) -> int:
    """Map (user, feature) to a stable integer in [0, 100)."""
    return _hash(f"{user_id}:{feature_name}") % 100


def in_rollout(user_id: str, feature_name: str, percentage: int) -> bool:
    """
    Determine if user is in percentage rollout.

    Raising the percentage only ever adds users.
    """
    if percentage <= 0:
        return False
    if percentage >= 100:
        return True
    return bucket(user_id, feature_name) < percentage


def assign_variant(user_id: str, feature_name: str, config: ABTestConfig) -> str:
    """
    Pick a variant for the user.

    Salted differently from `bucket` so variant assignment does not
    correlate with rollout membership.
    """
    point = _hash(f"{user_id}:{feature_name}:{VARIANT_SALT}") % config.total_weight
    return config.pick(point)
