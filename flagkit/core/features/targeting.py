"""
Targeting rules - cohort predicates and A/B variant configuration.

Cohort rules are a small closed set of predicate types instead of a free
JSON blob, so every rule the evaluator sees is one it knows how to match:

    TierIn({"premium", "pro"})
    MinLevel(5)
    BetaTester()
    AttributeIn("country", ("DE", "FR"))
    And((TierIn(...), MinLevel(5)))
    Or((...))

Stored/API form is tagged JSON:

    {"type": "and", "rules": [
        {"type": "tier_in", "tiers": ["premium", "pro"]},
        {"type": "min_level", "level": 5}
    ]}

The untagged shape `{"subscription_tiers": [...], "min_level": 5}` is
still accepted and read as an `And` of its parts.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from .exceptions import ValidationError

if TYPE_CHECKING:
    from .interfaces import UserContext


# ============================================================
# COHORT RULES
# ============================================================

class CohortRule(ABC):
    """A predicate over user attributes."""

    @abstractmethod
    def matches(self, user: UserContext) -> bool:
        """Return True if the user belongs to the cohort."""

    @abstractmethod
    def to_dict(self) -> dict[str, Any]:
        """Tagged JSON form."""


@dataclass(frozen=True)
class TierIn(CohortRule):
    tiers: frozenset[str]

    def matches(self, user: UserContext) -> bool:
        return user.subscription_tier in self.tiers

    def to_dict(self) -> dict[str, Any]:
        return {"type": "tier_in", "tiers": sorted(self.tiers)}


@dataclass(frozen=True)
class MinLevel(CohortRule):
    level: int

    def matches(self, user: UserContext) -> bool:
        return user.level >= self.level

    def to_dict(self) -> dict[str, Any]:
        return {"type": "min_level", "level": self.level}


@dataclass(frozen=True)
class BetaTester(CohortRule):
    def matches(self, user: UserContext) -> bool:
        return user.is_beta_tester

    def to_dict(self) -> dict[str, Any]:
        return {"type": "beta_tester"}


@dataclass(frozen=True)
class AttributeIn(CohortRule):
    """Free-form attribute must be one of the listed values."""

    name: str
    values: tuple[Any, ...]

    def matches(self, user: UserContext) -> bool:
        return user.attributes.get(self.name) in self.values

    def to_dict(self) -> dict[str, Any]:
        return {"type": "attribute_in", "name": self.name, "values": list(self.values)}


@dataclass(frozen=True)
class And(CohortRule):
    rules: tuple[CohortRule, ...]

    def matches(self, user: UserContext) -> bool:
        return all(rule.matches(user) for rule in self.rules)

    def to_dict(self) -> dict[str, Any]:
        return {"type": "and", "rules": [rule.to_dict() for rule in self.rules]}


@dataclass(frozen=True)
class Or(CohortRule):
    rules: tuple[CohortRule, ...]

    def matches(self, user: UserContext) -> bool:
        return any(rule.matches(user) for rule in self.rules)

    def to_dict(self) -> dict[str, Any]:
        return {"type": "or", "rules": [rule.to_dict() for rule in self.rules]}


def _require_int(value: Any, field_name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"Cohort rule field '{field_name}' must be an integer")
    return value


def _require_str_list(value: Any, field_name: str) -> list[str]:
    if not isinstance(value, list) or not value:
        raise ValidationError(f"Cohort rule field '{field_name}' must be a non-empty list")
    if not all(isinstance(item, str) and item for item in value):
        raise ValidationError(f"Cohort rule field '{field_name}' must contain strings")
    return value


def _parse_children(value: Any, kind: str) -> tuple[CohortRule, ...]:
    if not isinstance(value, list) or not value:
        raise ValidationError(f"'{kind}' rule needs a non-empty 'rules' list")
    return tuple(_parse_rule(item) for item in value)


def _parse_min_level(value: Any, field_name: str) -> MinLevel:
    level = _require_int(value, field_name)
    if level < 0:
        raise ValidationError(f"Cohort rule field '{field_name}' must be >= 0")
    return MinLevel(level)


def _parse_tagged(data: dict[str, Any]) -> CohortRule:
    kind = data["type"]

    if kind == "tier_in":
        return TierIn(frozenset(_require_str_list(data.get("tiers"), "tiers")))
    if kind == "min_level":
        return _parse_min_level(data.get("level"), "level")
    if kind == "beta_tester":
        return BetaTester()
    if kind == "attribute_in":
        name = data.get("name")
        values = data.get("values")
        if not isinstance(name, str) or not name:
            raise ValidationError("'attribute_in' rule needs a 'name'")
        if not isinstance(values, list) or not values:
            raise ValidationError("'attribute_in' rule needs a non-empty 'values' list")
        return AttributeIn(name, tuple(values))
    if kind == "and":
        return And(_parse_children(data.get("rules"), kind))
    if kind == "or":
        return Or(_parse_children(data.get("rules"), kind))

    raise ValidationError(f"Unknown cohort rule type: {kind!r}")


def _parse_untagged(data: dict[str, Any]) -> CohortRule:
    parts: list[CohortRule] = []

    for key, value in data.items():
        if key == "subscription_tiers":
            parts.append(TierIn(frozenset(_require_str_list(value, key))))
        elif key == "min_level":
            parts.append(_parse_min_level(value, key))
        elif key == "beta_only":
            if value:
                parts.append(BetaTester())
        elif key == "attributes":
            if not isinstance(value, dict):
                raise ValidationError("'attributes' must be an object")
            for name, expected in value.items():
                allowed = expected if isinstance(expected, list) else [expected]
                parts.append(AttributeIn(name, tuple(allowed)))
        else:
            raise ValidationError(f"Unknown cohort rule key: {key!r}")

    if len(parts) == 1:
        return parts[0]
    return And(tuple(parts))


def _parse_rule(data: Any) -> CohortRule:
    if isinstance(data, CohortRule):
        return data
    if not isinstance(data, dict):
        raise ValidationError("Cohort rule must be an object")
    if "type" in data:
        return _parse_tagged(data)
    return _parse_untagged(data)


def parse_cohort_rules(data: Any) -> CohortRule | None:
    """
    Build a CohortRule from its JSON form.

    Empty input means "no cohort restriction". Raises ValidationError
    for anything else it cannot read.
    """
    if data is None or data == {}:
        return None
    return _parse_rule(data)


# ============================================================
# A/B TEST CONFIG
# ============================================================

@dataclass(frozen=True)
class Variant:
    name: str
    weight: int = 1


@dataclass(frozen=True)
class ABTestConfig:
    """
    Named variants with relative traffic weights.

    `{"variants": ["control", "variantA"]}` is an even split;
    `{"variants": [{"name": "control", "weight": 80}, {"name": "variantA", "weight": 20}]}`
    sends 80% of eligible users to control.
    """

    variants: tuple[Variant, ...]

    @property
    def total_weight(self) -> int:
        return sum(v.weight for v in self.variants)

    def pick(self, point: int) -> str:
        """Map a point in [0, total_weight) onto a variant name."""
        cumulative = 0
        for variant in self.variants:
            cumulative += variant.weight
            if point < cumulative:
                return variant.name
        return self.variants[-1].name

    def to_dict(self) -> dict[str, Any]:
        return {
            "variants": [{"name": v.name, "weight": v.weight} for v in self.variants],
        }


def _parse_variant(item: Any) -> Variant:
    if isinstance(item, Variant):
        return item
    if isinstance(item, str) and item:
        return Variant(item)
    if isinstance(item, dict):
        name = item.get("name")
        weight = item.get("weight", 1)
        if not isinstance(name, str) or not name:
            raise ValidationError("Variant needs a non-empty 'name'")
        if isinstance(weight, bool) or not isinstance(weight, int) or weight <= 0:
            raise ValidationError(f"Variant '{name}' weight must be a positive integer")
        return Variant(name, weight)
    raise ValidationError("Variant must be a name or an object with 'name' and 'weight'")


def parse_ab_test_config(data: Any) -> ABTestConfig | None:
    """
    Build an ABTestConfig from its JSON form.

    Accepts `{"variants": [...]}` or a `{"traffic_split": {name: weight}}`
    mapping. An empty variant list disables the test.
    """
    if data is None or data == {}:
        return None
    if isinstance(data, ABTestConfig):
        return data
    if not isinstance(data, dict):
        raise ValidationError("A/B test config must be an object")

    if "traffic_split" in data:
        split = data["traffic_split"]
        if not isinstance(split, dict):
            raise ValidationError("'traffic_split' must be an object")
        raw = [{"name": name, "weight": weight} for name, weight in split.items()]
    else:
        raw = data.get("variants")
        if raw is None:
            raise ValidationError("A/B test config needs 'variants'")
        if not isinstance(raw, list):
            raise ValidationError("'variants' must be a list")

    if not raw:
        return None

    variants = tuple(_parse_variant(item) for item in raw)
    names = [v.name for v in variants]
    if len(set(names)) != len(names):
        raise ValidationError("Variant names must be unique")

    return ABTestConfig(variants)
