"""
Domain payloads: the closed set of value shapes agents exchange.

Context values and recommendation payloads are classified by section
into one of the shapes below, so merge rules can dispatch on the shape
instead of comparing opaque blobs.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from concord.domain.context import MISSING, parse_path

WCAG_LEVELS = ("A", "AA", "AAA")
BUDGET_PREFIX = ("performance", "budgets")


@dataclass(frozen=True)
class PerformanceBudget:
    """A performance budget; lower values are stricter."""

    metric: str
    value: float


@dataclass(frozen=True)
class AccessibilityLevel:
    """WCAG conformance target; higher levels are stricter."""

    level: str

    @property
    def rank(self) -> int:
        return WCAG_LEVELS.index(self.level)


@dataclass(frozen=True)
class DesignToken:
    token: str
    value: Any


@dataclass(frozen=True)
class CodeSetting:
    key: str
    value: Any


@dataclass(frozen=True)
class ProjectSetting:
    key: str
    value: Any


@dataclass(frozen=True)
class SectionSetting:
    """Scalar in any other known section (testing, security, i18n, ...)."""

    section: str
    key: str
    value: Any


@dataclass(frozen=True)
class StructuredValue:
    """An object value; merged key-wise against the common ancestor."""

    value: dict[str, Any]


@dataclass(frozen=True)
class Removed:
    """The key was removed."""

    path: str


DomainPayload = (
    PerformanceBudget
    | AccessibilityLevel
    | DesignToken
    | CodeSetting
    | ProjectSetting
    | SectionSetting
    | StructuredValue
    | Removed
)


def classify(path: str, value: Any) -> DomainPayload:
    """Classify the value found (or wanted) at ``path``."""
    parts = parse_path(path)
    section, rest = parts[0], "/".join(parts[1:])

    if value is MISSING:
        return Removed(path)
    if isinstance(value, dict):
        return StructuredValue(value)
    if (
        parts[:2] == BUDGET_PREFIX
        and len(parts) == 3
        and isinstance(value, int | float)
        and not isinstance(value, bool)
    ):
        return PerformanceBudget(metric=parts[2], value=value)
    if parts == ("accessibility", "wcag_level") and value in WCAG_LEVELS:
        return AccessibilityLevel(level=value)
    if section == "design":
        return DesignToken(token=rest, value=value)
    if section == "code":
        return CodeSetting(key=rest, value=value)
    if section == "project":
        return ProjectSetting(key=rest, value=value)
    return SectionSetting(section=section, key=rest, value=value)


def payload_value(payload: DomainPayload) -> Any:
    """Raw value carried by a payload (MISSING for removals)."""
    match payload:
        case PerformanceBudget(value=value):
            return value
        case AccessibilityLevel(level=level):
            return level
        case DesignToken(value=value) | CodeSetting(value=value):
            return value
        case ProjectSetting(value=value) | SectionSetting(value=value):
            return value
        case StructuredValue(value=value):
            return value
        case Removed():
            return MISSING


# =============================================================================
# MERGE RULES
# =============================================================================


@dataclass(frozen=True)
class MergeOutcome:
    mergeable: bool
    value: Any = None
    rule: str = ""


NOT_MERGEABLE = MergeOutcome(mergeable=False)


def _merge_dicts(
    ancestor: dict[str, Any], left: dict[str, Any], right: dict[str, Any]
) -> dict[str, Any] | None:
    """Key-wise three-way merge; None when both sides changed a key differently."""
    merged: dict[str, Any] = {}
    for key in sorted(set(ancestor) | set(left) | set(right)):
        base = ancestor.get(key, MISSING)
        lval = left.get(key, MISSING)
        rval = right.get(key, MISSING)
        if lval == rval:
            result = lval
        elif lval == base:
            result = rval
        elif rval == base:
            result = lval
        elif isinstance(lval, dict) and isinstance(rval, dict):
            nested = _merge_dicts(base if isinstance(base, dict) else {}, lval, rval)
            if nested is None:
                return None
            result = nested
        else:
            return None
        if result is not MISSING:
            merged[key] = result
    return merged


def merge_pair(ancestor: Any, left: DomainPayload, right: DomainPayload) -> MergeOutcome:
    """Merge two competing payloads for the same path."""
    match left, right:
        case PerformanceBudget(value=a), PerformanceBudget(value=b):
            return MergeOutcome(True, min(a, b), "stricter budget")
        case AccessibilityLevel() as a, AccessibilityLevel() as b:
            winner = a if a.rank >= b.rank else b
            return MergeOutcome(True, winner.level, "stricter accessibility level")
        case StructuredValue(value=a), StructuredValue(value=b):
            base = ancestor if isinstance(ancestor, dict) else {}
            merged = _merge_dicts(base, a, b)
            if merged is None:
                return NOT_MERGEABLE
            return MergeOutcome(True, merged, "three-way merge")
        case _:
            return NOT_MERGEABLE


def merge_values(path: str, ancestor: Any, values: list[Any]) -> MergeOutcome:
    """Fold ``merge_pair`` over every competing value at ``path``."""
    if not values:
        return NOT_MERGEABLE
    current = values[0]
    rule = ""
    for other in values[1:]:
        outcome = merge_pair(ancestor, classify(path, current), classify(path, other))
        if not outcome.mergeable:
            return NOT_MERGEABLE
        current, rule = outcome.value, outcome.rule
    return MergeOutcome(True, current, rule)
