"""
Versioned shared context: models and pure tree algorithms.

A context is a JSON-like tree of domain sections under one root. Every
accepted write produces an immutable ContextVersion whose checksum is a
pure function of the materialized tree, so two versions with equal
checksums are semantically equal regardless of how they were reached.
"""

import copy
import hashlib
import json
from dataclasses import dataclass
from enum import Enum
from typing import Any

from concord.domain.exceptions import ValidationError

# =============================================================================
# MODELS
# =============================================================================


class ChangeOperation(str, Enum):
    ADD = "add"
    REMOVE = "remove"
    REPLACE = "replace"


@dataclass(frozen=True)
class Change:
    """Single entry of a change-set."""

    path: str  # "/performance/budgets/lcp"
    operation: ChangeOperation
    old_value: Any = None
    new_value: Any = None

    @classmethod
    def add(cls, path: str, value: Any) -> "Change":
        return cls(path=path, operation=ChangeOperation.ADD, new_value=value)

    @classmethod
    def replace(cls, path: str, value: Any) -> "Change":
        return cls(path=path, operation=ChangeOperation.REPLACE, new_value=value)

    @classmethod
    def remove(cls, path: str) -> "Change":
        return cls(path=path, operation=ChangeOperation.REMOVE)

    @property
    def resulting_value(self) -> Any:
        """Value at ``path`` after the change (MISSING for removals)."""
        if self.operation is ChangeOperation.REMOVE:
            return MISSING
        return self.new_value


class ContextStatus(str, Enum):
    ACTIVE = "active"
    ARCHIVED = "archived"
    LOCKED = "locked"


@dataclass(frozen=True)
class ContextVersion:
    """
    Immutable node in the context version DAG.

    ``parent_version_id`` forms the chain; merge versions additionally
    record the stale base they were written against in ``merge_base_id``.
    """

    version_id: str
    context_id: str
    parent_version_id: str | None
    author_agent_id: str
    change_set: tuple[Change, ...]
    checksum: str
    created_at: str  # ISO 8601
    sequence: int  # creation order within the context
    merge_base_id: str | None = None


@dataclass(frozen=True)
class SharedContext:
    """Read view of a context at one version. ``tree`` is a private copy."""

    context_id: str
    current_version_id: str
    checksum: str
    status: ContextStatus
    tree: dict[str, Any]
    version: ContextVersion

    def get(self, path: str, default: Any = None) -> Any:
        value = get_value(self.tree, path)
        return default if value is MISSING else value


@dataclass(frozen=True)
class ContextChangeEvent:
    """Delivered to subscribers for every matching new version."""

    subscription_id: str
    context_id: str
    version_id: str
    changes: tuple[Change, ...]
    author: str
    timestamp: str
    sequence: int


@dataclass(frozen=True)
class PendingWrite:
    """A write held until its context-value conflict is resolved."""

    write_id: str
    context_id: str
    base_version_id: str
    change_set: tuple[Change, ...]
    author_agent_id: str
    conflict_id: str
    confidence: float
    priority: int
    created_at: str


# =============================================================================
# PATHS AND VALUES
# =============================================================================


class _Missing:
    """Marker for an absent key."""

    _instance: "_Missing | None" = None

    def __new__(cls) -> "_Missing":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "<missing>"

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()


def parse_path(path: str) -> tuple[str, ...]:
    """Split ``/a/b/c`` into ``("a", "b", "c")``."""
    if not isinstance(path, str) or not path.startswith("/"):
        raise ValidationError(f"Context path must start with '/': {path!r}")
    parts = tuple(p for p in path.split("/")[1:])
    if not parts or any(p == "" for p in parts):
        raise ValidationError(f"Invalid context path: {path!r}")
    return parts


def join_path(parts: tuple[str, ...]) -> str:
    return "/" + "/".join(parts)


def paths_overlap(a: str, b: str) -> bool:
    """True when one path equals or is an ancestor of the other."""
    pa, pb = parse_path(a), parse_path(b)
    shortest = min(len(pa), len(pb))
    return pa[:shortest] == pb[:shortest]


def get_value(tree: dict[str, Any], path: str) -> Any:
    node: Any = tree
    for part in parse_path(path):
        if not isinstance(node, dict) or part not in node:
            return MISSING
        node = node[part]
    return node


def section_of(path: str) -> str:
    return parse_path(path)[0]


# =============================================================================
# CHANGE-SET APPLICATION
# =============================================================================


def _apply_change(tree: dict[str, Any], change: Change) -> Change:
    """Apply in place; returns the change with ``old_value`` filled in."""
    parts = parse_path(change.path)
    node = tree
    for part in parts[:-1]:
        child = node.get(part, MISSING)
        if child is MISSING:
            if change.operation is not ChangeOperation.ADD:
                raise ValidationError(f"Path does not exist: {change.path}")
            child = {}
            node[part] = child
        elif not isinstance(child, dict):
            raise ValidationError(f"Path crosses a non-object value: {change.path}")
        node = child

    key = parts[-1]
    present = key in node
    old_value = node.get(key)

    if change.operation is ChangeOperation.ADD:
        if present:
            raise ValidationError(f"Cannot add existing key: {change.path}")
        node[key] = copy.deepcopy(change.new_value)
        old_value = None
    elif change.operation is ChangeOperation.REPLACE:
        if not present:
            raise ValidationError(f"Cannot replace missing key: {change.path}")
        node[key] = copy.deepcopy(change.new_value)
    else:
        if not present:
            raise ValidationError(f"Cannot remove missing key: {change.path}")
        del node[key]

    return Change(
        path=change.path,
        operation=change.operation,
        old_value=copy.deepcopy(old_value),
        new_value=change.new_value,
    )


def apply_change_set(
    tree: dict[str, Any], change_set: tuple[Change, ...] | list[Change]
) -> tuple[dict[str, Any], tuple[Change, ...]]:
    """
    Apply a change-set to a copy of ``tree``.

    Returns:
        (new_tree, normalized change-set with old values recorded)

    Raises:
        ValidationError: If any change does not fit the tree
    """
    result = copy.deepcopy(tree)
    normalized = tuple(_apply_change(result, change) for change in change_set)
    return result, normalized


def compute_checksum(tree: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON form (sorted keys, no whitespace)."""
    canonical = json.dumps(tree, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def genesis_change_set(tree: dict[str, Any]) -> tuple[Change, ...]:
    return tuple(Change.add(f"/{section}", value) for section, value in tree.items())


def diff_trees(
    old: dict[str, Any], new: dict[str, Any], prefix: tuple[str, ...] = ()
) -> list[Change]:
    """Minimal change-set turning ``old`` into ``new`` (sorted by path)."""
    changes: list[Change] = []
    for key in sorted(set(old) | set(new)):
        parts = prefix + (key,)
        if key not in new:
            changes.append(
                Change(join_path(parts), ChangeOperation.REMOVE, old_value=old[key])
            )
        elif key not in old:
            changes.append(Change(join_path(parts), ChangeOperation.ADD, new_value=new[key]))
        elif isinstance(old[key], dict) and isinstance(new[key], dict):
            changes.extend(diff_trees(old[key], new[key], parts))
        elif old[key] != new[key]:
            changes.append(
                Change(
                    join_path(parts),
                    ChangeOperation.REPLACE,
                    old_value=old[key],
                    new_value=new[key],
                )
            )
    return changes


# =============================================================================
# THREE-WAY ANALYSIS
# =============================================================================


@dataclass(frozen=True)
class Overlap:
    """A path both sides changed to different results."""

    path: str
    ancestor_value: Any
    head_value: Any
    write_value: Any


@dataclass(frozen=True)
class MergeAnalysis:
    """Outcome of comparing a stale write against the advanced head."""

    overlaps: tuple[Overlap, ...]
    rebased: tuple[Change, ...]  # non-overlapping changes, relative to head
    duplicates: tuple[Change, ...]  # changes head already made identically

    @property
    def clean(self) -> bool:
        return not self.overlaps


def _rebase(change: Change, head_tree: dict[str, Any]) -> Change:
    """Re-express a change against the head tree."""
    present = get_value(head_tree, change.path) is not MISSING
    if change.operation is ChangeOperation.REMOVE:
        return change
    if present and change.operation is ChangeOperation.ADD:
        return Change.replace(change.path, change.new_value)
    if not present and change.operation is ChangeOperation.REPLACE:
        return Change.add(change.path, change.new_value)
    return change


def analyze_concurrent_write(
    ancestor_tree: dict[str, Any],
    head_tree: dict[str, Any],
    change_set: tuple[Change, ...] | list[Change],
) -> MergeAnalysis:
    """
    Compare a write made against ``ancestor_tree`` with the current head.

    A write change overlaps when some head change touches the same path
    (or an ancestor/descendant of it) and the head's value at that path
    differs from what the write wants. Same-value changes are duplicates.
    """
    head_changes = diff_trees(ancestor_tree, head_tree)
    overlaps: list[Overlap] = []
    rebased: list[Change] = []
    duplicates: list[Change] = []

    for change in change_set:
        touched = any(paths_overlap(change.path, h.path) for h in head_changes)
        if not touched:
            rebased.append(_rebase(change, head_tree))
            continue
        head_value = get_value(head_tree, change.path)
        if head_value == change.resulting_value:
            duplicates.append(change)
            continue
        overlaps.append(
            Overlap(
                path=change.path,
                ancestor_value=get_value(ancestor_tree, change.path),
                head_value=head_value,
                write_value=change.resulting_value,
            )
        )

    return MergeAnalysis(
        overlaps=tuple(overlaps),
        rebased=tuple(rebased),
        duplicates=tuple(duplicates),
    )


def change_for_value(path: str, value: Any, tree: dict[str, Any]) -> Change | None:
    """Change that makes ``tree`` hold ``value`` at ``path`` (None if it already does)."""
    current = get_value(tree, path)
    if value is MISSING:
        return None if current is MISSING else Change.remove(path)
    if current is MISSING:
        return Change.add(path, value)
    if current == value:
        return None
    return Change.replace(path, value)
