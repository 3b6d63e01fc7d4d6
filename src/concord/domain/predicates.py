"""
Change predicates for context subscriptions.

Implements:
- Predicate base class (Φ: (change, version) → {⊤, ⊥})
- Concrete predicates: PathPredicate, OperationPredicate, AuthorPredicate
- Compound predicates: AndPredicate, OrPredicate, NotPredicate
- select_changes: the changes of a version a predicate accepts
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from concord.domain.context import (
    Change,
    ChangeOperation,
    ContextVersion,
    parse_path,
    paths_overlap,
)

# =============================================================================
# PREDICATE BASE CLASS
# =============================================================================


class Predicate(ABC):
    """
    Abstract base class for change filters.

    Predicates are boolean functions over a single change of a version;
    a subscriber is notified when at least one change matches.
    """

    @abstractmethod
    def matches(self, change: Change, version: ContextVersion) -> bool:
        """Evaluate predicate on one change.

        Args:
            change: The change to test.
            version: The version the change belongs to.

        Returns:
            True if the change matches, False otherwise.
        """
        pass

    def __call__(self, change: Change, version: ContextVersion) -> bool:
        return self.matches(change, version)

    def __and__(self, other: Predicate) -> Predicate:
        return AndPredicate(self, other)

    def __or__(self, other: Predicate) -> Predicate:
        return OrPredicate(self, other)

    def __invert__(self) -> Predicate:
        return NotPredicate(self)


# =============================================================================
# CONCRETE PREDICATES
# =============================================================================


class AnyChange(Predicate):
    """Matches every change."""

    def matches(self, change: Change, version: ContextVersion) -> bool:
        return True


class PathPredicate(Predicate):
    """Filter by path.

    Matches changes at, below, or (for whole-object replacements) above
    the given path.
    """

    def __init__(self, path: str) -> None:
        parse_path(path)
        self._path = path

    def matches(self, change: Change, version: ContextVersion) -> bool:
        return paths_overlap(self._path, change.path)


class SectionPredicate(PathPredicate):
    """Filter by top-level section (``performance``, ``design``, ...)."""

    def __init__(self, section: str) -> None:
        super().__init__(f"/{section}")


class OperationPredicate(Predicate):
    """Filter by change operation."""

    def __init__(self, *operations: ChangeOperation) -> None:
        self._operations = set(operations)

    def matches(self, change: Change, version: ContextVersion) -> bool:
        return change.operation in self._operations


class AuthorPredicate(Predicate):
    """Filter by the agent that authored the version."""

    def __init__(self, *agent_ids: str) -> None:
        self._agent_ids = set(agent_ids)

    def matches(self, change: Change, version: ContextVersion) -> bool:
        return version.author_agent_id in self._agent_ids


# =============================================================================
# COMPOUND PREDICATES
# =============================================================================


class AndPredicate(Predicate):
    """Logical AND of two predicates."""

    def __init__(self, p1: Predicate, p2: Predicate) -> None:
        self._p1 = p1
        self._p2 = p2

    def matches(self, change: Change, version: ContextVersion) -> bool:
        return self._p1.matches(change, version) and self._p2.matches(change, version)


class OrPredicate(Predicate):
    """Logical OR of two predicates."""

    def __init__(self, p1: Predicate, p2: Predicate) -> None:
        self._p1 = p1
        self._p2 = p2

    def matches(self, change: Change, version: ContextVersion) -> bool:
        return self._p1.matches(change, version) or self._p2.matches(change, version)


class NotPredicate(Predicate):
    """Logical NOT of a predicate."""

    def __init__(self, predicate: Predicate) -> None:
        self._predicate = predicate

    def matches(self, change: Change, version: ContextVersion) -> bool:
        return not self._predicate.matches(change, version)


def select_changes(
    version: ContextVersion, predicate: Predicate | None = None
) -> tuple[Change, ...]:
    """Changes of ``version`` accepted by ``predicate`` (all if None)."""
    if predicate is None:
        return version.change_set
    return tuple(c for c in version.change_set if predicate.matches(c, version))
