"""
Conflict models and severity rules.

A Conflict is created the instant two agents' positions (or two context
updates relative to a common ancestor) are mutually exclusive, and is
terminal once a ConflictResolution is attached or it is dismissed.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from concord.domain.exceptions import ValidationError

# =============================================================================
# ENUMS
# =============================================================================


class ConflictCategory(str, Enum):
    RECOMMENDATION = "recommendation"
    CONTEXT_VALUE = "context_value"
    DECISION = "decision"
    RESOURCE = "resource"


class ConflictSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ConflictStatus(str, Enum):
    DETECTED = "detected"
    ANALYZING = "analyzing"
    RESOLVING = "resolving"
    RESOLVED = "resolved"
    ESCALATED = "escalated"
    DISMISSED = "dismissed"

    @property
    def is_terminal(self) -> bool:
        return self in (ConflictStatus.RESOLVED, ConflictStatus.DISMISSED)


class ResolutionStrategy(str, Enum):
    """Resolution strategies, ordered by escalation level."""

    AUTO_MERGE = "auto_merge"
    PRIORITY = "priority"
    EXPERTISE = "expertise"
    CONSENSUS = "consensus"
    ARBITRATION = "arbitration"

    @property
    def level(self) -> int:
        return _STRATEGY_LEVEL[self]


_STRATEGY_LEVEL = {
    ResolutionStrategy.AUTO_MERGE: 0,
    ResolutionStrategy.PRIORITY: 1,
    ResolutionStrategy.EXPERTISE: 1,
    ResolutionStrategy.CONSENSUS: 2,
    ResolutionStrategy.ARBITRATION: 3,
}


# =============================================================================
# MODELS
# =============================================================================


@dataclass(frozen=True)
class ConflictPosition:
    """One agent's side of a conflict."""

    agent_id: str
    value: Any  # for context conflicts: {path: value}
    confidence: float  # 0-1
    priority: int = 5  # 1-10
    reasoning: str = ""
    goal_alignment: float = 0.5  # 0-1, used by arbitration
    stakeholder_priority: float = 0.5  # 0-1, used by arbitration

    def __post_init__(self) -> None:
        if not 0.0 <= self.confidence <= 1.0:
            raise ValidationError(f"confidence must be in [0, 1], got {self.confidence}")


@dataclass(frozen=True)
class ConflictResolution:
    """Binding outcome attached to a resolved conflict."""

    resolution_id: str
    conflict_id: str
    strategy: ResolutionStrategy
    level: int
    resolved_by: str
    resolved_at: str
    winning_value: Any
    rationale: str
    winner: str | None = None  # None for merges and compromises
    acceptance: dict[str, bool] = field(default_factory=dict)
    decision_id: str | None = None

    @property
    def is_compromise(self) -> bool:
        return self.winner is None


@dataclass(frozen=True)
class StatusChange:
    status: ConflictStatus
    at: str
    note: str = ""


@dataclass(frozen=True)
class Conflict:
    """
    Detected incompatibility between agents.

    Stored immutably; every transition replaces the stored instance.
    """

    conflict_id: str
    category: ConflictCategory
    severity: ConflictSeverity
    domain: str
    agents_involved: tuple[str, ...]
    positions: tuple[ConflictPosition, ...]
    status: ConflictStatus
    detected_at: str
    title: str = ""
    scope: str | None = None  # decision id or domain for recommendations
    context_id: str | None = None
    base_version_id: str | None = None
    head_version_id: str | None = None
    ancestor_values: dict[str, Any] = field(default_factory=dict)
    escalation_level: int = -1  # highest ladder level attempted
    resolution: ConflictResolution | None = None
    history: tuple[StatusChange, ...] = ()

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def position_of(self, agent_id: str) -> ConflictPosition | None:
        for position in self.positions:
            if position.agent_id == agent_id:
                return position
        return None


# =============================================================================
# SEVERITY
# =============================================================================


def severity_from_confidence(positions: tuple[ConflictPosition, ...] | list[ConflictPosition]) -> ConflictSeverity:
    """Derive severity from the average confidence of opposing positions."""
    if not positions:
        return ConflictSeverity.LOW
    average = sum(p.confidence for p in positions) / len(positions)
    if average > 0.9:
        return ConflictSeverity.CRITICAL
    if average > 0.7:
        return ConflictSeverity.HIGH
    if average > 0.5:
        return ConflictSeverity.MEDIUM
    return ConflictSeverity.LOW
