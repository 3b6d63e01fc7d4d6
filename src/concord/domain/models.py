"""
Shared domain models for the coordination core.

Agents, priorities and the small helpers every component uses.
Entity-specific models live beside their rules (context, handoff,
conflict, decision, tools).
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from concord.domain.exceptions import ValidationError

# =============================================================================
# AUTHORITY
# =============================================================================

MIN_AUTHORITY = 0.5
MAX_AUTHORITY = 2.0
DEFAULT_AUTHORITY = 1.0
ORCHESTRATOR_AUTHORITY = 1.5


def clamp_authority(value: float) -> float:
    return max(MIN_AUTHORITY, min(MAX_AUTHORITY, value))


# =============================================================================
# PRIORITY
# =============================================================================


class Priority(str, Enum):
    """Priority tiers shared by tasks, decisions and tool requests."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        """Higher rank is served first."""
        return _PRIORITY_RANK[self]

    def boosted(self, tiers: int) -> "Priority":
        """Priority raised by ``tiers`` levels, capped at CRITICAL."""
        rank = min(self.rank + max(tiers, 0), _PRIORITY_RANK[Priority.CRITICAL])
        return _RANK_PRIORITY[rank]


_PRIORITY_RANK = {
    Priority.LOW: 0,
    Priority.MEDIUM: 1,
    Priority.HIGH: 2,
    Priority.CRITICAL: 3,
}
_RANK_PRIORITY = {rank: priority for priority, rank in _PRIORITY_RANK.items()}


# =============================================================================
# AGENT
# =============================================================================


class AgentRole(str, Enum):
    ORCHESTRATOR = "orchestrator"
    WORKER = "worker"


@dataclass
class Agent:
    """
    Long-lived participant in the coordination system.

    ``authority_score`` is the only mutable attribute and is always kept
    within [MIN_AUTHORITY, MAX_AUTHORITY].
    """

    agent_id: str
    domain_weights: dict[str, float] = field(default_factory=dict)
    authority_score: float = DEFAULT_AUTHORITY
    role: AgentRole = AgentRole.WORKER
    name: str = ""

    def __post_init__(self) -> None:
        for domain, weight in self.domain_weights.items():
            if not 0.0 <= weight <= 1.0:
                raise ValidationError(
                    f"Domain weight for '{domain}' must be in [0, 1], got {weight}"
                )
        self.authority_score = clamp_authority(self.authority_score)

    def expertise(self, domain: str) -> float:
        return self.domain_weights.get(domain, 0.0)

    @property
    def is_orchestrator(self) -> bool:
        return self.role is AgentRole.ORCHESTRATOR


# =============================================================================
# HELPERS
# =============================================================================


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())
