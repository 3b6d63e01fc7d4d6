"""
Collaborative decision models.

A CollaborativeDecision moves through
initiated → deliberating → consensus_building/voting → decided
(or cancelled by its initiator). Every vote, proposal and outcome is
appended to an immutable audit trail.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from concord.domain.exceptions import ValidationError
from concord.domain.models import Priority


class DecisionType(str, Enum):
    CONSENSUS = "consensus"
    MAJORITY = "majority"
    SUPERMAJORITY = "supermajority"
    UNANIMOUS = "unanimous"
    WEIGHTED = "weighted"
    EXPERT = "expert"
    ORCHESTRATOR = "orchestrator"


class DecisionStage(str, Enum):
    INITIATED = "initiated"
    DELIBERATING = "deliberating"
    VOTING = "voting"
    CONSENSUS_BUILDING = "consensus_building"
    DECIDED = "decided"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (DecisionStage.DECIDED, DecisionStage.CANCELLED)


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass(frozen=True)
class DecisionOption:
    option_id: str
    title: str
    proposed_by: str
    description: str = ""
    supporters: tuple[str, ...] = ()
    pros: tuple[str, ...] = ()
    cons: tuple[str, ...] = ()
    risk_level: RiskLevel = RiskLevel.MEDIUM
    value: Any = None  # payload carried when the option came from a conflict position


@dataclass(frozen=True)
class DecisionCriterion:
    criterion_id: str
    name: str
    weight: float  # 0-1
    importance: str = "important"  # critical | important | nice_to_have


@dataclass(frozen=True)
class AgentVote:
    agent_id: str
    option_id: str
    confidence: float  # 0-1
    reasoning: str = ""
    criteria_scores: dict[str, float] = field(default_factory=dict)
    timestamp: str = ""

    def __post_init__(self) -> None:
        if not 0.0 <= self.confidence <= 1.0:
            raise ValidationError(f"confidence must be in [0, 1], got {self.confidence}")


@dataclass(frozen=True)
class Proposal:
    """Candidate produced during consensus building."""

    proposal_id: str
    title: str
    option_ids: tuple[str, ...]
    supporters: tuple[str, ...]
    opponents: tuple[str, ...]
    is_compromise: bool = False

    @property
    def unanimous(self) -> bool:
        return not self.opponents


@dataclass(frozen=True)
class DecisionOutcome:
    decision_id: str
    winning_option_id: str
    scores: dict[str, float]
    agreement: float  # percentage of votes/positions backing the winner
    method: DecisionType
    decided_by: str
    decided_at: str
    rationale: str = ""
    forced: bool = False  # deadline or escalation forced orchestrator resolution


@dataclass(frozen=True)
class DecisionAuditEntry:
    at: str
    actor: str
    action: str
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class DecisionConfig:
    """Everything needed to open a decision."""

    title: str
    domain: str
    initiator: str
    participants: tuple[str, ...]
    options: tuple[DecisionOption, ...]
    decision_type: DecisionType = DecisionType.MAJORITY
    priority: Priority = Priority.MEDIUM
    criteria: tuple[DecisionCriterion, ...] = ()
    required_participants: tuple[str, ...] = ()
    deadline: datetime | None = None
    fallback_type: DecisionType = DecisionType.WEIGHTED  # used when consensus fails
    quorum: float = 0.5
    escalated: bool = False
    conflict_id: str | None = None
    description: str = ""


@dataclass(frozen=True)
class CollaborativeDecision:
    """
    Stored immutably; every transition replaces the stored instance.
    """

    decision_id: str
    decision_type: DecisionType
    priority: Priority
    title: str
    domain: str
    initiator: str
    participants: tuple[str, ...]
    options: tuple[DecisionOption, ...]
    stage: DecisionStage
    started_at: str
    criteria: tuple[DecisionCriterion, ...] = ()
    required_participants: tuple[str, ...] = ()
    votes: tuple[AgentVote, ...] = ()
    positions: dict[str, str] = field(default_factory=dict)  # agent -> option
    proposals: tuple[Proposal, ...] = ()
    deadline: datetime | None = None
    fallback_type: DecisionType = DecisionType.WEIGHTED
    quorum: float = 0.5
    escalated: bool = False
    conflict_id: str | None = None
    description: str = ""
    outcome: DecisionOutcome | None = None
    completed_at: str | None = None
    audit_trail: tuple[DecisionAuditEntry, ...] = ()

    @property
    def is_terminal(self) -> bool:
        return self.stage.is_terminal

    @property
    def option_ids(self) -> tuple[str, ...]:
        return tuple(o.option_id for o in self.options)

    def option(self, option_id: str) -> DecisionOption | None:
        for option in self.options:
            if option.option_id == option_id:
                return option
        return None

    def vote_of(self, agent_id: str) -> AgentVote | None:
        for vote in self.votes:
            if vote.agent_id == agent_id:
                return vote
        return None

    @property
    def has_quorum(self) -> bool:
        if not self.participants:
            return False
        return len(self.votes) / len(self.participants) >= self.quorum
