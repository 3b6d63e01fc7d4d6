"""
Handoff models and the per-handoff state machine.

initiated → sent → acknowledged → {accepted | rejected}
accepted → in_progress → {completed | failed | cancelled}

Terminal handoffs are immutable and retained only for audit.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from concord.domain.models import Priority

# =============================================================================
# ENUMS
# =============================================================================


class HandoffType(str, Enum):
    INITIAL = "initial"
    SEQUENTIAL = "sequential"
    PARALLEL_START = "parallel_start"
    PARALLEL_JOIN = "parallel_join"
    REVIEW = "review"
    CORRECTION = "correction"
    ESCALATION = "escalation"
    COMPLETION = "completion"
    EMERGENCY = "emergency"


class HandoffStatus(str, Enum):
    INITIATED = "initiated"
    SENT = "sent"
    ACKNOWLEDGED = "acknowledged"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL


_TERMINAL = frozenset(
    {
        HandoffStatus.COMPLETED,
        HandoffStatus.FAILED,
        HandoffStatus.CANCELLED,
        HandoffStatus.REJECTED,
    }
)

TRANSITIONS: dict[HandoffStatus, frozenset[HandoffStatus]] = {
    HandoffStatus.INITIATED: frozenset(
        {HandoffStatus.SENT, HandoffStatus.FAILED, HandoffStatus.CANCELLED}
    ),
    HandoffStatus.SENT: frozenset(
        {HandoffStatus.ACKNOWLEDGED, HandoffStatus.FAILED, HandoffStatus.CANCELLED}
    ),
    HandoffStatus.ACKNOWLEDGED: frozenset(
        {HandoffStatus.ACCEPTED, HandoffStatus.REJECTED}
    ),
    HandoffStatus.ACCEPTED: frozenset(
        {
            HandoffStatus.IN_PROGRESS,
            HandoffStatus.COMPLETED,
            HandoffStatus.FAILED,
            HandoffStatus.CANCELLED,
        }
    ),
    HandoffStatus.IN_PROGRESS: frozenset(
        {HandoffStatus.COMPLETED, HandoffStatus.FAILED, HandoffStatus.CANCELLED}
    ),
}


def can_transition(current: HandoffStatus, target: HandoffStatus) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class AckStatus(str, Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class ErrorCode(str, Enum):
    VALIDATION_ERROR = "VALIDATION_ERROR"
    DEPENDENCY_ERROR = "DEPENDENCY_ERROR"
    TIMEOUT = "TIMEOUT"
    PERMISSION_ERROR = "PERMISSION_ERROR"
    TRANSPORT_ERROR = "TRANSPORT_ERROR"
    REJECTED = "REJECTED"


# =============================================================================
# MESSAGE
# =============================================================================


@dataclass(frozen=True)
class Task:
    task_id: str
    title: str
    priority: Priority = Priority.MEDIUM
    dependencies: tuple[str, ...] = ()  # task ids that must be completed
    deliverables: tuple[str, ...] = ()
    description: str = ""


@dataclass(frozen=True)
class WorkEntry:
    """One prior agent's output in ``previous_work``."""

    agent_id: str
    task_id: str
    message_id: str
    output: Any
    completed_at: str


@dataclass(frozen=True)
class HandoffMetadata:
    stage_index: int = 0
    total_stages: int = 1
    retry_count: int = 0
    parallel_group_id: str | None = None


@dataclass(frozen=True)
class HandoffMessage:
    message_id: str
    source_agent: str
    target_agent: str
    workflow_id: str
    handoff_type: HandoffType
    task: Task
    context_id: str | None = None
    context_version_id: str | None = None
    previous_work: tuple[WorkEntry, ...] = ()
    metadata: HandoffMetadata = field(default_factory=HandoffMetadata)
    originator: str | None = None  # receives the completion handoff
    created_at: str = ""

    @property
    def workflow_originator(self) -> str:
        return self.originator or self.source_agent


def validate_message(message: HandoffMessage) -> list[str]:
    """Structural problems with ``message`` (empty when valid)."""
    problems: list[str] = []
    for name in ("message_id", "source_agent", "target_agent", "workflow_id"):
        if not getattr(message, name):
            problems.append(f"missing {name}")
    if not message.task.task_id:
        problems.append("missing task.task_id")
    if not message.task.title:
        problems.append("missing task.title")
    if message.source_agent and message.source_agent == message.target_agent:
        problems.append("source and target agent are the same")
    if message.task.task_id in message.task.dependencies:
        problems.append("task depends on itself")
    if bool(message.context_id) != bool(message.context_version_id):
        problems.append("context_id and context_version_id must be given together")
    meta = message.metadata
    if meta.total_stages < 1 or not 0 <= meta.stage_index < meta.total_stages:
        problems.append(
            f"invalid stage {meta.stage_index} of {meta.total_stages}"
        )
    if meta.retry_count < 0:
        problems.append("negative retry_count")
    return problems


# =============================================================================
# RESULTS AND RECORDS
# =============================================================================


@dataclass(frozen=True)
class HandoffAck:
    message_id: str
    status: AckStatus
    reason: str | None = None
    estimated_completion: str | None = None  # ISO 8601

    @property
    def accepted(self) -> bool:
        return self.status is AckStatus.ACCEPTED


@dataclass(frozen=True)
class HandoffResult:
    success: bool
    handoff_id: str
    status: HandoffStatus
    error_code: ErrorCode | None = None
    error: str | None = None
    attempts: int = 0
    duplicate: bool = False  # replay of an already-known message_id


@dataclass(frozen=True)
class HandoffTransition:
    status: HandoffStatus
    at: str
    note: str = ""


@dataclass(frozen=True)
class HandoffRecord:
    """Audit record for one handoff; replaced on every transition."""

    message: HandoffMessage
    status: HandoffStatus
    updated_at: str
    attempts: int = 0
    ack: HandoffAck | None = None
    output: Any = None
    failure_reason: str | None = None
    error_code: ErrorCode | None = None
    history: tuple[HandoffTransition, ...] = ()

    @property
    def message_id(self) -> str:
        return self.message.message_id

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


# =============================================================================
# PARALLEL GROUPS
# =============================================================================


@dataclass(frozen=True)
class ParallelGroup:
    group_id: str
    workflow_id: str
    source_agent: str
    member_ids: tuple[str, ...]  # message ids
    created_at: str
    deadline: str | None = None  # ISO 8601, per-member timeout
    context_id: str | None = None
    base_version_id: str | None = None


@dataclass(frozen=True)
class JoinResult:
    group_id: str
    complete: bool
    completed: tuple[str, ...]
    failed: tuple[str, ...]
    timed_out: tuple[str, ...]
    previous_work: tuple[WorkEntry, ...]
    merged_version_id: str | None = None
    conflict_ids: tuple[str, ...] = ()

    @property
    def success(self) -> bool:
        return (
            self.complete
            and not self.failed
            and not self.timed_out
            and not self.conflict_ids
        )
