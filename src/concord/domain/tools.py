"""
Tool arbitration models and the wait-for graph cycle search.
"""

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from concord.domain.exceptions import ValidationError
from concord.domain.models import Priority


class ToolCategory(str, Enum):
    EXCLUSIVE = "exclusive"
    SHARED = "shared"
    POOL = "pool"
    AGENT_SPECIFIC = "agent_specific"


class RequestStatus(str, Enum):
    QUEUED = "queued"
    GRANTED = "granted"
    CANCELLED = "cancelled"
    ABORTED = "aborted"  # deadlock victim
    TIMED_OUT = "timed_out"  # synchronous wait gave up

    @property
    def is_terminal(self) -> bool:
        return self is not RequestStatus.QUEUED


@dataclass(frozen=True)
class Tool:
    tool_id: str
    category: ToolCategory
    concurrent_limit: int = 1
    name: str = ""
    allowed_agents: tuple[str, ...] = ()  # agent_specific only
    default_duration_s: float = 60.0
    buffer_s: float = 30.0

    def __post_init__(self) -> None:
        if self.concurrent_limit < 1:
            raise ValidationError(
                f"Tool {self.tool_id}: concurrent_limit must be >= 1"
            )
        if self.category is ToolCategory.EXCLUSIVE and self.concurrent_limit != 1:
            raise ValidationError(
                f"Tool {self.tool_id}: exclusive tools have concurrent_limit 1"
            )

    def permits(self, agent_id: str) -> bool:
        if self.category is not ToolCategory.AGENT_SPECIFIC:
            return True
        return agent_id in self.allowed_agents


@dataclass(frozen=True)
class ToolLock:
    lock_id: str
    tool_id: str
    agent_id: str
    task_id: str
    granted_at: datetime
    expires_at: datetime
    priority: Priority
    request_id: str

    def expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass(frozen=True)
class ToolRequest:
    request_id: str
    tool_id: str
    agent_id: str
    task_id: str
    priority: Priority
    requested_at: datetime
    sequence: int  # FIFO order within a tier
    estimated_duration_s: float
    status: RequestStatus = RequestStatus.QUEUED
    lock_id: str | None = None
    reason: str = ""

    def effective_priority(self, now: datetime, aging_interval_s: float) -> Priority:
        """Priority boosted one tier per ``aging_interval_s`` waited."""
        if aging_interval_s <= 0:
            return self.priority
        waited = (now - self.requested_at).total_seconds()
        return self.priority.boosted(int(waited // aging_interval_s))


@dataclass(frozen=True)
class ToolGrant:
    """Answer to a tool request."""

    request_id: str
    tool_id: str
    agent_id: str
    granted: bool
    lock: ToolLock | None = None
    queue_position: int | None = None  # 0 = next in line
    estimated_wait_s: float | None = None


@dataclass(frozen=True)
class ToolStatus:
    tool_id: str
    category: ToolCategory
    concurrent_limit: int
    in_use: int
    holders: tuple[str, ...]
    queue_length: int
    locks: tuple[ToolLock, ...]

    @property
    def available(self) -> int:
        return self.concurrent_limit - self.in_use


@dataclass(frozen=True)
class ToolUsageStats:
    tool_id: str
    grants: int
    releases: int
    forced_expirations: int
    aborted_requests: int
    cancelled_requests: int
    average_hold_s: float
    average_wait_s: float
    max_queue_depth: int


@dataclass(frozen=True)
class DeadlockReport:
    cycle: tuple[str, ...]  # agent ids, each waiting on the next
    tools: tuple[str, ...]
    victim_request_id: str
    victim_agent_id: str
    detected_at: str


def find_wait_for_cycles(graph: Mapping[str, Iterable[str]]) -> list[tuple[str, ...]]:
    """
    Depth-first search for cycles in a wait-for graph.

    Args:
        graph: agent -> agents holding something it waits for

    Returns:
        Distinct cycles, each as the agents along it (no repetition of
        the start node). Self-loops are ignored.
    """
    adjacency = {node: sorted(set(targets)) for node, targets in graph.items()}
    visiting: set[str] = set()
    done: set[str] = set()
    path: list[str] = []
    seen: set[frozenset[str]] = set()
    cycles: list[tuple[str, ...]] = []

    def visit(node: str) -> None:
        visiting.add(node)
        path.append(node)
        for target in adjacency.get(node, []):
            if target == node:
                continue
            if target in visiting:
                cycle = tuple(path[path.index(target) :])
                key = frozenset(cycle)
                if key not in seen:
                    seen.add(key)
                    cycles.append(cycle)
            elif target not in done:
                visit(target)
        path.pop()
        visiting.discard(node)
        done.add(node)

    for node in sorted(adjacency):
        if node not in done:
            visit(node)
    return cycles
