"""
Tool Arbiter: grants locks on shared tools and queues the overflow.

Grants and releases are serialized per tool. Queued requests are served
by effective priority (aged one tier per ``aging_interval_s`` waited),
FIFO within a tier. Locks expire after their estimated duration plus the
tool's buffer and are force-released by ``expire_locks``.
"""

import itertools
import logging
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta

from concord.application.agent_registry import AgentRegistry
from concord.application.event_emitter import CoordinationEventEmitter
from concord.domain.coordination_event import Component
from concord.domain.exceptions import (
    AuthorizationError,
    DeadlineExceeded,
    ResourceError,
    ValidationError,
)
from concord.domain.models import Priority, new_id, utc_now
from concord.domain.tools import (
    DeadlockReport,
    RequestStatus,
    Tool,
    ToolGrant,
    ToolLock,
    ToolRequest,
    ToolStatus,
    ToolUsageStats,
    find_wait_for_cycles,
)

logger = logging.getLogger(__name__)

GrantListener = Callable[[ToolGrant], None]
AbortListener = Callable[[ToolRequest], None]


@dataclass
class _ToolState:
    tool: Tool
    condition: threading.Condition = field(
        default_factory=lambda: threading.Condition(threading.RLock())
    )
    locks: dict[str, ToolLock] = field(default_factory=dict)
    queue: list[ToolRequest] = field(default_factory=list)
    grants: int = 0
    releases: int = 0
    forced_expirations: int = 0
    aborted: int = 0
    cancelled: int = 0
    hold_total_s: float = 0.0
    hold_count: int = 0
    wait_total_s: float = 0.0
    wait_count: int = 0
    max_queue_depth: int = 0

    def average_hold_s(self) -> float:
        if not self.hold_count:
            return self.tool.default_duration_s
        return self.hold_total_s / self.hold_count


class ToolArbiter:
    """Arbitrates concurrent access to registered tools."""

    def __init__(
        self,
        tools: Iterable[Tool] = (),
        registry: AgentRegistry | None = None,
        emitter: CoordinationEventEmitter | None = None,
        aging_interval_s: float = 30.0,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Args:
            tools: Tool catalog registered at startup
            registry: Agent registry used to reject unknown agents
            emitter: Monitoring sink
            aging_interval_s: Waiting time that boosts a request one tier
            clock: Time source
        """
        self._registry = registry
        self._emitter = emitter or CoordinationEventEmitter()
        self._aging_interval = aging_interval_s
        self._clock = clock
        self._guard = threading.Lock()
        self._tools: dict[str, _ToolState] = {}
        self._requests: dict[str, ToolRequest] = {}
        self._lock_tools: dict[str, str] = {}
        self._sequence = itertools.count()
        self._grant_listeners: list[GrantListener] = []
        self._abort_listeners: list[AbortListener] = []
        for tool in tools:
            self.register_tool(tool)

    def register_tool(self, tool: Tool) -> None:
        with self._guard:
            if tool.tool_id in self._tools:
                raise ValidationError(f"Tool already registered: {tool.tool_id}")
            self._tools[tool.tool_id] = _ToolState(tool)

    def tool_ids(self) -> list[str]:
        return sorted(self._tools)

    def add_grant_listener(self, listener: GrantListener) -> None:
        """Called when a queued request is granted."""
        self._grant_listeners.append(listener)

    def add_abort_listener(self, listener: AbortListener) -> None:
        """Called when a queued request is aborted as a deadlock victim."""
        self._abort_listeners.append(listener)

    def _state(self, tool_id: str) -> _ToolState:
        state = self._tools.get(tool_id)
        if state is None:
            raise ValidationError(f"Unknown tool: {tool_id}")
        return state

    def get_request(self, request_id: str) -> ToolRequest:
        request = self._requests.get(request_id)
        if request is None:
            raise ValidationError(f"Unknown tool request: {request_id}")
        return request

    # =========================================================================
    # QUEUE
    # =========================================================================

    def _queue_key(self, request: ToolRequest, now: datetime) -> tuple[int, int]:
        effective = request.effective_priority(now, self._aging_interval)
        return (-effective.rank, request.sequence)

    def _ordered_queue(self, state: _ToolState, now: datetime) -> list[ToolRequest]:
        return sorted(state.queue, key=lambda r: self._queue_key(r, now))

    def _estimated_wait(self, state: _ToolState, position: int) -> float:
        return state.average_hold_s() * (position + 1) / state.tool.concurrent_limit

    def _save_request(self, request: ToolRequest) -> ToolRequest:
        self._requests[request.request_id] = request
        self._emitter.record(
            "tool_request", request.request_id, request, request.status.is_terminal
        )
        return request

    def _grant(
        self, state: _ToolState, request: ToolRequest, now: datetime
    ) -> tuple[ToolRequest, ToolLock]:
        tool = state.tool
        lock = ToolLock(
            lock_id=new_id(),
            tool_id=tool.tool_id,
            agent_id=request.agent_id,
            task_id=request.task_id,
            granted_at=now,
            expires_at=now + timedelta(seconds=request.estimated_duration_s + tool.buffer_s),
            priority=request.priority,
            request_id=request.request_id,
        )
        state.locks[lock.lock_id] = lock
        state.grants += 1
        state.wait_total_s += (now - request.requested_at).total_seconds()
        state.wait_count += 1
        self._lock_tools[lock.lock_id] = tool.tool_id
        request = self._save_request(
            replace(request, status=RequestStatus.GRANTED, lock_id=lock.lock_id)
        )
        self._emitter.emit(
            Component.TOOL,
            lock.lock_id,
            "lock_granted",
            tool_id=tool.tool_id,
            agent_id=request.agent_id,
            request_id=request.request_id,
            expires_at=lock.expires_at.isoformat(),
        )
        self._emitter.record("tool_lock", lock.lock_id, lock, False)
        logger.info("Granted %s to %s (lock %s)", tool.tool_id, request.agent_id, lock.lock_id)
        return request, lock

    def _process_queue(self, state: _ToolState, now: datetime) -> list[ToolGrant]:
        """Grant queued requests while capacity allows. Caller holds the tool lock."""
        granted: list[ToolGrant] = []
        while state.queue and len(state.locks) < state.tool.concurrent_limit:
            nxt = self._ordered_queue(state, now)[0]
            state.queue.remove(nxt)
            request, lock = self._grant(state, nxt, now)
            granted.append(
                ToolGrant(
                    request_id=request.request_id,
                    tool_id=request.tool_id,
                    agent_id=request.agent_id,
                    granted=True,
                    lock=lock,
                )
            )
        if granted:
            state.condition.notify_all()
        return granted

    def _notify_grants(self, grants: list[ToolGrant]) -> None:
        for grant in grants:
            for listener in self._grant_listeners:
                listener(grant)

    # =========================================================================
    # REQUEST / RELEASE
    # =========================================================================

    def request(
        self,
        tool_id: str,
        agent_id: str,
        task_id: str,
        priority: Priority = Priority.MEDIUM,
        estimated_duration_s: float | None = None,
        wait: bool = False,
        timeout_s: float | None = None,
        queue: bool = True,
    ) -> ToolGrant:
        """
        Request a lock on a tool.

        Args:
            wait: Block until granted (or ``timeout_s`` elapses)
            queue: Enqueue at capacity; with False a busy tool raises

        Returns:
            A granted ToolGrant with its lock, or a queued one with
            ``queue_position`` (0 = next) and ``estimated_wait_s``

        Raises:
            ValidationError: Unknown tool or agent
            AuthorizationError: Agent not permitted on an agent-specific tool
            ResourceError: At capacity with ``queue=False``, or aborted
                as a deadlock victim while waiting
            DeadlineExceeded: ``wait`` timed out; the request is withdrawn
        """
        state = self._state(tool_id)
        if self._registry is not None:
            self._registry.get(agent_id)
        if not state.tool.permits(agent_id):
            raise AuthorizationError(f"{agent_id} may not use {tool_id}")

        with state.condition:
            now = self._clock()
            _, expiry_grants = self._expire_state(state, now)
            request = ToolRequest(
                request_id=new_id(),
                tool_id=tool_id,
                agent_id=agent_id,
                task_id=task_id,
                priority=priority,
                requested_at=now,
                sequence=next(self._sequence),
                estimated_duration_s=(
                    estimated_duration_s
                    if estimated_duration_s is not None
                    else state.tool.default_duration_s
                ),
            )
            if not state.queue and len(state.locks) < state.tool.concurrent_limit:
                request, lock = self._grant(state, request, now)
                grant = ToolGrant(
                    request_id=request.request_id,
                    tool_id=tool_id,
                    agent_id=agent_id,
                    granted=True,
                    lock=lock,
                )
            elif not queue:
                raise ResourceError(f"{tool_id} is at capacity ({state.tool.concurrent_limit})")
            else:
                grant = self._enqueue(state, request, now)

        self._notify_grants(expiry_grants)
        if grant.granted or not wait:
            return grant
        return self._wait_for_grant(state, grant.request_id, timeout_s)

    def _enqueue(self, state: _ToolState, request: ToolRequest, now: datetime) -> ToolGrant:
        state.queue.append(request)
        state.max_queue_depth = max(state.max_queue_depth, len(state.queue))
        self._save_request(request)
        position = self._ordered_queue(state, now).index(request)
        estimate = self._estimated_wait(state, position)
        self._emitter.emit(
            Component.TOOL,
            request.request_id,
            "request_queued",
            tool_id=state.tool.tool_id,
            agent_id=request.agent_id,
            priority=request.priority.value,
            queue_position=position,
        )
        logger.debug(
            "Queued %s for %s at position %d", request.agent_id, state.tool.tool_id, position
        )
        return ToolGrant(
            request_id=request.request_id,
            tool_id=state.tool.tool_id,
            agent_id=request.agent_id,
            granted=False,
            queue_position=position,
            estimated_wait_s=estimate,
        )

    def _wait_for_grant(
        self, state: _ToolState, request_id: str, timeout_s: float | None
    ) -> ToolGrant:
        with state.condition:
            state.condition.wait_for(
                lambda: self._requests[request_id].status is not RequestStatus.QUEUED,
                timeout=timeout_s,
            )
            request = self._requests[request_id]
            if request.status is RequestStatus.QUEUED:
                state.queue.remove(request)
                self._save_request(
                    replace(request, status=RequestStatus.TIMED_OUT, reason="wait timed out")
                )
                self._emitter.emit(Component.TOOL, request_id, "request_timed_out")
                raise DeadlineExceeded(
                    f"{request.agent_id} not granted {state.tool.tool_id} within {timeout_s}s"
                )
        if request.status is RequestStatus.ABORTED:
            raise ResourceError(f"Request {request_id} aborted: {request.reason}")
        if request.status is RequestStatus.GRANTED:
            return ToolGrant(
                request_id=request_id,
                tool_id=request.tool_id,
                agent_id=request.agent_id,
                granted=True,
                lock=state.locks.get(request.lock_id or ""),
            )
        return ToolGrant(
            request_id=request_id,
            tool_id=request.tool_id,
            agent_id=request.agent_id,
            granted=False,
        )

    def _tool_of_lock(self, lock_id: str) -> _ToolState:
        tool_id = self._lock_tools.get(lock_id)
        if tool_id is None:
            raise ValidationError(f"Unknown lock: {lock_id}")
        return self._state(tool_id)

    def release(self, lock_id: str, agent_id: str | None = None) -> bool:
        """
        Release a lock and hand the slot to the next queued request.

        Returns:
            False if the lock was already released or force-expired

        Raises:
            AuthorizationError: ``agent_id`` does not hold the lock
        """
        state = self._tool_of_lock(lock_id)
        with state.condition:
            lock = state.locks.get(lock_id)
            if lock is None:
                logger.debug("Lock %s already released", lock_id)
                return False
            if agent_id is not None and agent_id != lock.agent_id:
                raise AuthorizationError(f"{agent_id} does not hold lock {lock_id}")
            now = self._clock()
            del state.locks[lock_id]
            state.releases += 1
            state.hold_total_s += (now - lock.granted_at).total_seconds()
            state.hold_count += 1
            self._emitter.emit(
                Component.TOOL, lock_id, "lock_released", tool_id=lock.tool_id, agent_id=lock.agent_id
            )
            self._emitter.record("tool_lock", lock_id, lock, True)
            logger.info("Released %s held by %s", lock.tool_id, lock.agent_id)
            grants = self._process_queue(state, now)
        self._notify_grants(grants)
        return True

    def extend(self, lock_id: str, agent_id: str, additional_s: float) -> ToolLock:
        """Push back the expiry of a held lock (holder only)."""
        if additional_s <= 0:
            raise ValidationError("additional_s must be positive")
        state = self._tool_of_lock(lock_id)
        with state.condition:
            lock = state.locks.get(lock_id)
            if lock is None:
                raise ValidationError(f"Lock {lock_id} is no longer held")
            if agent_id != lock.agent_id:
                raise AuthorizationError(f"{agent_id} does not hold lock {lock_id}")
            lock = replace(lock, expires_at=lock.expires_at + timedelta(seconds=additional_s))
            state.locks[lock_id] = lock
        self._emitter.emit(
            Component.TOOL, lock_id, "lock_extended", expires_at=lock.expires_at.isoformat()
        )
        self._emitter.record("tool_lock", lock_id, lock, False)
        return lock

    def cancel_request(self, request_id: str, agent_id: str) -> ToolRequest:
        """Withdraw a queued request (requester only)."""
        request = self.get_request(request_id)
        if agent_id != request.agent_id:
            raise AuthorizationError(f"Only {request.agent_id} may cancel {request_id}")
        state = self._state(request.tool_id)
        with state.condition:
            request = self._requests[request_id]
            if request.status is not RequestStatus.QUEUED:
                raise ValidationError(f"Request {request_id} is already {request.status.value}")
            state.queue.remove(request)
            state.cancelled += 1
            request = self._save_request(replace(request, status=RequestStatus.CANCELLED))
            state.condition.notify_all()
        self._emitter.emit(Component.TOOL, request_id, "request_cancelled", agent_id=agent_id)
        return request

    # =========================================================================
    # EXPIRY AND DEADLOCKS
    # =========================================================================

    def _expire_state(
        self, state: _ToolState, now: datetime
    ) -> tuple[list[ToolLock], list[ToolGrant]]:
        expired = [lock for lock in state.locks.values() if lock.expired(now)]
        for lock in expired:
            del state.locks[lock.lock_id]
            state.forced_expirations += 1
            state.hold_total_s += (now - lock.granted_at).total_seconds()
            state.hold_count += 1
            logger.warning(
                "Force-released %s held by %s (lock %s expired at %s)",
                lock.tool_id, lock.agent_id, lock.lock_id, lock.expires_at.isoformat(),
            )
            self._emitter.emit(
                Component.TOOL, lock.lock_id, "lock_expired", tool_id=lock.tool_id, agent_id=lock.agent_id
            )
            self._emitter.record("tool_lock", lock.lock_id, lock, True)
        grants = self._process_queue(state, now) if expired else []
        return expired, grants

    def expire_locks(self, now: datetime | None = None) -> list[ToolLock]:
        """Force-release every lock past its expiry."""
        now = now or self._clock()
        expired: list[ToolLock] = []
        grants: list[ToolGrant] = []
        for tool_id in self.tool_ids():
            state = self._tools[tool_id]
            with state.condition:
                tool_expired, tool_grants = self._expire_state(state, now)
            expired.extend(tool_expired)
            grants.extend(tool_grants)
        self._notify_grants(grants)
        return expired

    def detect_deadlocks(self, now: datetime | None = None) -> list[DeadlockReport]:
        """
        Find cycles in the wait-for graph and abort one request per cycle.

        An edge runs from each queued requester to every holder of the tool
        it waits for. The victim is the cycle's queued request with the
        lowest effective priority (latest request on a tie); its requester
        is notified through the abort listeners and must retry.
        """
        now = now or self._clock()
        states = [self._tools[t] for t in self.tool_ids()]
        for state in states:
            state.condition.acquire()
        try:
            graph: dict[str, set[str]] = {}
            waiting: list[ToolRequest] = []
            for state in states:
                holders = {lock.agent_id for lock in state.locks.values()}
                for request in state.queue:
                    graph.setdefault(request.agent_id, set()).update(holders - {request.agent_id})
                    waiting.append(request)

            reports: list[DeadlockReport] = []
            aborted: list[ToolRequest] = []
            for cycle in find_wait_for_cycles(graph):
                members = set(cycle)
                candidates = [
                    r
                    for r in waiting
                    if r.agent_id in members
                    and r.status is RequestStatus.QUEUED
                    and any(
                        lock.agent_id in members and lock.agent_id != r.agent_id
                        for lock in self._tools[r.tool_id].locks.values()
                    )
                ]
                if not candidates:
                    continue
                victim = min(
                    candidates,
                    key=lambda r: (r.effective_priority(now, self._aging_interval).rank, -r.sequence),
                )
                state = self._tools[victim.tool_id]
                state.queue.remove(victim)
                state.aborted += 1
                victim = self._save_request(
                    replace(victim, status=RequestStatus.ABORTED, reason="deadlock victim")
                )
                waiting = [victim if r.request_id == victim.request_id else r for r in waiting]
                state.condition.notify_all()
                aborted.append(victim)
                report = DeadlockReport(
                    cycle=cycle,
                    tools=tuple(sorted({r.tool_id for r in candidates})),
                    victim_request_id=victim.request_id,
                    victim_agent_id=victim.agent_id,
                    detected_at=now.isoformat(),
                )
                reports.append(report)
                logger.warning(
                    "Deadlock among %s; aborted request %s of %s",
                    " -> ".join(cycle), victim.request_id, victim.agent_id,
                )
                self._emitter.emit(
                    Component.TOOL,
                    victim.request_id,
                    "deadlock_detected",
                    cycle=list(cycle),
                    tools=list(report.tools),
                    victim_agent_id=victim.agent_id,
                )
        finally:
            for state in reversed(states):
                state.condition.release()

        for request in aborted:
            for listener in self._abort_listeners:
                listener(request)
        return reports

    # =========================================================================
    # STATUS
    # =========================================================================

    def get_status(self, tool_id: str) -> ToolStatus:
        state = self._state(tool_id)
        with state.condition:
            locks = tuple(state.locks.values())
            return ToolStatus(
                tool_id=tool_id,
                category=state.tool.category,
                concurrent_limit=state.tool.concurrent_limit,
                in_use=len(locks),
                holders=tuple(lock.agent_id for lock in locks),
                queue_length=len(state.queue),
                locks=locks,
            )

    def get_usage_stats(self, tool_id: str) -> ToolUsageStats:
        state = self._state(tool_id)
        with state.condition:
            return ToolUsageStats(
                tool_id=tool_id,
                grants=state.grants,
                releases=state.releases,
                forced_expirations=state.forced_expirations,
                aborted_requests=state.aborted,
                cancelled_requests=state.cancelled,
                average_hold_s=state.hold_total_s / state.hold_count if state.hold_count else 0.0,
                average_wait_s=state.wait_total_s / state.wait_count if state.wait_count else 0.0,
                max_queue_depth=state.max_queue_depth,
            )

    def queue_position(self, request_id: str) -> int | None:
        """Current 0-based position of a queued request (None once it left the queue)."""
        request = self.get_request(request_id)
        state = self._state(request.tool_id)
        with state.condition:
            ordered = self._ordered_queue(state, self._clock())
            for position, queued in enumerate(ordered):
                if queued.request_id == request_id:
                    return position
        return None
