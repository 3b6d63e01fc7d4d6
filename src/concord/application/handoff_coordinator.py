"""
Handoff Coordinator: moves units of work between agents.

Each handoff follows the state machine in ``concord.domain.handoff``.
Transient failures (acknowledgement timeout, transport failure, unmet
dependency) are retried with exponential backoff up to ``max_attempts``;
structural failures (validation, permission) fail immediately. Every
terminal failure leaves a ``failed`` audit record with its reason.
"""

import logging
import threading
import time
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, TypeVar

from concord.application.agent_registry import AgentRegistry
from concord.application.context_store import ContextStore
from concord.application.event_emitter import CoordinationEventEmitter
from concord.domain.context import Change
from concord.domain.coordination_event import Component
from concord.domain.exceptions import (
    AuthorizationError,
    ConflictError,
    CoordinationError,
    DeadlineExceeded,
    DependencyError,
    RetriesExhausted,
    TransportError,
    ValidationError,
)
from concord.domain.handoff import (
    AckStatus,
    ErrorCode,
    HandoffAck,
    HandoffMessage,
    HandoffMetadata,
    HandoffRecord,
    HandoffResult,
    HandoffStatus,
    HandoffTransition,
    HandoffType,
    JoinResult,
    ParallelGroup,
    Task,
    TaskStatus,
    WorkEntry,
    can_transition,
    validate_message,
)
from concord.domain.interfaces import HandoffTransportInterface
from concord.domain.models import new_id, utc_now

logger = logging.getLogger(__name__)

T = TypeVar("T")

_ERROR_CODES: dict[type[CoordinationError], ErrorCode] = {
    ValidationError: ErrorCode.VALIDATION_ERROR,
    DependencyError: ErrorCode.DEPENDENCY_ERROR,
    DeadlineExceeded: ErrorCode.TIMEOUT,
    TransportError: ErrorCode.TRANSPORT_ERROR,
    AuthorizationError: ErrorCode.PERMISSION_ERROR,
}

_RETRYABLE_CODES = {ErrorCode.TIMEOUT, ErrorCode.TRANSPORT_ERROR, ErrorCode.REJECTED}


def error_code_for(error: CoordinationError) -> ErrorCode:
    if isinstance(error, RetriesExhausted) and error.last_error is not None:
        return error_code_for(error.last_error)
    for error_type, code in _ERROR_CODES.items():
        if isinstance(error, error_type):
            return code
    return ErrorCode.VALIDATION_ERROR


class HandoffCoordinator:
    """
    Sends, receives and tracks handoffs.

    Processing is idempotent by ``message_id``: replaying a known message
    returns the recorded result instead of creating new work.
    """

    def __init__(
        self,
        registry: AgentRegistry,
        transport: HandoffTransportInterface,
        contexts: ContextStore | None = None,
        emitter: CoordinationEventEmitter | None = None,
        ack_timeout_s: float = 1.0,
        ack_target_s: float = 0.5,
        max_attempts: int = 3,
        base_delay_s: float = 0.1,
        max_delay_s: float = 2.0,
        estimated_duration_s: float = 3600.0,
        parallel_timeout_s: float = 300.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utc_now,
        max_workers: int = 8,
    ):
        """
        Args:
            registry: Agent registry
            transport: Delivery primitive used to reach targets
            contexts: Context Store for version checks and deliverable writes
            emitter: Monitoring sink
            ack_timeout_s: Acknowledgement deadline per attempt
            ack_target_s: Slower acknowledgements are logged
            max_attempts: Bound on delivery and dependency attempts
            base_delay_s: Backoff base (delay = base * 2**attempt)
            max_delay_s: Backoff cap
            estimated_duration_s: Used for HandoffAck.estimated_completion
            parallel_timeout_s: Default per-member timeout of parallel groups
            sleep: Backoff sleep (injectable for tests)
            clock: Time source
            max_workers: Threads waiting on acknowledgements
        """
        if max_attempts < 1:
            raise ValidationError("max_attempts must be >= 1")
        self._registry = registry
        self._transport = transport
        self._contexts = contexts
        self._emitter = emitter or CoordinationEventEmitter()
        self._ack_timeout = ack_timeout_s
        self._ack_target = ack_target_s
        self._max_attempts = max_attempts
        self._base_delay = base_delay_s
        self._max_delay = max_delay_s
        self._estimated_duration = timedelta(seconds=estimated_duration_s)
        self._parallel_timeout = timedelta(seconds=parallel_timeout_s)
        self._sleep = sleep
        self._clock = clock
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="handoff-ack"
        )

        self._lock = threading.RLock()
        self._records: dict[str, HandoffRecord] = {}
        self._results: dict[str, HandoffResult] = {}
        self._followups: dict[str, HandoffResult] = {}
        self._received: dict[str, tuple[datetime, HandoffAck]] = {}
        self._tasks: dict[str, TaskStatus] = {}
        self._workflows: dict[str, tuple[WorkEntry, ...]] = {}
        self._groups: dict[str, ParallelGroup] = {}
        self._joins: dict[str, JoinResult] = {}
        self._parallel_changes: dict[str, tuple[Change, ...]] = {}

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    # =========================================================================
    # QUERIES
    # =========================================================================

    def get_record(self, message_id: str) -> HandoffRecord:
        record = self._records.get(message_id)
        if record is None:
            raise ValidationError(f"Unknown handoff: {message_id}")
        return record

    def records(self, workflow_id: str | None = None) -> list[HandoffRecord]:
        return [
            r
            for r in self._records.values()
            if workflow_id is None or r.message.workflow_id == workflow_id
        ]

    def workflow_history(self, workflow_id: str) -> tuple[WorkEntry, ...]:
        """Latest ``previous_work`` of a workflow."""
        return self._workflows.get(workflow_id, ())

    def task_status(self, task_id: str) -> TaskStatus | None:
        return self._tasks.get(task_id)

    def register_task(self, task_id: str, status: TaskStatus = TaskStatus.PENDING) -> None:
        """Record the state of a task tracked outside the coordinator."""
        with self._lock:
            self._tasks[task_id] = status

    def unmet_dependencies(self, task: Task) -> tuple[str, ...]:
        return tuple(
            d for d in task.dependencies if self._tasks.get(d) is not TaskStatus.COMPLETED
        )

    def prune(self, older_than: datetime) -> int:
        """
        Forget finished handoffs last updated before ``older_than``.

        Drops terminal records with their results, and inbound acks
        received before the cutoff. A pruned message_id delivered again
        is processed as new.

        Returns:
            Number of records and acks removed
        """
        with self._lock:
            stale = [
                message_id
                for message_id, record in self._records.items()
                if record.is_terminal and datetime.fromisoformat(record.updated_at) < older_than
            ]
            for message_id in stale:
                del self._records[message_id]
                self._results.pop(message_id, None)
                self._followups.pop(message_id, None)
            acks = [
                message_id
                for message_id, (received_at, _) in self._received.items()
                if received_at < older_than
            ]
            for message_id in acks:
                del self._received[message_id]
        if stale or acks:
            logger.debug("Pruned %d handoff records and %d acks", len(stale), len(acks))
        return len(stale) + len(acks)

    # =========================================================================
    # STATE
    # =========================================================================

    def _now(self) -> str:
        return self._clock().isoformat()

    def _save(self, record: HandoffRecord, event_type: str, **attributes: Any) -> HandoffRecord:
        self._records[record.message_id] = record
        self._emitter.emit(
            Component.HANDOFF,
            record.message_id,
            event_type,
            status=record.status.value,
            workflow_id=record.message.workflow_id,
            source=record.message.source_agent,
            target=record.message.target_agent,
            **attributes,
        )
        self._emitter.record("handoff", record.message_id, record, record.is_terminal)
        return record

    def _transition(
        self, message_id: str, status: HandoffStatus, note: str = "", **changes: Any
    ) -> HandoffRecord:
        with self._lock:
            record = self.get_record(message_id)
            if not can_transition(record.status, status):
                raise ValidationError(
                    f"Handoff {message_id} cannot move from {record.status.value} to {status.value}"
                )
            now = self._now()
            updated = replace(
                record,
                status=status,
                updated_at=now,
                history=record.history + (HandoffTransition(status, now, note),),
                **changes,
            )
            self._save(updated, f"handoff_{status.value}", note=note)
            if status.is_terminal:
                self._release_pin(updated)
            return updated

    def _release_pin(self, record: HandoffRecord) -> None:
        message = record.message
        if (
            self._contexts is not None
            and message.context_id
            and message.context_version_id
            and any(t.status is HandoffStatus.ACCEPTED for t in record.history)
        ):
            self._contexts.unpin(message.context_id, message.context_version_id)

    def _fail(
        self, message_id: str, code: ErrorCode, reason: str, attempts: int
    ) -> HandoffResult:
        record = self._transition(
            message_id,
            HandoffStatus.FAILED,
            reason,
            failure_reason=reason,
            error_code=code,
            attempts=attempts,
        )
        task = record.message.task
        if self._tasks.get(task.task_id) is TaskStatus.IN_PROGRESS:
            self._tasks[task.task_id] = TaskStatus.FAILED
        logger.warning("Handoff %s failed (%s): %s", message_id, code.value, reason)
        result = HandoffResult(
            success=False,
            handoff_id=message_id,
            status=HandoffStatus.FAILED,
            error_code=code,
            error=reason,
            attempts=attempts,
        )
        self._results[message_id] = result
        return result

    def _backoff(self, attempt: int) -> float:
        return min(self._base_delay * (2**attempt), self._max_delay)

    def _with_retries(self, operation: Callable[[int], T], what: str) -> tuple[T, int]:
        """
        Run ``operation(attempt)`` until it succeeds or retries run out.

        Returns:
            (result, attempts used)

        Raises:
            RetriesExhausted: After ``max_attempts`` retryable failures
            CoordinationError: Immediately, for non-retryable failures
        """
        provenance: list[tuple[int, CoordinationError]] = []
        for attempt in range(self._max_attempts):
            try:
                return operation(attempt), attempt + 1
            except CoordinationError as e:
                if not e.retryable:
                    raise
                provenance.append((attempt + 1, e))
                if attempt + 1 < self._max_attempts:
                    delay = self._backoff(attempt)
                    logger.warning(
                        "%s attempt %d/%d failed (%s); retrying in %.2fs",
                        what, attempt + 1, self._max_attempts, e, delay,
                    )
                    self._sleep(delay)
        raise RetriesExhausted(
            f"{what} failed after {self._max_attempts} attempts", provenance
        )

    # =========================================================================
    # SEND
    # =========================================================================

    def _check_structure(self, message: HandoffMessage) -> None:
        problems = validate_message(message)
        if problems:
            raise ValidationError("; ".join(problems))
        self._registry.get(message.source_agent)
        self._registry.get(message.target_agent)
        if message.context_id:
            if self._contexts is None:
                raise ValidationError("No context store to resolve context references")
            if not self._contexts.has_version(message.context_id, message.context_version_id or ""):
                raise ValidationError(
                    f"Unknown context version {message.context_version_id} "
                    f"of {message.context_id}"
                )

    def _check_dependencies(self, message: HandoffMessage) -> None:
        missing = self.unmet_dependencies(message.task)
        if missing:
            raise DependencyError(
                f"Unmet dependencies of {message.task.task_id}: {', '.join(missing)}",
                missing=missing,
            )

    def _deliver(self, message: HandoffMessage, attempt: int) -> HandoffAck:
        attempt_message = replace(
            message, metadata=replace(message.metadata, retry_count=attempt)
        )
        started = time.monotonic()
        future = self._executor.submit(self._transport.deliver, attempt_message)
        try:
            ack = future.result(timeout=self._ack_timeout)
        except FutureTimeout:
            future.cancel()
            raise DeadlineExceeded(
                f"No acknowledgement from {message.target_agent} within {self._ack_timeout}s"
            ) from None
        elapsed = time.monotonic() - started
        if elapsed > self._ack_target:
            logger.warning(
                "Slow acknowledgement of %s from %s: %.3fs",
                message.message_id, message.target_agent, elapsed,
            )
        return ack

    def send(self, message: HandoffMessage) -> HandoffResult:
        """
        Send a handoff and wait for the target's acknowledgement.

        Never raises for coordination failures; they are reported in the
        result and recorded.
        """
        with self._lock:
            if message.message_id in self._records:
                return self._replay(message.message_id)
            if not message.created_at:
                message = replace(message, created_at=self._now())
            record = HandoffRecord(
                message=message,
                status=HandoffStatus.INITIATED,
                updated_at=self._now(),
                history=(HandoffTransition(HandoffStatus.INITIATED, self._now()),),
            )
            self._save(record, "handoff_initiated", type=message.handoff_type.value)

        try:
            self._check_structure(message)
        except ValidationError as e:
            return self._fail(message.message_id, ErrorCode.VALIDATION_ERROR, str(e), 0)

        try:
            _, attempts = self._with_retries(
                lambda _attempt: self._check_dependencies(message),
                f"Dependency check of {message.message_id}",
            )
        except RetriesExhausted as e:
            return self._fail(
                message.message_id, ErrorCode.DEPENDENCY_ERROR, str(e.last_error), len(e.provenance)
            )

        self._transition(message.message_id, HandoffStatus.SENT)
        try:
            ack, attempts = self._with_retries(
                lambda attempt: self._deliver(message, attempt),
                f"Delivery of {message.message_id}",
            )
        except RetriesExhausted as e:
            return self._fail(
                message.message_id, error_code_for(e), str(e.last_error), len(e.provenance)
            )
        except CoordinationError as e:
            return self._fail(message.message_id, error_code_for(e), str(e), 1)

        return self._acknowledged(message, ack, attempts)

    def _acknowledged(
        self, message: HandoffMessage, ack: HandoffAck, attempts: int
    ) -> HandoffResult:
        self._transition(message.message_id, HandoffStatus.ACKNOWLEDGED, attempts=attempts, ack=ack)
        if not ack.accepted:
            reason = ack.reason or "rejected by target"
            record = self._transition(
                message.message_id,
                HandoffStatus.REJECTED,
                reason,
                failure_reason=reason,
                error_code=ErrorCode.REJECTED,
            )
            logger.warning("Handoff %s rejected: %s", message.message_id, reason)
            result = HandoffResult(
                success=False,
                handoff_id=message.message_id,
                status=record.status,
                error_code=ErrorCode.REJECTED,
                error=reason,
                attempts=attempts,
            )
            self._results[message.message_id] = result
            return result

        with self._lock:
            self._transition(message.message_id, HandoffStatus.ACCEPTED)
            if self._contexts is not None and message.context_id and message.context_version_id:
                self._contexts.pin(message.context_id, message.context_version_id)
            self._tasks[message.task.task_id] = TaskStatus.IN_PROGRESS
            if message.handoff_type is HandoffType.COMPLETION:
                self._workflows[message.workflow_id] = message.previous_work
                self._tasks[message.task.task_id] = TaskStatus.COMPLETED
                record = self._transition(
                    message.message_id, HandoffStatus.COMPLETED, "workflow completed"
                )
            else:
                record = self.get_record(message.message_id)
        logger.info(
            "Handoff %s accepted by %s (%d attempt(s))",
            message.message_id, message.target_agent, attempts,
        )
        result = HandoffResult(
            success=True,
            handoff_id=message.message_id,
            status=record.status,
            attempts=attempts,
        )
        self._results[message.message_id] = result
        return result

    def _replay(self, message_id: str) -> HandoffResult:
        record = self.get_record(message_id)
        logger.info("Duplicate handoff %s ignored (%s)", message_id, record.status.value)
        self._emitter.emit(
            Component.HANDOFF, message_id, "handoff_duplicate", status=record.status.value
        )
        previous = self._results.get(message_id)
        failed = record.status in (
            HandoffStatus.FAILED,
            HandoffStatus.REJECTED,
            HandoffStatus.CANCELLED,
        )
        return HandoffResult(
            success=not failed,
            handoff_id=message_id,
            status=record.status,
            error_code=record.error_code,
            error=record.failure_reason,
            attempts=previous.attempts if previous else record.attempts,
            duplicate=True,
        )

    def send_with_fallback(
        self, message: HandoffMessage, fallback_targets: Iterable[str]
    ) -> HandoffResult:
        """
        Send to the message's target, then to each fallback in turn while
        the failure is a timeout, transport failure or rejection.
        """
        result = self.send(message)
        retry = 0
        for target in fallback_targets:
            if result.success or result.error_code not in _RETRYABLE_CODES:
                break
            retry += 1
            logger.info(
                "Handoff %s failed (%s); falling back to %s",
                result.handoff_id, result.error_code.value if result.error_code else "", target,
            )
            result = self.send(
                replace(
                    message,
                    message_id=new_id(),
                    target_agent=target,
                    created_at="",
                    metadata=replace(
                        message.metadata, retry_count=message.metadata.retry_count + retry
                    ),
                )
            )
        return result

    # =========================================================================
    # RECEIVE
    # =========================================================================

    def receive(self, message: HandoffMessage) -> HandoffAck:
        """
        Inbound side: validate a delivered handoff and acknowledge it.

        Duplicate deliveries of the same message_id return the first ack.
        """
        with self._lock:
            cached = self._received.get(message.message_id)
            if cached is not None:
                return cached[1]

            reason: str | None = None
            try:
                self._check_structure(message)
                self._check_dependencies(message)
            except CoordinationError as e:
                reason = str(e)

            if reason is None:
                ack = HandoffAck(
                    message_id=message.message_id,
                    status=AckStatus.ACCEPTED,
                    estimated_completion=(self._clock() + self._estimated_duration).isoformat(),
                )
            else:
                ack = HandoffAck(
                    message_id=message.message_id, status=AckStatus.REJECTED, reason=reason
                )
            self._received[message.message_id] = (self._clock(), ack)
        self._emitter.emit(
            Component.HANDOFF,
            message.message_id,
            "handoff_received",
            target=message.target_agent,
            ack=ack.status.value,
            reason=reason,
        )
        return ack

    # =========================================================================
    # EXECUTION
    # =========================================================================

    def _require_target(self, record: HandoffRecord, agent_id: str) -> None:
        if agent_id != record.message.target_agent:
            raise AuthorizationError(
                f"{agent_id} is not the target of handoff {record.message_id}"
            )

    def start(self, message_id: str, agent_id: str) -> HandoffRecord:
        """Target begins work on an accepted handoff."""
        record = self.get_record(message_id)
        self._require_target(record, agent_id)
        return self._transition(message_id, HandoffStatus.IN_PROGRESS)

    def complete(
        self,
        message_id: str,
        agent_id: str,
        output: Any,
        changes: Iterable[Change] = (),
        next_target: str | None = None,
        next_task: Task | None = None,
    ) -> HandoffResult:
        """
        Target finishes a handoff.

        Appends its output to ``previous_work``, writes its context
        changes and emits either a ``sequential`` handoff to
        ``next_target`` or a ``completion`` handoff to the originator.
        Parallel members only record their output for the join.

        Replaying completion of an already completed handoff returns the
        original follow-up result without repeating any work.

        Returns:
            Result of the follow-up handoff (or of this one if none is sent)
        """
        with self._lock:
            record = self.get_record(message_id)
            self._require_target(record, agent_id)
            if record.status is HandoffStatus.COMPLETED:
                logger.info("Completion of %s replayed; ignored", message_id)
                return self._followups.get(message_id) or self._results[message_id]
            if record.status is HandoffStatus.ACCEPTED:
                record = self._transition(message_id, HandoffStatus.IN_PROGRESS)
            if record.status is not HandoffStatus.IN_PROGRESS:
                raise ValidationError(
                    f"Handoff {message_id} is {record.status.value}, cannot complete"
                )

            message = record.message
            change_set = tuple(changes)
            version_id = message.context_version_id
            group_id = message.metadata.parallel_group_id
            if change_set and group_id:
                self._parallel_changes[message_id] = change_set
            elif change_set:
                version_id = self._write_deliverables(message, change_set, agent_id)

            entry = WorkEntry(
                agent_id=agent_id,
                task_id=message.task.task_id,
                message_id=message_id,
                output=output,
                completed_at=self._now(),
            )
            previous_work = message.previous_work + (entry,)
            self._workflows[message.workflow_id] = previous_work
            self._tasks[message.task.task_id] = TaskStatus.COMPLETED
            self._transition(message_id, HandoffStatus.COMPLETED, output=output)
            result = HandoffResult(
                success=True, handoff_id=message_id, status=HandoffStatus.COMPLETED
            )
            self._results[message_id] = result

        logger.info("Handoff %s completed by %s", message_id, agent_id)
        if group_id:
            return result

        if next_target is not None:
            followup = self._sequential(message, agent_id, next_target, next_task, previous_work, version_id)
        elif agent_id != message.workflow_originator:
            followup = self._completion(message, agent_id, previous_work, version_id)
        else:
            return result

        followup_result = self.send(followup)
        self._followups[message_id] = followup_result
        return followup_result

    def _write_deliverables(
        self, message: HandoffMessage, change_set: tuple[Change, ...], agent_id: str
    ) -> str | None:
        if self._contexts is None or not message.context_id or not message.context_version_id:
            raise ValidationError(
                f"Handoff {message.message_id} has no context to write changes to"
            )
        try:
            version = self._contexts.write(
                message.context_id, message.context_version_id, change_set, agent_id
            )
            return version.version_id
        except ConflictError as e:
            logger.warning(
                "Changes of %s held by conflict %s", message.message_id, e.conflict.conflict_id
            )
            return self._contexts.head(message.context_id)

    def _sequential(
        self,
        message: HandoffMessage,
        agent_id: str,
        next_target: str,
        next_task: Task | None,
        previous_work: tuple[WorkEntry, ...],
        version_id: str | None,
    ) -> HandoffMessage:
        stage = message.metadata.stage_index + 1
        task = next_task or Task(
            task_id=new_id(),
            title=f"{message.task.title} (stage {stage + 1})",
            priority=message.task.priority,
            dependencies=(message.task.task_id,),
        )
        return HandoffMessage(
            message_id=new_id(),
            source_agent=agent_id,
            target_agent=next_target,
            workflow_id=message.workflow_id,
            handoff_type=HandoffType.SEQUENTIAL,
            task=task,
            context_id=message.context_id,
            context_version_id=version_id,
            previous_work=previous_work,
            metadata=HandoffMetadata(
                stage_index=stage,
                total_stages=max(message.metadata.total_stages, stage + 1),
            ),
            originator=message.workflow_originator,
        )

    def _completion(
        self,
        message: HandoffMessage,
        agent_id: str,
        previous_work: tuple[WorkEntry, ...],
        version_id: str | None,
    ) -> HandoffMessage:
        return HandoffMessage(
            message_id=new_id(),
            source_agent=agent_id,
            target_agent=message.workflow_originator,
            workflow_id=message.workflow_id,
            handoff_type=HandoffType.COMPLETION,
            task=Task(
                task_id=f"{message.task.task_id}:completion",
                title=f"Completion of {message.task.title}",
                priority=message.task.priority,
                dependencies=(message.task.task_id,),
            ),
            context_id=message.context_id,
            context_version_id=version_id,
            previous_work=previous_work,
            metadata=HandoffMetadata(
                stage_index=message.metadata.total_stages - 1,
                total_stages=message.metadata.total_stages,
            ),
            originator=message.workflow_originator,
        )

    def fail(self, message_id: str, agent_id: str, reason: str) -> HandoffResult:
        """Target reports that it could not finish the handoff."""
        record = self.get_record(message_id)
        self._require_target(record, agent_id)
        return self._fail(message_id, ErrorCode.REJECTED, reason, record.attempts)

    def cancel(self, message_id: str, agent_id: str, reason: str = "") -> HandoffRecord:
        """
        Cancel a non-terminal handoff (issuer only). Side effects already
        written to the context are not rolled back.

        Raises:
            AuthorizationError: If ``agent_id`` did not send the handoff
            ValidationError: If the handoff is terminal
        """
        record = self.get_record(message_id)
        if agent_id != record.message.source_agent:
            raise AuthorizationError(f"Only {record.message.source_agent} may cancel {message_id}")
        if record.is_terminal:
            raise ValidationError(f"Handoff {message_id} is already {record.status.value}")
        record = self._transition(
            message_id, HandoffStatus.CANCELLED, reason, failure_reason=reason or "cancelled"
        )
        with self._lock:
            if self._tasks.get(record.message.task.task_id) is TaskStatus.IN_PROGRESS:
                self._tasks[record.message.task.task_id] = TaskStatus.CANCELLED
        logger.info("Handoff %s cancelled by %s", message_id, agent_id)
        return record

    def escalate(self, message_id: str, agent_id: str, reason: str) -> HandoffResult:
        """
        Hand a failing task to the orchestrator.

        The original handoff fails with ``reason``; an ``escalation``
        handoff carrying the same task goes to the orchestrator.
        """
        record = self.get_record(message_id)
        orchestrator = self._registry.orchestrator.agent_id
        if agent_id == orchestrator:
            raise ValidationError("The orchestrator cannot escalate to itself")
        if not record.is_terminal:
            self._fail(message_id, ErrorCode.REJECTED, f"escalated: {reason}", record.attempts)
        message = record.message
        task = replace(message.task, dependencies=())
        escalation = HandoffMessage(
            message_id=new_id(),
            source_agent=agent_id,
            target_agent=orchestrator,
            workflow_id=message.workflow_id,
            handoff_type=HandoffType.ESCALATION,
            task=replace(task, task_id=f"{task.task_id}:escalation"),
            context_id=message.context_id,
            context_version_id=message.context_version_id,
            previous_work=message.previous_work,
            metadata=replace(message.metadata, parallel_group_id=None),
            originator=message.workflow_originator,
        )
        logger.warning("Handoff %s escalated to %s: %s", message_id, orchestrator, reason)
        return self.send(escalation)

    # =========================================================================
    # PARALLEL GROUPS
    # =========================================================================

    def fan_out(
        self,
        source_agent: str,
        workflow_id: str,
        assignments: Iterable[tuple[str, Task]],
        context_id: str | None = None,
        context_version_id: str | None = None,
        previous_work: tuple[WorkEntry, ...] = (),
        timeout_s: float | None = None,
        originator: str | None = None,
    ) -> ParallelGroup:
        """Send one ``parallel_start`` handoff per (target, task)."""
        assignments = list(assignments)
        if not assignments:
            raise ValidationError("fan_out needs at least one assignment")
        group_id = new_id()
        timeout = timedelta(seconds=timeout_s) if timeout_s is not None else self._parallel_timeout
        messages = [
            HandoffMessage(
                message_id=new_id(),
                source_agent=source_agent,
                target_agent=target,
                workflow_id=workflow_id,
                handoff_type=HandoffType.PARALLEL_START,
                task=task,
                context_id=context_id,
                context_version_id=context_version_id,
                previous_work=previous_work,
                metadata=HandoffMetadata(parallel_group_id=group_id),
                originator=originator,
            )
            for target, task in assignments
        ]
        group = ParallelGroup(
            group_id=group_id,
            workflow_id=workflow_id,
            source_agent=source_agent,
            member_ids=tuple(m.message_id for m in messages),
            created_at=self._now(),
            deadline=(self._clock() + timeout).isoformat(),
            context_id=context_id,
            base_version_id=context_version_id,
        )
        with self._lock:
            self._groups[group_id] = group
        self._emitter.emit(
            Component.HANDOFF, group_id, "parallel_started", members=list(group.member_ids)
        )
        for message in messages:
            self.send(message)
        logger.info("Fanned out %d handoffs as group %s", len(messages), group_id)
        return group

    def join(
        self, group_id: str, wait: bool = False, poll_interval_s: float = 0.05
    ) -> JoinResult:
        """
        Aggregate a parallel group.

        Members past the group deadline are failed as timed out. Once every
        member is terminal the members' outputs are merged into one
        ``previous_work`` and their context changes are written from the
        group's base version, so clashes surface as conflicts.

        Args:
            wait: Block until every member is terminal or timed out
        """
        group = self._groups.get(group_id)
        if group is None:
            raise ValidationError(f"Unknown parallel group: {group_id}")
        if group_id in self._joins:
            return self._joins[group_id]

        while True:
            result = self._try_join(group)
            if result.complete or not wait:
                return result
            self._sleep(poll_interval_s)

    def _try_join(self, group: ParallelGroup) -> JoinResult:
        deadline = datetime.fromisoformat(group.deadline) if group.deadline else None
        expired = deadline is not None and self._clock() >= deadline
        timed_out: list[str] = []
        for member_id in group.member_ids:
            record = self.get_record(member_id)
            if not record.is_terminal and expired:
                self._fail(member_id, ErrorCode.TIMEOUT, "parallel member timed out", record.attempts)
                timed_out.append(member_id)

        records = [self.get_record(m) for m in group.member_ids]
        completed = tuple(r.message_id for r in records if r.status is HandoffStatus.COMPLETED)
        failed = tuple(
            r.message_id
            for r in records
            if r.is_terminal
            and r.status is not HandoffStatus.COMPLETED
            and r.message_id not in timed_out
        )
        complete = all(r.is_terminal for r in records)
        if not complete:
            return JoinResult(
                group_id=group.group_id,
                complete=False,
                completed=completed,
                failed=failed,
                timed_out=tuple(timed_out),
                previous_work=(),
            )

        with self._lock:
            if group.group_id in self._joins:
                return self._joins[group.group_id]
            base_work = records[0].message.previous_work
            entries = tuple(
                WorkEntry(
                    agent_id=r.message.target_agent,
                    task_id=r.message.task.task_id,
                    message_id=r.message_id,
                    output=r.output,
                    completed_at=r.updated_at,
                )
                for r in records
                if r.status is HandoffStatus.COMPLETED
            )
            previous_work = base_work + entries
            merged_version, conflict_ids = self._merge_member_changes(group, completed)
            result = JoinResult(
                group_id=group.group_id,
                complete=True,
                completed=completed,
                failed=failed,
                timed_out=tuple(timed_out),
                previous_work=previous_work,
                merged_version_id=merged_version,
                conflict_ids=conflict_ids,
            )
            self._joins[group.group_id] = result
            self._workflows[group.workflow_id] = previous_work
        self._emitter.emit(
            Component.HANDOFF,
            group.group_id,
            "parallel_joined",
            completed=list(completed),
            failed=list(failed),
            timed_out=list(timed_out),
            conflicts=list(conflict_ids),
            merged_version_id=merged_version,
        )
        logger.info(
            "Joined group %s: %d completed, %d failed, %d conflicts",
            group.group_id, len(completed), len(failed) + len(timed_out), len(conflict_ids),
        )
        return result

    def _merge_member_changes(
        self, group: ParallelGroup, completed: tuple[str, ...]
    ) -> tuple[str | None, tuple[str, ...]]:
        if self._contexts is None or not group.context_id or not group.base_version_id:
            return None, ()
        conflict_ids: list[str] = []
        for member_id in completed:
            change_set = self._parallel_changes.pop(member_id, ())
            if not change_set:
                continue
            author = self.get_record(member_id).message.target_agent
            try:
                self._contexts.write(group.context_id, group.base_version_id, change_set, author)
            except ConflictError as e:
                conflict_ids.append(e.conflict.conflict_id)
        return self._contexts.head(group.context_id), tuple(conflict_ids)
