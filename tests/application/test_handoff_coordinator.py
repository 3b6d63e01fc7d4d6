"""Tests for HandoffCoordinator."""

import threading
from datetime import timedelta

import pytest

from concord.application.context_store import ContextStore
from concord.application.handoff_coordinator import HandoffCoordinator
from concord.domain.context import Change
from concord.domain.exceptions import (
    AuthorizationError,
    TransportError,
    ValidationError,
)
from concord.domain.handoff import (
    AckStatus,
    ErrorCode,
    HandoffAck,
    HandoffMessage,
    HandoffStatus,
    HandoffType,
    Task,
    TaskStatus,
)
from concord.domain.interfaces import HandoffTransportInterface
from concord.domain.models import utc_now


class RecordingTransport(HandoffTransportInterface):
    """Calls ``handler`` for each delivery; targets in ``down`` are unreachable."""

    def __init__(self, failures: int = 0):
        self.handler = None
        self.failures = failures
        self.down: set[str] = set()
        self.messages: list[HandoffMessage] = []

    def deliver(self, message: HandoffMessage) -> HandoffAck:
        self.messages.append(message)
        if message.target_agent in self.down:
            raise TransportError(f"{message.target_agent} unreachable")
        if self.failures > 0:
            self.failures -= 1
            raise TransportError("link down")
        return self.handler(message)


@pytest.fixture
def contexts(version_store, emitter, registry) -> ContextStore:
    return ContextStore(version_store, emitter, registry)


@pytest.fixture
def genesis(contexts):
    return contexts.create_context(
        "project", {"performance": {"budgets": {"lcp": 2500, "fid": 100}}}
    )


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def coordinator(registry, transport, contexts, emitter, sleeps):
    coordinator = HandoffCoordinator(
        registry, transport, contexts, emitter, sleep=sleeps.append
    )
    transport.handler = coordinator.receive
    yield coordinator
    coordinator.shutdown()


def _message(message_id="m1", target="performance", task=None, **fields) -> HandoffMessage:
    return HandoffMessage(
        message_id=message_id,
        source_agent="orchestrator",
        target_agent=target,
        workflow_id="wf",
        handoff_type=HandoffType.INITIAL,
        task=task or Task("t1", "Audit budgets"),
        **fields,
    )


class TestSend:
    """Tests for send()."""

    def test_accepted(self, coordinator):
        result = coordinator.send(_message())

        assert result.success
        assert result.status is HandoffStatus.ACCEPTED
        assert result.attempts == 1
        assert coordinator.task_status("t1") is TaskStatus.IN_PROGRESS
        statuses = [t.status for t in coordinator.get_record("m1").history]
        assert statuses == [
            HandoffStatus.INITIATED,
            HandoffStatus.SENT,
            HandoffStatus.ACKNOWLEDGED,
            HandoffStatus.ACCEPTED,
        ]

    def test_invalid_message_fails_without_attempts(self, coordinator, transport):
        result = coordinator.send(_message(target="orchestrator"))

        assert not result.success
        assert result.error_code is ErrorCode.VALIDATION_ERROR
        assert result.attempts == 0
        assert coordinator.get_record("m1").status is HandoffStatus.FAILED
        assert transport.messages == []

    def test_unknown_context_version(self, coordinator, genesis):
        result = coordinator.send(_message(context_id="project", context_version_id="nope"))

        assert result.error_code is ErrorCode.VALIDATION_ERROR
        assert "Unknown context version" in result.error

    def test_duplicate_message_id(self, coordinator, transport):
        """Replaying a message returns the recorded result without redelivery."""
        coordinator.send(_message())

        replay = coordinator.send(_message())

        assert replay.duplicate
        assert replay.success
        assert len(transport.messages) == 1

    def test_unmet_dependency_retried_then_failed(self, coordinator, transport, sleeps):
        task = Task("t2", "Fix budgets", dependencies=("t1",))

        result = coordinator.send(_message(task=task))

        assert result.error_code is ErrorCode.DEPENDENCY_ERROR
        assert result.attempts == 3
        assert sleeps == [0.1, 0.2]
        assert transport.messages == []
        assert "t1" in coordinator.get_record("m1").failure_reason

    def test_met_dependency(self, coordinator):
        coordinator.register_task("t1", TaskStatus.COMPLETED)

        result = coordinator.send(_message(task=Task("t2", "Fix budgets", dependencies=("t1",))))

        assert result.success

    def test_transient_transport_failure_retried(self, coordinator, transport, sleeps):
        transport.failures = 1

        result = coordinator.send(_message())

        assert result.success
        assert result.attempts == 2
        assert [m.metadata.retry_count for m in transport.messages] == [0, 1]
        assert sleeps == [0.1]

    def test_transport_failures_exhausted(self, coordinator, transport):
        transport.down.add("performance")

        result = coordinator.send(_message())

        assert result.error_code is ErrorCode.TRANSPORT_ERROR
        assert result.attempts == 3
        assert len(transport.messages) == 3

    def test_rejected_ack(self, coordinator, transport):
        transport.handler = lambda m: HandoffAck(m.message_id, AckStatus.REJECTED, "busy")

        result = coordinator.send(_message())

        assert result.status is HandoffStatus.REJECTED
        assert result.error_code is ErrorCode.REJECTED
        assert result.error == "busy"

    def test_acknowledgement_timeout(self, registry, transport, contexts, emitter):
        release = threading.Event()

        def slow(message):
            release.wait(5)
            return HandoffAck(message.message_id, AckStatus.ACCEPTED)

        transport.handler = slow
        coordinator = HandoffCoordinator(
            registry, transport, contexts, emitter, ack_timeout_s=0.05, sleep=lambda s: None
        )
        try:
            result = coordinator.send(_message())
        finally:
            release.set()
            coordinator.shutdown()

        assert result.error_code is ErrorCode.TIMEOUT
        assert result.attempts == 3


class TestFallback:
    """Tests for send_with_fallback()."""

    def test_falls_back_on_transport_failure(self, coordinator, transport):
        transport.down.add("performance")

        result = coordinator.send_with_fallback(_message(), ["design"])

        record = coordinator.get_record(result.handoff_id)
        assert result.success
        assert record.message.target_agent == "design"
        assert record.message.metadata.retry_count == 1
        assert coordinator.get_record("m1").status is HandoffStatus.FAILED

    def test_no_fallback_for_structural_failure(self, coordinator, transport):
        task = Task("t2", "Fix budgets", dependencies=("t1",))

        result = coordinator.send_with_fallback(_message(task=task), ["design"])

        assert result.handoff_id == "m1"
        assert result.error_code is ErrorCode.DEPENDENCY_ERROR
        assert transport.messages == []


class TestReceive:
    """Tests for receive()."""

    def test_idempotent_ack(self, coordinator):
        message = _message()

        first = coordinator.receive(message)

        assert first.accepted
        assert first.estimated_completion is not None
        assert coordinator.receive(message) is first

    def test_rejects_unmet_dependencies(self, coordinator):
        ack = coordinator.receive(_message(task=Task("t2", "x", dependencies=("t1",))))

        assert ack.status is AckStatus.REJECTED
        assert "Unmet dependencies" in ack.reason


class TestExecution:
    """Tests for start, complete, fail, cancel and escalate."""

    def test_simple_handoff_completes_workflow(self, coordinator, contexts, genesis):
        """The completion handoff carries one previous_work entry."""
        coordinator.send(_message(context_id="project", context_version_id=genesis.version_id))
        coordinator.start("m1", "performance")

        result = coordinator.complete(
            "m1", "performance", {"lcp": 2400},
            changes=[Change.replace("/performance/budgets/lcp", 2400)],
        )

        completion = coordinator.get_record(result.handoff_id)
        assert result.success
        assert completion.message.handoff_type is HandoffType.COMPLETION
        assert completion.message.target_agent == "orchestrator"
        assert completion.status is HandoffStatus.COMPLETED
        work = coordinator.workflow_history("wf")
        assert [(w.agent_id, w.output) for w in work] == [("performance", {"lcp": 2400})]
        assert contexts.read("project").get("/performance/budgets/lcp") == 2400
        assert completion.message.context_version_id == contexts.head("project")

    def test_sequential_next_stage(self, coordinator):
        coordinator.send(_message())

        result = coordinator.complete("m1", "performance", "done", next_target="design")

        followup = coordinator.get_record(result.handoff_id).message
        assert followup.handoff_type is HandoffType.SEQUENTIAL
        assert followup.target_agent == "design"
        assert followup.metadata.stage_index == 1
        assert followup.workflow_originator == "orchestrator"
        assert len(followup.previous_work) == 1

    def test_completion_replay(self, coordinator):
        coordinator.send(_message())
        first = coordinator.complete("m1", "performance", "done")

        again = coordinator.complete("m1", "performance", "done")

        assert again.handoff_id == first.handoff_id
        assert len(coordinator.records("wf")) == 2

    def test_only_target_completes(self, coordinator):
        coordinator.send(_message())

        with pytest.raises(AuthorizationError):
            coordinator.complete("m1", "design", "done")

    def test_fail_reports_reason(self, coordinator):
        coordinator.send(_message())

        result = coordinator.fail("m1", "performance", "budget data missing")

        assert result.status is HandoffStatus.FAILED
        assert coordinator.get_record("m1").failure_reason == "budget data missing"
        assert coordinator.task_status("t1") is TaskStatus.FAILED

    def test_cancel_by_issuer_only(self, coordinator):
        coordinator.send(_message())

        with pytest.raises(AuthorizationError):
            coordinator.cancel("m1", "performance")

        record = coordinator.cancel("m1", "orchestrator", "plan changed")
        assert record.status is HandoffStatus.CANCELLED
        assert coordinator.task_status("t1") is TaskStatus.CANCELLED
        with pytest.raises(ValidationError, match="already cancelled"):
            coordinator.cancel("m1", "orchestrator")

    def test_escalate_to_orchestrator(self, coordinator):
        coordinator.send(_message())

        result = coordinator.escalate("m1", "performance", "blocked on design tokens")

        escalation = coordinator.get_record(result.handoff_id).message
        assert result.success
        assert escalation.handoff_type is HandoffType.ESCALATION
        assert escalation.target_agent == "orchestrator"
        assert escalation.task.task_id == "t1:escalation"
        assert coordinator.get_record("m1").status is HandoffStatus.FAILED

    def test_orchestrator_cannot_escalate(self, coordinator):
        coordinator.send(_message())

        with pytest.raises(ValidationError):
            coordinator.escalate("m1", "orchestrator", "stuck")


class TestParallel:
    """Tests for fan_out() and join()."""

    ASSIGNMENTS = [("performance", Task("p", "Perf audit")), ("accessibility", Task("a", "A11y audit"))]

    def test_join_merges_outputs_and_changes(self, coordinator, contexts, genesis):
        group = coordinator.fan_out(
            "orchestrator", "wf", self.ASSIGNMENTS,
            context_id="project", context_version_id=genesis.version_id,
        )
        assert not coordinator.join(group.group_id).complete

        perf, a11y = group.member_ids
        coordinator.complete(perf, "performance", "perf", [Change.replace("/performance/budgets/lcp", 2400)])
        coordinator.complete(a11y, "accessibility", "a11y", [Change.replace("/performance/budgets/fid", 90)])
        joined = coordinator.join(group.group_id)

        assert joined.success
        assert [w.agent_id for w in joined.previous_work] == ["performance", "accessibility"]
        assert joined.merged_version_id == contexts.head("project")
        assert contexts.read("project").tree["performance"]["budgets"] == {"lcp": 2400, "fid": 90}
        assert coordinator.join(group.group_id) is joined

    def test_clashing_member_changes_raise_conflict(self, coordinator, genesis):
        group = coordinator.fan_out(
            "orchestrator", "wf", self.ASSIGNMENTS,
            context_id="project", context_version_id=genesis.version_id,
        )
        perf, a11y = group.member_ids
        coordinator.complete(perf, "performance", "perf", [Change.replace("/performance/budgets/lcp", 2400)])
        coordinator.complete(a11y, "accessibility", "a11y", [Change.replace("/performance/budgets/lcp", 2600)])

        joined = coordinator.join(group.group_id)

        assert joined.complete
        assert len(joined.conflict_ids) == 1
        assert not joined.success

    def test_members_time_out(self, registry, transport, emitter):
        now = [utc_now()]
        coordinator = HandoffCoordinator(
            registry, transport, emitter=emitter, sleep=lambda s: None, clock=lambda: now[0]
        )
        transport.handler = coordinator.receive
        try:
            group = coordinator.fan_out("orchestrator", "wf", self.ASSIGNMENTS, timeout_s=10)
            now[0] += timedelta(seconds=11)

            joined = coordinator.join(group.group_id)
        finally:
            coordinator.shutdown()

        assert joined.complete
        assert set(joined.timed_out) == set(group.member_ids)
        assert not joined.success
        record = coordinator.get_record(group.member_ids[0])
        assert record.error_code is ErrorCode.TIMEOUT

    def test_unknown_group(self, coordinator):
        with pytest.raises(ValidationError):
            coordinator.join("missing")


class TestPrune:
    """Tests for prune()."""

    def test_forgets_finished_handoffs(self, coordinator, transport):
        coordinator.send(_message())
        coordinator.complete("m1", "performance", "done")
        coordinator.send(_message("m2", task=Task("t2", "Audit contrast")))

        assert coordinator.prune(utc_now() - timedelta(days=1)) == 0
        assert coordinator.prune(utc_now() + timedelta(days=1)) > 0

        with pytest.raises(ValidationError, match="Unknown handoff"):
            coordinator.get_record("m1")
        assert coordinator.get_record("m2").status is HandoffStatus.ACCEPTED
        assert not any(r.is_terminal for r in coordinator.records("wf"))

    def test_pruned_message_is_processed_again(self, coordinator, transport):
        coordinator.send(_message())
        coordinator.complete("m1", "performance", "done")
        coordinator.prune(utc_now() + timedelta(days=1))
        delivered = len(transport.messages)

        again = coordinator.send(_message())

        assert not again.duplicate
        assert len(transport.messages) == delivered + 1
