"""Tests for handoff message validation and the handoff state machine."""

from dataclasses import replace

import pytest

from concord.domain.handoff import (
    HandoffMessage,
    HandoffMetadata,
    HandoffStatus,
    HandoffType,
    Task,
    can_transition,
    validate_message,
)


@pytest.fixture
def message() -> HandoffMessage:
    return HandoffMessage(
        message_id="m1",
        source_agent="orchestrator",
        target_agent="performance",
        workflow_id="wf",
        handoff_type=HandoffType.INITIAL,
        task=Task("t1", "Audit budgets"),
    )


class TestValidateMessage:
    """Tests for validate_message()."""

    def test_valid_message(self, message):
        assert validate_message(message) == []

    def test_missing_fields(self, message):
        problems = validate_message(replace(message, message_id="", workflow_id=""))

        assert "missing message_id" in problems
        assert "missing workflow_id" in problems

    def test_self_handoff(self, message):
        problems = validate_message(replace(message, target_agent="orchestrator"))

        assert "source and target agent are the same" in problems

    def test_self_dependency(self, message):
        problems = validate_message(replace(message, task=Task("t1", "x", dependencies=("t1",))))

        assert "task depends on itself" in problems

    def test_context_reference_must_be_complete(self, message):
        problems = validate_message(replace(message, context_id="project"))

        assert any("context_version_id" in p for p in problems)

    @pytest.mark.parametrize("stage,total", [(1, 1), (-1, 2), (0, 0)])
    def test_stage_out_of_range(self, message, stage, total):
        meta = HandoffMetadata(stage_index=stage, total_stages=total)

        problems = validate_message(replace(message, metadata=meta))

        assert any("invalid stage" in p for p in problems)

    def test_originator_defaults_to_source(self, message):
        assert message.workflow_originator == "orchestrator"
        assert replace(message, originator="design").workflow_originator == "design"


class TestStateMachine:
    """Tests for can_transition()."""

    @pytest.mark.parametrize(
        "current,target",
        [
            (HandoffStatus.INITIATED, HandoffStatus.SENT),
            (HandoffStatus.SENT, HandoffStatus.ACKNOWLEDGED),
            (HandoffStatus.ACKNOWLEDGED, HandoffStatus.ACCEPTED),
            (HandoffStatus.ACKNOWLEDGED, HandoffStatus.REJECTED),
            (HandoffStatus.ACCEPTED, HandoffStatus.IN_PROGRESS),
            (HandoffStatus.IN_PROGRESS, HandoffStatus.COMPLETED),
            (HandoffStatus.IN_PROGRESS, HandoffStatus.CANCELLED),
        ],
    )
    def test_allowed(self, current, target):
        assert can_transition(current, target)

    @pytest.mark.parametrize(
        "current,target",
        [
            (HandoffStatus.INITIATED, HandoffStatus.ACCEPTED),
            (HandoffStatus.ACKNOWLEDGED, HandoffStatus.FAILED),
            (HandoffStatus.COMPLETED, HandoffStatus.IN_PROGRESS),
            (HandoffStatus.REJECTED, HandoffStatus.ACCEPTED),
        ],
    )
    def test_forbidden(self, current, target):
        assert not can_transition(current, target)

    def test_terminal_states_have_no_exits(self):
        """Terminal handoffs are immutable."""
        for status in HandoffStatus:
            if status.is_terminal:
                assert not any(can_transition(status, t) for t in HandoffStatus)
