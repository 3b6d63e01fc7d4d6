"""Tests for the escalation ladder and conflict severity."""

import pytest

from concord.domain.conflict import (
    ConflictPosition,
    ConflictSeverity,
    ConflictStatus,
    ResolutionStrategy,
    severity_from_confidence,
)
from concord.domain.escalation import CEILING, EscalationState
from concord.domain.exceptions import EscalationRequired, ValidationError


class TestEscalationState:
    """Tests for EscalationState."""

    def test_starts_below_first_rung(self):
        state = EscalationState("c1")

        assert state.level == -1
        assert state.next_strategy() is ResolutionStrategy.AUTO_MERGE

    def test_enter_raises_level(self):
        """Entering a strategy moves the level to that strategy's level."""
        state = EscalationState("c1").enter(ResolutionStrategy.PRIORITY)

        assert state.level == 1
        assert state.attempts == (ResolutionStrategy.PRIORITY,)

    def test_level_never_repeats(self):
        """Both level-one strategies cannot be tried in sequence."""
        state = EscalationState("c1").enter(ResolutionStrategy.PRIORITY)

        with pytest.raises(EscalationRequired):
            state.enter(ResolutionStrategy.EXPERTISE)

    def test_preferred_strategy_on_next_rung(self):
        state = EscalationState("c1", level=0)

        assert state.next_strategy(ResolutionStrategy.EXPERTISE) is ResolutionStrategy.EXPERTISE
        assert state.next_strategy(ResolutionStrategy.ARBITRATION) is ResolutionStrategy.PRIORITY

    def test_climb_terminates_at_ceiling(self):
        """Climbing from the bottom reaches arbitration in at most four steps."""
        state = EscalationState("c1")
        steps = 0
        while not state.at_ceiling:
            state = state.enter(state.next_strategy())
            steps += 1

        assert steps == CEILING + 1
        assert state.attempts[-1] is ResolutionStrategy.ARBITRATION
        with pytest.raises(EscalationRequired, match="exhausted"):
            state.next_strategy()


class TestSeverity:
    """Tests for severity_from_confidence."""

    @pytest.mark.parametrize(
        "confidences,expected",
        [
            ((0.95, 0.95), ConflictSeverity.CRITICAL),
            ((0.9, 0.9), ConflictSeverity.HIGH),
            ((0.6, 0.6), ConflictSeverity.MEDIUM),
            ((0.5, 0.5), ConflictSeverity.LOW),
        ],
    )
    def test_average_confidence_thresholds(self, confidences, expected):
        positions = [ConflictPosition(f"a{i}", i, c) for i, c in enumerate(confidences)]

        assert severity_from_confidence(positions) is expected

    def test_no_positions_is_low(self):
        assert severity_from_confidence([]) is ConflictSeverity.LOW

    def test_position_confidence_validated(self):
        with pytest.raises(ValidationError):
            ConflictPosition("a", 1, 1.5)

    def test_terminal_statuses(self):
        assert ConflictStatus.RESOLVED.is_terminal
        assert ConflictStatus.DISMISSED.is_terminal
        assert not ConflictStatus.ESCALATED.is_terminal
