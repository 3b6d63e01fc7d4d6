"""Tests for ConflictEngine and strategy selection."""

import pytest

from concord.application.conflict_engine import (
    ConflictEngine,
    StrategyLearner,
    select_strategy,
)
from concord.application.resolution_strategies import AutoMergeStrategy
from concord.domain.conflict import (
    ConflictCategory,
    ConflictPosition,
    ConflictSeverity,
    ConflictStatus,
    ResolutionStrategy,
)
from concord.domain.exceptions import ValidationError


@pytest.fixture
def engine(registry, emitter) -> ConflictEngine:
    return ConflictEngine(registry, emitter)


@pytest.fixture
def manual(registry, emitter) -> ConflictEngine:
    """Engine that leaves detected conflicts open."""
    return ConflictEngine(registry, emitter, auto_resolve=False)


class TestSelectStrategy:
    """Tests for the (category, severity) table."""

    @pytest.mark.parametrize(
        "category,severity,mergeable,expected",
        [
            (ConflictCategory.CONTEXT_VALUE, ConflictSeverity.HIGH, True, ResolutionStrategy.AUTO_MERGE),
            (ConflictCategory.CONTEXT_VALUE, ConflictSeverity.CRITICAL, False, ResolutionStrategy.ARBITRATION),
            (ConflictCategory.CONTEXT_VALUE, ConflictSeverity.MEDIUM, False, ResolutionStrategy.PRIORITY),
            (ConflictCategory.CONTEXT_VALUE, ConflictSeverity.HIGH, False, ResolutionStrategy.CONSENSUS),
            (ConflictCategory.RECOMMENDATION, ConflictSeverity.MEDIUM, False, ResolutionStrategy.EXPERTISE),
            (ConflictCategory.RECOMMENDATION, ConflictSeverity.LOW, False, ResolutionStrategy.PRIORITY),
            (ConflictCategory.DECISION, ConflictSeverity.HIGH, False, ResolutionStrategy.CONSENSUS),
            (ConflictCategory.RESOURCE, ConflictSeverity.CRITICAL, False, ResolutionStrategy.ARBITRATION),
        ],
    )
    def test_table(self, category, severity, mergeable, expected):
        assert select_strategy(category, severity, mergeable) is expected

    def test_recommendations_never_auto_merge(self, manual):
        conflict = manual.report(
            [
                ConflictPosition("performance", {"lazy": True}, 0.6),
                ConflictPosition("design", {"hero": "eager"}, 0.6),
            ],
            domain="performance",
        )

        assert AutoMergeStrategy().resolve(conflict) is None


class TestReport:
    """Tests for manual reports."""

    def test_needs_two_positions(self, engine):
        with pytest.raises(ValidationError, match="at least two"):
            engine.report([ConflictPosition("design", "a", 0.6)])

    def test_one_position_per_agent(self, engine):
        with pytest.raises(ValidationError, match="only one position"):
            engine.report([ConflictPosition("design", "a", 0.6), ConflictPosition("design", "b", 0.6)])

    def test_unknown_agent(self, engine):
        with pytest.raises(ValidationError, match="Unknown agent"):
            engine.report([ConflictPosition("design", "a", 0.6), ConflictPosition("ghost", "b", 0.6)])

    def test_expertise_resolves_medium_recommendation(self, engine):
        conflict = engine.report(
            [
                ConflictPosition("performance", "lazy-load", 0.6),
                ConflictPosition("design", "eager", 0.6),
            ],
            domain="performance",
        )

        assert conflict.status is ConflictStatus.RESOLVED
        assert conflict.severity is ConflictSeverity.MEDIUM
        assert conflict.resolution.strategy is ResolutionStrategy.EXPERTISE
        assert conflict.resolution.winner == "performance"
        assert conflict.resolution.winning_value == "lazy-load"
        assert conflict.resolution.acceptance == {"performance": True, "design": False}

    def test_agreeing_positions_keep_shared_value(self, engine):
        conflict = engine.report(
            [ConflictPosition("performance", "webp", 0.6), ConflictPosition("design", "webp", 0.6)],
            domain="performance",
        )

        assert conflict.resolution.strategy is ResolutionStrategy.EXPERTISE
        assert conflict.resolution.winning_value == "webp"

    def test_listener_notified(self, engine):
        seen = []
        engine.add_listener(seen.append)

        conflict = engine.report(
            [ConflictPosition("performance", "a", 0.6), ConflictPosition("design", "b", 0.6)],
            domain="performance",
        )

        assert [c.conflict_id for c in seen] == [conflict.conflict_id]


class TestEscalation:
    """Tests for climbing the ladder."""

    def test_expertise_tie_escalates_to_arbitration(self, engine):
        """Without a decision engine consensus fails and arbitration binds."""
        conflict = engine.report(
            [
                ConflictPosition("accessibility", "contrast", 0.6, goal_alignment=0.9),
                ConflictPosition("design", "brand", 0.6, goal_alignment=0.4),
            ],
            domain="performance",
        )

        resolution = conflict.resolution
        assert resolution.strategy is ResolutionStrategy.ARBITRATION
        assert resolution.level == 3
        assert resolution.resolved_by == "orchestrator"
        assert resolution.winner == "accessibility"
        assert conflict.escalation_level == 3

    def test_critical_goes_straight_to_arbitration(self, engine):
        conflict = engine.report(
            [
                ConflictPosition("performance", "a", 0.95, stakeholder_priority=0.9),
                ConflictPosition("design", "b", 0.95),
            ],
        )

        assert conflict.severity is ConflictSeverity.CRITICAL
        assert conflict.resolution.strategy is ResolutionStrategy.ARBITRATION
        assert conflict.resolution.winner == "performance"

    def test_orchestrator_party_uses_tie_break(self, engine):
        """With no deputy, a fixed tie-break decides."""
        conflict = engine.report(
            [ConflictPosition("orchestrator", "a", 0.95), ConflictPosition("design", "b", 0.95)],
        )

        assert conflict.resolution.resolved_by == "tie-break"
        assert conflict.resolution.winner == "design"

    def test_deputy_arbitrates_for_orchestrator(self, engine, registry):
        registry.set_deputy("performance")

        conflict = engine.report(
            [ConflictPosition("orchestrator", "a", 0.95), ConflictPosition("design", "b", 0.95)],
        )

        assert conflict.resolution.resolved_by == "performance"

    def test_rejection_reopens_at_next_level(self, engine):
        conflict = engine.report(
            [
                ConflictPosition("performance", "lazy-load", 0.6),
                ConflictPosition("design", "eager", 0.6, goal_alignment=0.9),
            ],
            domain="performance",
        )
        assert conflict.resolution.strategy is ResolutionStrategy.EXPERTISE

        reopened = engine.reject_resolution(conflict.conflict_id, "design")

        assert reopened.status is ConflictStatus.RESOLVED
        assert reopened.resolution.strategy is ResolutionStrategy.ARBITRATION
        assert reopened.resolution.winner == "design"
        statuses = [h.status for h in reopened.history]
        assert ConflictStatus.DETECTED in statuses[1:]

    def test_rejection_at_ceiling_only_recorded(self, engine):
        conflict = engine.report(
            [ConflictPosition("performance", "a", 0.95), ConflictPosition("design", "b", 0.95)],
        )

        after = engine.reject_resolution(conflict.conflict_id, "design")

        assert after.status is ConflictStatus.RESOLVED
        assert after.resolution.resolution_id == conflict.resolution.resolution_id
        assert after.resolution.acceptance["design"] is False

    def test_acceptance_requires_party(self, engine):
        conflict = engine.report(
            [ConflictPosition("performance", "a", 0.6), ConflictPosition("design", "b", 0.6)],
            domain="performance",
        )

        with pytest.raises(ValidationError, match="not a party"):
            engine.accept_resolution(conflict.conflict_id, "accessibility")


class TestRecommendations:
    """Tests for divergent recommendation detection."""

    def test_low_confidence_ignored(self, engine):
        engine.submit_recommendation("performance", "images", "performance", "webp", 0.8)

        assert engine.submit_recommendation("design", "images", "performance", "png", 0.5) is None
        assert engine.list_conflicts() == []

    def test_divergence_opens_conflict(self, engine):
        engine.submit_recommendation("performance", "images", "accessibility", "webp", 0.8)

        conflict = engine.submit_recommendation("accessibility", "images", "accessibility", "png", 0.9)

        assert conflict.category is ConflictCategory.RECOMMENDATION
        assert set(conflict.agents_involved) == {"performance", "accessibility"}
        assert conflict.resolution.winner == "accessibility"

    def test_agreement_opens_nothing(self, engine):
        engine.submit_recommendation("performance", "images", "performance", "webp", 0.8)

        assert engine.submit_recommendation("design", "images", "performance", "webp", 0.9) is None

    def test_open_conflict_gains_position(self, manual):
        manual.submit_recommendation("performance", "images", "performance", "webp", 0.8)
        first = manual.submit_recommendation("accessibility", "images", "performance", "png", 0.9)

        updated = manual.submit_recommendation("design", "images", "performance", "avif", 0.7)

        assert updated.conflict_id == first.conflict_id
        assert len(updated.positions) == 3
        assert updated.agents_involved[-1] == "design"
        assert len(manual.open_conflicts()) == 1


class TestDismiss:
    """Tests for dismiss()."""

    def test_dismiss_open_conflict(self, manual):
        conflict = manual.report(
            [ConflictPosition("performance", "a", 0.6), ConflictPosition("design", "b", 0.6)]
        )

        dismissed = manual.dismiss(conflict.conflict_id, "superseded")

        assert dismissed.status is ConflictStatus.DISMISSED
        assert dismissed.resolution is None
        assert manual.open_conflicts() == []

    def test_dismiss_terminal_conflict(self, engine):
        conflict = engine.report(
            [ConflictPosition("performance", "a", 0.6), ConflictPosition("design", "b", 0.6)],
            domain="performance",
        )

        with pytest.raises(ValidationError, match="already resolved"):
            engine.dismiss(conflict.conflict_id, "late")

    def test_unknown_conflict(self, engine):
        with pytest.raises(ValidationError):
            engine.get("missing")


class TestStrategyLearner:
    """Tests for StrategyLearner."""

    def test_default_kept_until_enough_samples(self):
        learner = StrategyLearner(min_samples=2)
        learner.record(ConflictCategory.CONTEXT_VALUE, "performance", ResolutionStrategy.PRIORITY, False)

        preferred = learner.preferred(
            ConflictCategory.CONTEXT_VALUE, "performance", ResolutionStrategy.PRIORITY
        )

        assert preferred is ResolutionStrategy.PRIORITY

    def test_ineffective_default_replaced(self):
        learner = StrategyLearner(min_samples=2, switch_threshold=0.5)
        for _ in range(2):
            learner.record(ConflictCategory.CONTEXT_VALUE, "performance", ResolutionStrategy.PRIORITY, False)
            learner.record(ConflictCategory.CONTEXT_VALUE, "performance", ResolutionStrategy.ARBITRATION, True)

        preferred = learner.preferred(
            ConflictCategory.CONTEXT_VALUE, "performance", ResolutionStrategy.PRIORITY
        )

        assert preferred is ResolutionStrategy.ARBITRATION
        assert learner.effectiveness(
            ConflictCategory.CONTEXT_VALUE, "performance", ResolutionStrategy.PRIORITY
        ) == (0.0, 2)

    def test_lower_levels_never_preferred(self):
        learner = StrategyLearner(min_samples=1)
        learner.record(ConflictCategory.DECISION, "design", ResolutionStrategy.CONSENSUS, False)
        learner.record(ConflictCategory.DECISION, "design", ResolutionStrategy.PRIORITY, True)

        preferred = learner.preferred(ConflictCategory.DECISION, "design", ResolutionStrategy.CONSENSUS)

        assert preferred is ResolutionStrategy.CONSENSUS
