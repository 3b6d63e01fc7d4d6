"""
Conflict Engine: detection, strategy selection and the escalation ladder.

Conflicts come from two detectors (concurrent context writes and
divergent recommendations) plus manual reports. Resolution starts at
the strategy chosen by the (category, severity) table and climbs the
escalation ladder on failure until arbitration, which always binds.
"""

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any

from concord.application.agent_registry import AgentRegistry
from concord.application.event_emitter import CoordinationEventEmitter
from concord.application.resolution_strategies import (
    ArbitrationStrategy,
    AutoMergeStrategy,
    ConsensusStrategy,
    ExpertiseStrategy,
    PriorityStrategy,
    Strategy,
    StrategyOutcome,
)
from concord.domain.conflict import (
    Conflict,
    ConflictCategory,
    ConflictPosition,
    ConflictResolution,
    ConflictSeverity,
    ConflictStatus,
    ResolutionStrategy,
    StatusChange,
    severity_from_confidence,
)
from concord.domain.coordination_event import Component
from concord.domain.decision import CollaborativeDecision, DecisionStage, DecisionType
from concord.domain.escalation import CEILING, EscalationState
from concord.domain.exceptions import ValidationError
from concord.domain.models import new_id, utc_now

if TYPE_CHECKING:
    from concord.application.decision_engine import DecisionEngine

logger = logging.getLogger(__name__)

ConflictListener = Callable[[Conflict], None]


# =============================================================================
# STRATEGY SELECTION
# =============================================================================


def select_strategy(
    category: ConflictCategory, severity: ConflictSeverity, mergeable: bool
) -> ResolutionStrategy:
    """Table lookup keyed by (category, severity)."""
    if category is ConflictCategory.CONTEXT_VALUE and mergeable:
        return ResolutionStrategy.AUTO_MERGE
    if severity is ConflictSeverity.CRITICAL:
        return ResolutionStrategy.ARBITRATION
    if category is ConflictCategory.CONTEXT_VALUE and severity in (
        ConflictSeverity.LOW,
        ConflictSeverity.MEDIUM,
    ):
        return ResolutionStrategy.PRIORITY
    if category is ConflictCategory.RECOMMENDATION and severity in (
        ConflictSeverity.MEDIUM,
        ConflictSeverity.HIGH,
    ):
        return ResolutionStrategy.EXPERTISE
    if severity is ConflictSeverity.HIGH:
        return ResolutionStrategy.CONSENSUS
    return ResolutionStrategy.PRIORITY


def _level_one_preference(category: ConflictCategory) -> ResolutionStrategy:
    if category in (ConflictCategory.RECOMMENDATION, ConflictCategory.DECISION):
        return ResolutionStrategy.EXPERTISE
    return ResolutionStrategy.PRIORITY


# =============================================================================
# LEARNING
# =============================================================================


@dataclass
class _Effectiveness:
    accepted: int = 0
    total: int = 0

    @property
    def rate(self) -> float:
        return self.accepted / self.total if self.total else 0.0


class StrategyLearner:
    """
    Tracks per (category, domain, strategy) effectiveness.

    Effectiveness is the fraction of agent acceptances among all recorded
    acceptances and rejections of that strategy's resolutions.
    """

    def __init__(self, min_samples: int = 5, switch_threshold: float = 0.5):
        self._min_samples = min_samples
        self._switch_threshold = switch_threshold
        self._stats: dict[tuple[ConflictCategory, str, ResolutionStrategy], _Effectiveness] = {}
        self._lock = threading.Lock()

    def record(
        self,
        category: ConflictCategory,
        domain: str,
        strategy: ResolutionStrategy,
        accepted: bool,
    ) -> None:
        with self._lock:
            stats = self._stats.setdefault((category, domain, strategy), _Effectiveness())
            stats.total += 1
            if accepted:
                stats.accepted += 1

    def effectiveness(
        self, category: ConflictCategory, domain: str, strategy: ResolutionStrategy
    ) -> tuple[float, int]:
        """(rate, samples)"""
        stats = self._stats.get((category, domain, strategy), _Effectiveness())
        return stats.rate, stats.total

    def preferred(
        self, category: ConflictCategory, domain: str, default: ResolutionStrategy
    ) -> ResolutionStrategy:
        """
        ``default`` unless it has proven ineffective and a better-known
        strategy at the same or a higher level exists.
        """
        rate, samples = self.effectiveness(category, domain, default)
        if samples < self._min_samples or rate >= self._switch_threshold:
            return default
        best, best_rate = default, rate
        for strategy in ResolutionStrategy:
            if strategy.level < default.level or strategy is default:
                continue
            other_rate, other_samples = self.effectiveness(category, domain, strategy)
            if other_samples >= self._min_samples and other_rate > best_rate:
                best, best_rate = strategy, other_rate
        if best is not default:
            logger.info(
                "Preferring %s over %s for (%s, %s): %.2f vs %.2f",
                best.value, default.value, category.value, domain, best_rate, rate,
            )
        return best


# =============================================================================
# ENGINE
# =============================================================================


@dataclass(frozen=True)
class _Recommendation:
    agent_id: str
    value: Any
    confidence: float
    priority: int
    reasoning: str


class ConflictEngine:
    """
    Detects and resolves conflicts.

    Conflicts are stored immutably; every transition replaces the stored
    instance, emits an event and saves an audit record. Listeners are
    called outside the engine lock when a conflict is resolved or
    dismissed.
    """

    def __init__(
        self,
        registry: AgentRegistry,
        emitter: CoordinationEventEmitter | None = None,
        recommendation_threshold: float = 0.5,
        learner: StrategyLearner | None = None,
        auto_resolve: bool = True,
    ):
        """
        Args:
            registry: Agent registry (expertise, orchestrator, deputy)
            emitter: Monitoring sink
            recommendation_threshold: Minimum confidence for a divergent
                recommendation to open a conflict
            learner: Strategy effectiveness tracker
            auto_resolve: Resolve detected conflicts immediately
        """
        self._registry = registry
        self._emitter = emitter or CoordinationEventEmitter()
        self._threshold = recommendation_threshold
        self._learner = learner or StrategyLearner()
        self._auto_resolve = auto_resolve

        self._lock = threading.RLock()
        self._conflicts: dict[str, Conflict] = {}
        self._recommendations: dict[str, dict[str, _Recommendation]] = {}
        self._open_by_scope: dict[str, str] = {}
        self._by_decision: dict[str, str] = {}
        self._listeners: list[ConflictListener] = []
        self._decisions: "DecisionEngine | None" = None

        self._strategies: dict[ResolutionStrategy, Strategy] = {}
        for strategy in (
            AutoMergeStrategy(),
            PriorityStrategy(),
            ExpertiseStrategy(registry),
            ConsensusStrategy(self._open_consensus_round),
            ArbitrationStrategy(registry),
        ):
            self.register_strategy(strategy)

    # =========================================================================
    # WIRING
    # =========================================================================

    def register_strategy(self, strategy: Strategy) -> None:
        """Register (or replace) the implementation of a strategy."""
        self._strategies[strategy.kind] = strategy

    def add_listener(self, listener: ConflictListener) -> None:
        self._listeners.append(listener)

    def attach_decision_engine(self, decisions: "DecisionEngine") -> None:
        """Use ``decisions`` for consensus rounds and follow their outcomes."""
        self._decisions = decisions
        decisions.add_listener(self.on_decision_closed)
        decisions.set_round_arbiter(self._arbitrated_option)

    @property
    def learner(self) -> StrategyLearner:
        return self._learner

    # =========================================================================
    # QUERIES
    # =========================================================================

    def get(self, conflict_id: str) -> Conflict:
        conflict = self._conflicts.get(conflict_id)
        if conflict is None:
            raise ValidationError(f"Unknown conflict: {conflict_id}")
        return conflict

    def list_conflicts(
        self,
        status: ConflictStatus | None = None,
        category: ConflictCategory | None = None,
    ) -> list[Conflict]:
        return sorted(
            [
                c
                for c in self._conflicts.values()
                if (status is None or c.status is status)
                and (category is None or c.category is category)
            ],
            key=lambda c: c.detected_at,
        )

    def open_conflicts(self) -> list[Conflict]:
        return [c for c in self.list_conflicts() if not c.is_terminal]

    # =========================================================================
    # STATE
    # =========================================================================

    def _transition(
        self, conflict: Conflict, status: ConflictStatus, note: str = "", **changes: Any
    ) -> Conflict:
        """Replace the stored conflict. Caller holds the lock."""
        updated = replace(
            conflict,
            status=status,
            history=conflict.history + (StatusChange(status, utc_now().isoformat(), note),),
            **changes,
        )
        self._conflicts[conflict.conflict_id] = updated
        self._emitter.emit(
            Component.CONFLICT,
            conflict.conflict_id,
            f"conflict_{status.value}",
            category=conflict.category.value,
            severity=updated.severity.value,
            note=note,
            level=updated.escalation_level,
        )
        self._emitter.record("conflict", conflict.conflict_id, updated, updated.is_terminal)
        if updated.is_terminal and conflict.scope:
            if self._open_by_scope.get(conflict.scope) == conflict.conflict_id:
                del self._open_by_scope[conflict.scope]
        return updated

    def _notify(self, conflict: Conflict) -> None:
        for listener in list(self._listeners):
            listener(conflict)

    # =========================================================================
    # DETECTION
    # =========================================================================

    def register_detected(self, conflict: Conflict) -> Conflict:
        """
        Accept a conflict found by an external detector (the Context Store).

        Returns:
            The stored conflict, after automatic resolution if enabled
        """
        with self._lock:
            if conflict.conflict_id in self._conflicts:
                return self._conflicts[conflict.conflict_id]
            self._conflicts[conflict.conflict_id] = conflict
            if conflict.scope and conflict.category is not ConflictCategory.CONTEXT_VALUE:
                self._open_by_scope[conflict.scope] = conflict.conflict_id
            self._emitter.emit(
                Component.CONFLICT,
                conflict.conflict_id,
                "conflict_detected",
                category=conflict.category.value,
                severity=conflict.severity.value,
                agents=list(conflict.agents_involved),
                context_id=conflict.context_id,
            )
            self._emitter.record("conflict", conflict.conflict_id, conflict, False)
        logger.info(
            "Conflict %s detected (%s, %s) between %s",
            conflict.conflict_id,
            conflict.category.value,
            conflict.severity.value,
            ", ".join(conflict.agents_involved),
        )
        if self._auto_resolve:
            return self.resolve(conflict.conflict_id)
        return self.get(conflict.conflict_id)

    def report(
        self,
        positions: list[ConflictPosition] | tuple[ConflictPosition, ...],
        category: ConflictCategory = ConflictCategory.RECOMMENDATION,
        domain: str = "project",
        title: str = "",
        scope: str | None = None,
    ) -> Conflict:
        """
        Manually report a conflict.

        Raises:
            ValidationError: Fewer than two positions, or duplicate agents
        """
        positions = tuple(positions)
        agents = [p.agent_id for p in positions]
        if len(positions) < 2:
            raise ValidationError("A conflict needs at least two positions")
        if len(set(agents)) != len(agents):
            raise ValidationError("Each agent may hold only one position")
        for agent_id in agents:
            self._registry.get(agent_id)
        now = utc_now().isoformat()
        conflict = Conflict(
            conflict_id=new_id(),
            category=category,
            severity=severity_from_confidence(positions),
            domain=domain,
            agents_involved=tuple(agents),
            positions=positions,
            status=ConflictStatus.DETECTED,
            detected_at=now,
            title=title or f"Reported {category.value} conflict in {domain}",
            scope=scope,
            history=(StatusChange(ConflictStatus.DETECTED, now, "reported"),),
        )
        return self.register_detected(conflict)

    def submit_recommendation(
        self,
        agent_id: str,
        scope: str,
        domain: str,
        value: Any,
        confidence: float,
        priority: int = 5,
        reasoning: str = "",
    ) -> Conflict | None:
        """
        Record an agent's latest recommendation for ``scope``.

        Opens a conflict (or adds a position to the open one for the
        scope) when a confident recommendation diverges from another
        agent's confident recommendation.

        Returns:
            The opened or updated conflict, or None
        """
        self._registry.get(agent_id)
        if not 0.0 <= confidence <= 1.0:
            raise ValidationError(f"confidence must be in [0, 1], got {confidence}")
        recommendation = _Recommendation(agent_id, value, confidence, priority, reasoning)

        with self._lock:
            latest = self._recommendations.setdefault(scope, {})
            latest[agent_id] = recommendation
            if confidence <= self._threshold:
                return None
            divergent = [
                r
                for r in latest.values()
                if r.agent_id != agent_id and r.confidence > self._threshold and r.value != value
            ]
            if not divergent:
                return None

            position = self._position(recommendation)
            open_id = self._open_by_scope.get(scope)
            if open_id is not None:
                return self._add_position(open_id, position)

            positions = (position,) + tuple(self._position(r) for r in divergent)
            now = utc_now().isoformat()
            conflict = Conflict(
                conflict_id=new_id(),
                category=ConflictCategory.RECOMMENDATION,
                severity=severity_from_confidence(positions),
                domain=domain,
                agents_involved=tuple(p.agent_id for p in positions),
                positions=positions,
                status=ConflictStatus.DETECTED,
                detected_at=now,
                title=f"Divergent recommendations for {scope}",
                scope=scope,
                history=(StatusChange(ConflictStatus.DETECTED, now),),
            )
        return self.register_detected(conflict)

    @staticmethod
    def _position(recommendation: _Recommendation) -> ConflictPosition:
        return ConflictPosition(
            agent_id=recommendation.agent_id,
            value=recommendation.value,
            confidence=recommendation.confidence,
            priority=recommendation.priority,
            reasoning=recommendation.reasoning,
        )

    def _add_position(self, conflict_id: str, position: ConflictPosition) -> Conflict:
        conflict = self._conflicts[conflict_id]
        positions = tuple(p for p in conflict.positions if p.agent_id != position.agent_id)
        positions += (position,)
        agents = tuple(dict.fromkeys(conflict.agents_involved + (position.agent_id,)))
        return self._transition(
            conflict,
            conflict.status,
            f"position updated by {position.agent_id}",
            positions=positions,
            agents_involved=agents,
            severity=severity_from_confidence(positions),
        )

    # =========================================================================
    # RESOLUTION
    # =========================================================================

    def _initial_strategy(self, conflict: Conflict) -> ResolutionStrategy:
        mergeable = (
            conflict.category is ConflictCategory.CONTEXT_VALUE
            and self._strategies[ResolutionStrategy.AUTO_MERGE].resolve(conflict) is not None
        )
        chosen = select_strategy(conflict.category, conflict.severity, mergeable)
        return self._learner.preferred(conflict.category, conflict.domain, chosen)

    def resolve(self, conflict_id: str) -> Conflict:
        """
        Run the escalation ladder until a strategy resolves the conflict or
        opens a consensus round.

        Returns:
            The conflict (resolved, or escalated awaiting a decision)
        """
        with self._lock:
            conflict = self.get(conflict_id)
            if conflict.is_terminal or conflict.status is ConflictStatus.ESCALATED:
                return conflict

            state = EscalationState(conflict_id, conflict.escalation_level)
            strategy = self._initial_strategy(conflict)
            if strategy.level <= state.level:
                strategy = state.next_strategy(_level_one_preference(conflict.category))

            conflict = self._transition(conflict, ConflictStatus.ANALYZING)
            while True:
                state = state.enter(strategy)
                conflict = self._transition(
                    conflict,
                    ConflictStatus.RESOLVING,
                    f"trying {strategy.value}",
                    escalation_level=state.level,
                )
                outcome = self._strategies[strategy].resolve(conflict)
                if outcome is None:
                    logger.info(
                        "Strategy %s failed for %s; escalating", strategy.value, conflict_id
                    )
                    strategy = state.next_strategy(_level_one_preference(conflict.category))
                    continue
                if outcome.pending:
                    self._by_decision[outcome.decision_id] = conflict_id
                    return self._transition(
                        conflict, ConflictStatus.ESCALATED, outcome.rationale
                    )
                conflict = self._attach(conflict, strategy, outcome)
                break

        self._notify(conflict)
        return conflict

    def _attach(
        self, conflict: Conflict, strategy: ResolutionStrategy, outcome: StrategyOutcome
    ) -> Conflict:
        acceptance = {
            agent_id: (outcome.winner is None or agent_id == outcome.winner)
            for agent_id in conflict.agents_involved
        }
        resolution = ConflictResolution(
            resolution_id=new_id(),
            conflict_id=conflict.conflict_id,
            strategy=strategy,
            level=strategy.level,
            resolved_by=outcome.resolved_by,
            resolved_at=utc_now().isoformat(),
            winning_value=outcome.winning_value,
            rationale=outcome.rationale,
            winner=outcome.winner,
            acceptance=acceptance,
            decision_id=outcome.decision_id,
        )
        logger.info(
            "Conflict %s resolved by %s: %s",
            conflict.conflict_id, strategy.value, outcome.rationale,
        )
        return self._transition(
            conflict, ConflictStatus.RESOLVED, outcome.rationale, resolution=resolution
        )

    def dismiss(self, conflict_id: str, reason: str) -> Conflict:
        """
        Close a conflict without a resolution.

        Raises:
            ValidationError: If the conflict is already terminal
        """
        with self._lock:
            conflict = self.get(conflict_id)
            if conflict.is_terminal:
                raise ValidationError(f"Conflict {conflict_id} is already {conflict.status.value}")
            conflict = self._transition(conflict, ConflictStatus.DISMISSED, reason)
        logger.info("Conflict %s dismissed: %s", conflict_id, reason)
        self._notify(conflict)
        return conflict

    # =========================================================================
    # ACCEPTANCE AND RE-OPENING
    # =========================================================================

    def accept_resolution(self, conflict_id: str, agent_id: str) -> Conflict:
        """Record an involved agent's acceptance of the resolution."""
        return self._record_acceptance(conflict_id, agent_id, True)

    def _record_acceptance(self, conflict_id: str, agent_id: str, accepted: bool) -> Conflict:
        with self._lock:
            conflict = self.get(conflict_id)
            if conflict.resolution is None:
                raise ValidationError(f"Conflict {conflict_id} has no resolution")
            if agent_id not in conflict.agents_involved:
                raise ValidationError(f"{agent_id} is not a party to {conflict_id}")
            resolution = replace(
                conflict.resolution,
                acceptance={**conflict.resolution.acceptance, agent_id: accepted},
            )
            self._learner.record(
                conflict.category, conflict.domain, resolution.strategy, accepted
            )
            return self._transition(
                conflict,
                conflict.status,
                f"{'accepted' if accepted else 'rejected'} by {agent_id}",
                resolution=resolution,
            )

    def reject_resolution(self, conflict_id: str, agent_id: str) -> Conflict:
        """
        Record a rejection. Below the ladder ceiling the conflict is
        re-opened and resolved again at the next level; at the ceiling
        the rejection is only recorded.
        """
        conflict = self._record_acceptance(conflict_id, agent_id, False)
        resolution = conflict.resolution
        if resolution is None or resolution.level >= CEILING:
            logger.info(
                "Rejection of binding resolution for %s by %s recorded", conflict_id, agent_id
            )
            return conflict
        with self._lock:
            conflict = self._transition(
                conflict,
                ConflictStatus.DETECTED,
                f"re-opened after rejection by {agent_id}",
                resolution=None,
                escalation_level=resolution.level,
            )
        logger.info("Conflict %s re-opened above level %d", conflict_id, resolution.level)
        return self.resolve(conflict_id)

    # =========================================================================
    # DECISION ROUNDS
    # =========================================================================

    def _open_consensus_round(self, conflict: Conflict) -> str | None:
        if self._decisions is None:
            return None
        return self._decisions.open_for_conflict(conflict)

    def _arbitrated_option(self, decision: CollaborativeDecision) -> str | None:
        """Option of ``decision`` backing the position arbitration selects."""
        conflict = self._conflicts.get(decision.conflict_id or "")
        if conflict is None:
            return None
        outcome = self._strategies[ResolutionStrategy.ARBITRATION].resolve(conflict)
        if outcome is None:
            return None
        for option in decision.options:
            if option.proposed_by == outcome.winner:
                return option.option_id
        return None

    def on_decision_closed(self, decision: CollaborativeDecision) -> None:
        """
        Finish a conflict waiting on ``decision``.

        A round the participants decided resolves the conflict by
        consensus. A round that was forced or escalated to the orchestrator
        failed, and the conflict goes to arbitration.
        """
        conflict_id = self._by_decision.pop(decision.decision_id, None)
        if conflict_id is None:
            return
        with self._lock:
            conflict = self.get(conflict_id)
            if conflict.is_terminal:
                return
            outcome = decision.outcome
            failed = outcome is not None and (
                outcome.forced or outcome.method is DecisionType.ORCHESTRATOR
            )
            if decision.stage is DecisionStage.DECIDED and failed:
                conflict = self._arbitrate(conflict, decision.decision_id)
                resolved = True
            elif decision.stage is DecisionStage.DECIDED and outcome is not None:
                option = decision.option(outcome.winning_option_id)
                winner = option.proposed_by if option and option.supporters else None
                conflict = self._attach(
                    conflict,
                    ResolutionStrategy.CONSENSUS,
                    StrategyOutcome(
                        winning_value=option.value if option else None,
                        winner=winner,
                        resolved_by=outcome.decided_by,
                        rationale=(
                            f"Decision {decision.decision_id} ({outcome.method.value}, "
                            f"{outcome.agreement:.0f}% agreement): {outcome.rationale}"
                        ),
                        decision_id=decision.decision_id,
                    ),
                )
                resolved = True
            else:
                conflict = self._transition(
                    conflict,
                    ConflictStatus.DETECTED,
                    f"decision {decision.decision_id} {decision.stage.value}",
                )
                resolved = False
        if resolved:
            self._notify(conflict)
        else:
            self.resolve(conflict_id)

    def _arbitrate(self, conflict: Conflict, decision_id: str) -> Conflict:
        """Settle a conflict at the ladder ceiling. Caller holds the lock."""
        state = EscalationState(conflict.conflict_id, conflict.escalation_level)
        state = state.enter(ResolutionStrategy.ARBITRATION)
        logger.info(
            "Consensus round %s failed for %s; arbitrating", decision_id, conflict.conflict_id
        )
        conflict = self._transition(
            conflict,
            ConflictStatus.RESOLVING,
            f"consensus round {decision_id} failed; trying arbitration",
            escalation_level=state.level,
        )
        outcome = self._strategies[ResolutionStrategy.ARBITRATION].resolve(conflict)
        return self._attach(
            conflict,
            ResolutionStrategy.ARBITRATION,
            replace(outcome, decision_id=decision_id),
        )
