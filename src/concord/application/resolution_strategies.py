"""
Pluggable conflict resolution strategies.

Each strategy either produces a StrategyOutcome or returns None to signal
failure (a tie, or values that cannot be merged), letting the engine
escalate to the next ladder level.
"""

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from concord.application.agent_registry import AgentRegistry
from concord.domain.conflict import (
    Conflict,
    ConflictCategory,
    ConflictPosition,
    ResolutionStrategy,
)
from concord.domain.context import MISSING
from concord.domain.payloads import merge_values

logger = logging.getLogger(__name__)

ARBITRATION_WEIGHTS = {
    "goal_alignment": 0.4,
    "stakeholder_priority": 0.3,
    "confidence": 0.2,
    "priority": 0.1,
}


@dataclass(frozen=True)
class StrategyOutcome:
    winning_value: Any
    rationale: str
    winner: str | None = None  # None for merges
    resolved_by: str = "system"
    pending: bool = False  # an asynchronous round was opened
    decision_id: str | None = None


class Strategy(ABC):
    """Base class for resolution strategies."""

    kind: ResolutionStrategy

    @abstractmethod
    def resolve(self, conflict: Conflict) -> StrategyOutcome | None:
        """Attempt to resolve ``conflict``; None on failure."""
        pass

    @property
    def name(self) -> str:
        return self.kind.value


def _single_best(
    positions: tuple[ConflictPosition, ...], key: Callable[[ConflictPosition], float]
) -> ConflictPosition | None:
    """The position with the strictly highest key (None on a tie)."""
    ranked = sorted(positions, key=key, reverse=True)
    if not ranked:
        return None
    if len(ranked) > 1 and key(ranked[0]) == key(ranked[1]):
        return None
    return ranked[0]


class AutoMergeStrategy(Strategy):
    """
    Three-way merge of context writes, or the stricter value for budgets
    and WCAG levels. Only context-value conflicts carry a common ancestor.
    """

    kind = ResolutionStrategy.AUTO_MERGE

    def resolve(self, conflict: Conflict) -> StrategyOutcome | None:
        if conflict.category is not ConflictCategory.CONTEXT_VALUE:
            return None
        merged: dict[str, Any] = {}
        rules: list[str] = []
        for path, ancestor in conflict.ancestor_values.items():
            values = [p.value.get(path, MISSING) for p in conflict.positions]
            outcome = merge_values(path, ancestor, values)
            if not outcome.mergeable:
                return None
            merged[path] = outcome.value
            rules.append(f"{path}: {outcome.rule}")
        return StrategyOutcome(
            winning_value=merged, rationale="Merged automatically (" + "; ".join(rules) + ")"
        )


class PriorityStrategy(Strategy):
    """Highest position priority wins."""

    kind = ResolutionStrategy.PRIORITY

    def resolve(self, conflict: Conflict) -> StrategyOutcome | None:
        best = _single_best(conflict.positions, lambda p: p.priority)
        if best is None:
            return None
        return StrategyOutcome(
            winning_value=best.value,
            winner=best.agent_id,
            rationale=f"Highest priority ({best.priority}) from {best.agent_id}",
        )


class ExpertiseStrategy(Strategy):
    """Agent with the highest expertise in the conflict's domain wins."""

    kind = ResolutionStrategy.EXPERTISE

    def __init__(self, registry: AgentRegistry):
        self._registry = registry

    def resolve(self, conflict: Conflict) -> StrategyOutcome | None:
        def expertise(position: ConflictPosition) -> float:
            if position.agent_id not in self._registry:
                return 0.0
            return self._registry.get(position.agent_id).expertise(conflict.domain)

        best = _single_best(conflict.positions, expertise)
        if best is None:
            return None
        return StrategyOutcome(
            winning_value=best.value,
            winner=best.agent_id,
            rationale=(
                f"Highest {conflict.domain} expertise ({expertise(best):.2f}) "
                f"from {best.agent_id}"
            ),
        )


class ConsensusStrategy(Strategy):
    """Opens a consensus decision round; the conflict waits for its outcome."""

    kind = ResolutionStrategy.CONSENSUS

    def __init__(self, open_round: Callable[[Conflict], str | None]):
        """
        Args:
            open_round: Starts a decision for the conflict and returns its
                id, or None when no decision engine is available.
        """
        self._open_round = open_round

    def resolve(self, conflict: Conflict) -> StrategyOutcome | None:
        decision_id = self._open_round(conflict)
        if decision_id is None:
            return None
        return StrategyOutcome(
            winning_value=None,
            rationale=f"Consensus round {decision_id} opened",
            pending=True,
            decision_id=decision_id,
        )


class ArbitrationStrategy(Strategy):
    """
    Binding decision by the orchestrator (or deputy).

    Positions are scored by project-goal alignment, stakeholder priority,
    confidence and priority. Always produces a result.
    """

    kind = ResolutionStrategy.ARBITRATION

    def __init__(self, registry: AgentRegistry):
        self._registry = registry

    @staticmethod
    def score(position: ConflictPosition) -> float:
        w = ARBITRATION_WEIGHTS
        return (
            w["goal_alignment"] * position.goal_alignment
            + w["stakeholder_priority"] * position.stakeholder_priority
            + w["confidence"] * position.confidence
            + w["priority"] * (position.priority / 10.0)
        )

    def _tie_break_key(self, position: ConflictPosition) -> tuple:
        authority = (
            self._registry.get(position.agent_id).authority_score
            if position.agent_id in self._registry
            else 0.0
        )
        return (-authority, -position.confidence, -position.priority, position.agent_id)

    def resolve(self, conflict: Conflict) -> StrategyOutcome:
        arbiter = self._registry.arbiter_for(conflict.agents_involved)
        if arbiter is None:
            best = min(conflict.positions, key=self._tie_break_key)
            return StrategyOutcome(
                winning_value=best.value,
                winner=best.agent_id,
                resolved_by="tie-break",
                rationale=(
                    "No impartial arbiter; fixed tie-break by authority, "
                    f"confidence, priority and agent id selected {best.agent_id}"
                ),
            )

        best = min(
            conflict.positions,
            key=lambda p: (-round(self.score(p), 9), *self._tie_break_key(p)),
        )
        logger.info(
            "Arbitration of %s by %s selected %s",
            conflict.conflict_id, arbiter.agent_id, best.agent_id,
        )
        return StrategyOutcome(
            winning_value=best.value,
            winner=best.agent_id,
            resolved_by=arbiter.agent_id,
            rationale=(
                f"Based on alignment with project goals ({best.goal_alignment}), "
                f"stakeholder priorities ({best.stakeholder_priority}), "
                f"agent confidence ({best.confidence}), and priority ({best.priority})"
            ),
        )
