"""
Escalation ladder.

Conflict → decision → arbitration is modelled as a finite ladder with a
strictly increasing level counter and a hard ceiling, so every
escalation path terminates.
"""

from dataclasses import dataclass

from concord.domain.conflict import ResolutionStrategy
from concord.domain.exceptions import EscalationRequired

LADDER: tuple[tuple[ResolutionStrategy, ...], ...] = (
    (ResolutionStrategy.AUTO_MERGE,),
    (ResolutionStrategy.PRIORITY, ResolutionStrategy.EXPERTISE),
    (ResolutionStrategy.CONSENSUS,),
    (ResolutionStrategy.ARBITRATION,),
)
CEILING = len(LADDER) - 1


@dataclass(frozen=True)
class EscalationState:
    """Position of one entity on the ladder."""

    entity_id: str
    level: int = -1
    attempts: tuple[ResolutionStrategy, ...] = ()

    @property
    def at_ceiling(self) -> bool:
        return self.level >= CEILING

    def enter(self, strategy: ResolutionStrategy) -> "EscalationState":
        """
        Record an attempt with ``strategy``.

        Raises:
            EscalationRequired: If the strategy's level is not above the
                current level (the counter never decreases or repeats).
        """
        if strategy.level <= self.level:
            raise EscalationRequired(
                self.entity_id,
                f"{strategy.value} (level {strategy.level}) does not escalate "
                f"beyond level {self.level}",
                level=self.level,
            )
        return EscalationState(
            entity_id=self.entity_id,
            level=strategy.level,
            attempts=self.attempts + (strategy,),
        )

    def next_strategy(
        self, preferred: ResolutionStrategy | None = None
    ) -> ResolutionStrategy:
        """
        First strategy strictly above the current level.

        ``preferred`` is used when it sits on the next reachable rung.

        Raises:
            EscalationRequired: If already at the ceiling.
        """
        if self.at_ceiling:
            raise EscalationRequired(
                self.entity_id, "escalation ladder exhausted", level=self.level
            )
        rung = LADDER[self.level + 1]
        if preferred is not None and preferred in rung:
            return preferred
        return rung[0]
