"""
Agent registry: the fixed set of agents known to every component.
"""

import logging
import threading
from collections.abc import Iterable

from concord.domain.exceptions import ValidationError
from concord.domain.models import (
    ORCHESTRATOR_AUTHORITY,
    Agent,
    AgentRole,
    clamp_authority,
)

logger = logging.getLogger(__name__)


class AgentRegistry:
    """
    Holds agents registered at startup; agents are never removed.

    Exactly one agent is the orchestrator. An optional deputy arbitrates
    when the orchestrator is itself a party.
    """

    def __init__(
        self,
        agents: Iterable[Agent] = (),
        orchestrator_id: str | None = None,
        deputy_id: str | None = None,
    ):
        self._agents: dict[str, Agent] = {}
        self._lock = threading.Lock()
        self._orchestrator_id: str | None = None
        self._deputy_id: str | None = None
        for agent in agents:
            self.register(agent)
        if orchestrator_id is not None:
            self.set_orchestrator(orchestrator_id)
        if deputy_id is not None:
            self.set_deputy(deputy_id)

    def register(self, agent: Agent) -> Agent:
        """
        Add an agent.

        An agent registered with the orchestrator role becomes the
        orchestrator unless one is already designated.

        Raises:
            ValidationError: If the agent id is empty or already registered
        """
        if not agent.agent_id:
            raise ValidationError("Agent id must not be empty")
        with self._lock:
            if agent.agent_id in self._agents:
                raise ValidationError(f"Agent already registered: {agent.agent_id}")
            self._agents[agent.agent_id] = agent
        if agent.is_orchestrator and self._orchestrator_id is None:
            self.set_orchestrator(agent.agent_id)
        logger.debug("Registered agent %s (%s)", agent.agent_id, agent.role.value)
        return agent

    def get(self, agent_id: str) -> Agent:
        """
        Raises:
            ValidationError: If the agent is unknown
        """
        agent = self._agents.get(agent_id)
        if agent is None:
            raise ValidationError(f"Unknown agent: {agent_id}")
        return agent

    def __contains__(self, agent_id: object) -> bool:
        return agent_id in self._agents

    def all(self) -> list[Agent]:
        return list(self._agents.values())

    def subset(self, agent_ids: Iterable[str]) -> dict[str, Agent]:
        return {agent_id: self.get(agent_id) for agent_id in agent_ids}

    # -------------------------------------------------------------------------
    # Authority roles
    # -------------------------------------------------------------------------

    def set_orchestrator(self, agent_id: str) -> None:
        agent = self.get(agent_id)
        with self._lock:
            if self._orchestrator_id and self._orchestrator_id != agent_id:
                previous = self._agents[self._orchestrator_id]
                previous.role = AgentRole.WORKER
            if not agent.is_orchestrator:
                agent.role = AgentRole.ORCHESTRATOR
                agent.authority_score = clamp_authority(
                    max(agent.authority_score, ORCHESTRATOR_AUTHORITY)
                )
            self._orchestrator_id = agent_id

    def set_deputy(self, agent_id: str) -> None:
        self.get(agent_id)
        if agent_id == self._orchestrator_id:
            raise ValidationError("The orchestrator cannot be its own deputy")
        self._deputy_id = agent_id

    @property
    def orchestrator_id(self) -> str | None:
        return self._orchestrator_id

    @property
    def deputy_id(self) -> str | None:
        return self._deputy_id

    @property
    def orchestrator(self) -> Agent:
        """
        Raises:
            ValidationError: If no orchestrator is designated
        """
        if self._orchestrator_id is None:
            raise ValidationError("No orchestrator designated")
        return self._agents[self._orchestrator_id]

    def arbiter_for(self, parties: Iterable[str]) -> Agent | None:
        """
        Agent entitled to arbitrate between ``parties``.

        The orchestrator, or the deputy when the orchestrator is a party.
        None when neither can arbitrate impartially.
        """
        parties = set(parties)
        if self._orchestrator_id and self._orchestrator_id not in parties:
            return self._agents[self._orchestrator_id]
        if self._deputy_id and self._deputy_id not in parties:
            return self._agents[self._deputy_id]
        return None

    # -------------------------------------------------------------------------
    # Authority feedback
    # -------------------------------------------------------------------------

    def adjust_authority(self, agent_id: str, delta: float) -> float:
        """Shift an agent's authority, clamped to the allowed range."""
        agent = self.get(agent_id)
        with self._lock:
            agent.authority_score = clamp_authority(agent.authority_score + delta)
            score = agent.authority_score
        logger.debug("Authority of %s now %.2f", agent_id, score)
        return score
