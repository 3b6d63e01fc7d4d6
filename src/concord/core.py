"""
Composition root: wires the five coordination services together.
"""

import logging
from pathlib import Path

from concord.application.agent_registry import AgentRegistry
from concord.application.conflict_engine import ConflictEngine, StrategyLearner
from concord.application.context_store import ContextStore
from concord.application.decision_engine import DecisionEngine
from concord.application.event_emitter import CoordinationEventEmitter
from concord.application.handoff_coordinator import HandoffCoordinator
from concord.application.maintenance import MaintenanceSweeper
from concord.application.settings import CoordinationSettings
from concord.application.tool_arbiter import ToolArbiter
from concord.domain.interfaces import (
    AuditRecordStoreInterface,
    ContextVersionStoreInterface,
    CoordinationEventStoreInterface,
    HandoffTransportInterface,
)
from concord.infrastructure.persistence import (
    FilesystemAuditRecordStore,
    FilesystemContextVersionStore,
    FilesystemCoordinationEventStore,
    InMemoryAuditRecordStore,
    InMemoryContextVersionStore,
    InMemoryCoordinationEventStore,
)
from concord.infrastructure.transport import InProcessTransport

logger = logging.getLogger(__name__)


class CoordinationCore:
    """
    All coordination services sharing one registry and monitoring sink.

    Wiring:
        - context-value clashes go to the Conflict Engine
        - resolved or dismissed conflicts settle the held context write
        - consensus rounds run in the Decision Engine, whose outcomes
          flow back into the Conflict Engine
        - with the default in-process transport, every handoff is
          received by this core's coordinator

    Example:
        core = CoordinationCore(settings)
        core.contexts.create_context("project", {"performance": {"lcp": 2500}})
        result = core.handoffs.send(message)
    """

    def __init__(
        self,
        settings: CoordinationSettings | None = None,
        version_store: ContextVersionStoreInterface | None = None,
        event_store: CoordinationEventStoreInterface | None = None,
        audit_store: AuditRecordStoreInterface | None = None,
        transport: HandoffTransportInterface | None = None,
    ):
        self.settings = settings or CoordinationSettings()
        s = self.settings
        self.event_store = event_store or InMemoryCoordinationEventStore()
        self.audit_store = audit_store or InMemoryAuditRecordStore()
        self.emitter = CoordinationEventEmitter(self.event_store, self.audit_store)
        self.registry = AgentRegistry(s.agents, s.orchestrator_id, s.deputy_id)

        self.contexts = ContextStore(
            version_store or InMemoryContextVersionStore(),
            emitter=self.emitter,
            registry=self.registry,
            retention_s=s.context.retention_s,
        )
        self.conflicts = ConflictEngine(
            self.registry,
            emitter=self.emitter,
            recommendation_threshold=s.conflict.recommendation_threshold,
            learner=StrategyLearner(s.conflict.min_samples, s.conflict.switch_threshold),
        )
        self.decisions = DecisionEngine(
            self.registry,
            emitter=self.emitter,
            expert_threshold=s.decision.expert_threshold,
            quorum=s.decision.quorum,
            feedback_delta=s.decision.feedback_delta,
            conflict_round_s=s.decision.conflict_round_s,
            default_deadline_s=s.decision.default_deadline_s,
        )
        self.tools = ToolArbiter(
            s.tool_catalog,
            registry=self.registry,
            emitter=self.emitter,
            aging_interval_s=s.tools.aging_interval_s,
        )

        self.transport = transport or InProcessTransport()
        self.handoffs = HandoffCoordinator(
            self.registry,
            self.transport,
            contexts=self.contexts,
            emitter=self.emitter,
            ack_timeout_s=s.handoff.ack_timeout_s,
            ack_target_s=s.handoff.ack_target_s,
            max_attempts=s.handoff.max_attempts,
            base_delay_s=s.handoff.base_delay_s,
            max_delay_s=s.handoff.max_delay_s,
            estimated_duration_s=s.handoff.estimated_duration_s,
            parallel_timeout_s=s.handoff.parallel_timeout_s,
        )
        if isinstance(self.transport, InProcessTransport):
            self.transport.set_default_handler(self.handoffs.receive)

        self.contexts.attach_conflict_handler(self.conflicts.register_detected)
        self.conflicts.add_listener(self.contexts.settle_conflict)
        self.conflicts.attach_decision_engine(self.decisions)

        self.sweeper = MaintenanceSweeper(
            contexts=self.contexts,
            tools=self.tools,
            decisions=self.decisions,
            handoffs=self.handoffs,
            emitter=self.emitter,
            interval_s=s.maintenance.interval_s,
            audit_retention_s=s.maintenance.audit_retention_s,
            handoff_retention_s=s.maintenance.handoff_retention_s,
        )
        logger.debug(
            "Coordination core ready: %d agents, %d tools",
            len(self.registry.all()), len(self.tools.tool_ids()),
        )

    @classmethod
    def on_disk(
        cls, base_dir: str | Path, settings: CoordinationSettings | None = None
    ) -> "CoordinationCore":
        """Core persisting versions, events and audit records under ``base_dir``."""
        return cls(
            settings,
            version_store=FilesystemContextVersionStore(base_dir),
            event_store=FilesystemCoordinationEventStore(base_dir),
            audit_store=FilesystemAuditRecordStore(base_dir),
        )

    def start(self) -> None:
        """Start periodic maintenance."""
        self.sweeper.start()

    def close(self) -> None:
        self.sweeper.stop()
        self.handoffs.shutdown()

    def __enter__(self) -> "CoordinationCore":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
