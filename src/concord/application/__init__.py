"""
Application layer for the coordination core.

Contains the stateful coordination services that operate on domain objects.
"""

from concord.application.agent_registry import AgentRegistry
from concord.application.conflict_engine import ConflictEngine, StrategyLearner
from concord.application.context_store import ContextStore
from concord.application.decision_engine import DecisionEngine
from concord.application.event_emitter import CoordinationEventEmitter
from concord.application.handoff_coordinator import HandoffCoordinator
from concord.application.maintenance import MaintenanceSweeper, SweepReport
from concord.application.settings import CoordinationSettings
from concord.application.tool_arbiter import ToolArbiter

__all__ = [
    "AgentRegistry",
    "ConflictEngine",
    "ContextStore",
    "CoordinationEventEmitter",
    "CoordinationSettings",
    "DecisionEngine",
    "HandoffCoordinator",
    "MaintenanceSweeper",
    "StrategyLearner",
    "SweepReport",
    "ToolArbiter",
]
