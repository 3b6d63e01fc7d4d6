"""
Concord: coordination core for multi-agent systems.

Five services share one agent registry and monitoring sink: a versioned
Context Store, a Handoff Coordinator, a Conflict Engine, a Decision
Engine and a Tool Arbiter.

Example:
    from concord import Agent, AgentRole, Change, CoordinationCore, CoordinationSettings

    settings = CoordinationSettings(
        agents=(Agent("orchestrator", role=AgentRole.ORCHESTRATOR), Agent("design")),
    )
    with CoordinationCore(settings) as core:
        v0 = core.contexts.create_context("project", {"design": {"primary": "#000"}})
        core.contexts.write("project", v0.version_id, [Change.replace("/design/primary", "#111")], "design")
"""

# Composition root
# Application layer (coordination services)
from concord.application import (
    AgentRegistry,
    ConflictEngine,
    ContextStore,
    CoordinationEventEmitter,
    CoordinationSettings,
    DecisionEngine,
    HandoffCoordinator,
    MaintenanceSweeper,
    ToolArbiter,
)
from concord.core import CoordinationCore

# Domain models
from concord.domain.context import Change, ContextVersion, SharedContext
from concord.domain.decision import AgentVote, DecisionConfig, DecisionOption, DecisionType

# Domain exceptions
from concord.domain.exceptions import (
    AuthorizationError,
    ConfigurationError,
    ConflictError,
    CoordinationError,
    DeadlineExceeded,
    DependencyError,
    ResourceError,
    ValidationError,
)
from concord.domain.handoff import HandoffMessage, HandoffResult, HandoffType, Task
from concord.domain.models import Agent, AgentRole, Priority
from concord.domain.tools import Tool, ToolCategory

__version__ = "0.1.0"

__all__ = [
    # Version
    "__version__",
    # Composition root
    "CoordinationCore",
    # Application
    "AgentRegistry",
    "ConflictEngine",
    "ContextStore",
    "CoordinationEventEmitter",
    "CoordinationSettings",
    "DecisionEngine",
    "HandoffCoordinator",
    "MaintenanceSweeper",
    "ToolArbiter",
    # Models
    "Agent",
    "AgentRole",
    "AgentVote",
    "Change",
    "ContextVersion",
    "DecisionConfig",
    "DecisionOption",
    "DecisionType",
    "HandoffMessage",
    "HandoffResult",
    "HandoffType",
    "Priority",
    "SharedContext",
    "Task",
    "Tool",
    "ToolCategory",
    # Exceptions
    "AuthorizationError",
    "ConfigurationError",
    "ConflictError",
    "CoordinationError",
    "DeadlineExceeded",
    "DependencyError",
    "ResourceError",
    "ValidationError",
]
