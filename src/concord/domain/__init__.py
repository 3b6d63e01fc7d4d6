"""
Domain layer for the coordination core.

Contains pure models, ports and algorithms with no external dependencies.
"""

from concord.domain.conflict import (
    Conflict,
    ConflictCategory,
    ConflictPosition,
    ConflictResolution,
    ConflictSeverity,
    ConflictStatus,
    ResolutionStrategy,
)
from concord.domain.context import (
    Change,
    ChangeOperation,
    ContextChangeEvent,
    ContextStatus,
    ContextVersion,
    SharedContext,
)
from concord.domain.coordination_event import (
    AuditRecord,
    Component,
    CoordinationEvent,
)
from concord.domain.decision import (
    AgentVote,
    CollaborativeDecision,
    DecisionConfig,
    DecisionCriterion,
    DecisionOption,
    DecisionOutcome,
    DecisionStage,
    DecisionType,
)
from concord.domain.exceptions import (
    AuthorizationError,
    ConfigurationError,
    ConflictError,
    CoordinationError,
    DeadlineExceeded,
    DependencyError,
    EscalationRequired,
    ResourceError,
    RetriesExhausted,
    TransportError,
    ValidationError,
)
from concord.domain.handoff import (
    HandoffAck,
    HandoffMessage,
    HandoffMetadata,
    HandoffResult,
    HandoffStatus,
    HandoffType,
    Task,
    WorkEntry,
)
from concord.domain.interfaces import (
    AuditRecordStoreInterface,
    ContextVersionStoreInterface,
    CoordinationEventStoreInterface,
    HandoffTransportInterface,
)
from concord.domain.models import Agent, AgentRole, Priority
from concord.domain.tools import (
    Tool,
    ToolCategory,
    ToolGrant,
    ToolLock,
    ToolStatus,
    ToolUsageStats,
)

__all__ = [
    # Agents
    "Agent",
    "AgentRole",
    "Priority",
    # Context
    "Change",
    "ChangeOperation",
    "ContextChangeEvent",
    "ContextStatus",
    "ContextVersion",
    "SharedContext",
    # Handoffs
    "HandoffAck",
    "HandoffMessage",
    "HandoffMetadata",
    "HandoffResult",
    "HandoffStatus",
    "HandoffType",
    "Task",
    "WorkEntry",
    # Conflicts
    "Conflict",
    "ConflictCategory",
    "ConflictPosition",
    "ConflictResolution",
    "ConflictSeverity",
    "ConflictStatus",
    "ResolutionStrategy",
    # Decisions
    "AgentVote",
    "CollaborativeDecision",
    "DecisionConfig",
    "DecisionCriterion",
    "DecisionOption",
    "DecisionOutcome",
    "DecisionStage",
    "DecisionType",
    # Tools
    "Tool",
    "ToolCategory",
    "ToolGrant",
    "ToolLock",
    "ToolStatus",
    "ToolUsageStats",
    # Monitoring
    "AuditRecord",
    "Component",
    "CoordinationEvent",
    # Interfaces
    "AuditRecordStoreInterface",
    "ContextVersionStoreInterface",
    "CoordinationEventStoreInterface",
    "HandoffTransportInterface",
    # Exceptions
    "AuthorizationError",
    "ConfigurationError",
    "ConflictError",
    "CoordinationError",
    "DeadlineExceeded",
    "DependencyError",
    "EscalationRequired",
    "ResourceError",
    "RetriesExhausted",
    "TransportError",
    "ValidationError",
]
