"""
Runtime settings for the coordination core.

Numeric targets (timeouts, attempt counts, thresholds) are configurable
defaults. ``concord.infrastructure.config_loader`` builds these from a
JSON file.
"""

from dataclasses import dataclass, field

from concord.domain.models import Agent
from concord.domain.tools import Tool


@dataclass(frozen=True)
class ContextSettings:
    retention_s: float = 7 * 24 * 3600.0  # versions older than this may be collected


@dataclass(frozen=True)
class HandoffSettings:
    ack_target_s: float = 0.5  # slower acknowledgements are logged
    ack_timeout_s: float = 1.0
    max_attempts: int = 3
    base_delay_s: float = 0.1
    max_delay_s: float = 2.0
    parallel_timeout_s: float = 300.0
    estimated_duration_s: float = 3600.0  # used for HandoffAck.estimated_completion


@dataclass(frozen=True)
class ConflictSettings:
    recommendation_threshold: float = 0.5
    min_samples: int = 5
    switch_threshold: float = 0.5


@dataclass(frozen=True)
class DecisionSettings:
    expert_threshold: float = 0.8
    quorum: float = 0.5
    feedback_delta: float = 0.1
    conflict_round_s: float = 300.0  # deadline of decisions opened for conflicts
    default_deadline_s: float = 3600.0  # deadline of decisions created without one


@dataclass(frozen=True)
class ToolSettings:
    aging_interval_s: float = 30.0


@dataclass(frozen=True)
class MaintenanceSettings:
    interval_s: float = 5.0
    audit_retention_s: float = 30 * 24 * 3600.0
    handoff_retention_s: float = 24 * 3600.0  # finished handoffs older than this are pruned


@dataclass(frozen=True)
class CoordinationSettings:
    """Top-level settings: per-component defaults plus the startup catalog."""

    context: ContextSettings = field(default_factory=ContextSettings)
    handoff: HandoffSettings = field(default_factory=HandoffSettings)
    conflict: ConflictSettings = field(default_factory=ConflictSettings)
    decision: DecisionSettings = field(default_factory=DecisionSettings)
    tools: ToolSettings = field(default_factory=ToolSettings)
    maintenance: MaintenanceSettings = field(default_factory=MaintenanceSettings)
    agents: tuple[Agent, ...] = ()
    tool_catalog: tuple[Tool, ...] = ()
    orchestrator_id: str | None = None
    deputy_id: str | None = None
