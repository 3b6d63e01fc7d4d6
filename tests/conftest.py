"""Shared pytest fixtures for concord tests."""

import pytest

from concord.application.agent_registry import AgentRegistry
from concord.application.event_emitter import CoordinationEventEmitter
from concord.application.settings import CoordinationSettings
from concord.core import CoordinationCore
from concord.domain.models import Agent, AgentRole
from concord.domain.tools import Tool, ToolCategory
from concord.infrastructure.persistence.memory import (
    InMemoryAuditRecordStore,
    InMemoryContextVersionStore,
    InMemoryCoordinationEventStore,
)


def make_agents() -> list[Agent]:
    """Fresh agents (authority is mutable, so never share instances)."""
    return [
        Agent(
            "orchestrator",
            {"performance": 0.5, "accessibility": 0.5, "design": 0.5},
            role=AgentRole.ORCHESTRATOR,
        ),
        Agent("performance", {"performance": 1.0, "design": 0.2}),
        Agent("accessibility", {"accessibility": 1.0, "performance": 0.5}),
        Agent("design", {"design": 0.9, "performance": 0.5}),
    ]


@pytest.fixture
def agents() -> list[Agent]:
    """Orchestrator plus three specialists."""
    return make_agents()


@pytest.fixture
def registry(agents: list[Agent]) -> AgentRegistry:
    """Registry with the orchestrator designated by role."""
    return AgentRegistry(agents)


@pytest.fixture
def event_store() -> InMemoryCoordinationEventStore:
    return InMemoryCoordinationEventStore()


@pytest.fixture
def audit_store() -> InMemoryAuditRecordStore:
    return InMemoryAuditRecordStore()


@pytest.fixture
def version_store() -> InMemoryContextVersionStore:
    return InMemoryContextVersionStore()


@pytest.fixture
def emitter(
    event_store: InMemoryCoordinationEventStore, audit_store: InMemoryAuditRecordStore
) -> CoordinationEventEmitter:
    """Emitter writing to the in-memory stores."""
    return CoordinationEventEmitter(event_store, audit_store)


@pytest.fixture
def settings() -> CoordinationSettings:
    """Settings with the standard agents and two tools."""
    return CoordinationSettings(
        agents=tuple(make_agents()),
        tool_catalog=(
            Tool("lighthouse", ToolCategory.EXCLUSIVE),
            Tool("browser-pool", ToolCategory.POOL, concurrent_limit=2),
        ),
    )


@pytest.fixture
def core(settings: CoordinationSettings):
    """Fully wired in-memory core."""
    with CoordinationCore(settings) as core:
        yield core
