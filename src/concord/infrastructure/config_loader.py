"""Configuration loading for the coordination core."""

import json
from pathlib import Path
from typing import Any

import jsonschema

from concord.application.settings import (
    ConflictSettings,
    ContextSettings,
    CoordinationSettings,
    DecisionSettings,
    HandoffSettings,
    MaintenanceSettings,
    ToolSettings,
)
from concord.domain.exceptions import ConfigurationError, ValidationError
from concord.domain.models import Agent, AgentRole
from concord.domain.tools import Tool, ToolCategory
from concord.schemas import validate_settings


def _build_agent(data: dict[str, Any]) -> Agent:
    return Agent(
        agent_id=data["agent_id"],
        name=data.get("name", ""),
        role=AgentRole(data.get("role", AgentRole.WORKER.value)),
        authority_score=data.get("authority_score", 1.0),
        domain_weights=dict(data.get("domain_weights", {})),
    )


def _build_tool(data: dict[str, Any]) -> Tool:
    kwargs: dict[str, Any] = {
        "tool_id": data["tool_id"],
        "category": ToolCategory(data["category"]),
        "name": data.get("name", ""),
        "allowed_agents": tuple(data.get("allowed_agents", ())),
    }
    for key in ("concurrent_limit", "default_duration_s", "buffer_s"):
        if key in data:
            kwargs[key] = data[key]
    return Tool(**kwargs)


def settings_from_dict(data: dict[str, Any]) -> CoordinationSettings:
    """
    Build settings from an already-parsed document.

    Raises:
        ConfigurationError: If the document is invalid
    """
    try:
        validate_settings(data)
    except jsonschema.ValidationError as e:
        location = "/".join(str(p) for p in e.absolute_path) or "<root>"
        raise ConfigurationError(f"Invalid settings at {location}: {e.message}", e) from e

    try:
        agents = tuple(_build_agent(a) for a in data.get("agents", []))
        tools = tuple(_build_tool(t) for t in data.get("tools", []))
    except ValidationError as e:
        raise ConfigurationError(str(e)) from e

    agent_ids = [a.agent_id for a in agents]
    duplicates = sorted({a for a in agent_ids if agent_ids.count(a) > 1})
    if duplicates:
        raise ConfigurationError(f"Duplicate agent ids: {', '.join(duplicates)}")
    for key in ("orchestrator_id", "deputy_id"):
        if key in data and data[key] not in agent_ids:
            raise ConfigurationError(f"'{key}' references unknown agent {data[key]!r}")

    return CoordinationSettings(
        context=ContextSettings(**data.get("context", {})),
        handoff=HandoffSettings(**data.get("handoff", {})),
        conflict=ConflictSettings(**data.get("conflict", {})),
        decision=DecisionSettings(**data.get("decision", {})),
        tools=ToolSettings(**data.get("tool_arbiter", {})),
        maintenance=MaintenanceSettings(**data.get("maintenance", {})),
        agents=agents,
        tool_catalog=tools,
        orchestrator_id=data.get("orchestrator_id"),
        deputy_id=data.get("deputy_id"),
    )


def load_settings(path: str | Path) -> CoordinationSettings:
    """
    Load coordination settings from a JSON file.

    Args:
        path: Path to the settings file

    Returns:
        Validated CoordinationSettings

    Raises:
        ConfigurationError: If the file is missing or invalid
    """
    path = Path(path)
    if not path.exists():
        raise ConfigurationError(f"Settings file not found: {path}")

    try:
        with open(path) as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Invalid JSON in {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigurationError(f"Expected object in {path}, got {type(data).__name__}")
    return settings_from_dict(data)
