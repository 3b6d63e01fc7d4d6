"""Monitoring sink event models."""

from dataclasses import dataclass, field, fields, is_dataclass
from datetime import datetime
from enum import Enum
from typing import Any


class Component(str, Enum):
    """Components that emit coordination events."""

    CONTEXT = "context"
    HANDOFF = "handoff"
    CONFLICT = "conflict"
    DECISION = "decision"
    TOOL = "tool"


@dataclass(frozen=True)
class CoordinationEvent:
    """Single state transition in any component.

    ``attributes`` holds JSON-compatible details of the transition.
    """

    event_id: str
    component: Component
    entity_id: str
    event_type: str  # "version_created", "handoff_sent", "lock_granted", ...
    timestamp: str  # ISO 8601
    attributes: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class AuditRecord:
    """Latest snapshot of a handoff, conflict, decision or tool lock."""

    kind: str  # "handoff" | "conflict" | "decision" | "tool_lock" | "tool_request"
    record_id: str
    updated_at: str  # ISO 8601
    terminal: bool
    data: dict[str, Any] = field(default_factory=dict)


def to_jsonable(value: Any) -> Any:
    """Convert dataclasses, enums, datetimes and tuples into JSON-compatible data."""
    if is_dataclass(value) and not isinstance(value, type):
        return {f.name: to_jsonable(getattr(value, f.name)) for f in fields(value)}
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, list | tuple | set | frozenset):
        return [to_jsonable(v) for v in value]
    if value is None or isinstance(value, str | int | float | bool):
        return value
    return repr(value)
