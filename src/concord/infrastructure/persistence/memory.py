"""
In-memory persistence adapters.

Useful for testing and ephemeral coordination sessions.
"""

import copy
import threading
from datetime import datetime
from typing import Any

from concord.domain.context import ContextStatus, ContextVersion
from concord.domain.coordination_event import AuditRecord, Component, CoordinationEvent
from concord.domain.interfaces import (
    AuditRecordStoreInterface,
    ContextVersionStoreInterface,
    CoordinationEventStoreInterface,
)


class InMemoryContextVersionStore(ContextVersionStoreInterface):
    """Simple in-memory version log for testing."""

    def __init__(self) -> None:
        self._logs: dict[str, dict[str, tuple[ContextVersion, dict[str, Any]]]] = {}
        self._statuses: dict[str, ContextStatus] = {}
        self._lock = threading.Lock()

    def append(self, version: ContextVersion, tree: dict[str, Any]) -> str:
        with self._lock:
            log = self._logs.setdefault(version.context_id, {})
            log[version.version_id] = (version, copy.deepcopy(tree))
        return version.version_id

    def _entry(self, context_id: str, version_id: str) -> tuple[ContextVersion, dict[str, Any]]:
        entry = self._logs.get(context_id, {}).get(version_id)
        if entry is None:
            raise KeyError(f"Version not found: {context_id}@{version_id}")
        return entry

    def get_version(self, context_id: str, version_id: str) -> ContextVersion:
        return self._entry(context_id, version_id)[0]

    def get_tree(self, context_id: str, version_id: str) -> dict[str, Any]:
        return copy.deepcopy(self._entry(context_id, version_id)[1])

    def list_versions(self, context_id: str) -> list[ContextVersion]:
        with self._lock:
            versions = [v for v, _ in self._logs.get(context_id, {}).values()]
        return sorted(versions, key=lambda v: v.sequence)

    def delete(self, context_id: str, version_ids: set[str]) -> int:
        with self._lock:
            log = self._logs.get(context_id, {})
            removed = [v for v in version_ids if v in log]
            for version_id in removed:
                del log[version_id]
        return len(removed)

    def context_ids(self) -> list[str]:
        return sorted(c for c, log in self._logs.items() if log)

    def save_status(self, context_id: str, status: ContextStatus) -> None:
        self._statuses[context_id] = status

    def get_status(self, context_id: str) -> ContextStatus | None:
        return self._statuses.get(context_id)


class InMemoryCoordinationEventStore(CoordinationEventStoreInterface):
    """In-memory implementation for testing."""

    def __init__(self) -> None:
        self._events: list[CoordinationEvent] = []
        self._lock = threading.Lock()

    def store_event(self, event: CoordinationEvent) -> str:
        with self._lock:
            self._events.append(event)
        return event.event_id

    def get_events(
        self,
        component: Component | None = None,
        entity_id: str | None = None,
        event_type: str | None = None,
    ) -> list[CoordinationEvent]:
        with self._lock:
            events = list(self._events)
        return sorted(
            [
                e
                for e in events
                if (component is None or e.component == component)
                and (entity_id is None or e.entity_id == entity_id)
                and (event_type is None or e.event_type == event_type)
            ],
            key=lambda e: e.timestamp,
        )


class InMemoryAuditRecordStore(AuditRecordStoreInterface):
    def __init__(self) -> None:
        self._records: dict[tuple[str, str], AuditRecord] = {}
        self._lock = threading.Lock()

    def save(self, record: AuditRecord) -> None:
        with self._lock:
            self._records[(record.kind, record.record_id)] = record

    def get(self, kind: str, record_id: str) -> AuditRecord | None:
        return self._records.get((kind, record_id))

    def list_records(self, kind: str | None = None) -> list[AuditRecord]:
        with self._lock:
            records = list(self._records.values())
        return sorted(
            [r for r in records if kind is None or r.kind == kind],
            key=lambda r: r.updated_at,
        )

    def purge(self, older_than: datetime) -> int:
        with self._lock:
            expired = [
                key
                for key, record in self._records.items()
                if record.terminal and datetime.fromisoformat(record.updated_at) < older_than
            ]
            for key in expired:
                del self._records[key]
        return len(expired)
