"""
Filesystem persistence adapters.

Layout under ``base_dir``::

    contexts/{context_id}.jsonl      one line per version: {"version", "tree"}
    contexts/{context_id}.status     lifecycle status, when it was changed
    events/{component}.jsonl         one line per coordination event
    records/{kind}/{record_id}.json  latest audit snapshot per entity
"""

import copy
import json
import threading
from datetime import datetime
from pathlib import Path
from typing import Any
from urllib.parse import quote

from concord.domain.context import Change, ChangeOperation, ContextStatus, ContextVersion
from concord.domain.coordination_event import AuditRecord, Component, CoordinationEvent
from concord.domain.interfaces import (
    AuditRecordStoreInterface,
    ContextVersionStoreInterface,
    CoordinationEventStoreInterface,
)


def _write_atomic(path: Path, text: str) -> None:
    """Write via temp file + rename."""
    temp_path = path.with_suffix(path.suffix + ".tmp")
    with open(temp_path, "w") as f:
        f.write(text)
    temp_path.replace(path)  # Atomic on POSIX


def _file_stem(identifier: str) -> str:
    """Percent-encode an id so it stays a single file name."""
    return quote(identifier, safe="")


class FilesystemContextVersionStore(ContextVersionStoreInterface):
    """
    Persistent, append-only context version log.

    Each context is a JSONL file; retention deletes rewrite the file
    atomically. All versions are cached in memory after the initial load.
    """

    def __init__(self, base_dir: str | Path):
        self._base_dir = Path(base_dir)
        self._contexts_dir = self._base_dir / "contexts"
        self._contexts_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._cache: dict[str, dict[str, tuple[ContextVersion, dict[str, Any]]]] = {}
        self._statuses: dict[str, ContextStatus] = {}
        self._load()

    def _load(self) -> None:
        for path in sorted(self._contexts_dir.glob("*.jsonl")):
            log: dict[str, tuple[ContextVersion, dict[str, Any]]] = {}
            with open(path) as f:
                for line in f:
                    if not line.strip():
                        continue
                    data = json.loads(line)
                    version = self._dict_to_version(data["version"])
                    log[version.version_id] = (version, data["tree"])
            if log:
                context_id = next(iter(log.values()))[0].context_id
                self._cache[context_id] = log
        for path in self._contexts_dir.glob("*.status"):
            with open(path) as f:
                data = json.load(f)
            self._statuses[data["context_id"]] = ContextStatus(data["status"])

    def _context_file(self, context_id: str) -> Path:
        return self._contexts_dir / f"{_file_stem(context_id)}.jsonl"

    def _status_file(self, context_id: str) -> Path:
        return self._contexts_dir / f"{_file_stem(context_id)}.status"

    def _version_to_dict(self, version: ContextVersion) -> dict[str, Any]:
        """Serialize version to JSON-compatible dict."""
        return {
            "version_id": version.version_id,
            "context_id": version.context_id,
            "parent_version_id": version.parent_version_id,
            "author_agent_id": version.author_agent_id,
            "change_set": [
                {
                    "path": c.path,
                    "operation": c.operation.value,
                    "old_value": c.old_value,
                    "new_value": c.new_value,
                }
                for c in version.change_set
            ],
            "checksum": version.checksum,
            "created_at": version.created_at,
            "sequence": version.sequence,
            "merge_base_id": version.merge_base_id,
        }

    def _dict_to_version(self, data: dict[str, Any]) -> ContextVersion:
        """Deserialize version from JSON dict."""
        return ContextVersion(
            version_id=data["version_id"],
            context_id=data["context_id"],
            parent_version_id=data.get("parent_version_id"),
            author_agent_id=data["author_agent_id"],
            change_set=tuple(
                Change(
                    path=c["path"],
                    operation=ChangeOperation(c["operation"]),
                    old_value=c.get("old_value"),
                    new_value=c.get("new_value"),
                )
                for c in data["change_set"]
            ),
            checksum=data["checksum"],
            created_at=data["created_at"],
            sequence=data["sequence"],
            merge_base_id=data.get("merge_base_id"),
        )

    def _line(self, version: ContextVersion, tree: dict[str, Any]) -> str:
        data = {"version": self._version_to_dict(version), "tree": tree}
        return json.dumps(data, default=str) + "\n"

    def append(self, version: ContextVersion, tree: dict[str, Any]) -> str:
        with self._lock:
            with open(self._context_file(version.context_id), "a") as f:
                f.write(self._line(version, tree))
            log = self._cache.setdefault(version.context_id, {})
            log[version.version_id] = (version, copy.deepcopy(tree))
        return version.version_id

    def _entry(self, context_id: str, version_id: str) -> tuple[ContextVersion, dict[str, Any]]:
        entry = self._cache.get(context_id, {}).get(version_id)
        if entry is None:
            raise KeyError(f"Version not found: {context_id}@{version_id}")
        return entry

    def get_version(self, context_id: str, version_id: str) -> ContextVersion:
        return self._entry(context_id, version_id)[0]

    def get_tree(self, context_id: str, version_id: str) -> dict[str, Any]:
        return copy.deepcopy(self._entry(context_id, version_id)[1])

    def list_versions(self, context_id: str) -> list[ContextVersion]:
        with self._lock:
            versions = [v for v, _ in self._cache.get(context_id, {}).values()]
        return sorted(versions, key=lambda v: v.sequence)

    def delete(self, context_id: str, version_ids: set[str]) -> int:
        with self._lock:
            log = self._cache.get(context_id, {})
            removed = [v for v in version_ids if v in log]
            if not removed:
                return 0
            for version_id in removed:
                del log[version_id]
            ordered = sorted(log.values(), key=lambda entry: entry[0].sequence)
            _write_atomic(
                self._context_file(context_id),
                "".join(self._line(version, tree) for version, tree in ordered),
            )
        return len(removed)

    def context_ids(self) -> list[str]:
        return sorted(c for c, log in self._cache.items() if log)

    def save_status(self, context_id: str, status: ContextStatus) -> None:
        with self._lock:
            _write_atomic(
                self._status_file(context_id),
                json.dumps({"context_id": context_id, "status": status.value}),
            )
            self._statuses[context_id] = status

    def get_status(self, context_id: str) -> ContextStatus | None:
        return self._statuses.get(context_id)


class FilesystemCoordinationEventStore(CoordinationEventStoreInterface):
    """Filesystem implementation storing events as JSONL, one file per component."""

    def __init__(self, base_dir: str | Path) -> None:
        self.base_path = Path(base_dir)
        self.events_dir = self.base_path / "events"
        self.events_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _get_component_file(self, component: Component) -> Path:
        return self.events_dir / f"{component.value}.jsonl"

    def store_event(self, event: CoordinationEvent) -> str:
        with self._lock:
            with open(self._get_component_file(event.component), "a") as f:
                f.write(json.dumps(self._event_to_dict(event), default=str) + "\n")
        return event.event_id

    def get_events(
        self,
        component: Component | None = None,
        entity_id: str | None = None,
        event_type: str | None = None,
    ) -> list[CoordinationEvent]:
        components = [component] if component is not None else list(Component)
        events: list[CoordinationEvent] = []
        for comp in components:
            path = self._get_component_file(comp)
            if not path.exists():
                continue
            with open(path) as f:
                for line in f:
                    if not line.strip():
                        continue
                    event = self._dict_to_event(json.loads(line))
                    if entity_id and event.entity_id != entity_id:
                        continue
                    if event_type and event.event_type != event_type:
                        continue
                    events.append(event)
        return sorted(events, key=lambda e: e.timestamp)

    def _event_to_dict(self, event: CoordinationEvent) -> dict[str, Any]:
        return {
            "event_id": event.event_id,
            "component": event.component.value,
            "entity_id": event.entity_id,
            "event_type": event.event_type,
            "timestamp": event.timestamp,
            "attributes": event.attributes,
        }

    def _dict_to_event(self, data: dict[str, Any]) -> CoordinationEvent:
        return CoordinationEvent(
            event_id=data["event_id"],
            component=Component(data["component"]),
            entity_id=data["entity_id"],
            event_type=data["event_type"],
            timestamp=data["timestamp"],
            attributes=data.get("attributes", {}),
        )


class FilesystemAuditRecordStore(AuditRecordStoreInterface):
    """One JSON file per record, replaced atomically on every save."""

    def __init__(self, base_dir: str | Path) -> None:
        self._records_dir = Path(base_dir) / "records"
        self._records_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _record_path(self, kind: str, record_id: str) -> Path:
        return self._records_dir / _file_stem(kind) / f"{_file_stem(record_id)}.json"

    def save(self, record: AuditRecord) -> None:
        path = self._record_path(record.kind, record.record_id)
        with self._lock:
            path.parent.mkdir(parents=True, exist_ok=True)
            _write_atomic(
                path,
                json.dumps(
                    {
                        "kind": record.kind,
                        "record_id": record.record_id,
                        "updated_at": record.updated_at,
                        "terminal": record.terminal,
                        "data": record.data,
                    },
                    indent=2,
                    default=str,
                ),
            )

    def _read(self, path: Path) -> AuditRecord:
        with open(path) as f:
            data = json.load(f)
        return AuditRecord(
            kind=data["kind"],
            record_id=data["record_id"],
            updated_at=data["updated_at"],
            terminal=data["terminal"],
            data=data.get("data", {}),
        )

    def get(self, kind: str, record_id: str) -> AuditRecord | None:
        path = self._record_path(kind, record_id)
        if not path.exists():
            return None
        return self._read(path)

    def list_records(self, kind: str | None = None) -> list[AuditRecord]:
        pattern = f"{kind}/*.json" if kind else "*/*.json"
        with self._lock:
            records = [self._read(p) for p in self._records_dir.glob(pattern)]
        return sorted(records, key=lambda r: r.updated_at)

    def purge(self, older_than: datetime) -> int:
        removed = 0
        with self._lock:
            for path in self._records_dir.glob("*/*.json"):
                record = self._read(path)
                if record.terminal and datetime.fromisoformat(record.updated_at) < older_than:
                    path.unlink()
                    removed += 1
        return removed
