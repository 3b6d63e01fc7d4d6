"""Coordination event and audit record emission."""

import logging
import uuid
from datetime import datetime, timezone
from typing import Any

from concord.domain.coordination_event import (
    AuditRecord,
    Component,
    CoordinationEvent,
    to_jsonable,
)
from concord.domain.interfaces import (
    AuditRecordStoreInterface,
    CoordinationEventStoreInterface,
)

logger = logging.getLogger(__name__)


class CoordinationEventEmitter:
    """Emits coordination events and audit snapshots.

    Every component reports its state transitions here. Either store may
    be omitted, in which case that half of the output is dropped.
    """

    def __init__(
        self,
        event_store: CoordinationEventStoreInterface | None = None,
        audit_store: AuditRecordStoreInterface | None = None,
    ) -> None:
        self._events = event_store
        self._audit = audit_store

    def _now(self) -> str:
        return datetime.now(timezone.utc).isoformat()

    def emit(
        self,
        component: Component,
        entity_id: str,
        event_type: str,
        **attributes: Any,
    ) -> CoordinationEvent:
        """Emit one state transition event."""
        event = CoordinationEvent(
            event_id=str(uuid.uuid4()),
            component=component,
            entity_id=entity_id,
            event_type=event_type,
            timestamp=self._now(),
            attributes=to_jsonable(attributes),
        )
        logger.debug("%s %s %s", component.value, entity_id, event_type)
        if self._events is not None:
            self._events.store_event(event)
        return event

    def record(self, kind: str, record_id: str, snapshot: Any, terminal: bool) -> None:
        """Save the latest audit snapshot of an entity."""
        if self._audit is None:
            return
        self._audit.save(
            AuditRecord(
                kind=kind,
                record_id=record_id,
                updated_at=self._now(),
                terminal=terminal,
                data=to_jsonable(snapshot),
            )
        )

    def purge_records(self, older_than: datetime) -> int:
        if self._audit is None:
            return 0
        return self._audit.purge(older_than)
