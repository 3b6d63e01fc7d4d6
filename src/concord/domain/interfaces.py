"""
Domain interfaces (Ports) for the coordination core.

These abstract base classes define the contracts that persistence and
transport adapters must satisfy. They have no external dependencies.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from concord.domain.context import ContextStatus, ContextVersion
    from concord.domain.coordination_event import (
        AuditRecord,
        Component,
        CoordinationEvent,
    )
    from concord.domain.handoff import HandoffAck, HandoffMessage


class ContextVersionStoreInterface(ABC):
    """
    Port for context version persistence.

    One append-only log of versions per context_id. Each version is
    stored together with its materialized tree.
    """

    @abstractmethod
    def append(self, version: "ContextVersion", tree: dict[str, Any]) -> str:
        """
        Append a version to its context's log.

        Args:
            version: The immutable version
            tree: The fully materialized tree at that version

        Returns:
            The version_id
        """
        pass

    @abstractmethod
    def get_version(self, context_id: str, version_id: str) -> "ContextVersion":
        """
        Retrieve a version.

        Raises:
            KeyError: If the version is not stored
        """
        pass

    @abstractmethod
    def get_tree(self, context_id: str, version_id: str) -> dict[str, Any]:
        """
        Retrieve a private copy of the tree at a version.

        Raises:
            KeyError: If the version is not stored
        """
        pass

    @abstractmethod
    def list_versions(self, context_id: str) -> list["ContextVersion"]:
        """All stored versions of a context in creation order."""
        pass

    @abstractmethod
    def delete(self, context_id: str, version_ids: set[str]) -> int:
        """
        Remove versions (retention policy only).

        Returns:
            Number of versions removed
        """
        pass

    @abstractmethod
    def context_ids(self) -> list[str]:
        """Ids of every context with at least one stored version."""
        pass

    @abstractmethod
    def save_status(self, context_id: str, status: "ContextStatus") -> None:
        """Persist a context's lifecycle status."""
        pass

    @abstractmethod
    def get_status(self, context_id: str) -> "ContextStatus | None":
        """The last saved status, or None if none was saved."""
        pass


class CoordinationEventStoreInterface(ABC):
    """Port for the monitoring sink."""

    @abstractmethod
    def store_event(self, event: "CoordinationEvent") -> str:
        """Persist an event. Returns the event_id."""
        pass

    @abstractmethod
    def get_events(
        self,
        component: "Component | None" = None,
        entity_id: str | None = None,
        event_type: str | None = None,
    ) -> list["CoordinationEvent"]:
        """Events matching every given filter, ordered by timestamp."""
        pass


class AuditRecordStoreInterface(ABC):
    """Port for per-entity audit records keyed by kind and id."""

    @abstractmethod
    def save(self, record: "AuditRecord") -> None:
        """Insert or replace the record for (kind, record_id)."""
        pass

    @abstractmethod
    def get(self, kind: str, record_id: str) -> "AuditRecord | None":
        pass

    @abstractmethod
    def list_records(self, kind: str | None = None) -> list["AuditRecord"]:
        """Records (of one kind, if given) ordered by updated_at."""
        pass

    @abstractmethod
    def purge(self, older_than: datetime) -> int:
        """
        Apply the retention policy.

        Only terminal records last updated before ``older_than`` are removed.

        Returns:
            Number of records removed
        """
        pass


class HandoffTransportInterface(ABC):
    """
    Port for the host's point-to-point delivery primitive.

    Delivery may block; the coordinator bounds it with its own timeout.
    """

    @abstractmethod
    def deliver(self, message: "HandoffMessage") -> "HandoffAck":
        """
        Deliver a handoff to its target and return the target's ack.

        Raises:
            TransportError: If the message could not be delivered
        """
        pass
