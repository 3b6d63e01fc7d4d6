"""
Persistence adapters for context versions, coordination events and audit records.
"""

from concord.infrastructure.persistence.filesystem import (
    FilesystemAuditRecordStore,
    FilesystemContextVersionStore,
    FilesystemCoordinationEventStore,
)
from concord.infrastructure.persistence.memory import (
    InMemoryAuditRecordStore,
    InMemoryContextVersionStore,
    InMemoryCoordinationEventStore,
)

__all__ = [
    "InMemoryContextVersionStore",
    "InMemoryCoordinationEventStore",
    "InMemoryAuditRecordStore",
    "FilesystemContextVersionStore",
    "FilesystemCoordinationEventStore",
    "FilesystemAuditRecordStore",
]
