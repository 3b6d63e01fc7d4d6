"""
Infrastructure layer for the coordination core.

Contains adapters for external concerns (persistence, transport, configuration).
"""

from concord.infrastructure.config_loader import load_settings, settings_from_dict
from concord.infrastructure.persistence import (
    FilesystemAuditRecordStore,
    FilesystemContextVersionStore,
    FilesystemCoordinationEventStore,
    InMemoryAuditRecordStore,
    InMemoryContextVersionStore,
    InMemoryCoordinationEventStore,
)
from concord.infrastructure.transport import InProcessTransport

__all__ = [
    # Persistence
    "InMemoryContextVersionStore",
    "InMemoryCoordinationEventStore",
    "InMemoryAuditRecordStore",
    "FilesystemContextVersionStore",
    "FilesystemCoordinationEventStore",
    "FilesystemAuditRecordStore",
    # Transport
    "InProcessTransport",
    # Configuration
    "load_settings",
    "settings_from_dict",
]
