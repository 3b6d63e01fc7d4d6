"""
Handoff transport adapters.
"""

from concord.infrastructure.transport.in_process import HandoffHandler, InProcessTransport

__all__ = [
    "HandoffHandler",
    "InProcessTransport",
]
