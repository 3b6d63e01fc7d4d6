"""
In-process handoff transport.

Routes each handoff to a handler registered for its target agent, or to
a default handler (typically ``HandoffCoordinator.receive``).
"""

import logging
import threading
from collections import deque
from collections.abc import Callable

from concord.domain.exceptions import CoordinationError, TransportError
from concord.domain.handoff import HandoffAck, HandoffMessage
from concord.domain.interfaces import HandoffTransportInterface

logger = logging.getLogger(__name__)

HandoffHandler = Callable[[HandoffMessage], HandoffAck]

DELIVERY_HISTORY = 1000


class InProcessTransport(HandoffTransportInterface):
    """
    Registry of per-agent handoff handlers.

    Example usage:
        transport = InProcessTransport()
        transport.set_default_handler(coordinator.receive)
        transport.register("accessibility", my_handler)
    """

    def __init__(
        self,
        default_handler: HandoffHandler | None = None,
        history_limit: int = DELIVERY_HISTORY,
    ) -> None:
        self._handlers: dict[str, HandoffHandler] = {}
        self._default = default_handler
        self._lock = threading.Lock()
        self._delivered: deque[str] = deque(maxlen=history_limit)

    @property
    def delivered(self) -> list[str]:
        """Ids of the most recent deliveries, oldest first."""
        with self._lock:
            return list(self._delivered)

    def register(self, agent_id: str, handler: HandoffHandler) -> None:
        """Route handoffs targeting ``agent_id`` to ``handler``."""
        self._handlers[agent_id] = handler

    def unregister(self, agent_id: str) -> None:
        self._handlers.pop(agent_id, None)

    def set_default_handler(self, handler: HandoffHandler) -> None:
        self._default = handler

    def deliver(self, message: HandoffMessage) -> HandoffAck:
        handler = self._handlers.get(message.target_agent, self._default)
        if handler is None:
            raise TransportError(f"No route to agent {message.target_agent}")
        with self._lock:
            self._delivered.append(message.message_id)
        try:
            return handler(message)
        except CoordinationError:
            raise
        except Exception as e:
            logger.warning("Handler for %s failed: %s", message.target_agent, e)
            raise TransportError(f"Delivery to {message.target_agent} failed: {e}") from e
