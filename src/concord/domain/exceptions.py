"""
Domain exceptions for the coordination core.

Structural errors (validation, permission) are never retried.
Transient errors (dependency, timeout, resource, transport) carry
``retryable=True`` and are retried internally up to a bound.
"""

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from concord.domain.conflict import Conflict


class CoordinationError(Exception):
    """Base class for every coordination failure."""

    retryable: bool = False


class ValidationError(CoordinationError):
    """Malformed message or missing fields. Caller must fix and resubmit."""


class DependencyError(CoordinationError):
    """A task dependency is not yet completed."""

    retryable = True

    def __init__(self, message: str, missing: tuple[str, ...] = ()):
        super().__init__(message)
        self.missing = missing


class DeadlineExceeded(CoordinationError):
    """No response within the deadline."""

    retryable = True


class TransportError(CoordinationError):
    """The underlying delivery primitive failed."""

    retryable = True


class ConflictError(CoordinationError):
    """
    Raised when a write or vote clashes with a concurrent one.

    The conflict has already been registered with the Conflict Engine;
    the error only tells the caller that its write is held.
    """

    def __init__(self, conflict: "Conflict", pending_write_id: str | None = None):
        """
        Args:
            conflict: The conflict that was raised
            pending_write_id: Id of the held context write, if any
        """
        super().__init__(
            f"Conflict {conflict.conflict_id} raised ({conflict.category.value})"
        )
        self.conflict = conflict
        self.pending_write_id = pending_write_id


class AuthorizationError(CoordinationError):
    """Agent is not permitted to use a tool, vote, or mutate an entity."""


class ResourceError(CoordinationError):
    """Tool at capacity and the caller opted out of queueing."""

    retryable = True


class RetriesExhausted(CoordinationError):
    """
    Raised when the bounded retry loop gives up.

    Mirrors the last transient error so callers can pick a fallback
    target or escalate.
    """

    def __init__(self, message: str, provenance: list[tuple[int, CoordinationError]]):
        """
        Args:
            message: Human-readable error message
            provenance: (attempt, error) for each failed attempt
        """
        super().__init__(message)
        self.provenance = provenance

    @property
    def last_error(self) -> CoordinationError | None:
        return self.provenance[-1][1] if self.provenance else None


class EscalationRequired(CoordinationError):
    """Raised when the escalation ladder reaches its ceiling without a result."""

    def __init__(self, entity_id: str, reason: str, level: int | None = None):
        super().__init__(reason)
        self.entity_id = entity_id
        self.reason = reason
        self.level = level


class ConfigurationError(Exception):
    """Raised when configuration files are invalid or missing."""

    def __init__(self, message: str, details: Any = None):
        super().__init__(message)
        self.details = details
