"""Exception types shared across the engine."""

from __future__ import annotations


class ToolstreamError(RuntimeError):
    """Base class for engine errors."""


class TransportError(ToolstreamError):
    """A backend request failed."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class TransientTransportError(TransportError):
    """The backend is temporarily unavailable; the request may be retried."""


class DeliveryError(ToolstreamError):
    """An outbound message could not be delivered after all retries."""

    def __init__(self, message: str, *, status: int | None = None, attempts: int = 0) -> None:
        super().__init__(message)
        self.status = status
        self.attempts = attempts


class ProtocolError(ToolstreamError):
    """The backend sent an event that violates the stream protocol."""


class DuplicateToolCallError(ProtocolError):
    """A tool call id was requested again while still in flight."""

    def __init__(self, call_id: str) -> None:
        super().__init__(f"Tool call id already in flight: {call_id}")
        self.call_id = call_id


class SessionStateError(ToolstreamError):
    """A user action is not valid in the session's current state."""


__all__ = [
    "DeliveryError",
    "DuplicateToolCallError",
    "ProtocolError",
    "SessionStateError",
    "ToolstreamError",
    "TransientTransportError",
    "TransportError",
]
