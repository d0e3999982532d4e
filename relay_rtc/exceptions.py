"""Exception types raised by relay-rtc.

Routing misses (``TargetNotFound``) and malformed inbound frames
(``MalformedMessage``) are reported by the relay as drop reasons, see
:class:`relay_rtc.server.router.DropReason`. The exceptions below cover the
failures that are surfaced to a caller.
"""

from typing import Optional


class RelayRTCError(Exception):
    """Base exception for relay-rtc."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.details = details or {}

    def __str__(self):
        if self.details:
            return f"{super().__str__()} - {self.details}"
        return super().__str__()


class MalformedMessageError(RelayRTCError, ValueError):
    """Raised when a signaling frame cannot be parsed or misses required fields."""


class NotConnectedError(RelayRTCError):
    """Raised when sending while the signaling transport is not open."""


class TransportClosedError(RelayRTCError):
    """Raised when the signaling connection could not be opened or was dropped."""


class NegotiationError(RelayRTCError):
    """Raised when a negotiation step is invoked in the wrong state."""


class CaptureError(RelayRTCError):
    """Raised when a local capture source cannot be acquired."""
