"""Client module for relay-rtc.

This module provides the screen sharing client:
- transport: Reconnecting signaling connection to the relay
- negotiation: Offer/answer state machine around one peer connection
- capture: Local capture sources
- client_class: RelayClient facade wiring transport and negotiator
"""

from relay_rtc.client.capture import (
    CaptureProvider,
    CaptureStream,
    MediaPlayerCaptureProvider,
)
from relay_rtc.client.client_class import RelayClient, generate_user_id
from relay_rtc.client.negotiation import (
    NegotiationSession,
    NegotiationState,
    PeerNegotiator,
    accept_all,
)
from relay_rtc.client.transport import ReconnectingTransport, TransportState

__all__ = [
    # Capture
    "CaptureProvider",
    "CaptureStream",
    "MediaPlayerCaptureProvider",
    # Negotiation
    "NegotiationSession",
    "NegotiationState",
    "PeerNegotiator",
    "accept_all",
    # Transport
    "ReconnectingTransport",
    "TransportState",
    # Client
    "RelayClient",
    "generate_user_id",
]
