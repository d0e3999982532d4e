"""Relay server module for relay-rtc.

This module provides the signaling relay:
- handles: Transport handles the registry stores
- registry: User id to connection mapping per transport kind
- router: Delivery of addressed messages and presence broadcasts
- relay_server: aiohttp application serving /ws and Socket.IO
"""

from relay_rtc.server.handles import (
    ConnectionHandle,
    SocketIOHandle,
    WebSocketHandle,
)
from relay_rtc.server.registry import (
    ConnectionEntry,
    ConnectionRegistry,
    TransportKind,
)
from relay_rtc.server.router import DropReason, MessageRouter, RouteResult
from relay_rtc.server.relay_server import RelayServer

__all__ = [
    # Handles
    "ConnectionHandle",
    "SocketIOHandle",
    "WebSocketHandle",
    # Registry
    "ConnectionEntry",
    "ConnectionRegistry",
    "TransportKind",
    # Routing
    "DropReason",
    "MessageRouter",
    "RouteResult",
    # Server
    "RelayServer",
]
