"""Transport handles registered with the relay.

A handle is the relay's view of one live signaling endpoint. The registry
only needs a stable ``handle_id``; the router only needs ``send``.
"""

import json
from typing import Any, Dict

import socketio
from aiohttp import web


class ConnectionHandle:
    """One live signaling endpoint."""

    handle_id: str

    @property
    def is_open(self) -> bool:
        raise NotImplementedError

    async def send(self, message: Dict[str, Any]) -> None:
        """Deliver a frame to the endpoint."""
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.handle_id!r})"


class WebSocketHandle(ConnectionHandle):
    """Raw persistent socket accepted at ``/ws``."""

    def __init__(self, ws: web.WebSocketResponse, handle_id: str):
        self.ws = ws
        self.handle_id = handle_id

    @property
    def is_open(self) -> bool:
        return not self.ws.closed

    async def send(self, message: Dict[str, Any]) -> None:
        await self.ws.send_str(json.dumps(message))


class SocketIOHandle(ConnectionHandle):
    """Socket.IO session; each frame becomes an event named after its type."""

    def __init__(self, sio: socketio.AsyncServer, sid: str):
        self.sio = sio
        self.sid = sid
        self.handle_id = f"sio:{sid}"

    @property
    def is_open(self) -> bool:
        # python-socketio drops events addressed to a disconnected sid
        return True

    async def send(self, message: Dict[str, Any]) -> None:
        body = {key: value for key, value in message.items() if key != "type"}
        await self.sio.emit(message["type"], body, to=self.sid)
