"""HTTP/WebSocket relay server for peer signaling.

This module provides the relay that peers register with and exchange
offers, answers and ICE candidates through. Two equivalent transports are
served from one aiohttp application:

- A raw persistent socket at ``/ws?userId=...``
- A Socket.IO channel at ``/socket.io/`` (``userId`` query parameter or a
  ``join`` event)

Each transport has its own registry; peers can only reach peers connected
over the same transport.
"""

import itertools
import logging
from typing import Any, Dict, Optional
from urllib.parse import parse_qs

import socketio
from aiohttp import WSCloseCode, WSMsgType, web

from relay_rtc.config import DEFAULT_HOST, DEFAULT_PORT, WEBSOCKET_PATH
from relay_rtc.protocol import (
    EVENT_JOIN,
    ROUTED_TYPES,
    connection_confirmed,
    user_joined,
    user_left,
)
from relay_rtc.server.handles import SocketIOHandle, WebSocketHandle
from relay_rtc.server.registry import ConnectionRegistry, TransportKind
from relay_rtc.server.router import MessageRouter, RouteResult

logger = logging.getLogger(__name__)

MISSING_USER_ID_REASON = b"Missing userId parameter"


class RelayServer:
    """Signaling relay serving the raw socket and Socket.IO transports.

    Attributes:
        ws_registry: Registry of raw socket connections.
        sio_registry: Registry of Socket.IO sessions.
        ws_router: Router over ``ws_registry``.
        sio_router: Router over ``sio_registry``.
    """

    def __init__(self, cors_allowed_origins: Any = "*"):
        self.ws_registry = ConnectionRegistry(TransportKind.WEBSOCKET)
        self.sio_registry = ConnectionRegistry(TransportKind.SOCKETIO)
        self.ws_router = MessageRouter(self.ws_registry)
        self.sio_router = MessageRouter(self.sio_registry)

        self.sio = socketio.AsyncServer(
            async_mode="aiohttp", cors_allowed_origins=cors_allowed_origins
        )
        self._register_sio_handlers()

        # Server state
        self.app: Optional[web.Application] = None
        self.runner: Optional[web.AppRunner] = None
        self.site: Optional[web.TCPSite] = None
        self.port: Optional[int] = None

        # Open raw sockets, closed on shutdown
        self.ws_clients: set = set()
        self._ws_ids = itertools.count(1)
        self._sio_handles: Dict[str, SocketIOHandle] = {}

    def create_app(self) -> web.Application:
        """Build the aiohttp application with both transports mounted."""
        self.app = web.Application()
        self.app.router.add_get(WEBSOCKET_PATH, self._handle_websocket)
        self.sio.attach(self.app)
        return self.app

    async def start(self, host: str = DEFAULT_HOST, port: int = DEFAULT_PORT) -> str:
        """Start listening.

        Returns:
            Base URL of the relay.
        """
        if self.app is None:
            self.create_app()

        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        self.site = web.TCPSite(self.runner, host, port)
        await self.site.start()
        self.port = port

        url = f"http://{host}:{port}"
        logger.info(f"Relay server is running on port {port}")
        logger.info(f"WebSocket server available at ws://{host}:{port}{WEBSOCKET_PATH}")
        logger.info(f"Socket.IO server available at {url}")
        return url

    async def stop(self):
        """Stop the server and close all connections."""
        for ws in list(self.ws_clients):
            await ws.close(code=WSCloseCode.GOING_AWAY, message=b"Server shutdown")
        self.ws_clients.clear()

        if self.site:
            await self.site.stop()
        if self.runner:
            await self.runner.cleanup()

        logger.info("Relay server stopped")

    # ===== Raw socket transport =====

    async def _handle_websocket(self, request: web.Request) -> web.WebSocketResponse:
        """Handle WebSocket connections at /ws."""
        user_id = request.query.get("userId")

        ws = web.WebSocketResponse()
        await ws.prepare(request)

        if not user_id:
            logger.warning("WebSocket connection rejected: missing userId")
            await ws.close(
                code=WSCloseCode.POLICY_VIOLATION, message=MISSING_USER_ID_REASON
            )
            return ws

        handle = WebSocketHandle(ws, f"ws:{next(self._ws_ids)}")
        self.ws_clients.add(ws)
        await self.ws_registry.register(user_id, handle)
        logger.info(f"WebSocket user {user_id} connected")

        try:
            await handle.send(connection_confirmed(user_id))
            await self.ws_router.broadcast(user_joined(user_id), exclude=user_id)

            async for msg in ws:
                if msg.type in (WSMsgType.TEXT, WSMsgType.BINARY):
                    await self._route_ws_message(handle, msg.data)
                elif msg.type == WSMsgType.ERROR:
                    logger.error(f"WebSocket error for user {user_id}: {ws.exception()}")
        finally:
            self.ws_clients.discard(ws)
            logger.info(f"WebSocket user {user_id} disconnected")
            if await self.ws_registry.unregister(handle) is not None:
                await self.ws_router.broadcast(user_left(user_id), exclude=user_id)

        return ws

    async def _route_ws_message(self, handle: WebSocketHandle, data: Any) -> RouteResult:
        # A connection replaced by a newer registration has no identity left
        sender_id = await self.ws_registry.user_for(handle)
        # Malformed frames are dropped by the router; the socket stays open
        return await self.ws_router.route(data, sender_id=sender_id)

    # ===== Socket.IO transport =====

    def _register_sio_handlers(self):
        self.sio.on("connect", self._on_sio_connect)
        self.sio.on("disconnect", self._on_sio_disconnect)
        self.sio.on(EVENT_JOIN, self._on_sio_join)
        for msg_type in ROUTED_TYPES:
            self.sio.on(msg_type, self._make_sio_route_handler(msg_type))

    def _sio_handle(self, sid: str) -> SocketIOHandle:
        handle = self._sio_handles.get(sid)
        if handle is None:
            handle = SocketIOHandle(self.sio, sid)
            self._sio_handles[sid] = handle
        return handle

    async def _register_sio_user(
        self, sid: str, user_id: str, user_type: Optional[str] = None
    ):
        await self.sio_registry.register(user_id, self._sio_handle(sid), user_type=user_type)
        await self.sio_router.broadcast(user_joined(user_id, user_type), exclude=user_id)

    async def _on_sio_connect(self, sid: str, environ: dict, auth: Any = None):
        logger.info(f"Socket.IO user connected: {sid}")
        self._sio_handle(sid)

        query = parse_qs(environ.get("QUERY_STRING", ""))
        user_id = query.get("userId", [None])[0]
        if user_id:
            logger.info(f"User with ID {user_id} connected with socket ID {sid}")
            await self._register_sio_user(sid, user_id)

    async def _on_sio_join(self, sid: str, data: Any):
        if not isinstance(data, dict) or not data.get("userId"):
            logger.warning(f"Ignoring join without userId from {sid}")
            return
        user_id = data["userId"]
        user_type = data.get("userType")
        logger.info(f"User {user_id} joined as {user_type}")
        await self._register_sio_user(sid, user_id, user_type)

    async def _on_sio_disconnect(self, sid: str, reason: Any = None):
        handle = self._sio_handles.pop(sid, None)
        entry = await self.sio_registry.unregister(handle) if handle else None
        if entry is None:
            logger.info(f"Unknown user disconnected: {sid}")
            return
        logger.info(f"User disconnected: {entry.user_id}")
        await self.sio_router.broadcast(user_left(entry.user_id), exclude=entry.user_id)

    def _make_sio_route_handler(self, msg_type: str):
        async def handler(sid: str, data: Any = None):
            await self._route_sio_message(sid, msg_type, data)

        handler.__name__ = f"on_{msg_type.replace('-', '_')}"
        return handler

    async def _route_sio_message(self, sid: str, msg_type: str, data: Any) -> RouteResult:
        handle = self._sio_handles.get(sid)
        sender_id = await self.sio_registry.user_for(handle) if handle else None
        frame = dict(data, type=msg_type) if isinstance(data, dict) else data
        return await self.sio_router.route(frame, sender_id=sender_id)
