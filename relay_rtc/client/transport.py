"""Reconnecting signaling transport.

Keeps one logical connection to the relay's raw socket. Concurrent
``connect()`` calls share a single in-flight attempt, dropped connections
are retried with linear backoff, and sends fail fast while not open.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from relay_rtc.exceptions import (
    MalformedMessageError,
    NotConnectedError,
    TransportClosedError,
)
from relay_rtc.protocol import SignalingMessage, format_message, parse_message

logger = logging.getLogger(__name__)

MessageHandler = Callable[[SignalingMessage], Awaitable[None]]
StateListener = Callable[["TransportState"], None]


class TransportState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


class ReconnectingTransport:
    """Signaling connection with bounded automatic reconnection.

    After a failed attempt or a connection drop the transport waits
    ``retry_delay * n`` seconds before attempt ``n``. Once ``max_retries``
    attempts have failed it stays ``closed`` with ``retries_exhausted`` set
    until ``connect()`` is called again.

    Inbound frames are parsed and handed to every registered handler in
    arrival order; the next frame is not read until the handlers return.

    Attributes:
        url: Relay socket URL including the ``userId`` query parameter.
        state: Current ``TransportState``.
        attempts: Reconnection attempts since the last successful open.
        retries_exhausted: True once automatic reconnection has given up.
    """

    def __init__(
        self,
        url: str,
        max_retries: int = 5,
        retry_delay: float = 1.0,
        connect: Callable[[str], Awaitable[Any]] = websockets.connect,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.url = url
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._connect = connect
        self._sleep = sleep

        self.state = TransportState.IDLE
        self.attempts = 0
        self.retries_exhausted = False
        self.websocket = None

        self._handlers: List[MessageHandler] = []
        self._state_listeners: List[StateListener] = []
        self._connect_task: Optional[asyncio.Future] = None
        self._receive_task: Optional[asyncio.Task] = None
        self._retry_task: Optional[asyncio.Task] = None
        self._closed_by_user = False
        # Bumped by close(); attempts started before it are discarded
        self._generation = 0

    @property
    def is_connected(self) -> bool:
        return self.state == TransportState.OPEN and self.websocket is not None

    def add_handler(self, handler: MessageHandler) -> None:
        self._handlers.append(handler)

    def remove_handler(self, handler: MessageHandler) -> None:
        if handler in self._handlers:
            self._handlers.remove(handler)

    def add_state_listener(self, listener: StateListener) -> None:
        self._state_listeners.append(listener)

    def _set_state(self, state: TransportState) -> None:
        if state == self.state:
            return
        self.state = state
        for listener in list(self._state_listeners):
            listener(state)

    async def connect(self) -> None:
        """Connect to the relay.

        Returns immediately if already open and joins the pending attempt if
        one is in flight; otherwise starts a new attempt. An explicit call
        resets the retry budget after automatic reconnection gave up.

        Raises:
            TransportClosedError: The attempt failed. A retry has been
                scheduled unless the retry budget is spent.
        """
        if self.is_connected:
            return

        if self._connect_task is None or self._connect_task.done():
            self._cancel_retry()
            if self.retries_exhausted:
                logger.info("Resuming connection after exhausted retries")
                self.retries_exhausted = False
                self.attempts = 0
            self._closed_by_user = False
        else:
            logger.info("WebSocket connection in progress")

        await asyncio.shield(self._start_attempt())

    def _start_attempt(self) -> asyncio.Future:
        if self._connect_task is None or self._connect_task.done():
            self._connect_task = asyncio.ensure_future(self._open(self._generation))
        return self._connect_task

    async def _open(self, generation: int) -> None:
        self._set_state(TransportState.CONNECTING)
        logger.info(f"Connecting to WebSocket server: {self.url}")

        try:
            websocket = await self._connect(self.url)
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            if generation != self._generation:
                raise TransportClosedError("Transport closed while connecting") from e
            logger.error(f"Signaling server error: {e}")
            self._set_state(TransportState.CLOSED)
            self._schedule_retry()
            raise TransportClosedError(
                "Failed to connect to signaling server",
                {"url": self.url, "error": str(e)},
            ) from e

        if generation != self._generation:
            await websocket.close()
            raise TransportClosedError("Transport closed while connecting")

        self.websocket = websocket
        self.attempts = 0
        self._set_state(TransportState.OPEN)
        logger.info("Connected to signaling server")
        self._receive_task = asyncio.create_task(self._receive_loop(websocket))

    async def _receive_loop(self, websocket) -> None:
        try:
            async for raw in websocket:
                try:
                    message = parse_message(raw)
                except MalformedMessageError as e:
                    logger.error(f"Error parsing message: {e}")
                    continue
                await self._dispatch(message)
        except ConnectionClosed as e:
            logger.warning(f"Connection to signaling server closed: {e}")

        if self.websocket is websocket:
            self.websocket = None
        if self._closed_by_user:
            return

        logger.info("Disconnected from signaling server")
        self._set_state(TransportState.CLOSED)
        self._schedule_retry()

    async def _dispatch(self, message: SignalingMessage) -> None:
        for handler in list(self._handlers):
            try:
                await handler(message)
            except Exception as e:
                logger.exception(f"Error handling {message.type} message: {e}")

    def _schedule_retry(self) -> None:
        if self._closed_by_user:
            return
        if self.attempts >= self.max_retries:
            logger.error("Max reconnection attempts reached")
            self.retries_exhausted = True
            return

        self.attempts += 1
        delay = self.retry_delay * self.attempts
        logger.info(
            f"Attempting to reconnect ({self.attempts}/{self.max_retries}) "
            f"in {delay * 1000:.0f}ms"
        )
        self._retry_task = asyncio.create_task(self._retry_after(delay))

    async def _retry_after(self, delay: float) -> None:
        await self._sleep(delay)
        try:
            await self._start_attempt()
        except TransportClosedError as e:
            logger.error(f"Reconnection failed: {e}")

    def _cancel_retry(self) -> None:
        task = self._retry_task
        self._retry_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def send(self, message: Dict[str, Any]) -> None:
        """Send one frame.

        Raises:
            NotConnectedError: The transport is not open. Nothing is queued.
        """
        if not self.is_connected:
            logger.error(
                f"WebSocket is not connected. Current state: {self.state.value}"
            )
            raise NotConnectedError(
                "WebSocket is not connected", {"state": self.state.value}
            )
        try:
            await self.websocket.send(format_message(message))
        except ConnectionClosed as e:
            raise NotConnectedError(
                "WebSocket closed while sending", {"type": message.get("type")}
            ) from e

    async def close(self) -> None:
        """Close the connection and stop reconnecting."""
        self._closed_by_user = True
        self._generation += 1
        self._connect_task = None
        self._cancel_retry()
        self.attempts = 0
        self.retries_exhausted = False

        websocket = self.websocket
        self.websocket = None
        if websocket is not None:
            self._set_state(TransportState.CLOSING)
            await websocket.close()

        task = self._receive_task
        self._receive_task = None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        self._set_state(TransportState.CLOSED)
