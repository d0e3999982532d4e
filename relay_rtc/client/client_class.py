import logging
import secrets
import string
from typing import Any, Dict, List, Optional, Set

from pyee.asyncio import AsyncIOEventEmitter

from relay_rtc.client.capture import CaptureProvider
from relay_rtc.client.negotiation import AcceptPolicy, PeerNegotiator, accept_all
from relay_rtc.client.transport import ReconnectingTransport, TransportState
from relay_rtc.config import get_config
from relay_rtc.exceptions import NegotiationError
from relay_rtc.protocol import (
    MSG_ANSWER,
    MSG_CONNECTION_CONFIRMED,
    MSG_CONNECTION_REQUEST,
    MSG_ICE_CANDIDATE,
    MSG_OFFER,
    MSG_USER_JOINED,
    MSG_USER_LEFT,
    SignalingMessage,
)

logger = logging.getLogger(__name__)


def generate_user_id() -> str:
    """Generate a ``user_`` id with 9 random lowercase alphanumerics."""
    alphabet = string.ascii_lowercase + string.digits
    return "user_" + "".join(secrets.choice(alphabet) for _ in range(9))


class RelayClient(AsyncIOEventEmitter):
    """Screen sharing client: one signaling transport and one peer negotiator.

    Events:
        connected: ``connection-confirmed`` received (user id).
        connection-request: Inbound request accepted (sender).
        user-joined: Peer registered with the relay (user id, user type).
        user-left: Peer left the relay (user id).
        status: Connection status from the negotiator.
        connectionstatechange: Peer connection state.
        track: Remote media track.
        transportstate: Signaling transport state.
        negotiationerror: ``NegotiationError`` raised handling an inbound message.

    Args:
        user_id: Own id; generated when omitted.
        signaling_url: Relay URL; defaults to the configured one.
        ice_servers: ICE servers; defaults to the configured ones.
        capture_provider: Source of local tracks for sharing.
        accept_policy: Decides whether inbound connection requests are accepted.
        transport: Prebuilt transport, mainly for tests.
        peer_factory: Peer connection factory passed to the negotiator.
    """

    def __init__(
        self,
        user_id: Optional[str] = None,
        signaling_url: Optional[str] = None,
        ice_servers: Optional[List[Dict[str, Any]]] = None,
        capture_provider: Optional[CaptureProvider] = None,
        accept_policy: AcceptPolicy = accept_all,
        transport: Optional[ReconnectingTransport] = None,
        peer_factory=None,
    ):
        super().__init__()
        config = get_config()
        self.user_id = user_id or generate_user_id()

        if transport is None:
            transport = ReconnectingTransport(
                config.get_websocket_url(self.user_id, base=signaling_url),
                max_retries=config.transport.max_retries,
                retry_delay=config.transport.retry_delay,
            )
        self.transport = transport
        self.transport.add_handler(self.on_message)
        self.transport.add_state_listener(self._on_transport_state)

        self.negotiator = PeerNegotiator(
            self.user_id,
            self.transport,
            ice_servers=config.ice_servers if ice_servers is None else ice_servers,
            capture_provider=capture_provider,
            accept_policy=accept_policy,
            peer_factory=peer_factory,
        )
        for event in ("status", "connectionstatechange", "track"):
            self._forward(event)

        # Peers announced by the relay since connecting
        self.peers: Set[str] = set()

    def _forward(self, event: str) -> None:
        def forward(*args):
            self.emit(event, *args)

        self.negotiator.on(event, forward)

    def _on_transport_state(self, state: TransportState) -> None:
        logger.debug(f"Signaling transport {state.value}")
        if state == TransportState.CLOSED:
            self.peers.clear()
        self.emit("transportstate", state.value)

    @property
    def status(self) -> str:
        return self.negotiator.connection_status

    @property
    def is_connected(self) -> bool:
        return self.transport.is_connected

    @property
    def target_user_id(self) -> Optional[str]:
        return self.negotiator.target_user_id

    @property
    def is_sharing(self) -> bool:
        return self.negotiator.is_sharing

    async def start(self) -> None:
        """Connect to the relay."""
        logger.info(f"Starting client as {self.user_id}")
        await self.transport.connect()

    async def connect(self, target_user_id: str) -> None:
        """Send a connection request to ``target_user_id``."""
        await self.negotiator.connect_to_user(target_user_id)

    async def negotiate(self) -> None:
        """Offer to the target without sharing, to receive its stream."""
        await self.negotiator.negotiate()

    async def start_share(self) -> None:
        await self.negotiator.start_share()

    async def stop_share(self) -> None:
        await self.negotiator.stop_share()

    async def disconnect(self) -> None:
        """Close the peer session; the relay connection stays open."""
        await self.negotiator.close()

    async def close(self) -> None:
        await self.negotiator.close()
        await self.transport.close()
        logger.info("Client closed")

    async def on_message(self, message: SignalingMessage) -> None:
        """Dispatch one inbound signaling message.

        Negotiation errors are logged and re-emitted as ``negotiationerror``;
        the session stays usable for a fresh attempt.
        """
        logger.info(f"Received {message.type} message")
        try:
            if message.type == MSG_CONNECTION_CONFIRMED:
                logger.info(f"Connection confirmed for user: {message.user_id}")
                self.emit("connected", message.user_id)

            elif message.type == MSG_USER_JOINED:
                self.peers.add(message.user_id)
                self.emit("user-joined", message.user_id, message.user_type)

            elif message.type == MSG_USER_LEFT:
                self.peers.discard(message.user_id)
                if message.user_id == self.negotiator.target_user_id:
                    logger.info(f"Connected peer {message.user_id} left the relay")
                self.emit("user-left", message.user_id)

            elif message.type == MSG_CONNECTION_REQUEST:
                if await self.negotiator.handle_connection_request(message.sender):
                    self.emit("connection-request", message.sender)

            elif message.type == MSG_OFFER:
                await self.negotiator.handle_offer(message.sender, message.payload)

            elif message.type == MSG_ANSWER:
                await self.negotiator.handle_answer(message.payload, sender=message.sender)

            elif message.type == MSG_ICE_CANDIDATE:
                await self.negotiator.handle_ice_candidate(
                    message.payload, sender=message.sender
                )

        except NegotiationError as e:
            logger.error(f"Error handling {message.type} from {message.sender}: {e}")
            self.emit("negotiationerror", e)
