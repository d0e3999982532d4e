"""Client-side offer/answer negotiation.

``PeerNegotiator`` owns at most one ``NegotiationSession`` and the aiortc
peer connection inside it. Every negotiation step runs under one lock, so an
offer is never created while another offer is being created or is still
waiting for its answer; such requests are remembered and replayed once the
session is stable again.

Signaling states::

    new --offer sent--> have-local-offer --answer set--> stable
    new --offer set---> have-remote-offer --answer sent--> stable
    stable --renegotiation--> have-local-offer
    any --close()--> closed

aiortc gathers ICE candidates while setting the local description and embeds
them in the SDP, so outbound candidates travel inside the offer or answer.
Candidates trickled by browser peers are applied as they arrive, or buffered
until the remote description is set.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from aiortc import (
    RTCConfiguration,
    RTCIceCandidate,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.exceptions import InvalidAccessError, InvalidStateError
from aiortc.sdp import candidate_from_sdp
from pyee.asyncio import AsyncIOEventEmitter

from relay_rtc.client.capture import CaptureProvider, CaptureStream
from relay_rtc.exceptions import NegotiationError, NotConnectedError
from relay_rtc.protocol import (
    MSG_ANSWER,
    MSG_CONNECTION_REQUEST,
    MSG_OFFER,
    build_message,
)

logger = logging.getLogger(__name__)

# Errors aiortc raises for descriptions it cannot apply
PEER_ERRORS = (InvalidStateError, InvalidAccessError, ValueError)

AcceptPolicy = Callable[[str], bool]
PeerFactory = Callable[[], RTCPeerConnection]
PendingCandidate = Tuple[Optional[str], Dict[str, Any]]

# Per-buffer cap on candidates waiting for a remote description
MAX_PENDING_CANDIDATES = 64


def accept_all(sender: str) -> bool:
    """Accept every inbound connection request."""
    return True


class NegotiationState(str, Enum):
    NEW = "new"
    HAVE_LOCAL_OFFER = "have-local-offer"
    HAVE_REMOTE_OFFER = "have-remote-offer"
    STABLE = "stable"
    CLOSED = "closed"


@dataclass
class NegotiationSession:
    """State of the one active peer relationship.

    Attributes:
        target_user_id: Peer that offers and answers are exchanged with.
        peer_connection: Owned aiortc peer connection, created lazily.
        capture: Owned local capture stream while sharing.
        senders: RTP senders of the attached capture tracks.
        remote_tracks: Tracks received from the peer (not owned).
        state: Signaling state of this session.
        renegotiate: An offer was requested while another was outstanding.
        closed: Set on teardown; pending continuations check it and bail out.
        pending_candidates: Remote candidates (sender, candidate) waiting for
            the remote description, in arrival order.
    """

    target_user_id: Optional[str] = None
    peer_connection: Optional[RTCPeerConnection] = None
    capture: Optional[CaptureStream] = None
    senders: List[Any] = field(default_factory=list)
    remote_tracks: List[Any] = field(default_factory=list)
    state: NegotiationState = NegotiationState.NEW
    renegotiate: bool = False
    closed: bool = False
    pending_candidates: List[PendingCandidate] = field(default_factory=list)


def build_rtc_configuration(
    ice_servers: Optional[List[Dict[str, Any]]],
) -> Optional[RTCConfiguration]:
    """Build an RTCConfiguration from ICE server dictionaries."""
    if not ice_servers:
        return None
    return RTCConfiguration(
        iceServers=[RTCIceServer(**server) for server in ice_servers]
    )


def parse_ice_candidate(data: Any) -> Optional[RTCIceCandidate]:
    """Convert a browser ``RTCIceCandidateInit`` into an aiortc candidate.

    Returns:
        The candidate, or None for the empty end-of-candidates marker.

    Raises:
        NegotiationError: The candidate line cannot be parsed.
    """
    if not isinstance(data, dict):
        raise NegotiationError("Invalid ICE candidate", {"candidate": data})

    sdp = data.get("candidate")
    if not sdp:
        return None
    if sdp.startswith("candidate:"):
        sdp = sdp[len("candidate:"):]
    if len(sdp.split()) < 8:
        raise NegotiationError("Invalid ICE candidate", {"candidate": data.get("candidate")})

    try:
        candidate = candidate_from_sdp(sdp)
    except (ValueError, IndexError) as e:
        raise NegotiationError(
            "Invalid ICE candidate", {"candidate": data.get("candidate"), "error": str(e)}
        ) from e
    candidate.sdpMid = data.get("sdpMid")
    candidate.sdpMLineIndex = data.get("sdpMLineIndex")
    return candidate


def _session_description(data: Any, expected_type: str) -> RTCSessionDescription:
    if not isinstance(data, dict) or not data.get("sdp"):
        raise NegotiationError(f"Invalid {expected_type}: missing sdp")
    sdp_type = data.get("type", expected_type)
    if sdp_type != expected_type:
        raise NegotiationError(
            f"Invalid {expected_type}: unexpected type", {"type": sdp_type}
        )
    return RTCSessionDescription(sdp=data["sdp"], type=sdp_type)


def _description_payload(description: RTCSessionDescription) -> Dict[str, str]:
    return {"type": description.type, "sdp": description.sdp}


class PeerNegotiator(AsyncIOEventEmitter):
    """Drives offer/answer negotiation with one remote peer.

    Events:
        status: Human readable connection status (``Initialized``,
            ``Disconnected`` or a peer connection state).
        connectionstatechange: Peer connection state (``connecting``,
            ``connected``, ``disconnected``, ``failed``, ``closed``). Failures
            are reported, never retried here.
        track: Remote ``MediaStreamTrack`` received from the peer.

    Args:
        user_id: Own user id, sent as ``from``.
        transport: Object with ``async send(message: dict)``.
        ice_servers: ICE server dictionaries for new peer connections.
        capture_provider: Source of local tracks for ``start_share``.
        accept_policy: Decides whether an inbound connection request binds
            the session to its sender. Defaults to accepting everyone.
        peer_factory: Creates peer connections; defaults to aiortc's.
    """

    def __init__(
        self,
        user_id: str,
        transport,
        ice_servers: Optional[List[Dict[str, Any]]] = None,
        capture_provider: Optional[CaptureProvider] = None,
        accept_policy: AcceptPolicy = accept_all,
        peer_factory: Optional[PeerFactory] = None,
    ):
        super().__init__()
        self.user_id = user_id
        self.transport = transport
        self.capture_provider = capture_provider
        self.accept_policy = accept_policy
        self._rtc_configuration = build_rtc_configuration(ice_servers)
        self._peer_factory = peer_factory or self._create_peer_connection

        self.session: Optional[NegotiationSession] = None
        self.connection_status = "new"
        self._idle_state = NegotiationState.NEW
        # pyee owns self._lock for emit()
        self._negotiation_lock = asyncio.Lock()
        # Candidates that arrive before any session exists
        self._unbound_candidates: List[PendingCandidate] = []

    @property
    def state(self) -> NegotiationState:
        if self.session is not None:
            return self.session.state
        return self._idle_state

    @property
    def target_user_id(self) -> Optional[str]:
        return self.session.target_user_id if self.session else None

    @property
    def peer_connection(self) -> Optional[RTCPeerConnection]:
        return self.session.peer_connection if self.session else None

    @property
    def is_sharing(self) -> bool:
        return self.session is not None and self.session.capture is not None

    def _set_status(self, status: str) -> None:
        self.connection_status = status
        self.emit("status", status)

    # ===== Peer connection lifecycle =====

    def _create_peer_connection(self) -> RTCPeerConnection:
        if self._rtc_configuration is None:
            logger.warning("No ICE servers configured, using default RTCPeerConnection")
        return RTCPeerConnection(configuration=self._rtc_configuration)

    def _ensure_peer_connection(
        self, session: NegotiationSession
    ) -> Tuple[RTCPeerConnection, bool]:
        """Return the session's peer connection, creating it if needed.

        Returns:
            Tuple of (peer connection, whether it was created by this call).
        """
        if session.peer_connection is not None:
            return session.peer_connection, False

        try:
            pc = self._peer_factory()
        except Exception as e:
            self._set_status("Initialization Error")
            raise NegotiationError(
                "Could not create peer connection", {"error": str(e)}
            ) from e

        self._attach_peer_handlers(session, pc)
        session.peer_connection = pc
        self._set_status("Initialized")
        logger.info("WebRTC connection initialized")
        return pc, True

    def _attach_peer_handlers(
        self, session: NegotiationSession, pc: RTCPeerConnection
    ) -> None:
        @pc.on("track")
        def on_track(track):
            if session.closed:
                return
            session.remote_tracks.append(track)
            logger.info(f"Remote {track.kind} track received")
            self.emit("track", track)

        @pc.on("connectionstatechange")
        async def on_connectionstatechange():
            if session.closed:
                return
            state = pc.connectionState
            logger.info(f"Connection state change: {state}")
            self._set_status(state)
            self.emit("connectionstatechange", state)

        @pc.on("iceconnectionstatechange")
        async def on_iceconnectionstatechange():
            logger.info(f"ICE connection state change: {pc.iceConnectionState}")

    async def _close_peer_connection(self, session: NegotiationSession) -> None:
        pc = session.peer_connection
        session.peer_connection = None
        if pc is not None:
            await pc.close()

    async def _teardown(self, session: NegotiationSession) -> None:
        session.closed = True
        session.state = NegotiationState.CLOSED
        session.renegotiate = False
        session.pending_candidates = []

        stream = session.capture
        session.capture = None
        session.senders = []
        if stream is not None:
            await self._release_capture(stream)

        await self._close_peer_connection(session)

    async def _release_capture(self, stream: CaptureStream) -> None:
        if self.capture_provider is not None:
            await self.capture_provider.release(stream)
        else:
            stream.stop()

    async def _bind_target(self, target_user_id: str) -> NegotiationSession:
        """Bind the session to ``target_user_id``, replacing a session with another peer."""
        session = self.session
        if session is not None and session.target_user_id not in (None, target_user_id):
            logger.warning(
                f"Replacing session with {session.target_user_id} by {target_user_id}"
            )
            self.session = None
            await self._teardown(session)
            session = None

        if session is None:
            session = self._new_session(target_user_id)
        elif session.target_user_id is None:
            session.target_user_id = target_user_id
            session.pending_candidates = [
                (s, c) for s, c in session.pending_candidates if s in (None, target_user_id)
            ]
        return session

    def _new_session(self, target_user_id: Optional[str] = None) -> NegotiationSession:
        """Start a session, adopting candidates that arrived before it."""
        session = NegotiationSession(target_user_id=target_user_id)
        session.pending_candidates = [
            (s, c)
            for s, c in self._unbound_candidates
            if target_user_id is None or s in (None, target_user_id)
        ]
        self._unbound_candidates = []
        self.session = session
        return session

    # ===== Operations =====

    async def connect_to_user(self, target_user_id: str) -> None:
        """Bind the target and send it a connection request.

        The offer is not created here; it follows once there is something to
        negotiate (``start_share`` or ``negotiate``).

        Raises:
            NotConnectedError: The signaling transport is not open.
        """
        async with self._negotiation_lock:
            await self._bind_target(target_user_id)

        await self.transport.send(
            build_message(MSG_CONNECTION_REQUEST, self.user_id, target_user_id)
        )
        logger.info(f"Connection request sent to {target_user_id}")

    async def handle_connection_request(self, sender: str) -> bool:
        """Apply the accept policy to an inbound connection request.

        Returns:
            True if the session is now bound to ``sender``.
        """
        if not self.accept_policy(sender):
            logger.info(f"Connection request from {sender} rejected by policy")
            return False

        async with self._negotiation_lock:
            await self._bind_target(sender)
        logger.info(f"Connection request from {sender} accepted")
        return True

    async def on_negotiation_needed(self) -> None:
        """Create and send an offer if a target is bound.

        Coalesced while another offer is outstanding; replayed once stable.
        """
        async with self._negotiation_lock:
            await self._negotiate_locked()

    async def negotiate(self) -> None:
        """Offer to the bound target even with nothing to send.

        Adds a receive-only video transceiver when the peer connection has
        none, so a viewer can ask a sharer for its screen.

        Raises:
            NegotiationError: No target is bound.
        """
        async with self._negotiation_lock:
            session = self.session
            if session is None or session.target_user_id is None:
                raise NegotiationError("Target user not specified")
            pc, _ = self._ensure_peer_connection(session)
            if not pc.getTransceivers():
                pc.addTransceiver("video", direction="recvonly")
            await self._negotiate_locked()

    async def _negotiate_locked(self) -> None:
        session = self.session
        if session is None or session.target_user_id is None:
            logger.debug("Negotiation needed but no target user bound")
            return
        if session.peer_connection is None:
            logger.debug("Negotiation needed but no peer connection yet")
            return
        if session.state in (
            NegotiationState.HAVE_LOCAL_OFFER,
            NegotiationState.HAVE_REMOTE_OFFER,
        ):
            logger.info("Negotiation already in progress, will renegotiate when stable")
            session.renegotiate = True
            return

        pc = session.peer_connection
        target = session.target_user_id
        previous_state = session.state
        session.renegotiate = False

        logger.info("Creating offer")
        try:
            offer = await pc.createOffer()
            if session.closed:
                return
            await pc.setLocalDescription(offer)
        except PEER_ERRORS as e:
            if session.closed:
                return
            raise NegotiationError("Error creating offer", {"error": str(e)}) from e
        if session.closed:
            return

        session.state = NegotiationState.HAVE_LOCAL_OFFER
        try:
            await self.transport.send(
                build_message(
                    MSG_OFFER, self.user_id, target, _description_payload(pc.localDescription)
                )
            )
        except NotConnectedError:
            # The peer never saw this offer; allow a fresh one later
            session.state = previous_state
            raise
        logger.info(f"Offer created and sent to {target}")

    async def handle_offer(self, sender: str, offer: Dict[str, Any]) -> None:
        """Accept an offer from ``sender`` and answer it.

        Binds the session to ``sender``, sets the remote description, flushes
        buffered candidates and sends the answer back.

        Raises:
            NegotiationError: The offer is invalid, collides with our own
                outstanding offer, or no peer connection could be created.
        """
        description = _session_description(offer, "offer")
        logger.info(f"Handling offer from: {sender}")

        async with self._negotiation_lock:
            session = await self._bind_target(sender)
            if session.state == NegotiationState.HAVE_LOCAL_OFFER:
                raise NegotiationError(
                    "Received offer while own offer is outstanding", {"from": sender}
                )

            pc, created = self._ensure_peer_connection(session)
            try:
                await pc.setRemoteDescription(description)
                if session.closed:
                    return
                session.state = NegotiationState.HAVE_REMOTE_OFFER
                logger.info("Remote description set")
                await self._flush_candidates(session)

                answer = await pc.createAnswer()
                if session.closed:
                    return
                await pc.setLocalDescription(answer)
            except PEER_ERRORS as e:
                if session.closed:
                    return
                if created:
                    await self._close_peer_connection(session)
                session.state = NegotiationState.NEW if created else NegotiationState.STABLE
                raise NegotiationError(
                    "Error handling offer", {"from": sender, "error": str(e)}
                ) from e
            if session.closed:
                return

            session.state = NegotiationState.STABLE
            await self.transport.send(
                build_message(
                    MSG_ANSWER, self.user_id, sender, _description_payload(pc.localDescription)
                )
            )
            logger.info(f"Answer sent to {sender}")

            if session.renegotiate:
                await self._negotiate_locked()

    async def handle_answer(
        self, answer: Dict[str, Any], sender: Optional[str] = None
    ) -> None:
        """Apply the answer to our outstanding offer.

        Raises:
            NegotiationError: No offer is outstanding, the answer comes from
                a peer other than the target, or it cannot be applied.
        """
        description = _session_description(answer, "answer")

        async with self._negotiation_lock:
            session = self.session
            if (
                session is None
                or session.peer_connection is None
                or session.state != NegotiationState.HAVE_LOCAL_OFFER
            ):
                raise NegotiationError(
                    "Received answer with no pending offer", {"state": self.state.value}
                )
            if sender is not None and sender != session.target_user_id:
                raise NegotiationError(
                    "Received answer from unexpected peer",
                    {"from": sender, "target": session.target_user_id},
                )

            pc = session.peer_connection
            try:
                await pc.setRemoteDescription(description)
            except PEER_ERRORS as e:
                if session.closed:
                    return
                raise NegotiationError("Error handling answer", {"error": str(e)}) from e
            if session.closed:
                return

            session.state = NegotiationState.STABLE
            logger.info("Remote answer set")
            await self._flush_candidates(session)

            if session.renegotiate:
                await self._negotiate_locked()

    async def handle_ice_candidate(
        self, candidate: Dict[str, Any], sender: Optional[str] = None
    ) -> None:
        """Add a remote candidate, or buffer it until the remote description is set."""
        async with self._negotiation_lock:
            session = self.session
            if session is None:
                if self._idle_state == NegotiationState.CLOSED:
                    logger.debug(f"Ignoring ICE candidate from {sender}: negotiator closed")
                    return
                self._buffer_candidate(self._unbound_candidates, sender, candidate)
                return

            target = session.target_user_id
            from_other_peer = sender is not None and target not in (None, sender)
            if from_other_peer:
                logger.warning(
                    f"Dropping ICE candidate from {sender}: session is bound to {target}"
                )
                return

            pc = session.peer_connection
            if pc is None or pc.remoteDescription is None:
                self._buffer_candidate(session.pending_candidates, sender, candidate)
                return

            await self._add_candidate(pc, candidate)

    def _buffer_candidate(
        self,
        buffer: List[PendingCandidate],
        sender: Optional[str],
        candidate: Dict[str, Any],
    ) -> None:
        if len(buffer) >= MAX_PENDING_CANDIDATES:
            logger.warning(f"Dropping ICE candidate from {sender}: buffer full")
            return
        buffer.append((sender, candidate))
        logger.debug(f"Buffered ICE candidate (pending: {len(buffer)})")

    async def _flush_candidates(self, session: NegotiationSession) -> None:
        pc = session.peer_connection
        target = session.target_user_id
        ready = [c for s, c in session.pending_candidates if s in (None, target)]
        session.pending_candidates = []
        for candidate in ready:
            if session.closed:
                return
            await self._add_candidate(pc, candidate)
        if ready:
            logger.info(f"Applied {len(ready)} buffered ICE candidate(s)")

    async def _add_candidate(self, pc: RTCPeerConnection, data: Dict[str, Any]) -> None:
        try:
            candidate = parse_ice_candidate(data)
            if candidate is None:
                logger.debug("End of remote ICE candidates")
                return
            await pc.addIceCandidate(candidate)
            logger.debug("ICE candidate added")
        except (NegotiationError, *PEER_ERRORS) as e:
            logger.error(f"Error adding ICE candidate: {e}")

    async def start_share(self) -> None:
        """Attach a capture stream and renegotiate.

        Raises:
            NegotiationError: No capture provider is configured or no peer
                connection could be created.
            CaptureError: The capture source could not be acquired. A peer
                connection created for this attempt is closed first.
        """
        if self.capture_provider is None:
            raise NegotiationError("No capture provider configured")

        async with self._negotiation_lock:
            session = self.session
            if session is None:
                session = self._new_session()
            if session.capture is not None:
                logger.warning("Screen share already active")
                return

            pc, created = self._ensure_peer_connection(session)
            try:
                stream = await self.capture_provider.acquire()
            except Exception:
                if created:
                    await self._close_peer_connection(session)
                raise

            if session.closed:
                await self._release_capture(stream)
                return

            session.capture = stream
            for track in stream.tracks:
                logger.info(f"Adding track: {track.kind}")
                session.senders.append(pc.addTrack(track))

            video = stream.video_track
            if video is not None:

                @video.on("ended")
                async def on_ended():
                    logger.info("Screen share ended by source")
                    await self.stop_share()

            logger.info("Screen sharing started")
            await self._negotiate_locked()

    async def stop_share(self) -> None:
        """Detach and release the capture stream, then renegotiate.

        Each sender's track is cleared and its transceiver stops sending, so
        no stale transceiver keeps advertising the stopped track.
        """
        async with self._negotiation_lock:
            session = self.session
            if session is None or session.capture is None:
                return

            stream = session.capture
            senders = session.senders
            session.capture = None
            session.senders = []

            pc = session.peer_connection
            for sender in senders:
                logger.info("Removing track sender")
                sender.replaceTrack(None)
                if pc is None:
                    continue
                for transceiver in pc.getTransceivers():
                    if transceiver.sender is sender:
                        transceiver.direction = (
                            "recvonly" if "recv" in transceiver.direction else "inactive"
                        )

            await self._release_capture(stream)
            logger.info("Screen sharing stopped")
            await self._negotiate_locked()

    async def close(self) -> None:
        """Tear down the session unconditionally.

        Does not wait for a negotiation step in progress: that step finds its
        session closed when it resumes and discards its result.
        """
        session = self.session
        self.session = None
        self._unbound_candidates = []
        self._idle_state = NegotiationState.CLOSED
        if session is None:
            return

        await self._teardown(session)
        self._set_status("Disconnected")
        logger.info("Connection closed")
