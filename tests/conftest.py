"""Shared fakes for relay-rtc tests.

The fakes mirror the small slice of the websockets, aiortc and transport APIs
the client code touches, so negotiation and reconnection logic can be tested
without network access or media devices.
"""

import asyncio
import json
from typing import Any, Dict, List, Optional

import pytest
from aiortc import RTCSessionDescription
from pyee.asyncio import AsyncIOEventEmitter

from relay_rtc.client.capture import CaptureProvider, CaptureStream
from relay_rtc.exceptions import CaptureError, NotConnectedError
from relay_rtc.server.handles import ConnectionHandle

OFFER_SDP = "v=0\r\no=- 1 1 IN IP4 0.0.0.0\r\ns=-\r\nt=0 0\r\n"
ANSWER_SDP = "v=0\r\no=- 2 2 IN IP4 0.0.0.0\r\ns=-\r\nt=0 0\r\n"


def make_candidate(port: int, mid: str = "0") -> Dict[str, Any]:
    """Browser-style RTCIceCandidateInit."""
    return {
        "candidate": f"candidate:1 1 udp 2130706431 192.168.1.2 {port} typ host",
        "sdpMid": mid,
        "sdpMLineIndex": 0,
    }


async def wait_for(predicate, steps: int = 200):
    """Yield to the loop until ``predicate()`` holds."""
    for _ in range(steps):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


async def eventually(predicate, timeout: float = 5.0):
    """Poll ``predicate()`` on a timer, for tests that cross real sockets."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


class FakeWebSocket:
    """Client socket fed from a queue; ``None`` ends the stream."""

    def __init__(self):
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.sent: List[Dict[str, Any]] = []
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self.inbox.get()
        if item is None:
            raise StopAsyncIteration
        return item

    def feed(self, message: Any) -> None:
        self.inbox.put_nowait(
            json.dumps(message) if isinstance(message, dict) else message
        )

    def drop(self) -> None:
        self.inbox.put_nowait(None)

    async def send(self, data: str) -> None:
        self.sent.append(json.loads(data))

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.inbox.put_nowait(None)


class FakeTrack(AsyncIOEventEmitter):
    def __init__(self, kind: str = "video"):
        super().__init__()
        self.kind = kind
        self.stopped = False

    def stop(self) -> None:
        self.stopped = True


class FakeSender:
    def __init__(self, track):
        self.track = track

    def replaceTrack(self, track) -> None:
        self.track = track


class FakeTransceiver:
    def __init__(self, kind: str, direction: str, sender: FakeSender):
        self.kind = kind
        self.direction = direction
        self.sender = sender


class FakePeerConnection(AsyncIOEventEmitter):
    """Records negotiation calls.

    Set ``offer_gate`` to an unset ``asyncio.Event`` to hold ``createOffer``.
    Set ``fail_remote`` to make ``setRemoteDescription`` raise.
    """

    def __init__(self):
        super().__init__()
        self.transceivers: List[FakeTransceiver] = []
        self.candidates: List[Any] = []
        self.localDescription: Optional[RTCSessionDescription] = None
        self.remoteDescription: Optional[RTCSessionDescription] = None
        self.connectionState = "new"
        self.iceConnectionState = "new"
        self.offers_created = 0
        self.offer_gate: Optional[asyncio.Event] = None
        self.offer_started = asyncio.Event()
        self.fail_remote = False
        self.closed = False

    def addTrack(self, track) -> FakeSender:
        sender = FakeSender(track)
        self.transceivers.append(FakeTransceiver(track.kind, "sendrecv", sender))
        return sender

    def addTransceiver(self, kind: str, direction: str = "sendrecv") -> FakeTransceiver:
        transceiver = FakeTransceiver(kind, direction, FakeSender(None))
        self.transceivers.append(transceiver)
        return transceiver

    def getTransceivers(self) -> List[FakeTransceiver]:
        return list(self.transceivers)

    async def createOffer(self) -> RTCSessionDescription:
        self.offers_created += 1
        self.offer_started.set()
        if self.offer_gate is not None:
            await self.offer_gate.wait()
        return RTCSessionDescription(sdp=OFFER_SDP, type="offer")

    async def createAnswer(self) -> RTCSessionDescription:
        return RTCSessionDescription(sdp=ANSWER_SDP, type="answer")

    async def setLocalDescription(self, description) -> None:
        self.localDescription = description

    async def setRemoteDescription(self, description) -> None:
        if self.fail_remote:
            raise ValueError("Invalid remote description")
        self.remoteDescription = description

    async def addIceCandidate(self, candidate) -> None:
        self.candidates.append(candidate)

    async def close(self) -> None:
        self.closed = True
        self.connectionState = "closed"


class PeerFactory:
    """Creates and remembers fake peer connections."""

    def __init__(self):
        self.created: List[FakePeerConnection] = []

    def __call__(self) -> FakePeerConnection:
        pc = FakePeerConnection()
        self.created.append(pc)
        return pc

    @property
    def last(self) -> FakePeerConnection:
        return self.created[-1]


class FakeTransport:
    """Signaling transport recording outbound frames."""

    def __init__(self, connected: bool = True):
        self.connected = connected
        self.sent: List[Dict[str, Any]] = []
        self.handlers = []
        self.state_listeners = []
        self.connect_calls = 0
        self.closed = False

    @property
    def is_connected(self) -> bool:
        return self.connected

    def add_handler(self, handler) -> None:
        self.handlers.append(handler)

    def add_state_listener(self, listener) -> None:
        self.state_listeners.append(listener)

    async def connect(self) -> None:
        self.connect_calls += 1
        self.connected = True

    async def send(self, message: Dict[str, Any]) -> None:
        if not self.connected:
            raise NotConnectedError("WebSocket is not connected")
        self.sent.append(message)

    async def close(self) -> None:
        self.closed = True
        self.connected = False

    def of_type(self, msg_type: str) -> List[Dict[str, Any]]:
        return [m for m in self.sent if m["type"] == msg_type]


class FakeCaptureProvider(CaptureProvider):
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.acquired: List[CaptureStream] = []
        self.released: List[CaptureStream] = []

    async def acquire(self) -> CaptureStream:
        if self.fail:
            raise CaptureError("Permission denied")
        stream = CaptureStream(tracks=[FakeTrack("video")])
        self.acquired.append(stream)
        return stream

    async def release(self, stream: CaptureStream) -> None:
        self.released.append(stream)
        stream.stop()


class FakeHandle(ConnectionHandle):
    """Relay-side handle recording delivered frames."""

    def __init__(self, handle_id: str, fail: bool = False):
        self.handle_id = handle_id
        self.sent: List[Dict[str, Any]] = []
        self.open = True
        self.fail = fail

    @property
    def is_open(self) -> bool:
        return self.open

    async def send(self, message: Dict[str, Any]) -> None:
        if self.fail:
            raise ConnectionResetError("Connection lost")
        self.sent.append(message)


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def peer_factory():
    return PeerFactory()


@pytest.fixture
def capture_provider():
    return FakeCaptureProvider()


@pytest.fixture
def isolated_config(tmp_path, monkeypatch):
    """Run with no config files and no relay-rtc environment variables."""
    home = tmp_path / "home"
    home.mkdir()
    workdir = tmp_path / "work"
    workdir.mkdir()
    monkeypatch.setattr("pathlib.Path.home", lambda: home)
    monkeypatch.chdir(workdir)
    monkeypatch.setattr("relay_rtc.config._config", None)
    for name in (
        "RELAY_RTC_ENV",
        "RELAY_RTC_SIGNALING_WS",
        "RELAY_RTC_HOST",
        "RELAY_RTC_PORT",
        "PORT",
    ):
        monkeypatch.delenv(name, raising=False)
    return workdir
