"""Tests for message routing between registered peers."""

import json

import pytest

from conftest import FakeHandle
from relay_rtc.server.registry import ConnectionRegistry, TransportKind
from relay_rtc.server.router import DropReason, MessageRouter, RouteResult

OFFER = {"type": "offer", "sdp": "v=0\r\n"}


async def make_router():
    """Router over a registry holding alice and bob."""
    registry = ConnectionRegistry(TransportKind.WEBSOCKET)
    alice, bob = FakeHandle("h-alice"), FakeHandle("h-bob")
    await registry.register("alice", alice)
    await registry.register("bob", bob)
    return MessageRouter(registry), alice, bob


class TestRoute:
    """Tests for MessageRouter.route."""

    @pytest.mark.asyncio
    async def test_forwards_offer_without_to(self):
        router, alice, bob = await make_router()
        frame = json.dumps({"type": "offer", "from": "alice", "to": "bob", "offer": OFFER})

        result = await router.route(frame, sender_id="alice")

        assert result == RouteResult.ok("bob")
        assert bob.sent == [{"type": "offer", "from": "alice", "offer": OFFER}]
        assert alice.sent == []

    @pytest.mark.asyncio
    async def test_payload_passes_through_unchanged(self):
        router, _, bob = await make_router()
        candidate = {"candidate": "candidate:1 1 udp 1 10.0.0.1 9 typ host", "x-extra": [1, 2]}

        await router.route(
            {"type": "ice-candidate", "from": "alice", "to": "bob", "candidate": candidate},
            sender_id="alice",
        )

        assert bob.sent[0]["candidate"] == candidate

    @pytest.mark.asyncio
    async def test_connection_request_has_no_payload(self):
        router, _, bob = await make_router()

        await router.route(
            {"type": "connection-request", "from": "alice", "to": "bob"}, sender_id="alice"
        )

        assert bob.sent == [{"type": "connection-request", "from": "alice"}]

    @pytest.mark.asyncio
    async def test_claimed_from_is_overridden(self):
        router, _, bob = await make_router()

        await router.route(
            {"type": "answer", "from": "mallory", "to": "bob", "answer": OFFER},
            sender_id="alice",
        )

        assert bob.sent[0]["from"] == "alice"

    @pytest.mark.asyncio
    async def test_unknown_target(self):
        router, alice, bob = await make_router()

        result = await router.route(
            {"type": "offer", "from": "alice", "to": "carol", "offer": OFFER},
            sender_id="alice",
        )

        assert result.delivered is False
        assert result.reason == DropReason.TARGET_NOT_FOUND
        assert result.target == "carol"
        assert alice.sent == [] and bob.sent == []

    @pytest.mark.asyncio
    async def test_closed_target(self):
        router, _, bob = await make_router()
        bob.open = False

        result = await router.route(
            {"type": "offer", "from": "alice", "to": "bob", "offer": OFFER},
            sender_id="alice",
        )

        assert result.reason == DropReason.TARGET_NOT_FOUND

    @pytest.mark.parametrize(
        "frame",
        [
            "{not json",
            "[]",
            json.dumps({"type": "offer", "from": "alice", "to": "bob"}),
            json.dumps({"type": "offer", "from": "alice", "offer": OFFER}),
            json.dumps({"type": "bogus", "from": "alice", "to": "bob"}),
            json.dumps({"type": "user-joined", "userId": "alice"}),
        ],
    )
    @pytest.mark.asyncio
    async def test_malformed(self, frame):
        router, _, bob = await make_router()

        result = await router.route(frame, sender_id="alice")

        assert result.reason == DropReason.MALFORMED_MESSAGE
        assert bob.sent == []

    @pytest.mark.asyncio
    async def test_unregistered_sender(self):
        router, _, bob = await make_router()

        result = await router.route(
            {"type": "offer", "from": "alice", "to": "bob", "offer": OFFER}, sender_id=None
        )

        assert result.reason == DropReason.UNREGISTERED_SENDER
        assert bob.sent == []

    @pytest.mark.asyncio
    async def test_delivery_failure(self):
        router, _, bob = await make_router()
        bob.fail = True

        result = await router.route(
            {"type": "offer", "from": "alice", "to": "bob", "offer": OFFER},
            sender_id="alice",
        )

        assert result.reason == DropReason.DELIVERY_FAILED


class TestBroadcast:
    """Tests for MessageRouter.broadcast."""

    @pytest.mark.asyncio
    async def test_excludes_subject(self):
        router, alice, bob = await make_router()

        count = await router.broadcast({"type": "user-left", "userId": "alice"}, exclude="alice")

        assert count == 1
        assert bob.sent == [{"type": "user-left", "userId": "alice"}]
        assert alice.sent == []

    @pytest.mark.asyncio
    async def test_skips_failing_peers(self):
        router, alice, bob = await make_router()
        alice.fail = True

        count = await router.broadcast({"type": "user-joined", "userId": "carol"})

        assert count == 1
        assert bob.sent == [{"type": "user-joined", "userId": "carol"}]

