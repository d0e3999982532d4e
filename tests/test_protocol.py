"""Tests for signaling message parsing and construction."""

import json

import pytest

from relay_rtc.exceptions import MalformedMessageError
from relay_rtc.protocol import (
    MSG_ANSWER,
    MSG_CONNECTION_REQUEST,
    MSG_ICE_CANDIDATE,
    MSG_OFFER,
    ROUTED_TYPES,
    SignalingMessage,
    build_message,
    connection_confirmed,
    format_message,
    parse_message,
    user_joined,
    user_left,
)

OFFER = {"type": "offer", "sdp": "v=0\r\n"}


class TestParseMessage:
    """Tests for parse_message validation."""

    def test_offer(self):
        message = parse_message(
            json.dumps({"type": "offer", "from": "alice", "to": "bob", "offer": OFFER})
        )
        assert message.type == MSG_OFFER
        assert message.sender == "alice"
        assert message.target == "bob"
        assert message.payload == OFFER
        assert message.is_routed

    def test_accepts_decoded_dict(self):
        message = parse_message({"type": "connection-request", "from": "alice"})
        assert message.type == MSG_CONNECTION_REQUEST
        assert message.payload is None
        assert message.target is None

    def test_bytes_frame(self):
        message = parse_message(b'{"type": "user-left", "userId": "bob"}')
        assert message.user_id == "bob"
        assert not message.is_routed

    def test_notification_with_user_type(self):
        message = parse_message({"type": "user-joined", "userId": "bob", "userType": "viewer"})
        assert message.user_type == "viewer"

    def test_require_target(self):
        with pytest.raises(MalformedMessageError):
            parse_message({"type": "offer", "from": "alice", "offer": OFFER}, require_target=True)

    @pytest.mark.parametrize(
        "raw",
        [
            "{not json",
            b"\xff\xfe",
            "42",
            json.dumps({"from": "alice", "to": "bob"}),
            json.dumps({"type": "hello", "from": "alice"}),
            json.dumps({"type": "answer", "from": "alice", "to": "bob"}),
            json.dumps({"type": "ice-candidate", "to": "bob", "candidate": {}}),
            json.dumps({"type": "connection-confirmed"}),
        ],
    )
    def test_malformed(self, raw):
        with pytest.raises(MalformedMessageError):
            parse_message(raw)

    def test_malformed_is_value_error(self):
        with pytest.raises(ValueError):
            parse_message("{")

    def test_payload_is_not_inspected(self):
        candidate = {"anything": ["goes", 1, None]}
        message = parse_message(
            {"type": "ice-candidate", "from": "a", "to": "b", "candidate": candidate}
        )
        assert message.payload is candidate


class TestSignalingMessage:
    def test_forwarded_drops_to(self):
        message = SignalingMessage(type=MSG_ANSWER, sender="mallory", target="bob", payload=OFFER)
        assert message.forwarded("alice") == {"type": "answer", "from": "alice", "answer": OFFER}

    def test_to_dict(self):
        message = SignalingMessage(
            type=MSG_ICE_CANDIDATE, sender="alice", target="bob", payload={"candidate": ""}
        )
        assert message.to_dict() == {
            "type": "ice-candidate",
            "from": "alice",
            "to": "bob",
            "candidate": {"candidate": ""},
        }

    def test_payload_fields(self):
        assert {t: SignalingMessage(type=t).payload_field for t in ROUTED_TYPES} == {
            "connection-request": None,
            "offer": "offer",
            "answer": "answer",
            "ice-candidate": "candidate",
        }


class TestBuilders:
    def test_build_message(self):
        assert build_message(MSG_OFFER, "alice", "bob", OFFER) == {
            "type": "offer",
            "from": "alice",
            "to": "bob",
            "offer": OFFER,
        }

    def test_build_rejects_notifications(self):
        with pytest.raises(ValueError):
            build_message("user-joined", "alice", "bob")

    def test_notifications(self):
        assert connection_confirmed("alice") == {"type": "connection-confirmed", "userId": "alice"}
        assert user_joined("bob") == {"type": "user-joined", "userId": "bob"}
        assert user_joined("bob", "viewer") == {
            "type": "user-joined",
            "userId": "bob",
            "userType": "viewer",
        }
        assert user_left("bob") == {"type": "user-left", "userId": "bob"}

    def test_format_message(self):
        message = SignalingMessage(type=MSG_CONNECTION_REQUEST, sender="a", target="b")
        assert json.loads(format_message(message)) == {
            "type": "connection-request",
            "from": "a",
            "to": "b",
        }
        assert json.loads(format_message({"type": "user-left", "userId": "a"})) == {
            "type": "user-left",
            "userId": "a",
        }
