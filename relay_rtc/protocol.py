"""Signaling message protocol for relay-rtc.

This module defines the message kinds exchanged between peers and the relay,
and the single place where inbound frames are validated.

Message Protocol Overview
-------------------------

Every frame is a JSON object with a ``type`` field. The relay only looks at
``type``, ``from`` and ``to``; the payload of an offer, answer or candidate is
an opaque blob that is forwarded unchanged.

Message Types
-------------

### Routed Messages

Sent by a peer, addressed ``to`` another user id, forwarded by the relay with
``from`` set to the sender's registered id and ``to`` removed.

**connection-request**
    Sent by: Caller
    Fields: ``from``, ``to``
    Forwarded as: ``{"type": "connection-request", "from": ...}``

**offer**
    Sent by: Either peer
    Fields: ``from``, ``to``, ``offer`` (``{"type": "offer", "sdp": ...}``)
    Forwarded as: ``{"type": "offer", "from": ..., "offer": ...}``

**answer**
    Sent by: Either peer
    Fields: ``from``, ``to``, ``answer`` (``{"type": "answer", "sdp": ...}``)
    Forwarded as: ``{"type": "answer", "from": ..., "answer": ...}``

**ice-candidate**
    Sent by: Either peer
    Fields: ``from``, ``to``, ``candidate``
    (``{"candidate": "candidate:...", "sdpMid": ..., "sdpMLineIndex": ...}``)
    Forwarded as: ``{"type": "ice-candidate", "from": ..., "candidate": ...}``

### Relay Notifications

Generated by the relay itself.

**connection-confirmed**
    First frame on the raw socket: ``{"type": "connection-confirmed", "userId": ...}``

**user-joined**
    Broadcast to other peers: ``{"type": "user-joined", "userId": ..., "userType": ...}``

**user-left**
    Broadcast to other peers: ``{"type": "user-left", "userId": ...}``

Message Flow Example
--------------------

1. A → Relay: ``{"type": "connection-request", "from": "userA", "to": "userB"}``
2. Relay → B: ``{"type": "connection-request", "from": "userA"}``
3. A → Relay → B: ``offer``
4. B → Relay → A: ``answer``
5. Both directions: ``ice-candidate`` (trickled by browser peers)

On the Socket.IO channel each kind is an event of the same name and the event
body is the frame without its ``type`` field.
"""

import json
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from relay_rtc.exceptions import MalformedMessageError

# Routed message types
MSG_CONNECTION_REQUEST = "connection-request"
MSG_OFFER = "offer"
MSG_ANSWER = "answer"
MSG_ICE_CANDIDATE = "ice-candidate"

# Relay notification types
MSG_CONNECTION_CONFIRMED = "connection-confirmed"
MSG_USER_JOINED = "user-joined"
MSG_USER_LEFT = "user-left"

# Socket.IO handshake event
EVENT_JOIN = "join"

# Routed types mapped to the field holding their opaque payload
PAYLOAD_FIELDS: Dict[str, Optional[str]] = {
    MSG_CONNECTION_REQUEST: None,
    MSG_OFFER: "offer",
    MSG_ANSWER: "answer",
    MSG_ICE_CANDIDATE: "candidate",
}

ROUTED_TYPES = frozenset(PAYLOAD_FIELDS)
NOTIFICATION_TYPES = frozenset(
    {MSG_CONNECTION_CONFIRMED, MSG_USER_JOINED, MSG_USER_LEFT}
)
MESSAGE_TYPES = ROUTED_TYPES | NOTIFICATION_TYPES


@dataclass
class SignalingMessage:
    """One validated signaling frame.

    Attributes:
        type: One of ``MESSAGE_TYPES``.
        sender: The ``from`` user id of a routed message.
        target: The ``to`` user id of a routed message (absent once forwarded).
        payload: Opaque offer, answer or candidate; never inspected.
        user_id: Subject of a relay notification.
        user_type: Optional label carried by ``user-joined``.
    """

    type: str
    sender: Optional[str] = None
    target: Optional[str] = None
    payload: Any = None
    user_id: Optional[str] = None
    user_type: Optional[str] = None

    @property
    def is_routed(self) -> bool:
        return self.type in ROUTED_TYPES

    @property
    def payload_field(self) -> Optional[str]:
        return PAYLOAD_FIELDS.get(self.type)

    @classmethod
    def from_dict(
        cls, data: Any, require_target: bool = False
    ) -> "SignalingMessage":
        """Validate a decoded frame.

        Args:
            data: Decoded JSON value.
            require_target: Whether routed kinds must carry ``to``. The relay
                requires it; frames forwarded to a client no longer have it.

        Returns:
            The validated message.

        Raises:
            MalformedMessageError: Not an object, unknown ``type``, or a
                required field is missing.
        """
        if not isinstance(data, dict):
            raise MalformedMessageError(
                "Signaling message must be a JSON object",
                {"received": type(data).__name__},
            )

        msg_type = data.get("type")
        if msg_type not in MESSAGE_TYPES:
            raise MalformedMessageError("Unknown message type", {"type": msg_type})

        if msg_type in ROUTED_TYPES:
            payload_field = PAYLOAD_FIELDS[msg_type]
            required = ["from"]
            if require_target:
                required.append("to")
            if payload_field:
                required.append(payload_field)

            missing = [name for name in required if data.get(name) is None]
            if missing:
                raise MalformedMessageError(
                    f"Missing required fields: {', '.join(missing)}",
                    {"type": msg_type},
                )

            return cls(
                type=msg_type,
                sender=data["from"],
                target=data.get("to"),
                payload=data[payload_field] if payload_field else None,
            )

        if data.get("userId") is None:
            raise MalformedMessageError(
                "Missing required fields: userId", {"type": msg_type}
            )
        return cls(
            type=msg_type, user_id=data["userId"], user_type=data.get("userType")
        )

    def to_dict(self) -> Dict[str, Any]:
        """Return the wire representation of this message."""
        if not self.is_routed:
            data: Dict[str, Any] = {"type": self.type, "userId": self.user_id}
            if self.user_type is not None:
                data["userType"] = self.user_type
            return data

        data = {"type": self.type, "from": self.sender}
        if self.target is not None:
            data["to"] = self.target
        if self.payload_field:
            data[self.payload_field] = self.payload
        return data

    def forwarded(self, sender_id: str) -> Dict[str, Any]:
        """Return the frame delivered to the target.

        ``from`` is replaced by the sender's registered id and ``to`` is
        dropped; the payload passes through untouched.
        """
        data: Dict[str, Any] = {"type": self.type, "from": sender_id}
        if self.payload_field:
            data[self.payload_field] = self.payload
        return data


def parse_message(
    raw: Union[str, bytes, bytearray, Dict[str, Any]], require_target: bool = False
) -> SignalingMessage:
    """Decode and validate a signaling frame.

    Args:
        raw: A JSON text frame, or an already decoded object (Socket.IO).
        require_target: Passed to :meth:`SignalingMessage.from_dict`.

    Returns:
        The validated message.

    Raises:
        MalformedMessageError: Invalid JSON or an invalid message.

    Examples:
        >>> parse_message('{"type": "connection-request", "from": "a", "to": "b"}')
        SignalingMessage(type='connection-request', sender='a', target='b', payload=None, user_id=None, user_type=None)
    """
    if isinstance(raw, (str, bytes, bytearray)):
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise MalformedMessageError("Invalid JSON", {"error": str(e)}) from e
    else:
        data = raw
    return SignalingMessage.from_dict(data, require_target=require_target)


def format_message(message: Union[SignalingMessage, Dict[str, Any]]) -> str:
    """Encode a message as a JSON text frame."""
    if isinstance(message, SignalingMessage):
        message = message.to_dict()
    return json.dumps(message)


def build_message(
    msg_type: str, sender: str, target: str, payload: Any = None
) -> Dict[str, Any]:
    """Build an outbound routed frame.

    Examples:
        >>> build_message(MSG_OFFER, "userA", "userB", {"type": "offer", "sdp": "v=0"})
        {'type': 'offer', 'from': 'userA', 'to': 'userB', 'offer': {'type': 'offer', 'sdp': 'v=0'}}
    """
    if msg_type not in ROUTED_TYPES:
        raise ValueError(f"Not a routed message type: {msg_type}")
    return SignalingMessage(
        type=msg_type, sender=sender, target=target, payload=payload
    ).to_dict()


def connection_confirmed(user_id: str) -> Dict[str, Any]:
    return {"type": MSG_CONNECTION_CONFIRMED, "userId": user_id}


def user_joined(user_id: str, user_type: Optional[str] = None) -> Dict[str, Any]:
    return SignalingMessage(
        type=MSG_USER_JOINED, user_id=user_id, user_type=user_type
    ).to_dict()


def user_left(user_id: str) -> Dict[str, Any]:
    return {"type": MSG_USER_LEFT, "userId": user_id}
