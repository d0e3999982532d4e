"""Routing of signaling messages between registered peers."""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from relay_rtc.exceptions import MalformedMessageError
from relay_rtc.protocol import parse_message
from relay_rtc.server.registry import ConnectionRegistry

logger = logging.getLogger(__name__)


class DropReason(str, Enum):
    """Why a message was not delivered."""

    TARGET_NOT_FOUND = "TargetNotFound"
    MALFORMED_MESSAGE = "MalformedMessage"
    UNREGISTERED_SENDER = "UnregisteredSender"
    DELIVERY_FAILED = "DeliveryFailed"


@dataclass(frozen=True)
class RouteResult:
    """Outcome of :meth:`MessageRouter.route`."""

    delivered: bool
    reason: Optional[DropReason] = None
    target: Optional[str] = None

    @classmethod
    def ok(cls, target: str) -> "RouteResult":
        return cls(delivered=True, target=target)

    @classmethod
    def dropped(cls, reason: DropReason, target: Optional[str] = None) -> "RouteResult":
        return cls(delivered=False, reason=reason, target=target)


class MessageRouter:
    """Forwards addressed messages to the handle registered for ``to``.

    Delivery is at most once: a miss is reported as a drop and never queued
    or retried. Re-sending is left to the sender.
    """

    def __init__(self, registry: ConnectionRegistry):
        self.registry = registry

    async def route(self, data: Any, sender_id: Optional[str]) -> RouteResult:
        """Route one inbound frame.

        Args:
            data: Raw JSON text or decoded object as received.
            sender_id: User id bound to the connection the frame arrived on.
                It replaces whatever ``from`` the frame claims.

        Returns:
            ``RouteResult`` with ``delivered=True`` or the drop reason.
        """
        kind = self.registry.kind.value
        try:
            message = parse_message(data, require_target=True)
        except MalformedMessageError as e:
            logger.warning(f"[{kind}] Dropping malformed message from {sender_id}: {e}")
            return RouteResult.dropped(DropReason.MALFORMED_MESSAGE)

        if not message.is_routed:
            logger.warning(
                f"[{kind}] Dropping {message.type} from {sender_id}: not a routed type"
            )
            return RouteResult.dropped(DropReason.MALFORMED_MESSAGE)

        if sender_id is None:
            logger.warning(
                f"[{kind}] Dropping {message.type} to {message.target}: "
                f"sender has not registered a userId"
            )
            return RouteResult.dropped(
                DropReason.UNREGISTERED_SENDER, target=message.target
            )

        if message.sender != sender_id:
            logger.warning(
                f"[{kind}] {message.type} claims from={message.sender} "
                f"on connection of {sender_id}; using {sender_id}"
            )

        logger.info(f"[{kind}] {message.type} from {sender_id} to {message.target}")

        handle = await self.registry.lookup(message.target)
        if handle is None or not handle.is_open:
            logger.info(f"[{kind}] Target user not found: {message.target}")
            return RouteResult.dropped(DropReason.TARGET_NOT_FOUND, target=message.target)

        try:
            await handle.send(message.forwarded(sender_id))
        except (ConnectionError, RuntimeError) as e:
            logger.warning(
                f"[{kind}] Failed to deliver {message.type} to {message.target}: {e}"
            )
            return RouteResult.dropped(DropReason.DELIVERY_FAILED, target=message.target)

        logger.info(f"[{kind}] {message.type} forwarded to {message.target}")
        return RouteResult.ok(message.target)

    async def broadcast(
        self, message: Dict[str, Any], exclude: Optional[str] = None
    ) -> int:
        """Send a notification to every registered peer except ``exclude``.

        Iterates a snapshot of the registry. A peer that fails mid-broadcast
        is logged and skipped.

        Returns:
            Number of peers the message was handed to.
        """
        delivered = 0
        for entry in await self.registry.snapshot():
            if entry.user_id == exclude:
                continue
            if not entry.handle.is_open:
                continue
            try:
                await entry.handle.send(message)
                delivered += 1
            except (ConnectionError, RuntimeError) as e:
                logger.debug(
                    f"[{self.registry.kind.value}] Broadcast of {message.get('type')} "
                    f"to {entry.user_id} failed: {e}"
                )
        return delivered
