"""Registry of live signaling connections keyed by user id."""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Union

from relay_rtc.server.handles import ConnectionHandle

logger = logging.getLogger(__name__)


class TransportKind(str, Enum):
    """Transport that carried a registration."""

    WEBSOCKET = "websocket"
    SOCKETIO = "socketio"


@dataclass
class ConnectionEntry:
    """One registered endpoint.

    Attributes:
        user_id: Routing key chosen by the client; not an identity credential.
        handle: Endpoint messages for ``user_id`` are delivered to.
        joined_at: UTC time of registration.
        user_type: Optional label from a Socket.IO ``join`` event.
    """

    user_id: str
    handle: ConnectionHandle
    joined_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    user_type: Optional[str] = None


class ConnectionRegistry:
    """Maps user ids to live handles for one transport kind.

    A user id maps to a single handle: registering an id that is already
    present replaces the previous entry (last registration wins), and the
    replaced handle receives nothing further. Every operation runs under one
    lock so concurrent connection handlers never observe a half-updated map.
    """

    def __init__(self, kind: TransportKind):
        self.kind = kind
        self._entries: Dict[str, ConnectionEntry] = {}
        self._users_by_handle: Dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def register(
        self,
        user_id: str,
        handle: ConnectionHandle,
        user_type: Optional[str] = None,
    ) -> Optional[ConnectionEntry]:
        """Register ``handle`` under ``user_id``.

        Args:
            user_id: Routing key.
            handle: Endpoint to deliver to.
            user_type: Optional label.

        Returns:
            The entry of another handle that was replaced, if any.
        """
        async with self._lock:
            # The same handle re-registering under a new id drops its old id
            previous_user = self._users_by_handle.get(handle.handle_id)
            if previous_user is not None and previous_user != user_id:
                previous = self._entries.get(previous_user)
                if previous is not None and previous.handle.handle_id == handle.handle_id:
                    del self._entries[previous_user]
                logger.info(
                    f"[{self.kind.value}] {handle.handle_id} re-registered: "
                    f"{previous_user} -> {user_id}"
                )

            replaced = self._entries.get(user_id)
            if replaced is not None and replaced.handle.handle_id == handle.handle_id:
                replaced = None
            if replaced is not None:
                self._users_by_handle.pop(replaced.handle.handle_id, None)
                logger.warning(
                    f"[{self.kind.value}] User {user_id} registered again, "
                    f"replacing {replaced.handle.handle_id} with {handle.handle_id}"
                )

            self._entries[user_id] = ConnectionEntry(
                user_id=user_id, handle=handle, user_type=user_type
            )
            self._users_by_handle[handle.handle_id] = user_id
            logger.info(
                f"[{self.kind.value}] Registered {user_id} (total: {len(self._entries)})"
            )
            return replaced

    async def unregister(
        self, handle_or_user_id: Union[ConnectionHandle, str]
    ) -> Optional[ConnectionEntry]:
        """Remove an entry by handle or by user id.

        Unknown handles and ids are ignored. A handle whose entry has been
        replaced by a newer registration no longer owns anything, so
        unregistering it leaves the newer entry in place.

        Returns:
            The removed entry, or None if nothing was removed.
        """
        async with self._lock:
            if isinstance(handle_or_user_id, str):
                entry = self._entries.pop(handle_or_user_id, None)
                if entry is not None:
                    self._users_by_handle.pop(entry.handle.handle_id, None)
            else:
                handle_id = handle_or_user_id.handle_id
                user_id = self._users_by_handle.pop(handle_id, None)
                entry = self._entries.get(user_id) if user_id is not None else None
                if entry is not None and entry.handle.handle_id == handle_id:
                    del self._entries[user_id]
                else:
                    entry = None

            if entry is not None:
                logger.info(
                    f"[{self.kind.value}] Removed {entry.user_id} "
                    f"(remaining: {len(self._entries)})"
                )
            return entry

    async def lookup(self, user_id: str) -> Optional[ConnectionHandle]:
        """Return the handle registered for ``user_id``, if any."""
        async with self._lock:
            entry = self._entries.get(user_id)
            return entry.handle if entry is not None else None

    async def user_for(self, handle: ConnectionHandle) -> Optional[str]:
        """Return the user id currently owned by ``handle``, if any."""
        async with self._lock:
            return self._users_by_handle.get(handle.handle_id)

    async def snapshot(self) -> List[ConnectionEntry]:
        """Return a copy of the current entries."""
        async with self._lock:
            return list(self._entries.values())

    def __len__(self) -> int:
        return len(self._entries)
