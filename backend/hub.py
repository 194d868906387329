from __future__ import annotations

import asyncio
import logging
import threading
import uuid
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from models import Identity, OutboundEvent, PlayerState

logger = logging.getLogger(__name__)


class AlreadyConnected(ValueError):
    reason = "already_connected"


@dataclass(eq=False)
class Connection:
    identity: Identity
    websocket: Any
    handle: str = field(default_factory=lambda: uuid.uuid4().hex)
    closed: bool = False

    @property
    def username(self) -> str:
        return self.identity.username


Payload = Union[Dict[str, Any], OutboundEvent]
PayloadFactory = Callable[[Connection], Payload]


def _render(payload: Union[Payload, PayloadFactory], connection: Connection) -> Dict[str, Any]:
    if callable(payload) and not isinstance(payload, (dict, OutboundEvent)):
        payload = payload(connection)
    if isinstance(payload, OutboundEvent):
        return payload.payload()
    return payload


class ConnectionRegistry:
    """Live WebSocket connections, at most one per username."""

    def __init__(self, send_timeout: Optional[float] = 5.0):
        self.send_timeout = send_timeout
        self._by_handle: Dict[str, Connection] = {}
        self._by_username: Dict[str, Connection] = {}
        self._lock = threading.RLock()

    def __len__(self) -> int:
        return len(self._by_handle)

    def admit(self, identity: Identity, websocket: Any) -> Connection:
        with self._lock:
            if identity.username in self._by_username:
                raise AlreadyConnected(f"User {identity.username} is already connected")
            connection = Connection(identity=identity, websocket=websocket)
            self._by_handle[connection.handle] = connection
            self._by_username[connection.username] = connection
            total = len(self._by_handle)
        logger.info("+ websocket connected: %s (%d)", connection.username, total)
        return connection

    def remove(self, connection: Union[Connection, str]) -> Optional[Connection]:
        handle = connection.handle if isinstance(connection, Connection) else connection
        with self._lock:
            removed = self._by_handle.pop(handle, None)
            if removed is None:
                return None
            if self._by_username.get(removed.username) is removed:
                del self._by_username[removed.username]
            total = len(self._by_handle)
        logger.info("- websocket disconnected: %s (%d remaining)", removed.username, total)
        return removed

    def get(self, username: str) -> Optional[Connection]:
        with self._lock:
            return self._by_username.get(username)

    def is_connected(self, username: str) -> bool:
        with self._lock:
            return username in self._by_username

    def connections(self, usernames: Optional[Iterable[str]] = None) -> List[Connection]:
        with self._lock:
            current = list(self._by_handle.values())
        if usernames is None:
            return current
        wanted = set(usernames)
        return [conn for conn in current if conn.username in wanted]

    async def send(self, connection: Connection, payload: Union[Payload, PayloadFactory]) -> bool:
        """Send to one connection; a failed or stalled send drops that connection."""
        data = _render(payload, connection)
        try:
            await asyncio.wait_for(connection.websocket.send_json(data), timeout=self.send_timeout)
        except Exception as exc:
            logger.warning("[hub] send to %s failed (%r), dropping connection", connection.username, exc)
            self.remove(connection)
            await self._close_quietly(connection)
            return False
        return True

    async def broadcast(
        self,
        payload: Union[Payload, PayloadFactory],
        usernames: Optional[Iterable[str]] = None,
    ) -> List[Connection]:
        """Deliver to every registered connection (or the named subset).

        Returns the connections that were dropped because their send failed.
        """
        targets = self.connections(usernames)
        if not targets:
            return []
        results = await asyncio.gather(*(self.send(conn, payload) for conn in targets))
        return [conn for conn, ok in zip(targets, results) if not ok]

    def snapshot(
        self,
        lookup: Callable[[str], Optional[Identity]],
        card_counts: Optional[Callable[[str], int]] = None,
    ) -> List[PlayerState]:
        """Presence list in admission order."""
        users: List[PlayerState] = []
        for conn in self.connections():
            try:
                identity = lookup(conn.username)
            except LookupError:
                identity = None
            users.append(
                PlayerState(
                    username=conn.username,
                    pp_path=identity.profile_picture_path if identity else "",
                    cardCount=card_counts(conn.username) if card_counts else 0,
                )
            )
        return users

    async def _close_quietly(self, connection: Connection) -> None:
        # transport is already broken; the close itself may fail too
        with suppress(Exception):
            await asyncio.wait_for(connection.websocket.close(code=1011), timeout=self.send_timeout)
