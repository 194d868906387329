from __future__ import annotations

import logging
import threading
from typing import Dict, Iterable, Optional

import database
from models import Identity

logger = logging.getLogger(__name__)


class IdentityDirectory:
    """In-memory username -> Identity lookup used by the hub for presence and chat."""

    def __init__(self) -> None:
        self._by_username: Dict[str, Identity] = {}
        self._lock = threading.RLock()

    def __len__(self) -> int:
        return len(self._by_username)

    def __contains__(self, username: str) -> bool:
        return username in self._by_username

    def get(self, username: str) -> Optional[Identity]:
        with self._lock:
            return self._by_username.get(username)

    def register(self, identity: Identity) -> Identity:
        with self._lock:
            self._by_username[identity.username] = identity
        return identity

    def ensure(self, username: str) -> Identity:
        """Known identity for ``username`` or a bare one with no picture."""
        with self._lock:
            identity = self._by_username.get(username)
            if identity is None:
                identity = Identity(username=username)
                self._by_username[username] = identity
            return identity

    def load(self, identities: Iterable[Identity]) -> int:
        count = 0
        with self._lock:
            for identity in identities:
                self._by_username[identity.username] = identity
                count += 1
        logger.info("[identities] loaded %d identities", count)
        return count


async def get_or_create_identity(
    directory: IdentityDirectory, username: str, profile_picture_path: str = ""
) -> Identity:
    identity = await database.upsert_user(username, profile_picture_path)
    return directory.register(identity)
