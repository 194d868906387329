from __future__ import annotations

import logging
import secrets
import threading
import time
from typing import Callable, Dict, Optional

import jwt
from jwt import ExpiredSignatureError, InvalidTokenError

logger = logging.getLogger(__name__)


class Unauthorized(ValueError):
    reason = "unauthorized"

    def __init__(self, detail: str = "invalid_token"):
        super().__init__(detail)
        self.detail = detail


class TokenStore:
    """Signed session tokens with at most one live token per username.

    A token is valid only while it is the store's current binding for its
    subject: issuing a new token for a user revokes the previous one even
    though its signature still checks out.
    """

    def __init__(
        self,
        secret_key: str,
        algorithm: str = "HS512",
        max_age_seconds: Optional[int] = None,
        clock: Callable[[], float] = time.time,
    ):
        if not secret_key:
            raise ValueError("SECRET_KEY is not configured on the server")
        self._secret_key = secret_key
        self.algorithm = algorithm
        self.max_age_seconds = max_age_seconds
        self._clock = clock
        self._username_by_token: Dict[str, str] = {}
        self._token_by_username: Dict[str, str] = {}
        self._lock = threading.RLock()

    def __len__(self) -> int:
        return len(self._username_by_token)

    def issue(self, username: str, user_id: Optional[int] = None) -> str:
        now = int(self._clock())
        claims = {"sub": username, "jti": secrets.token_urlsafe(16), "iat": now}
        if user_id is not None:
            claims["uid"] = user_id
        if self.max_age_seconds:
            claims["exp"] = now + self.max_age_seconds
        token = jwt.encode(claims, self._secret_key, algorithm=self.algorithm)

        with self._lock:
            previous = self._token_by_username.pop(username, None)
            if previous is not None:
                self._username_by_token.pop(previous, None)
            self._username_by_token[token] = username
            self._token_by_username[username] = token

        logger.info("[tokens] issued token for %s (revoked previous: %s)", username, previous is not None)
        return token

    def verify(self, token: Optional[str]) -> str:
        if not token or not isinstance(token, str):
            raise Unauthorized("credentials_not_provided")
        try:
            payload = jwt.decode(
                token,
                self._secret_key,
                algorithms=[self.algorithm],
                options={"require": ["sub", "jti"]},
            )
        except ExpiredSignatureError:
            raise Unauthorized("token_expired")
        except InvalidTokenError:
            raise Unauthorized("invalid_token")

        with self._lock:
            bound = self._username_by_token.get(token)
        if bound is None:
            raise Unauthorized("unknown_token")
        if bound != payload.get("sub"):
            raise Unauthorized("stale_token")
        return bound

    def revoke(self, username: str) -> bool:
        with self._lock:
            token = self._token_by_username.pop(username, None)
            if token is None:
                return False
            self._username_by_token.pop(token, None)
        logger.info("[tokens] revoked token for %s", username)
        return True
