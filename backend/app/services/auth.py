from __future__ import annotations

import logging

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from auth import Unauthorized
from models import Identity

logger = logging.getLogger(__name__)
_bearer_scheme = HTTPBearer(auto_error=False)


async def get_current_identity(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
) -> Identity:
    """Resolve the caller from a bearer token, falling back to the auth_token cookie."""

    token = credentials.credentials if credentials is not None else request.cookies.get("auth_token")
    if not token:
        logger.warning("[get_current_identity] No Authorization header or auth_token cookie")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")

    logger.info("[get_current_identity] Got token: %s", _short_token(token))

    try:
        username = request.app.state.tokens.verify(token)
    except Unauthorized as exc:
        logger.warning("[get_current_identity] Token rejected: %s", exc.detail)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=exc.detail)

    identity = request.app.state.identities.get(username)
    if identity is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="user_not_found")
    return identity


def _short_token(token: str) -> str:
    if len(token) <= 10:
        return token
    return f"{token[:5]}...{token[-5:]}"
