import logging

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status

from app.schemas import IdentityOut, TokenOut, TokenRequest
from app.services.auth import get_current_identity
from app.services.identity import get_or_create_identity
from app.settings import settings
from models import Identity

router = APIRouter()
logger = logging.getLogger(__name__)

settings.log_status()
logger.info("Token authorization environment check completed")


@router.post("/auth/token", response_model=TokenOut)
async def issue_token(req: TokenRequest, request: Request, response: Response) -> TokenOut:
    """Issue a session token for an already authenticated user.

    Password checks live upstream; this endpoint registers the identity,
    revokes any earlier token of the user and refuses while the user still
    holds a live socket.
    """
    state = request.app.state
    if state.hub.is_connected(req.username):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="already_connected")

    identity = await get_or_create_identity(state.identities, req.username, req.pp_path)
    token = state.tokens.issue(identity.username, identity.user_id)
    response.set_cookie(
        "auth_token",
        token,
        httponly=True,
        samesite="strict",
        max_age=settings.token_max_age_seconds,
    )
    return TokenOut(auth_token=token, username=identity.username)


@router.get("/auth/me", response_model=IdentityOut)
async def whoami(identity: Identity = Depends(get_current_identity)) -> IdentityOut:
    return IdentityOut.model_validate(identity)


@router.post("/auth/logout")
async def logout(request: Request, identity: Identity = Depends(get_current_identity)):
    request.app.state.tokens.revoke(identity.username)
    return {"ok": True}
