import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status

import database
from app.schemas import CreateGameRequest
from app.services.auth import get_current_identity
from game import GameError, GameNotFound
from models import Identity

router = APIRouter(prefix="/api/games")
logger = logging.getLogger(__name__)


def _http_error(exc: GameError) -> HTTPException:
    if isinstance(exc, GameNotFound):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=exc.reason)
    return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=exc.reason)


@router.get("")
async def list_games(request: Request):
    return [summary.model_dump(by_alias=True) for summary in request.app.state.games.list()]


@router.post("")
async def create_game(
    req: CreateGameRequest,
    request: Request,
    identity: Identity = Depends(get_current_identity),
):
    state = request.app.state
    current = state.games.game_for(identity.username)
    if current is not None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="already_in_game")
    game = state.games.create(req.type)
    try:
        await state.messages.join(identity.username, game.id)
    except GameError as exc:
        raise _http_error(exc)
    return game.to_out().model_dump(by_alias=True, mode="json")


@router.get("/active")
async def active_game(request: Request, identity: Identity = Depends(get_current_identity)):
    state = request.app.state
    game = state.games.game_for(identity.username)
    if game is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="no_active_game")
    active = game.seating()
    for player in active.players:
        known = state.identities.get(player.username)
        if known is not None:
            player.pp_path = known.profile_picture_path
    return active.model_dump(by_alias=True)


@router.post("/{game_id}/join")
async def join_game(
    game_id: int,
    request: Request,
    identity: Identity = Depends(get_current_identity),
):
    try:
        game = await request.app.state.messages.join(identity.username, game_id)
    except GameError as exc:
        raise _http_error(exc)
    return game.to_out().model_dump(by_alias=True, mode="json")


@router.post("/{game_id}/finish")
async def finish_game(
    game_id: int,
    request: Request,
    identity: Identity = Depends(get_current_identity),
):
    try:
        game = await request.app.state.messages.finish(identity.username, game_id)
    except GameError as exc:
        raise _http_error(exc)
    logger.info("[games] %s ended game %s", identity.username, game_id)
    return game.to_out().model_dump(by_alias=True, mode="json")


@router.get("/{game_id}")
async def game_state(game_id: int, request: Request):
    try:
        game = request.app.state.games.get(game_id)
    except GameNotFound as exc:
        record = await database.get_game_record(game_id)
        if record is None:
            raise _http_error(exc)
        return record
    return game.to_out().model_dump(by_alias=True, mode="json")


@router.get("/{game_id}/chat")
async def chat_history(game_id: int, limit: int = 50):
    return await database.get_chat_history(game_id, limit=limit)
