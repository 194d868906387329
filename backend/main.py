from __future__ import annotations

import json
import logging
from typing import Optional

from fastapi import FastAPI, Query, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

import database
from app.api.auth import router as auth_router
from app.api.games import router as games_router
from app.database import data_engine, init_db
from app.services.identity import IdentityDirectory
from app.settings import settings
from auth import TokenStore, Unauthorized
from deck import CardCatalog
from dispatch import MessageRouter
from game import Game, GameRegistry, rng_factory
from hub import AlreadyConnected, ConnectionRegistry
from models import Identity

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI()
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins(),
    allow_methods=["*"],
    allow_headers=["*"],
    allow_credentials=True,
)

logger.info("[CORS] allow_origins: %s", settings.allowed_origins())

# ---------- core services ----------
catalog = CardCatalog(settings.card_image_base)
tokens = TokenStore(settings.secret_key, settings.algorithm, settings.token_max_age_seconds)
identities = IdentityDirectory()
hub = ConnectionRegistry(send_timeout=settings.send_timeout_seconds)
games = GameRegistry(
    catalog,
    rng_for=rng_factory(settings.shuffle_seed),
    max_rounds=settings.max_rounds,
    keep_finished=settings.keep_finished_games,
)
messages = MessageRouter(tokens, hub, games, identities)

app.state.tokens = tokens
app.state.identities = identities
app.state.hub = hub
app.state.games = games
app.state.messages = messages

app.include_router(auth_router)
app.include_router(games_router)


@app.on_event("startup")
async def _prepare_db() -> None:
    await init_db()
    identities.load(await database.load_identities())
    games.reserve_ids(await database.last_game_id())


@app.on_event("shutdown")
async def _close_db() -> None:
    await data_engine.dispose()


# ---------- persistence hooks ----------
@messages.on_chat
async def _persist_chat(game_id: Optional[int], identity: Identity, text: str) -> None:
    await database.record_chat_message(game_id, identity, text)


def _persist_game(game: Game) -> None:
    if settings.persist_state:
        messages.spawn(database.save_game(game.to_out()), name=f"save game {game.id}")


games.add_listener(_persist_game)


# ---------- WS endpoint ----------
@app.websocket("/ws")
async def ws_endpoint(ws: WebSocket, token: Optional[str] = Query(None)):
    try:
        username = tokens.verify(token or ws.cookies.get("auth_token"))
    except Unauthorized as exc:
        logger.info("[ws] refused connection: %s", exc.detail)
        await ws.close(code=1008, reason="unauthorized")
        return

    try:
        connection = hub.admit(identities.ensure(username), ws)
    except AlreadyConnected:
        logger.info("[ws] refused duplicate connection for %s", username)
        await ws.close(code=1008, reason="already_connected")
        return

    try:
        await ws.accept()
        await messages.connect(connection)
        while True:
            text = await ws.receive_text()
            try:
                data = json.loads(text)
            except ValueError:
                logger.info("[ws] non-JSON frame from %s dropped", username)
                continue
            await messages.handle(connection, data)
    except WebSocketDisconnect:
        pass
    except Exception:
        logger.exception("[ws] connection of %s failed", username)
    finally:
        await messages.disconnect(connection)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000)
