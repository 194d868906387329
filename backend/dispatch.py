from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Coroutine, Dict, List, Optional, Set

from app.services.identity import IdentityDirectory
from auth import TokenStore, Unauthorized
from game import FINISHED, Game, GameError, GameRegistry, InvalidAction
from hub import Connection, ConnectionRegistry
from models import (
    AddCardToHand,
    CardChangeEvent,
    CardRequest,
    ChatEvent,
    ChatSend,
    ConnectedUsersEvent,
    ConnectedUsersRequest,
    ErrorEvent,
    GameStateEvent,
    GameStateRequest,
    HandRequest,
    Identity,
    JoinGame,
    PlayerAction,
    PlayerActionMessage,
    PlayerHandEvent,
    PlayerHandUpdateEvent,
    PublicCard,
    UnknownMessage,
    decode_message,
)

logger = logging.getLogger(__name__)

ChatHook = Callable[[Optional[int], Identity, str], Awaitable[None]]


class MessageRouter:
    """Dispatches decoded frames from one connection to chat, presence or game handlers."""

    def __init__(
        self,
        tokens: TokenStore,
        registry: ConnectionRegistry,
        games: GameRegistry,
        identities: IdentityDirectory,
    ):
        self.tokens = tokens
        self.registry = registry
        self.games = games
        self.identities = identities
        self._chat_hooks: List[ChatHook] = []
        self._game_locks: Dict[int, asyncio.Lock] = {}
        self._background: Set[asyncio.Task] = set()
        self._handlers: Dict[type, Callable[[Connection, Any], Awaitable[None]]] = {
            ChatSend: self._on_chat,
            ConnectedUsersRequest: self._on_connected_users,
            CardRequest: self._on_card_request,
            HandRequest: self._on_hand_request,
            AddCardToHand: self._on_add_card_to_hand,
            PlayerActionMessage: self._on_player_action,
            JoinGame: self._on_join_game,
            GameStateRequest: self._on_game_state_request,
        }

    # ------------------------------------------------------------------
    # Hooks
    # ------------------------------------------------------------------
    def on_chat(self, hook: ChatHook) -> ChatHook:
        self._chat_hooks.append(hook)
        return hook

    def spawn(self, coro: Coroutine[Any, Any, Any], name: str = "hook") -> asyncio.Task:
        """Run a side effect in the background; its failure is only logged."""
        task = asyncio.get_running_loop().create_task(self._guard(coro, name))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    @staticmethod
    async def _guard(coro: Coroutine[Any, Any, Any], name: str) -> None:
        try:
            await coro
        except Exception:
            logger.exception("[router] background %s failed", name)

    def _lock_for(self, game_id: int) -> asyncio.Lock:
        return self._game_locks.setdefault(game_id, asyncio.Lock())

    @asynccontextmanager
    async def _locked(self, game: Game) -> AsyncIterator[None]:
        """Serialise changes to one game; a finished or empty game is retired on the way out."""
        async with self._lock_for(game.id):
            try:
                yield
            finally:
                self._settle(game)

    def _settle(self, game: Game) -> None:
        if game.phase == FINISHED or not game.players:
            self.games.retire(game)
            self._game_locks.pop(game.id, None)

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------
    async def connect(self, connection: Connection) -> None:
        await self.broadcast_presence()
        game = self.games.game_for(connection.username)
        if game is not None:
            await self.registry.send(connection, GameStateEvent(game=game.to_out()))

    async def disconnect(self, connection: Connection) -> None:
        if connection.closed:
            return
        connection.closed = True
        self.registry.remove(connection)
        game = self.games.game_for(connection.username)
        # a newer session for the same user keeps the seat
        if game is not None and not self.registry.is_connected(connection.username):
            async with self._locked(game):
                if game.leave(connection.username):
                    await self.broadcast_game(game)
        await self.broadcast_presence()

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------
    async def handle(self, connection: Connection, raw: Any) -> None:
        token = raw.get("auth_token") if isinstance(raw, dict) else None
        try:
            username = self.tokens.verify(token)
        except Unauthorized as exc:
            logger.info("[router] dropped frame from %s: %s", connection.username, exc.detail)
            return
        if username != connection.username:
            logger.warning("[router] dropped frame on %s's socket carrying %s's token", connection.username, username)
            return

        try:
            message = decode_message(raw)
            await self._handlers[type(message)](connection, message)
        except (GameError, UnknownMessage) as exc:
            logger.info("[router] rejected frame from %s: %s", connection.username, exc)
            await self.registry.send(connection, ErrorEvent(error=str(exc), reason=exc.reason))

    def _resolve_game(self, connection: Connection, game_id: Optional[int]) -> Optional[Game]:
        if game_id is not None:
            return self.games.get(game_id)
        return self.games.game_for(connection.username)

    def _require_game(self, connection: Connection, game_id: Optional[int]) -> Game:
        game = self._resolve_game(connection, game_id)
        if game is None:
            raise InvalidAction("Join a game first")
        return game

    async def _on_chat(self, connection: Connection, message: ChatSend) -> None:
        text = message.message
        if not text:
            return
        identity = self.identities.get(connection.username) or connection.identity
        await self.registry.broadcast(
            lambda recipient: ChatEvent(
                message=text,
                owner=connection.username,
                user_pp_path=identity.profile_picture_path,
                username=recipient.username,
            )
        )
        game = self.games.game_for(connection.username)
        for hook in self._chat_hooks:
            self.spawn(hook(game.id if game else None, identity, text), name="chat hook")

    async def _on_connected_users(self, connection: Connection, message: ConnectedUsersRequest) -> None:
        await self.broadcast_presence()

    async def _on_card_request(self, connection: Connection, message: CardRequest) -> None:
        game = self._resolve_game(connection, message.game_id)
        await self.registry.send(connection, self._card_change(game))

    async def _on_hand_request(self, connection: Connection, message: HandRequest) -> None:
        game = self._resolve_game(connection, message.game_id)
        hand = game.hand_of(connection.username) if game else []
        await self.registry.send(connection, PlayerHandEvent(hand=hand))

    async def _on_add_card_to_hand(self, connection: Connection, message: AddCardToHand) -> None:
        game = self._require_game(connection, message.game_id)
        async with self._locked(game):
            game.apply_action(connection.username, PlayerAction(type="draw_card"))
            hand = game.hand_of(connection.username)
            await self.registry.send(connection, PlayerHandEvent(hand=hand))
            await self.registry.broadcast(
                PlayerHandUpdateEvent(username=connection.username, cardCount=len(hand)),
                usernames=game.players,
            )
            await self.registry.broadcast(self._card_change(game), usernames=game.players)

    async def _on_player_action(self, connection: Connection, message: PlayerActionMessage) -> None:
        game = self._require_game(connection, message.game_id)
        async with self._locked(game):
            game.apply_action(connection.username, message.action)
            await self.broadcast_game(game)

    async def _on_join_game(self, connection: Connection, message: JoinGame) -> None:
        await self.join(connection.username, message.game_id)

    async def _on_game_state_request(self, connection: Connection, message: GameStateRequest) -> None:
        game = self._require_game(connection, message.game_id)
        await self.registry.send(connection, GameStateEvent(game=game.to_out()))

    # ------------------------------------------------------------------
    # Shared with the REST surface
    # ------------------------------------------------------------------
    async def join(self, username: str, game_id: int) -> Game:
        game = self.games.get(game_id)
        async with self._locked(game):
            self.games.join(game.id, username)
            await self.broadcast_game(game)
        await self.broadcast_presence()
        return game

    async def finish(self, username: str, game_id: int) -> Game:
        game = self.games.get(game_id)
        async with self._locked(game):
            game.finish(username)
            await self.broadcast_game(game)
        await self.broadcast_presence()
        return game

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------
    def _card_change(self, game: Optional[Game]) -> CardChangeEvent:
        if game is None:
            return CardChangeEvent(card=None, pileCount=0)
        top, count = game.pile_status()
        if top is None:
            return CardChangeEvent(card=None, pileCount=0)
        back = self.games.catalog.back()
        return CardChangeEvent(card=PublicCard.hidden_card(top.id, back.image_ref), pileCount=count)

    def _card_count(self, username: str) -> int:
        game = self.games.game_for(username)
        return game.hand_size(username) if game else 0

    async def broadcast_presence(self) -> None:
        users = self.registry.snapshot(self.identities.get, self._card_count)
        await self.registry.broadcast(ConnectedUsersEvent(users=users))

    async def broadcast_game(self, game: Game) -> None:
        await self.registry.broadcast(GameStateEvent(game=game.to_out()), usernames=game.players)
