from __future__ import annotations

import logging
import random
import threading
from abc import ABC, abstractmethod
from collections import OrderedDict
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple, Union

from deck import SPECIAL_IDS, CardCatalog, Deck
from models import (
    ActiveGame,
    Card,
    GameOut,
    GameStateView,
    GameSummary,
    PlayerAction,
    PlayerState,
    PublicCard,
    TrickResult,
)

logger = logging.getLogger(__name__)

WAITING = "waiting"
SETUP = "setup"
PLAYING = "playing"
FINISHED = "finished"
PHASES = [WAITING, SETUP, PLAYING, FINISHED]


class GameError(ValueError):
    reason = "invalid_action"


class NotYourTurn(GameError):
    reason = "not_your_turn"


class CardNotInHand(GameError):
    reason = "card_not_in_hand"


class InvalidAction(GameError):
    reason = "invalid_action"


class GameOver(GameError):
    reason = "game_over"


class GameFull(GameError):
    reason = "game_full"


class GameAlreadyStarted(GameError):
    reason = "game_already_started"


class GameNotFound(GameError):
    reason = "game_not_found"


# ----------------------------------------------------------------------
# Rules
# ----------------------------------------------------------------------
class GameRules(ABC):
    """Variant-specific behaviour a :class:`Game` delegates to."""

    key = "base"
    players_required = 2
    players_max = 2
    allows_draw = False
    allows_late_join = False
    resolves_tricks = True

    @abstractmethod
    def initial_deal(self, game: "Game") -> None:
        ...

    @abstractmethod
    def resolve_trick(self, game: "Game") -> TrickResult:
        ...

    def is_terminal(self, game: "Game") -> bool:
        return False

    def winner(self, game: "Game") -> Optional[str]:
        return None


class WarRules(GameRules):
    key = "war"
    players_required = 2
    players_max = 2

    def __init__(self, max_rounds: Optional[int] = None):
        self.max_rounds = max_rounds

    def initial_deal(self, game: "Game") -> None:
        # one card at a time in seat order until the pile runs out
        deck = game.deck
        while deck.pile_count:
            for pid in game.players:
                deck.deal(1, pid)

    def resolve_trick(self, game: "Game") -> TrickResult:
        deck = game.deck
        wars = 0
        while True:
            played = deck.played()
            best = max(card.value for card in played.values())
            leaders = [pid for pid in game.players if played[pid].value == best]
            if len(leaders) == 1:
                winner: Optional[str] = leaders[0]
                break

            wars += 1
            for pid in game.players:
                deck.to_war_pile(played[pid].id)
            # face-down stake while the hand lasts, then the face-up card
            for pid in game.players:
                hand = deck.hand_ids(pid)
                if hand:
                    deck.to_war_pile(hand[0], face_down=True)
            able = [pid for pid in game.players if deck.play_top(pid) is not None]
            if len(able) < len(game.players):
                # whoever ran out loses the war; nobody left standing is a draw
                winner = able[0] if len(able) == 1 else None
                break

        stakes = deck.war_pile_ids() + [deck.played()[pid].id for pid in game.players if pid in deck.played()]
        if winner is None:
            deck.set_aside(stakes)
            game.drawn = True
        else:
            deck.collect(winner, stakes)
        logger.info(
            "[game %s] trick %s -> %s (%d cards, %d wars)",
            game.id,
            game.round + 1,
            winner or "draw",
            len(stakes),
            wars,
        )
        return TrickResult(winner=winner, cards=len(stakes), wars=wars)

    def is_terminal(self, game: "Game") -> bool:
        if game.drawn:
            return True
        if any(game.deck.hand_size(pid) == 0 for pid in game.players):
            return True
        return bool(self.max_rounds) and game.round >= self.max_rounds

    def winner(self, game: "Game") -> Optional[str]:
        if game.drawn:
            return None
        sizes = {pid: game.deck.hand_size(pid) for pid in game.players}
        best = max(sizes.values())
        leaders = [pid for pid, size in sizes.items() if size == best]
        return leaders[0] if len(leaders) == 1 else None


class FreeDrawRules(GameRules):
    """Single shared pile; players draw cards into their hands, nothing is compared."""

    key = "classic"
    players_required = 1
    players_max = 8
    allows_draw = True
    allows_late_join = True
    resolves_tricks = False

    def initial_deal(self, game: "Game") -> None:
        return None

    def resolve_trick(self, game: "Game") -> TrickResult:
        raise InvalidAction(f"{self.key} games have no tricks")


def make_rules(game_type: str, max_rounds: Optional[int] = None) -> GameRules:
    if game_type == "war":
        return WarRules(max_rounds=max_rounds)
    if game_type == "classic":
        return FreeDrawRules()
    raise InvalidAction(f"Unknown game type: {game_type}")


def rng_factory(seed: Optional[int] = None) -> Callable[[int], random.Random]:
    """Per-game random source; a seed makes every game's shuffle reproducible."""
    if seed is None:
        return lambda game_id: random.SystemRandom()
    return lambda game_id: random.Random(seed * 1_000_003 + game_id)


# ----------------------------------------------------------------------
# Game
# ----------------------------------------------------------------------
StateListener = Callable[["Game"], None]


class Game:
    def __init__(
        self,
        game_id: int,
        rules: GameRules,
        catalog: CardCatalog,
        *,
        rng: Optional[random.Random] = None,
        created_at: Optional[datetime] = None,
    ):
        self.id = game_id
        self.rules = rules
        self.type = rules.key
        self.created_at = created_at or datetime.utcnow()
        self.deck = Deck(catalog, rng)

        self.players: List[str] = []
        self.phase = WAITING
        self.current_turn: Optional[str] = None
        self.round = 0
        self.last_winner: Optional[str] = None
        self.winner: Optional[str] = None
        self.drawn = False
        self.last_trick: Optional[TrickResult] = None
        self.version = 0

        self._lock = threading.RLock()
        self._listeners: List[StateListener] = []

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    @property
    def status(self) -> str:
        return "finished" if self.phase == FINISHED else "active"

    def add_listener(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    def _advance(self, phase: str) -> None:
        if PHASES.index(phase) < PHASES.index(self.phase):
            raise RuntimeError(f"Cannot move game {self.id} from {self.phase} back to {phase}")
        logger.info("[game %s] %s -> %s", self.id, self.phase, phase)
        self.phase = phase

    def _touch(self) -> None:
        self.version += 1
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception:
                logger.exception("[game %s] state listener failed", self.id)

    def _next_player(self, player_id: str) -> str:
        idx = self.players.index(player_id)
        return self.players[(idx + 1) % len(self.players)]

    def _finish(self, winner: Optional[str]) -> None:
        self.winner = winner
        if winner:
            self.last_winner = winner
        self.current_turn = None
        self._advance(FINISHED)

    def _setup(self) -> None:
        self._advance(SETUP)
        order = self.deck.shuffle()
        self.deck.set_aside(SPECIAL_IDS)
        self.rules.initial_deal(self)
        self.current_turn = self.players[0] if self.rules.resolves_tricks else None
        logger.info("[game %s] dealt %d cards, %s starts", self.id, len(order) - len(SPECIAL_IDS), self.current_turn)
        self._advance(PLAYING)

    # ------------------------------------------------------------------
    # Seating
    # ------------------------------------------------------------------
    def join(self, player_id: str) -> None:
        with self._lock:
            if player_id in self.players:
                return
            if self.phase == FINISHED:
                raise GameOver("Game is over")
            if len(self.players) >= self.rules.players_max:
                raise GameFull("Game is full")
            if self.phase != WAITING and not self.rules.allows_late_join:
                raise GameAlreadyStarted("Game already started")
            self.players.append(player_id)
            self.deck.seat(player_id)
            if self.phase == WAITING and len(self.players) >= self.rules.players_required:
                self._setup()
            self._touch()

    def leave(self, player_id: str) -> bool:
        """Unseat a player; a departure mid-game forfeits it to the others."""
        with self._lock:
            if player_id not in self.players or self.phase == FINISHED:
                return False
            if self.phase == WAITING or self.rules.allows_late_join:
                self.deck.release(player_id)
                self.players.remove(player_id)
            else:
                remaining = [pid for pid in self.players if pid != player_id]
                logger.info("[game %s] %s left, forfeiting", self.id, player_id)
                self._finish(remaining[0] if len(remaining) == 1 else None)
            self._touch()
            return True

    def finish(self, player_id: str) -> GameStateView:
        """End the game on a seated player's request; current standings pick the winner."""
        with self._lock:
            if self.phase == FINISHED:
                raise GameOver("Game is over")
            if player_id not in self.players:
                raise InvalidAction("Not a player in this game")
            logger.info("[game %s] ended by %s", self.id, player_id)
            self._finish(self.rules.winner(self) if self.phase == PLAYING else None)
            self._touch()
            return self.view()

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------
    def apply_action(self, player_id: str, action: Union[PlayerAction, dict]) -> GameStateView:
        if not isinstance(action, PlayerAction):
            try:
                action = PlayerAction.model_validate(action)
            except ValueError as exc:
                raise InvalidAction("Malformed action") from exc
        with self._lock:
            if self.phase == FINISHED:
                raise GameOver("Game is over")
            if player_id not in self.players:
                raise InvalidAction("Not a player in this game")
            if action.type == "play_card":
                self._play_card(player_id, action.card_id)
            elif action.type == "draw_card":
                self._draw_card(player_id)
            else:
                raise InvalidAction(f"Unknown action: {action.type}")
            self._touch()
            return self.view()

    def _play_card(self, player_id: str, card_id: Optional[int]) -> None:
        if not self.rules.resolves_tricks:
            raise InvalidAction(f"play_card is not part of {self.type} games")
        if self.phase != PLAYING:
            raise InvalidAction("Game has not started")
        if player_id != self.current_turn:
            raise NotYourTurn("Not your turn")
        if card_id is None:
            hand = self.deck.hand_ids(player_id)
            if not hand:
                raise CardNotInHand("Hand is empty")
            card_id = hand[0]
        elif not self.deck.in_hand(player_id, card_id):
            raise CardNotInHand(f"Card {card_id} is not in hand")

        self.deck.play(player_id, card_id)
        self.current_turn = self._next_player(player_id)

        if len(self.deck.played()) < len(self.players):
            return
        result = self.rules.resolve_trick(self)
        self.round += 1
        self.last_trick = result
        if result.winner:
            self.last_winner = result.winner
        if self.rules.is_terminal(self):
            self._finish(self.rules.winner(self))

    def _draw_card(self, player_id: str) -> None:
        if not self.rules.allows_draw:
            raise InvalidAction(f"draw_card is not part of {self.type} games")
        if self.phase != PLAYING:
            raise InvalidAction("Game has not started")
        if self.deck.draw(player_id) is None:
            raise InvalidAction("No cards left in the pile")

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------
    def hand_of(self, player_id: str) -> List[Card]:
        with self._lock:
            return self.deck.hand(player_id)

    def hand_size(self, player_id: str) -> int:
        with self._lock:
            return self.deck.hand_size(player_id)

    def pile_status(self) -> Tuple[Optional[Card], int]:
        with self._lock:
            return self.deck.peek(), self.deck.pile_count

    def view(self) -> GameStateView:
        with self._lock:
            back = self.deck.catalog.back().image_ref
            played = self.deck.played()
            return GameStateView(
                phase=self.phase,
                currentTurn=self.current_turn,
                round=self.round,
                players=list(self.players),
                playerHands={pid: self.deck.hand(pid) for pid in self.players},
                playedCards={pid: played.get(pid) for pid in self.players},
                warPile=[
                    PublicCard.from_card(card) if face_up else PublicCard.hidden_card(card.id, back)
                    for card, face_up in self.deck.war_pile()
                ],
                lastWinner=self.last_winner,
                winner=self.winner,
                pileCount=self.deck.pile_count,
                lastTrick=self.last_trick,
                version=self.version,
            )

    def to_out(self) -> GameOut:
        with self._lock:
            return GameOut(
                gameId=self.id,
                createdAt=self.created_at,
                type=self.type,
                status=self.status,
                state=self.view(),
            )

    def seating(self) -> ActiveGame:
        with self._lock:
            return ActiveGame(
                gameId=self.id,
                type=self.type,
                phase=self.phase,
                currentTurn=self.current_turn,
                players=[PlayerState(username=pid, cardCount=self.deck.hand_size(pid)) for pid in self.players],
                cardsInDeck=self.deck.pile_count,
            )

    def summary(self) -> GameSummary:
        with self._lock:
            return GameSummary(
                gameId=self.id,
                type=self.type,
                status=self.status,
                phase=self.phase,
                players=list(self.players),
                playersRequired=self.rules.players_required,
            )


# ----------------------------------------------------------------------
# Registry
# ----------------------------------------------------------------------
class GameRegistry:
    """Live games by id, plus a bounded tail of recently finished ones."""

    def __init__(
        self,
        catalog: CardCatalog,
        *,
        rng_for: Optional[Callable[[int], random.Random]] = None,
        max_rounds: Optional[int] = None,
        keep_finished: int = 50,
    ):
        self.catalog = catalog
        self._rng_for = rng_for or rng_factory()
        self._max_rounds = max_rounds
        self._keep_finished = keep_finished
        self._games: Dict[int, Game] = {}
        self._finished: OrderedDict[int, Game] = OrderedDict()
        self._next_id = 1
        self._lock = threading.RLock()
        self._listeners: List[StateListener] = []

    def __len__(self) -> int:
        return len(self._games)

    @property
    def finished_count(self) -> int:
        return len(self._finished)

    def add_listener(self, listener: StateListener) -> None:
        with self._lock:
            self._listeners.append(listener)
            for game in self._games.values():
                game.add_listener(listener)

    def reserve_ids(self, last_id: int) -> None:
        with self._lock:
            self._next_id = max(self._next_id, last_id + 1)

    def create(self, game_type: str = "war") -> Game:
        rules = make_rules(game_type, self._max_rounds)
        with self._lock:
            game_id = self._next_id
            self._next_id += 1
            game = Game(game_id, rules, self.catalog, rng=self._rng_for(game_id))
            for listener in self._listeners:
                game.add_listener(listener)
            self._games[game_id] = game
        logger.info("[games] created %s game %s", game_type, game_id)
        return game

    def get(self, game_id: int) -> Game:
        with self._lock:
            game = self._games.get(game_id) or self._finished.get(game_id)
        if game is None:
            raise GameNotFound(f"Game {game_id} not found")
        return game

    def game_for(self, player_id: str) -> Optional[Game]:
        """The active game a player is seated in, if any."""
        with self._lock:
            for game in reversed(list(self._games.values())):
                if game.status == "active" and player_id in game.players:
                    return game
        return None

    def join(self, game_id: int, player_id: str) -> Game:
        with self._lock:
            game = self.get(game_id)
            current = self.game_for(player_id)
            if current is not None and current is not game:
                raise InvalidAction(f"Already seated in game {current.id}")
            game.join(player_id)
        return game

    def list(self) -> List[GameSummary]:
        with self._lock:
            games = list(self._games.values())
        return [game.summary() for game in games]

    def retire(self, game: Game) -> bool:
        """Drop a finished or empty game from the live set.

        Finished games stay readable through :meth:`get` until ``keep_finished``
        newer ones push them out.
        """
        if game.phase != FINISHED and game.players:
            return False
        with self._lock:
            if self._games.pop(game.id, None) is None:
                return False
            if game.phase == FINISHED and self._keep_finished > 0:
                self._finished[game.id] = game
                while len(self._finished) > self._keep_finished:
                    self._finished.popitem(last=False)
        logger.info("[games] retired game %s (%s)", game.id, game.phase)
        return True
