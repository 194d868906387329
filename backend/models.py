from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Type

from pydantic import BaseModel, ConfigDict, Field, ValidationError

Phase = Literal["waiting", "setup", "playing", "finished"]
GameType = Literal["war", "classic"]


class CardMetadata(BaseModel):
    suit: str
    rank: str
    value: int

    model_config = ConfigDict(frozen=True)


class Card(BaseModel):
    id: int
    suit: str
    rank: str
    value: int  # 2..14, ace high; 0 for joker/back
    image_ref: str = Field("", alias="imageRef")

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class PublicCard(BaseModel):
    card_id: int = Field(alias="cardId")
    face_up: bool = Field(True, alias="faceUp")
    suit: Optional[str] = None
    rank: Optional[str] = None
    value: Optional[int] = None
    image_ref: Optional[str] = Field(default=None, alias="imageRef")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def hidden_card(cls, card_id: int, back_image_ref: Optional[str] = None) -> "PublicCard":
        return cls(cardId=card_id, faceUp=False, imageRef=back_image_ref)

    @classmethod
    def from_card(cls, card: Card) -> "PublicCard":
        return cls(
            cardId=card.id,
            faceUp=True,
            suit=card.suit,
            rank=card.rank,
            value=card.value,
            imageRef=card.image_ref,
        )


class Identity(BaseModel):
    user_id: Optional[int] = None
    username: str
    profile_picture_path: str = ""

    model_config = ConfigDict(frozen=True)


class PlayerState(BaseModel):
    username: str
    pp_path: str = ""
    card_count: int = Field(0, alias="cardCount")

    model_config = ConfigDict(populate_by_name=True)


class TrickResult(BaseModel):
    winner: Optional[str] = None
    cards: int = 0
    wars: int = 0


class GameStateView(BaseModel):
    phase: Phase
    current_turn: Optional[str] = Field(None, alias="currentTurn")
    round: int = 0
    players: List[str] = Field(default_factory=list)
    player_hands: Dict[str, List[Card]] = Field(default_factory=dict, alias="playerHands")
    played_cards: Dict[str, Optional[Card]] = Field(default_factory=dict, alias="playedCards")
    war_pile: List[PublicCard] = Field(default_factory=list, alias="warPile")
    last_winner: Optional[str] = Field(None, alias="lastWinner")
    winner: Optional[str] = None
    pile_count: int = Field(0, alias="pileCount")
    last_trick: Optional[TrickResult] = Field(None, alias="lastTrick")
    version: int = 0

    model_config = ConfigDict(populate_by_name=True)


class GameOut(BaseModel):
    game_id: int = Field(alias="gameId")
    created_at: datetime = Field(alias="createdAt")
    type: GameType
    status: Literal["active", "finished"]
    state: GameStateView

    model_config = ConfigDict(populate_by_name=True)


class ActiveGame(BaseModel):
    game_id: int = Field(alias="gameId")
    type: GameType
    phase: Phase
    current_turn: Optional[str] = Field(None, alias="currentTurn")
    players: List[PlayerState]
    cards_in_deck: int = Field(0, alias="cardsInDeck")

    model_config = ConfigDict(populate_by_name=True)


class GameSummary(BaseModel):
    game_id: int = Field(alias="gameId")
    type: GameType
    status: Literal["active", "finished"]
    phase: Phase
    players: List[str]
    players_required: int = Field(alias="playersRequired")

    model_config = ConfigDict(populate_by_name=True)


# ---------------------------------------------------------------------------
# Inbound frames
# ---------------------------------------------------------------------------
class UnknownMessage(ValueError):
    reason = "unknown_message"


class InboundMessage(BaseModel):
    auth_token: str = ""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class ChatSend(InboundMessage):
    type: Literal["chat", "chat_message"] = "chat"
    message: str


class ConnectedUsersRequest(InboundMessage):
    type: Literal["connected_users"]


class CardRequest(InboundMessage):
    type: Literal["card_request"]
    game_id: Optional[int] = Field(None, alias="gameId")


class HandRequest(InboundMessage):
    type: Literal["hand_request"]
    game_id: Optional[int] = Field(None, alias="gameId")


class AddCardToHand(InboundMessage):
    type: Literal["add_card_to_hand"]
    game_id: Optional[int] = Field(None, alias="gameId")


class PlayerAction(BaseModel):
    type: str
    card_id: Optional[int] = Field(None, alias="cardId")

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class PlayerActionMessage(InboundMessage):
    type: Literal["player_action"]
    action: PlayerAction
    game_id: Optional[int] = Field(None, alias="gameId")


class JoinGame(InboundMessage):
    type: Literal["join_game"]
    game_id: int = Field(alias="gameId")


class GameStateRequest(InboundMessage):
    type: Literal["game_state_request"]
    game_id: Optional[int] = Field(None, alias="gameId")


MESSAGE_TYPES: Dict[str, Type[InboundMessage]] = {
    "chat": ChatSend,
    "chat_message": ChatSend,
    "connected_users": ConnectedUsersRequest,
    "card_request": CardRequest,
    "hand_request": HandRequest,
    "add_card_to_hand": AddCardToHand,
    "player_action": PlayerActionMessage,
    "join_game": JoinGame,
    "game_state_request": GameStateRequest,
}


def decode_message(raw: Any) -> InboundMessage:
    """Turn one decoded JSON frame into its message variant.

    Frames without a ``type`` but with a ``message`` field are chat sends.
    Anything else that does not map onto a known variant raises
    :class:`UnknownMessage`.
    """
    if not isinstance(raw, dict):
        raise UnknownMessage("Frame must be a JSON object")
    message_type = raw.get("type")
    if message_type is None and "message" in raw:
        message_type = "chat"
    model = MESSAGE_TYPES.get(message_type) if isinstance(message_type, str) else None
    if model is None:
        raise UnknownMessage(f"Unknown message type: {message_type!r}")
    try:
        return model.model_validate(raw)
    except ValidationError as exc:
        raise UnknownMessage(f"Malformed {message_type} message") from exc


# ---------------------------------------------------------------------------
# Outbound events
# ---------------------------------------------------------------------------
class OutboundEvent(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    def payload(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class ChatEvent(OutboundEvent):
    type: Literal["message"] = "message"
    message: str
    owner: str
    user_pp_path: str = ""
    username: str


class ConnectedUsersEvent(OutboundEvent):
    type: Literal["connected_users"] = "connected_users"
    users: List[PlayerState]


class CardChangeEvent(OutboundEvent):
    type: Literal["card_change"] = "card_change"
    card: Optional[PublicCard] = None
    pile_count: int = Field(0, alias="pileCount")


class PlayerHandEvent(OutboundEvent):
    type: Literal["player_hand"] = "player_hand"
    hand: List[Card]


class PlayerHandUpdateEvent(OutboundEvent):
    type: Literal["player_hand_update"] = "player_hand_update"
    username: str
    card_count: int = Field(alias="cardCount")


class GameStateEvent(OutboundEvent):
    type: Literal["game_state"] = "game_state"
    game: GameOut


class ErrorEvent(OutboundEvent):
    type: Literal["error"] = "error"
    error: str
    reason: str
