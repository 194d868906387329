from __future__ import annotations

import random
from enum import Enum
from typing import Dict, Iterable, Iterator, List, MutableSequence, Optional, Set, Tuple, TypeVar

from models import Card, CardMetadata

SUITS = ["hearts", "diamonds", "clubs", "spades"]
RANKS = ["2", "3", "4", "5", "6", "7", "8", "9", "10", "jack", "queen", "king", "ace"]
VALUES = [2, 3, 4, 5, 6, 7, 8, 9, 10, 11, 12, 13, 14]  # ace high

CATALOG_SIZE = 54
JOKER_ID = 53
CARD_BACK_ID = 54
SPECIAL_IDS = (JOKER_ID, CARD_BACK_ID)

T = TypeVar("T")


def card_metadata(card_id: int) -> CardMetadata:
    """Suit, rank and comparison value for a catalog id.

    Ids 1-52 are the standard cards, hearts first, each suit running 2..ace.
    53 is the joker and 54 the card back; neither has a comparison value and
    callers must keep them out of comparisons.
    """
    if card_id < 1 or card_id > CATALOG_SIZE:
        return CardMetadata(suit="unknown", rank="unknown", value=0)
    if card_id == JOKER_ID:
        return CardMetadata(suit="special", rank="joker", value=0)
    if card_id == CARD_BACK_ID:
        return CardMetadata(suit="special", rank="back", value=0)
    suit_index = (card_id - 1) // 13
    rank_index = (card_id - 1) % 13
    return CardMetadata(suit=SUITS[suit_index], rank=RANKS[rank_index], value=VALUES[rank_index])


def card_id_for(suit_index: int, rank_index: int) -> int:
    if not 0 <= suit_index < len(SUITS) or not 0 <= rank_index < len(RANKS):
        raise ValueError("Suit or rank index out of range")
    return suit_index * 13 + rank_index + 1


def card_image_ref(card_id: int, image_base: str) -> str:
    return f"{image_base.rstrip('/')}/{card_id}.png"


class CardCatalog:
    """Immutable id -> Card table for the 54 catalog entries."""

    def __init__(self, image_base: str = "/static/cards"):
        self.image_base = image_base
        self._cards: Dict[int, Card] = {}
        for card_id in range(1, CATALOG_SIZE + 1):
            meta = card_metadata(card_id)
            self._cards[card_id] = Card(
                id=card_id,
                suit=meta.suit,
                rank=meta.rank,
                value=meta.value,
                image_ref=card_image_ref(card_id, image_base),
            )

    def __getitem__(self, card_id: int) -> Card:
        return self._cards[card_id]

    def __len__(self) -> int:
        return len(self._cards)

    def __iter__(self) -> Iterator[Card]:
        return iter(self._cards.values())

    def get(self, card_id: int) -> Optional[Card]:
        return self._cards.get(card_id)

    def ids(self) -> List[int]:
        return list(self._cards.keys())

    def back(self) -> Card:
        return self._cards[CARD_BACK_ID]


def fisher_yates(items: MutableSequence[T], rng: random.Random) -> MutableSequence[T]:
    for i in range(len(items) - 1, 0, -1):
        j = rng.randint(0, i)
        items[i], items[j] = items[j], items[i]
    return items


class Location(str, Enum):
    PILE = "pile"
    HAND = "hand"
    PLAYED = "played"
    WAR_PILE = "war_pile"
    DISCARD = "discard"


class DeckCorrupted(RuntimeError):
    pass


class Deck:
    """Partition of the catalog into pile, hands, played seats, war pile and discard.

    Every card id carries exactly one location tag (``_locations``); the ordered
    containers mirror the tags so pile order, hand order and war-pile order are
    preserved. All moves go through ``_detach``/``_place`` which keep both in
    step.
    """

    def __init__(self, catalog: CardCatalog, rng: Optional[random.Random] = None):
        self.catalog = catalog
        self._rng = rng or random.SystemRandom()
        self._locations: Dict[int, Tuple[Location, Optional[str]]] = {}
        self._pile: List[int] = []
        self._hands: Dict[str, List[int]] = {}
        self._played: Dict[str, int] = {}
        self._war_pile: List[int] = []
        self._face_down: Set[int] = set()
        self._discard: List[int] = []
        self.reset()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _detach(self, card_id: int) -> None:
        location, owner = self._locations.pop(card_id)
        if location is Location.PILE:
            self._pile.remove(card_id)
        elif location is Location.HAND:
            self._hands[owner].remove(card_id)
        elif location is Location.PLAYED:
            del self._played[owner]
        elif location is Location.WAR_PILE:
            self._war_pile.remove(card_id)
            self._face_down.discard(card_id)
        else:
            self._discard.remove(card_id)

    def _place(self, card_id: int, location: Location, owner: Optional[str] = None) -> None:
        if location is Location.PILE:
            self._pile.append(card_id)
        elif location is Location.HAND:
            self._hands.setdefault(owner, []).append(card_id)
        elif location is Location.PLAYED:
            self._played[owner] = card_id
        elif location is Location.WAR_PILE:
            self._war_pile.append(card_id)
        else:
            self._discard.append(card_id)
        self._locations[card_id] = (location, owner)

    def _move(self, card_id: int, location: Location, owner: Optional[str] = None) -> Card:
        self._detach(card_id)
        self._place(card_id, location, owner)
        return self.catalog[card_id]

    # ------------------------------------------------------------------
    # Whole-deck operations
    # ------------------------------------------------------------------
    def reset(self) -> None:
        self._locations.clear()
        self._pile.clear()
        for hand in self._hands.values():
            hand.clear()
        self._played.clear()
        self._war_pile.clear()
        self._face_down.clear()
        self._discard.clear()
        for card_id in self.catalog.ids():
            self._place(card_id, Location.PILE)

    def shuffle(self) -> List[int]:
        """Gather every card into the pile and permute it uniformly."""
        self.reset()
        fisher_yates(self._pile, self._rng)
        return list(self._pile)

    def check_partition(self) -> None:
        seen: List[int] = list(self._pile)
        for hand in self._hands.values():
            seen.extend(hand)
        seen.extend(self._played.values())
        seen.extend(self._war_pile)
        seen.extend(self._discard)
        if len(seen) != len(set(seen)):
            raise DeckCorrupted("A card sits in more than one location")
        if set(seen) != set(self.catalog.ids()) or set(self._locations) != set(seen):
            raise DeckCorrupted("Deck locations do not cover the catalog")

    # ------------------------------------------------------------------
    # Moves
    # ------------------------------------------------------------------
    def seat(self, player_id: str) -> None:
        self._hands.setdefault(player_id, [])

    def deal(self, count: int, player_id: str) -> List[Card]:
        """Move up to ``count`` cards from the pile front to the back of a hand."""
        self.seat(player_id)
        dealt: List[Card] = []
        for _ in range(max(count, 0)):
            if not self._pile:
                break
            dealt.append(self._move(self._pile[0], Location.HAND, player_id))
        return dealt

    def draw(self, player_id: str) -> Optional[Card]:
        dealt = self.deal(1, player_id)
        return dealt[0] if dealt else None

    def set_aside(self, card_ids: Iterable[int]) -> None:
        for card_id in card_ids:
            self._move(card_id, Location.DISCARD)

    def play(self, player_id: str, card_id: int) -> Card:
        if not self.in_hand(player_id, card_id):
            raise ValueError(f"Card {card_id} is not in the hand of {player_id}")
        if player_id in self._played:
            raise ValueError(f"{player_id} already has a card on the table")
        return self._move(card_id, Location.PLAYED, player_id)

    def play_top(self, player_id: str) -> Optional[Card]:
        hand = self._hands.get(player_id)
        if not hand:
            return None
        return self.play(player_id, hand[0])

    def to_war_pile(self, card_id: int, face_down: bool = False) -> Card:
        card = self._move(card_id, Location.WAR_PILE)
        if face_down:
            self._face_down.add(card_id)
        return card

    def collect(self, player_id: str, card_ids: Iterable[int]) -> None:
        for card_id in card_ids:
            self._move(card_id, Location.HAND, player_id)

    def release(self, player_id: str) -> None:
        """Send a departing player's hand and table card to the discard."""
        self.set_aside(list(self._hands.get(player_id, [])))
        if player_id in self._played:
            self.set_aside([self._played[player_id]])
        self._hands.pop(player_id, None)

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------
    def location_of(self, card_id: int) -> Tuple[Location, Optional[str]]:
        return self._locations[card_id]

    def in_hand(self, player_id: str, card_id: int) -> bool:
        return self._locations.get(card_id) == (Location.HAND, player_id)

    def hand_ids(self, player_id: str) -> List[int]:
        return list(self._hands.get(player_id, []))

    def hand(self, player_id: str) -> List[Card]:
        return [self.catalog[card_id] for card_id in self._hands.get(player_id, [])]

    def hand_size(self, player_id: str) -> int:
        return len(self._hands.get(player_id, []))

    def played(self) -> Dict[str, Card]:
        return {pid: self.catalog[card_id] for pid, card_id in self._played.items()}

    def war_pile_ids(self) -> List[int]:
        return list(self._war_pile)

    def war_pile(self) -> List[Tuple[Card, bool]]:
        """War-pile cards in order, paired with whether they lie face up."""
        return [(self.catalog[card_id], card_id not in self._face_down) for card_id in self._war_pile]

    def peek(self) -> Optional[Card]:
        return self.catalog[self._pile[0]] if self._pile else None

    @property
    def pile_count(self) -> int:
        return len(self._pile)

    def discard(self) -> List[Card]:
        return [self.catalog[card_id] for card_id in self._discard]
