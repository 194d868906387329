import random

import pytest

from deck import CATALOG_SIZE, SPECIAL_IDS, CardCatalog, Location
from game import (
    FINISHED,
    PLAYING,
    WAITING,
    CardNotInHand,
    FreeDrawRules,
    Game,
    GameFull,
    GameNotFound,
    GameOver,
    GameRegistry,
    GameRules,
    InvalidAction,
    NotYourTurn,
    WarRules,
    make_rules,
    rng_factory,
)
from models import PlayerAction

CATALOG = CardCatalog()

# ids: hearts 1-13, diamonds 14-26, clubs 27-39, spades 40-52; each suit runs 2..ace
TWO_H, THREE_H, SEVEN_H, TEN_H, KING_H, ACE_H = 1, 2, 6, 9, 12, 13
SEVEN_D, KING_D = 19, 25
TWO_C, THREE_C, FOUR_C = 27, 28, 29


def make_game(max_rounds=None, seed=11) -> Game:
    game = Game(1, WarRules(max_rounds=max_rounds), CATALOG, rng=random.Random(seed))
    game.join("A")
    game.join("B")
    return game


def rig(game: Game, hands: dict) -> None:
    """Replace the dealt hands with fixed ones; everything else goes to the discard."""
    deck = game.deck
    deck.reset()
    deck.set_aside(CATALOG.ids())
    for pid, ids in hands.items():
        deck.collect(pid, ids)
    deck.check_partition()


def play(game: Game, pid: str, card_id=None):
    return game.apply_action(pid, PlayerAction(type="play_card", cardId=card_id))


def test_two_players_start_the_game():
    game = make_game()

    assert game.phase == PLAYING
    assert game.current_turn == "A"
    assert game.deck.hand_size("A") == 26
    assert game.deck.hand_size("B") == 26
    assert game.deck.pile_count == 0
    for card_id in SPECIAL_IDS:
        assert game.deck.location_of(card_id) == (Location.DISCARD, None)
    assert game.version == 2
    game.deck.check_partition()


def test_single_player_waits():
    game = Game(1, WarRules(), CATALOG)
    game.join("A")
    game.join("A")

    assert game.phase == WAITING
    assert game.players == ["A"]
    with pytest.raises(InvalidAction):
        play(game, "A")


def test_higher_card_takes_the_trick():
    game = make_game()
    rig(game, {"A": [KING_H, TWO_H], "B": [TEN_H, THREE_H]})

    view = play(game, "A", KING_H)
    assert view.current_turn == "B"
    assert view.played_cards["A"].rank == "king"
    assert view.played_cards["B"] is None

    view = play(game, "B", TEN_H)

    assert view.round == 1
    assert view.last_winner == "A"
    assert view.last_trick.winner == "A"
    assert view.last_trick.cards == 2
    assert [c.id for c in view.player_hands["A"]] == [TWO_H, KING_H, TEN_H]
    assert [c.id for c in view.player_hands["B"]] == [THREE_H]
    assert view.current_turn == "A"
    assert view.phase == PLAYING
    game.deck.check_partition()


def test_turns_alternate_after_every_play():
    game = make_game()
    rig(game, {"A": [KING_H, TWO_H, ACE_H], "B": [TEN_H, THREE_H, FOUR_C]})

    play(game, "A")
    with pytest.raises(NotYourTurn):
        play(game, "A")
    play(game, "B")
    with pytest.raises(NotYourTurn):
        play(game, "B")
    assert game.current_turn == "A"


def test_tie_goes_to_war():
    game = make_game()
    rig(game, {"A": [SEVEN_H, TWO_C, ACE_H], "B": [SEVEN_D, THREE_C, KING_D]})

    play(game, "A", SEVEN_H)
    view = play(game, "B", SEVEN_D)

    assert view.last_trick.wars == 1
    assert view.last_trick.winner == "A"
    assert view.last_trick.cards == 6
    assert sorted(c.id for c in view.player_hands["A"]) == sorted(
        [SEVEN_H, SEVEN_D, TWO_C, THREE_C, ACE_H, KING_D]
    )
    assert view.war_pile == []
    # B has nothing left
    assert view.phase == FINISHED
    assert view.winner == "A"
    assert view.current_turn is None
    game.deck.check_partition()


def test_war_lost_by_player_who_runs_out_of_cards():
    game = make_game()
    rig(game, {"A": [SEVEN_H, TWO_C, ACE_H], "B": [SEVEN_D, THREE_C]})

    play(game, "A", SEVEN_H)
    view = play(game, "B", SEVEN_D)

    # B stakes THREE_C face down and has nothing left to turn up
    assert view.last_trick.winner == "A"
    assert view.last_trick.wars == 1
    assert view.last_trick.cards == 5
    assert sorted(c.id for c in view.player_hands["A"]) == sorted([SEVEN_H, SEVEN_D, TWO_C, THREE_C, ACE_H])
    assert view.player_hands["B"] == []
    assert view.phase == FINISHED
    assert view.winner == "A"
    assert view.last_winner == "A"
    game.deck.check_partition()


def test_war_with_one_card_left_is_lost_without_a_face_up_card():
    game = make_game()
    rig(game, {"A": [SEVEN_H, TWO_C, ACE_H, KING_H], "B": [SEVEN_D]})

    play(game, "A", SEVEN_H)
    view = play(game, "B", SEVEN_D)

    assert view.last_trick.winner == "A"
    assert view.last_trick.cards == 4
    assert game.deck.hand_size("A") == 5
    assert view.phase == FINISHED
    assert view.winner == "A"
    game.deck.check_partition()


def test_war_nobody_can_fight_draws_the_game():
    game = make_game()
    rig(game, {"A": [SEVEN_H, TWO_C], "B": [SEVEN_D, THREE_C]})

    play(game, "A", SEVEN_H)
    view = play(game, "B", SEVEN_D)

    assert game.drawn is True
    assert view.phase == FINISHED
    assert view.winner is None
    assert view.last_trick.winner is None
    assert game.deck.location_of(SEVEN_H) == (Location.DISCARD, None)
    game.deck.check_partition()


def test_round_cap_awards_bigger_hand():
    game = make_game(max_rounds=1)
    rig(game, {"A": [KING_H, TWO_H], "B": [TEN_H, THREE_H, FOUR_C]})

    play(game, "A")
    view = play(game, "B")

    assert view.phase == FINISHED
    assert view.winner == "A"


def test_round_cap_with_equal_hands_has_no_winner():
    game = make_game(max_rounds=1)
    rig(game, {"A": [KING_H], "B": [TEN_H, THREE_H, FOUR_C]})

    play(game, "A")
    view = play(game, "B")

    assert view.phase == FINISHED
    assert view.winner is None


def test_card_must_be_in_own_hand():
    game = make_game()
    rig(game, {"A": [KING_H, TWO_H], "B": [TEN_H, THREE_H]})

    with pytest.raises(CardNotInHand):
        play(game, "A", TEN_H)
    with pytest.raises(CardNotInHand):
        play(game, "A", 99)
    assert game.current_turn == "A"
    assert game.deck.played() == {}


def test_rejected_actions_leave_state_unchanged():
    game = make_game()
    before = game.version

    with pytest.raises(InvalidAction):
        game.apply_action("A", PlayerAction(type="fold"))
    with pytest.raises(InvalidAction):
        game.apply_action("A", {"type": "draw_card"})
    with pytest.raises(InvalidAction):
        game.apply_action("C", {"type": "play_card"})
    with pytest.raises(InvalidAction):
        game.apply_action("A", {"cardId": 3})

    assert game.version == before


def test_finished_game_rejects_everything():
    game = make_game()
    rig(game, {"A": [KING_H], "B": [TEN_H]})
    play(game, "A")
    play(game, "B")
    assert game.phase == FINISHED

    with pytest.raises(GameOver):
        play(game, "A")
    with pytest.raises(GameOver):
        game.apply_action("stranger", {"type": "play_card"})
    with pytest.raises(GameOver):
        game.join("C")


def test_third_player_is_refused():
    game = make_game()
    with pytest.raises(GameFull):
        game.join("C")


def test_leaving_mid_game_forfeits():
    game = make_game()

    assert game.leave("A") is True

    assert game.phase == FINISHED
    assert game.winner == "B"
    assert game.leave("B") is False


def test_leaving_before_start_unseats():
    game = Game(1, WarRules(), CATALOG)
    game.join("A")

    assert game.leave("A") is True
    assert game.players == []
    assert game.phase == WAITING
    assert game.leave("A") is False


def test_listeners_see_every_change():
    game = Game(1, WarRules(), CATALOG, rng=random.Random(3))
    versions = []
    game.add_listener(lambda g: versions.append(g.version))

    def broken(g):
        raise RuntimeError("listener failure")

    game.add_listener(broken)
    game.join("A")
    game.join("B")
    play(game, "A")

    assert versions == [1, 2, 3]


def test_classic_draw_game():
    game = Game(1, FreeDrawRules(), CATALOG, rng=random.Random(3))
    game.join("A")

    assert game.phase == PLAYING
    assert game.current_turn is None
    assert game.deck.pile_count == 52

    view = game.apply_action("A", {"type": "draw_card"})
    assert len(view.player_hands["A"]) == 1
    assert view.pile_count == 51

    game.join("B")
    game.apply_action("B", {"type": "draw_card"})
    assert game.hand_size("B") == 1

    with pytest.raises(InvalidAction):
        play(game, "A")

    for _ in range(50):
        game.apply_action("A", {"type": "draw_card"})
    with pytest.raises(InvalidAction):
        game.apply_action("A", {"type": "draw_card"})

    assert game.pile_status() == (None, 0)
    game.leave("B")
    assert game.players == ["A"]
    game.deck.check_partition()


def test_seeded_game_plays_to_the_end_and_keeps_every_card():
    game = make_game(max_rounds=3000, seed=2024)

    for _ in range(20000):
        if game.phase == FINISHED:
            break
        play(game, game.current_turn)
        game.deck.check_partition()

    assert game.phase == FINISHED
    total = sum(game.hand_size(pid) for pid in game.players) + len(game.deck.discard())
    assert total == CATALOG_SIZE


def test_rules_base_cannot_be_instantiated():
    with pytest.raises(TypeError):
        GameRules()

    class NoTricks(GameRules):
        def initial_deal(self, game):
            return None

    with pytest.raises(TypeError):
        NoTricks()


def test_classic_rules_refuse_to_resolve_tricks():
    game = Game(1, FreeDrawRules(), CATALOG)
    with pytest.raises(InvalidAction):
        game.rules.resolve_trick(game)


def test_make_rules():
    assert make_rules("war").key == "war"
    assert make_rules("classic").key == "classic"
    with pytest.raises(InvalidAction):
        make_rules("poker")


def test_seeded_rng_repeats_shuffle_per_game():
    rng_for = rng_factory(42)

    first = Game(5, WarRules(), CATALOG, rng=rng_for(5)).deck.shuffle()
    again = Game(5, WarRules(), CATALOG, rng=rng_for(5)).deck.shuffle()
    other = Game(6, WarRules(), CATALOG, rng=rng_for(6)).deck.shuffle()

    assert first == again
    assert first != other


def test_registry_ids_and_seating():
    games = GameRegistry(CATALOG, rng_for=rng_factory(1))
    first = games.create("war")
    second = games.create("war")
    assert (first.id, second.id) == (1, 2)

    games.reserve_ids(10)
    assert games.create("classic").id == 11

    games.join(first.id, "A")
    assert games.game_for("A") is first
    games.join(first.id, "A")
    with pytest.raises(InvalidAction):
        games.join(second.id, "A")
    with pytest.raises(GameNotFound):
        games.get(404)

    assert [s.game_id for s in games.list()] == [1, 2, 11]
    assert len(games) == 3


def test_registry_listener_attached_to_new_and_existing_games():
    games = GameRegistry(CATALOG)
    existing = games.create()
    seen = []
    games.add_listener(lambda g: seen.append(g.id))
    later = games.create()

    games.join(existing.id, "A")
    games.join(later.id, "B")

    assert seen == [existing.id, later.id]


def test_finished_game_frees_the_player():
    games = GameRegistry(CATALOG)
    game = games.create()
    games.join(game.id, "A")
    games.join(game.id, "B")
    game.leave("A")

    assert games.game_for("B") is None
    assert games.join(games.create().id, "B").players == ["B"]


def test_finish_awards_bigger_hand():
    game = make_game()
    rig(game, {"A": [KING_H, TWO_H], "B": [TEN_H, THREE_H, FOUR_C]})

    view = game.finish("A")

    assert view.phase == FINISHED
    assert view.winner == "B"
    assert view.current_turn is None
    with pytest.raises(GameOver):
        game.finish("B")


def test_finish_requires_a_seat():
    game = make_game()
    with pytest.raises(InvalidAction):
        game.finish("C")
    assert game.phase == PLAYING


def test_finish_waiting_game_has_no_winner():
    game = Game(1, WarRules(), CATALOG)
    game.join("A")

    view = game.finish("A")

    assert view.phase == FINISHED
    assert view.winner is None


def test_seating_reports_hand_sizes_and_pile():
    game = Game(1, FreeDrawRules(), CATALOG, rng=random.Random(3))
    game.join("A")
    game.join("B")
    game.apply_action("A", {"type": "draw_card"})

    seating = game.seating().model_dump(by_alias=True)

    assert seating["gameId"] == 1
    assert seating["cardsInDeck"] == 51
    assert [(p["username"], p["cardCount"]) for p in seating["players"]] == [("A", 1), ("B", 0)]


def test_registry_retires_finished_and_empty_games():
    games = GameRegistry(CATALOG, rng_for=rng_factory(1))
    live = games.create()
    games.join(live.id, "A")
    abandoned = games.create()
    games.join(abandoned.id, "B")
    abandoned.leave("B")
    over = games.create()
    games.join(over.id, "C")
    games.join(over.id, "D")
    over.leave("C")

    assert games.retire(live) is False
    assert games.retire(abandoned) is True
    assert games.retire(over) is True
    assert games.retire(over) is False

    assert len(games) == 1
    assert [s.game_id for s in games.list()] == [live.id]
    assert games.get(over.id) is over
    with pytest.raises(GameNotFound):
        games.get(abandoned.id)


def test_registry_keeps_a_bounded_tail_of_finished_games():
    games = GameRegistry(CATALOG, keep_finished=2)
    finished = []
    for i in range(4):
        game = games.create()
        games.join(game.id, f"P{i}")
        game.finish(f"P{i}")
        games.retire(game)
        finished.append(game)

    assert len(games) == 0
    assert games.finished_count == 2
    with pytest.raises(GameNotFound):
        games.get(finished[0].id)
    assert games.get(finished[-1].id) is finished[-1]
