import random

import pytest
import pytest_asyncio
from sqlalchemy import select

import database
from app.database import AsyncSessionMaker, Base, data_engine
from app.models import User
from app.services.identity import IdentityDirectory, get_or_create_identity
from deck import CardCatalog
from game import Game, WarRules


@pytest_asyncio.fixture(autouse=True)
async def prepare_db():
    async with data_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with data_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await data_engine.dispose()


@pytest.mark.asyncio
async def test_get_or_create_identity_registers_user_once():
    directory = IdentityDirectory()

    identity = await get_or_create_identity(directory, "alice", "/pp/alice.png")
    again = await get_or_create_identity(directory, "alice")

    assert identity.user_id is not None
    assert again.user_id == identity.user_id
    assert again.profile_picture_path == "/pp/alice.png"
    assert directory.get("alice") == again

    async with AsyncSessionMaker() as session:
        fetched = await session.execute(select(User).where(User.username == "alice"))
        assert fetched.scalar_one().profile_picture_path == "/pp/alice.png"


@pytest.mark.asyncio
async def test_load_identities():
    await database.upsert_user("bob")
    await database.upsert_user("carol", "/pp/carol.png")

    directory = IdentityDirectory()
    assert directory.load(await database.load_identities()) == 2
    assert directory.get("carol").profile_picture_path == "/pp/carol.png"
    assert "bob" in directory


@pytest.mark.asyncio
async def test_save_game_keeps_latest_version():
    game = Game(3, WarRules(), CardCatalog(), rng=random.Random(1))
    game.join("A")
    early = game.to_out()
    game.join("B")
    late = game.to_out()

    assert await database.save_game(late) is True
    assert await database.save_game(early) is False

    record = await database.get_game_record(3)
    assert record["gameId"] == 3
    assert record["type"] == "war"
    assert record["state"]["phase"] == "playing"
    assert record["state"]["version"] == late.state.version
    assert await database.last_game_id() == 3
    assert await database.get_game_record(4) is None


@pytest.mark.asyncio
async def test_chat_history_is_per_game_and_ordered():
    identity = await database.upsert_user("dave")
    for text in ("one", "two", "three"):
        await database.record_chat_message(1, identity, text)
    await database.record_chat_message(None, identity, "lobby")

    history = await database.get_chat_history(1)
    assert [row["message"] for row in history] == ["one", "two", "three"]
    assert history[0]["username"] == "dave"

    assert [row["message"] for row in await database.get_chat_history(1, limit=2)] == ["two", "three"]
    assert [row["message"] for row in await database.get_chat_history(None)] == ["lobby"]
