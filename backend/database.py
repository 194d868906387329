"""
Persistence mirror for users, games and chat.

The hub never waits on these calls for correctness: chat and game-state
writes are scheduled in the background and a failure only gets logged.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import desc, func, select
from sqlalchemy.exc import IntegrityError

from app.database import AsyncSessionMaker
from app.models import ChatMessage, GameRecord, User
from models import GameOut, Identity

logger = logging.getLogger(__name__)


def _identity(user: User) -> Identity:
    return Identity(
        user_id=user.id,
        username=user.username,
        profile_picture_path=user.profile_picture_path or "",
    )


async def upsert_user(username: str, profile_picture_path: str = "") -> Identity:
    """Create the user or refresh its picture path."""
    async with AsyncSessionMaker() as session:
        result = await session.execute(select(User).where(User.username == username))
        user = result.scalar_one_or_none()
        if user is None:
            user = User(username=username, profile_picture_path=profile_picture_path)
            session.add(user)
        elif profile_picture_path:
            user.profile_picture_path = profile_picture_path
        await session.commit()
        await session.refresh(user)
        return _identity(user)


async def load_identities() -> List[Identity]:
    async with AsyncSessionMaker() as session:
        result = await session.execute(select(User).order_by(User.id))
        return [_identity(user) for user in result.scalars()]


async def last_game_id() -> int:
    async with AsyncSessionMaker() as session:
        result = await session.execute(select(func.max(GameRecord.id)))
        return result.scalar() or 0


async def save_game(game: GameOut, retry: bool = True) -> bool:
    """Store a game snapshot unless a newer version is already saved."""
    state = game.state.model_dump(by_alias=True, mode="json")
    async with AsyncSessionMaker() as session:
        record = await session.get(GameRecord, game.game_id)
        if record is None:
            session.add(
                GameRecord(
                    id=game.game_id,
                    created_at=game.created_at,
                    game_type=game.type,
                    status=game.status,
                    version=game.state.version,
                    state=state,
                )
            )
        elif record.version >= game.state.version:
            return False
        else:
            record.status = game.status
            record.version = game.state.version
            record.state = state
            record.updated_at = datetime.utcnow()
        try:
            await session.commit()
        except IntegrityError:
            # a concurrent save inserted the row first
            await session.rollback()
            if not retry:
                raise
            return await save_game(game, retry=False)
    logger.debug("[database] saved game %s (version %s)", game.game_id, game.state.version)
    return True


async def get_game_record(game_id: int) -> Optional[Dict]:
    async with AsyncSessionMaker() as session:
        record = await session.get(GameRecord, game_id)
        if record is None:
            return None
        return {
            "gameId": record.id,
            "createdAt": record.created_at.isoformat(),
            "type": record.game_type,
            "status": record.status,
            "state": record.state,
        }


async def record_chat_message(game_id: Optional[int], identity: Identity, text_content: str) -> int:
    async with AsyncSessionMaker() as session:
        message = ChatMessage(
            game_id=game_id,
            user_id=identity.user_id,
            username=identity.username,
            text_content=text_content,
        )
        session.add(message)
        await session.commit()
        await session.refresh(message)
        logger.info("[database] chat message %s recorded for %s", message.id, identity.username)
        return message.id


async def get_chat_history(game_id: Optional[int], limit: int = 50) -> List[Dict]:
    """Latest chat messages of a game, oldest first."""
    async with AsyncSessionMaker() as session:
        if game_id is None:
            condition = ChatMessage.game_id.is_(None)
        else:
            condition = ChatMessage.game_id == game_id
        result = await session.execute(
            select(ChatMessage).where(condition).order_by(desc(ChatMessage.id)).limit(limit)
        )
        rows = list(result.scalars())
        return [
            {
                "id": row.id,
                "username": row.username,
                "message": row.text_content,
                "timestamp": row.timestamp.isoformat(),
            }
            for row in reversed(rows)
        ]
