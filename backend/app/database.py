from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from app.settings import settings

DATABASE_URL = settings.database_url


data_engine = create_async_engine(DATABASE_URL, future=True)
AsyncSessionMaker = async_sessionmaker(data_engine, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


async def init_db() -> None:
    # register mapped tables before create_all
    import app.models  # noqa: F401

    async with data_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
