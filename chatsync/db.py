from __future__ import annotations

import asyncio
import logging

from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from chatsync.models.base import Base

logger = logging.getLogger(__name__)


def create_engine(database_url: str) -> AsyncEngine:
    return create_async_engine(database_url, echo=False, future=True)


def create_session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


async def init_db(engine: AsyncEngine, retries: int = 30, delay_s: float = 1.0) -> None:
    last_exc: Exception | None = None
    for attempt in range(1, retries + 1):
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            return
        except OperationalError as exc:
            last_exc = exc
            if attempt >= retries:
                break
            logger.warning("DB not ready (%s/%s), retrying in %.1fs", attempt, retries, delay_s)
            await asyncio.sleep(delay_s)
            delay_s = min(delay_s * 1.5, 10.0)

    assert last_exc is not None
    raise last_exc


async def ping(session_maker: async_sessionmaker[AsyncSession]) -> None:
    async with session_maker() as session:
        await session.execute(text("SELECT 1"))


async def close_db(engine: AsyncEngine) -> None:
    await engine.dispose()
