from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from chatsync.client.operations_client import OperationsClient
from chatsync.db import close_db, create_engine, create_session_maker, init_db
from chatsync.realtime.feed import ChangeFeed
from chatsync.services.active_sessions import ActiveSessionService
from chatsync.services.operations import ChatOperations
from chatsync.services.phone_calls import PhoneCallService


class FakeClock:
    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@dataclass
class Backend:
    engine: AsyncEngine
    session_maker: async_sessionmaker[AsyncSession]
    feed: ChangeFeed
    operations: ChatOperations
    phone_calls: PhoneCallService
    active_sessions: ActiveSessionService
    clock: FakeClock

    def client(self) -> OperationsClient:
        return OperationsClient(self.operations, self.phone_calls, retries=1, delays=(0,))

    async def close(self) -> None:
        await close_db(self.engine)


async def make_backend(db_url: str, clock: FakeClock) -> Backend:
    engine = create_engine(db_url)
    await init_db(engine, retries=1)
    session_maker = create_session_maker(engine)
    feed = ChangeFeed(queue_size=64)
    return Backend(
        engine=engine,
        session_maker=session_maker,
        feed=feed,
        operations=ChatOperations(session_maker, feed, clock=clock),
        phone_calls=PhoneCallService(session_maker, feed, clock=clock),
        active_sessions=ActiveSessionService(session_maker, clock=clock),
        clock=clock,
    )


async def eventually(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)
