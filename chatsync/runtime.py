"""Wiring of the backend services and of one client context from ``settings``."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from chatsync.client.arbitration import ContextStorage, SignOut, SingleSessionGuard
from chatsync.client.operations_client import OperationsClient
from chatsync.client.phone_calls import PhoneCallTracker
from chatsync.client.session_manager import ChatSessionManager
from chatsync.config import settings
from chatsync.db import close_db, create_engine, create_session_maker, init_db
from chatsync.models.message import ROLE_USER
from chatsync.realtime.feed import ChangeFeed
from chatsync.realtime.monitor import ConnectionMonitor
from chatsync.realtime.transport import RealtimeTransport
from chatsync.services.active_sessions import ActiveSessionService
from chatsync.services.notifications import Notifier, build_notifier
from chatsync.services.operations import ChatOperations
from chatsync.services.phone_calls import PhoneCallService

logger = logging.getLogger(__name__)


@dataclass
class Backend:
    engine: AsyncEngine
    session_maker: async_sessionmaker[AsyncSession]
    feed: ChangeFeed
    operations: ChatOperations
    phone_calls: PhoneCallService
    active_sessions: ActiveSessionService
    notifier: Notifier

    async def close(self) -> None:
        await close_db(self.engine)


async def open_backend(database_url: str | None = None, notifier: Notifier | None = None) -> Backend:
    engine = create_engine(database_url or settings.database_url)
    await init_db(engine)
    session_maker = create_session_maker(engine)
    feed = ChangeFeed(settings.subscription_queue_size)
    return Backend(
        engine=engine,
        session_maker=session_maker,
        feed=feed,
        operations=ChatOperations(
            session_maker, feed, stale_after=timedelta(minutes=settings.stale_waiting_minutes)
        ),
        phone_calls=PhoneCallService(
            session_maker, feed, ttl=timedelta(minutes=settings.phone_call_ttl_minutes)
        ),
        active_sessions=ActiveSessionService(session_maker),
        notifier=notifier or build_notifier(settings.bot_token, settings.notify_chat_id_set),
    )


@dataclass
class ClientContext:
    """Everything one signed-in tab or device owns."""

    transport: RealtimeTransport
    monitor: ConnectionMonitor
    manager: ChatSessionManager
    guard: SingleSessionGuard
    phone_calls: PhoneCallTracker

    async def close(self) -> None:
        self.guard.stop()
        self.phone_calls.unwatch()
        await self.manager.close()
        await self.monitor.stop()
        await self.transport.close()


def build_client(
    backend: Backend,
    user_id: str,
    storage: ContextStorage,
    sign_out: SignOut,
    role: str = ROLE_USER,
    device_info: str = "",
) -> ClientContext:
    client = OperationsClient(
        backend.operations,
        backend.phone_calls,
        retries=settings.operation_retries,
        delays=settings.retry_delays,
    )
    transport = RealtimeTransport(backend.feed, settings.reconnect_delays)
    monitor = ConnectionMonitor(
        backend.operations.ping,
        interval_sec=settings.heartbeat_interval_sec,
        degraded_ms=settings.heartbeat_degraded_ms,
        missed_limit=settings.heartbeat_missed_limit,
    )
    manager = ChatSessionManager(
        user_id,
        client,
        transport,
        role=role,
        monitor=monitor,
        notifier=backend.notifier,
        stale_after=timedelta(minutes=settings.stale_waiting_minutes),
        polling_interval=settings.polling_fallback_sec,
    )
    guard = SingleSessionGuard(
        backend.active_sessions,
        storage,
        sign_out,
        device_info=device_info,
        interval_sec=settings.arbitration_interval_sec,
        session_manager=manager,
        notifier=backend.notifier,
    )
    logger.debug("Client context built for %s (%s)", user_id, role)
    return ClientContext(transport, monitor, manager, guard, PhoneCallTracker(user_id, client, transport))
