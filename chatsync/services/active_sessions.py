from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chatsync.models.base import utcnow
from chatsync.repositories.active_session_repo import ActiveSessionRepository
from chatsync.services.results import INTERNAL_ERROR, INVALID_ARGUMENT, OperationResult

logger = logging.getLogger(__name__)

DEVICE_INFO_MAX = 200


class ActiveSessionService:
    """The per-user "current owner token" record. Writes are last-writer-wins upserts."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_maker = session_maker
        self.clock = clock

    async def register(self, user_id: str, token: str, device_info: str | None = None) -> OperationResult:
        if not user_id or not token:
            return OperationResult.fail(INVALID_ARGUMENT, "user_id and token are required")
        try:
            async with self.session_maker() as session:
                await ActiveSessionRepository(session).upsert(
                    user_id, token, (device_info or "")[:DEVICE_INFO_MAX], self.clock()
                )
                await session.commit()
        except SQLAlchemyError as exc:
            logger.error("Failed to register session for %s: %s", user_id, exc)
            return OperationResult.fail(INTERNAL_ERROR, str(exc))
        return OperationResult.ok({"user_id": user_id, "session_token": token})

    async def current_token(self, user_id: str) -> OperationResult:
        try:
            async with self.session_maker() as session:
                record = await ActiveSessionRepository(session).get(user_id)
        except SQLAlchemyError as exc:
            logger.error("Session check failed for %s: %s", user_id, exc)
            return OperationResult.fail(INTERNAL_ERROR, str(exc))
        return OperationResult.ok(record.session_token if record else None)

    async def clear(self, user_id: str, token: str) -> OperationResult:
        try:
            async with self.session_maker() as session:
                removed = await ActiveSessionRepository(session).delete_if_token(user_id, token)
                await session.commit()
        except SQLAlchemyError as exc:
            logger.error("Failed to clear session record for %s: %s", user_id, exc)
            return OperationResult.fail(INTERNAL_ERROR, str(exc))
        return OperationResult.ok(removed)
