from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chatsync.models.base import utcnow
from chatsync.models.chat import SESSION_ENDED
from chatsync.models.message import KIND_PHONE_CALL_REQUEST, ROLE_SPECIALIST, ROLE_SYSTEM
from chatsync.models.phone_call import (
    CALL_ACCEPTED,
    CALL_COMPLETED,
    CALL_DECLINED,
    CALL_EXPIRED,
    CALL_PENDING,
    PhoneCallRequest,
)
from chatsync.realtime.feed import EVENT_INSERT, EVENT_UPDATE, ChangeFeed
from chatsync.repositories.chat_repo import ChatRepository
from chatsync.repositories.message_repo import MessageRepository
from chatsync.repositories.phone_call_repo import PhoneCallRepository
from chatsync.services.results import (
    INTERNAL_ERROR,
    PERMISSION_DENIED,
    REQUEST_EXPIRED,
    REQUEST_NOT_FOUND,
    REQUEST_NOT_PENDING,
    SESSION_ENDED as SESSION_ENDED_CODE,
    SESSION_NOT_FOUND,
    OperationResult,
)

logger = logging.getLogger(__name__)

PHONE_CALLS_TABLE = "phone_call_requests"
MESSAGES_TABLE = "chat_messages"


def is_expired(request: PhoneCallRequest | dict[str, Any], now: datetime) -> bool:
    expires_at = request["expires_at"] if isinstance(request, dict) else request.expires_at
    if isinstance(expires_at, str):
        expires_at = datetime.fromisoformat(expires_at)
    return now > expires_at


class PhoneCallService:
    """Phone-call handshake inside a chat session: pending -> accepted | declined | expired."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        feed: ChangeFeed,
        ttl: timedelta = timedelta(minutes=5),
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_maker = session_maker
        self.feed = feed
        self.ttl = ttl
        self.clock = clock

    async def request_call(
        self, session_id: str, requester_id: str, metadata: dict | None = None
    ) -> OperationResult:
        published: list[tuple[str, str, dict]] = []
        try:
            async with self.session_maker() as session:
                chat = await ChatRepository(session).get(session_id)
                if not chat:
                    return OperationResult.fail(SESSION_NOT_FOUND, "Chat session not found")
                if chat.status == SESSION_ENDED:
                    return OperationResult.fail(SESSION_ENDED_CODE, "Session already ended")
                if requester_id not in {chat.user_id, chat.specialist_id}:
                    return OperationResult.fail(PERMISSION_DENIED, "Requester is not part of this session")

                call_repo = PhoneCallRepository(session)
                now = self.clock()
                current = await call_repo.get_actionable(session_id, now)
                if current:
                    return OperationResult.ok(current.to_dict())

                req = await call_repo.create(
                    session_id, requester_id, chat.user_id, now, now + self.ttl, metadata
                )
                await session.flush()
                role = ROLE_SPECIALIST if requester_id == chat.specialist_id else ROLE_SYSTEM
                msg = await MessageRepository(session).add(
                    session_id,
                    requester_id,
                    role,
                    "Your specialist would like to talk by phone.",
                    kind=KIND_PHONE_CALL_REQUEST,
                    metadata={"request_id": req.id, "expires_at": req.to_dict()["expires_at"]},
                    when=now,
                )
                chat.last_activity_at = now
                await session.commit()
                payload = req.to_dict()
                published.append((PHONE_CALLS_TABLE, EVENT_INSERT, payload))
                published.append((MESSAGES_TABLE, EVENT_INSERT, msg.to_dict()))
        except SQLAlchemyError as exc:
            logger.exception("Phone call request failed for %s", session_id)
            return OperationResult.fail(INTERNAL_ERROR, str(exc))

        for table, event, row in published:
            self.feed.publish(table, event, row)
        logger.info("Phone call %s requested in %s", payload["id"], session_id)
        return OperationResult.ok(payload)

    async def respond(self, request_id: str, user_id: str, accept: bool) -> OperationResult:
        answer = CALL_ACCEPTED if accept else CALL_DECLINED
        try:
            async with self.session_maker() as session:
                req = await PhoneCallRepository(session).get(request_id)
                if not req:
                    return OperationResult.fail(REQUEST_NOT_FOUND, "Phone call request not found")
                if user_id != req.user_id:
                    return OperationResult.fail(PERMISSION_DENIED, "Only the user can answer this request")
                if req.status == answer:
                    return OperationResult.ok(req.to_dict())
                if req.status != CALL_PENDING:
                    return OperationResult.fail(REQUEST_NOT_PENDING, f"Request is already {req.status}")

                now = self.clock()
                if is_expired(req, now):
                    req.status = CALL_EXPIRED
                    await session.commit()
                    self.feed.publish(PHONE_CALLS_TABLE, EVENT_UPDATE, req.to_dict())
                    return OperationResult.fail(REQUEST_EXPIRED, "Phone call request expired")

                req.status = answer
                req.responded_at = now
                if accept:
                    req.initiated_at = now
                await session.commit()
                payload = req.to_dict()
        except SQLAlchemyError as exc:
            logger.exception("Phone call response failed for %s", request_id)
            return OperationResult.fail(INTERNAL_ERROR, str(exc))

        self.feed.publish(PHONE_CALLS_TABLE, EVENT_UPDATE, payload)
        return OperationResult.ok(payload)

    async def complete(self, request_id: str) -> OperationResult:
        try:
            async with self.session_maker() as session:
                req = await PhoneCallRepository(session).get(request_id)
                if not req:
                    return OperationResult.fail(REQUEST_NOT_FOUND, "Phone call request not found")
                if req.status == CALL_COMPLETED:
                    return OperationResult.ok(req.to_dict())
                if req.status != CALL_ACCEPTED:
                    return OperationResult.fail(REQUEST_NOT_PENDING, "Only accepted calls can be completed")
                req.status = CALL_COMPLETED
                req.completed_at = self.clock()
                await session.commit()
                payload = req.to_dict()
        except SQLAlchemyError as exc:
            return OperationResult.fail(INTERNAL_ERROR, str(exc))

        self.feed.publish(PHONE_CALLS_TABLE, EVENT_UPDATE, payload)
        return OperationResult.ok(payload)

    async def active_request(self, session_id: str) -> dict[str, Any] | None:
        async with self.session_maker() as session:
            req = await PhoneCallRepository(session).get_actionable(session_id, self.clock())
            return req.to_dict() if req else None
