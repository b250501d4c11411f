from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Callable

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chatsync.db import ping
from chatsync.models.base import utcnow
from chatsync.models.chat import SESSION_ACTIVE, SESSION_ENDED, SESSION_WAITING, ChatSession
from chatsync.models.message import (
    KIND_SYSTEM,
    MESSAGE_KINDS,
    ROLE_SPECIALIST,
    ROLE_SYSTEM,
    ROLE_USER,
    SENDER_ROLES,
)
from chatsync.realtime.feed import EVENT_INSERT, EVENT_UPDATE, ChangeFeed
from chatsync.repositories.chat_repo import ChatRepository
from chatsync.repositories.message_repo import MessageRepository
from chatsync.services.results import (
    INTERNAL_ERROR,
    INVALID_ARGUMENT,
    PERMISSION_DENIED,
    SESSION_CLAIMED,
    SESSION_ENDED as SESSION_ENDED_CODE,
    SESSION_EXISTS,
    SESSION_NOT_FOUND,
    OperationResult,
)
from chatsync.services.staleness import DEFAULT_STALE_AFTER, is_stale

logger = logging.getLogger(__name__)

SESSIONS_TABLE = "chat_sessions"
MESSAGES_TABLE = "chat_messages"

END_MANUAL = "manual"
END_AUTO_TIMEOUT = "auto_timeout"
END_INACTIVITY_TIMEOUT = "inactivity_timeout"
END_ESCALATION = "escalation"
END_SPECIALIST = "specialist_ended"
TIMEOUT_REASONS = (END_AUTO_TIMEOUT, END_INACTIVITY_TIMEOUT)


class ChatOperations:
    """Atomic, retry-safe chat operations.

    Every mutation runs in one transaction and publishes its row changes on the
    change feed only after commit. A per-user lock serializes session starts
    inside this process; the partial unique index on open sessions covers
    concurrent writers elsewhere.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        feed: ChangeFeed,
        stale_after: timedelta = DEFAULT_STALE_AFTER,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_maker = session_maker
        self.feed = feed
        self.stale_after = stale_after
        self.clock = clock
        self._user_locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, user_id: str) -> asyncio.Lock:
        lock = self._user_locks.get(user_id)
        if lock is None:
            lock = self._user_locks[user_id] = asyncio.Lock()
        return lock

    async def start_or_reuse_session(self, user_id: str) -> OperationResult:
        if not user_id:
            return OperationResult.fail(INVALID_ARGUMENT, "user_id is required")

        async with self._lock_for(user_id):
            try:
                async with self.session_maker() as session:
                    chat_repo = ChatRepository(session)
                    now = self.clock()
                    reaped = await self._end_stale(session, now, user_id)

                    existing = await chat_repo.get_open_for_user(user_id)
                    if existing:
                        await session.commit()
                        self._publish_sessions(reaped)
                        logger.debug("Reusing session %s for %s", existing.id, user_id)
                        return OperationResult.fail(
                            SESSION_EXISTS, "User already has an open chat session", existing.to_dict()
                        )

                    chat = await chat_repo.create(user_id, now)
                    try:
                        await session.commit()
                    except IntegrityError:
                        await session.rollback()
                        winner = await chat_repo.get_open_for_user(user_id)
                        if winner is None:
                            raise
                        return OperationResult.fail(
                            SESSION_EXISTS, "User already has an open chat session", winner.to_dict()
                        )
                    payload = chat.to_dict()
            except SQLAlchemyError as exc:
                logger.exception("start_or_reuse_session failed for %s", user_id)
                return OperationResult.fail(INTERNAL_ERROR, str(exc))

        self._publish_sessions(reaped)
        self.feed.publish(SESSIONS_TABLE, EVENT_INSERT, payload)
        logger.info("Session %s started for %s", payload["id"], user_id)
        return OperationResult.ok(payload)

    async def send_message(
        self,
        session_id: str,
        sender_id: str,
        sender_role: str,
        content: str,
        kind: str = "text",
        metadata: dict | None = None,
        client_message_id: str | None = None,
    ) -> OperationResult:
        if sender_role not in SENDER_ROLES:
            return OperationResult.fail(INVALID_ARGUMENT, f"Unknown sender role: {sender_role}")
        if kind not in MESSAGE_KINDS:
            return OperationResult.fail(INVALID_ARGUMENT, f"Unknown message kind: {kind}")
        if not (content or "").strip():
            return OperationResult.fail(INVALID_ARGUMENT, "Message content is empty")

        session_changed = False
        try:
            async with self.session_maker() as session:
                chat_repo = ChatRepository(session)
                msg_repo = MessageRepository(session)

                chat = await chat_repo.get(session_id)
                if not chat:
                    return OperationResult.fail(SESSION_NOT_FOUND, "Chat session not found")
                if chat.status == SESSION_ENDED:
                    return OperationResult.fail(SESSION_ENDED_CODE, "Cannot send to an ended session")
                if not self._may_send(chat, sender_id, sender_role):
                    return OperationResult.fail(PERMISSION_DENIED, "Sender is not part of this session")

                if client_message_id:
                    duplicate = await msg_repo.get_by_client_id(session_id, client_message_id)
                    if duplicate:
                        logger.debug("Duplicate send %s ignored", client_message_id)
                        return OperationResult.ok({"message": duplicate.to_dict(), "session": None})

                now = self.clock()
                if sender_role == ROLE_SPECIALIST and chat.status == SESSION_WAITING:
                    chat.specialist_id = sender_id
                    chat.status = SESSION_ACTIVE
                    session_changed = True
                chat.last_activity_at = now

                msg = await msg_repo.add(
                    session_id,
                    sender_id,
                    sender_role,
                    content,
                    kind=kind,
                    metadata=metadata,
                    client_message_id=client_message_id,
                    when=now,
                )
                try:
                    await session.commit()
                except IntegrityError:
                    await session.rollback()
                    duplicate = None
                    if client_message_id:
                        duplicate = await msg_repo.get_by_client_id(session_id, client_message_id)
                    if duplicate is None:
                        raise
                    return OperationResult.ok({"message": duplicate.to_dict(), "session": None})

                message_payload = msg.to_dict()
                session_payload = chat.to_dict()
        except SQLAlchemyError as exc:
            logger.exception("send_message failed for session %s", session_id)
            return OperationResult.fail(INTERNAL_ERROR, str(exc))

        self.feed.publish(MESSAGES_TABLE, EVENT_INSERT, message_payload)
        if session_changed:
            self.feed.publish(SESSIONS_TABLE, EVENT_UPDATE, session_payload)
            logger.info("Session %s activated by %s", session_id, sender_id)
        return OperationResult.ok(
            {"message": message_payload, "session": session_payload if session_changed else None}
        )

    async def end_session(self, session_id: str, user_id: str, reason: str = END_MANUAL) -> OperationResult:
        try:
            async with self.session_maker() as session:
                chat_repo = ChatRepository(session)
                chat = await chat_repo.get(session_id)
                if not chat:
                    return OperationResult.fail(SESSION_NOT_FOUND, "Chat session not found")
                if user_id not in {chat.user_id, chat.specialist_id}:
                    return OperationResult.fail(PERMISSION_DENIED, "Only participants can end a session")
                if chat.status == SESSION_ENDED:
                    return OperationResult.ok(chat.to_dict())

                now = self.clock()
                chat.status = SESSION_ENDED
                chat.ended_at = now
                chat.end_reason = reason
                chat.last_activity_at = now
                notice = await MessageRepository(session).add(
                    session_id, user_id, ROLE_SYSTEM, "Chat session ended.", kind=KIND_SYSTEM, when=now
                )
                await session.commit()
                session_payload = chat.to_dict()
                notice_payload = notice.to_dict()
        except SQLAlchemyError as exc:
            logger.exception("end_session failed for %s", session_id)
            return OperationResult.fail(INTERNAL_ERROR, str(exc))

        self.feed.publish(MESSAGES_TABLE, EVENT_INSERT, notice_payload)
        self.feed.publish(SESSIONS_TABLE, EVENT_UPDATE, session_payload)
        logger.info("Session %s ended by %s (%s)", session_id, user_id, reason)
        return OperationResult.ok(session_payload)

    async def claim_session(self, session_id: str, specialist_id: str) -> OperationResult:
        try:
            async with self.session_maker() as session:
                chat = await ChatRepository(session).get(session_id)
                if not chat:
                    return OperationResult.fail(SESSION_NOT_FOUND, "Chat session not found")
                if chat.status == SESSION_ENDED:
                    return OperationResult.fail(SESSION_ENDED_CODE, "Session already ended")
                if chat.specialist_id and chat.specialist_id != specialist_id:
                    return OperationResult.fail(SESSION_CLAIMED, "Session was claimed by another specialist")
                if chat.specialist_id == specialist_id and chat.status == SESSION_ACTIVE:
                    return OperationResult.ok(chat.to_dict())

                chat.specialist_id = specialist_id
                chat.status = SESSION_ACTIVE
                chat.last_activity_at = self.clock()
                await session.commit()
                payload = chat.to_dict()
        except SQLAlchemyError as exc:
            logger.exception("claim_session failed for %s", session_id)
            return OperationResult.fail(INTERNAL_ERROR, str(exc))

        self.feed.publish(SESSIONS_TABLE, EVENT_UPDATE, payload)
        logger.info("Session %s claimed by %s", session_id, specialist_id)
        return OperationResult.ok(payload)

    async def reap_stale_sessions(self, user_id: str | None = None) -> OperationResult:
        try:
            async with self.session_maker() as session:
                ended = await self._end_stale(session, self.clock(), user_id)
                await session.commit()
        except SQLAlchemyError as exc:
            logger.exception("Stale session cleanup failed")
            return OperationResult.fail(INTERNAL_ERROR, str(exc))

        self._publish_sessions(ended)
        return OperationResult.ok({"ended": ended})

    async def end_waiting_sessions(self, user_id: str, reason: str = END_AUTO_TIMEOUT) -> OperationResult:
        try:
            async with self.session_maker() as session:
                chat_repo = ChatRepository(session)
                now = self.clock()
                waiting = await chat_repo.list_waiting(user_id)
                for chat in waiting:
                    chat.status = SESSION_ENDED
                    chat.ended_at = now
                    chat.end_reason = reason
                await session.commit()
                ended = [chat.to_dict() for chat in waiting]
        except SQLAlchemyError as exc:
            logger.exception("Ending waiting sessions failed for %s", user_id)
            return OperationResult.fail(INTERNAL_ERROR, str(exc))

        self._publish_sessions(ended)
        return OperationResult.ok({"ended": ended})

    async def mark_read(self, session_id: str, reader_id: str) -> OperationResult:
        try:
            async with self.session_maker() as session:
                await MessageRepository(session).mark_read(session_id, reader_id)
                await session.commit()
        except SQLAlchemyError as exc:
            return OperationResult.fail(INTERNAL_ERROR, str(exc))
        return OperationResult.ok()

    async def get_session(self, session_id: str) -> dict[str, Any] | None:
        async with self.session_maker() as session:
            chat = await ChatRepository(session).get(session_id)
            return chat.to_dict() if chat else None

    async def find_open_session(self, user_id: str, status: str | None = None) -> dict[str, Any] | None:
        async with self.session_maker() as session:
            chat = await ChatRepository(session).get_open_for_user(user_id, status)
            return chat.to_dict() if chat else None

    async def list_waiting(self) -> list[dict[str, Any]]:
        async with self.session_maker() as session:
            return [chat.to_dict() for chat in await ChatRepository(session).list_waiting()]

    async def list_messages(self, session_id: str, since: datetime | None = None) -> list[dict[str, Any]]:
        async with self.session_maker() as session:
            rows = await MessageRepository(session).list_for_session(session_id, since=since)
            return [msg.to_dict() for msg in rows]

    async def ping(self) -> None:
        await ping(self.session_maker)

    @staticmethod
    def _may_send(chat: ChatSession, sender_id: str, sender_role: str) -> bool:
        if sender_role == ROLE_USER:
            return sender_id == chat.user_id
        if sender_role == ROLE_SPECIALIST:
            return chat.specialist_id in (None, sender_id) and sender_id != chat.user_id
        return sender_id in {chat.user_id, chat.specialist_id}

    async def _end_stale(self, session: AsyncSession, now: datetime, user_id: str | None) -> list[dict]:
        chat_repo = ChatRepository(session)
        candidates = await chat_repo.list_stale_waiting(now - self.stale_after, user_id)
        ended: list[dict] = []
        for chat in candidates:
            if not is_stale(chat.status, chat.started_at, now, self.stale_after):
                continue
            chat.status = SESSION_ENDED
            chat.ended_at = now
            chat.end_reason = END_AUTO_TIMEOUT
            logger.debug("Reaping stale session %s", chat.id)
            ended.append(chat)
        await session.flush()
        return [chat.to_dict() for chat in ended]

    def _publish_sessions(self, rows: list[dict]) -> None:
        for row in rows:
            self.feed.publish(SESSIONS_TABLE, EVENT_UPDATE, row)
