from __future__ import annotations

from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from chatsync.models.chat import OPEN_STATUSES, SESSION_WAITING, ChatSession


class ChatRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, user_id: str, when: datetime) -> ChatSession:
        number = await self.count_for_user(user_id) + 1
        chat = ChatSession(
            user_id=user_id,
            status=SESSION_WAITING,
            session_number=number,
            started_at=when,
            last_activity_at=when,
        )
        self.session.add(chat)
        return chat

    async def get(self, session_id: str) -> ChatSession | None:
        return await self.session.get(ChatSession, session_id)

    async def count_for_user(self, user_id: str) -> int:
        stmt = select(func.count()).select_from(ChatSession).where(ChatSession.user_id == user_id)
        return int(await self.session.scalar(stmt) or 0)

    async def get_open_for_user(self, user_id: str, status: str | None = None) -> ChatSession | None:
        statuses = (status,) if status else OPEN_STATUSES
        stmt = (
            select(ChatSession)
            .where(ChatSession.user_id == user_id, ChatSession.status.in_(statuses))
            .order_by(ChatSession.started_at.desc())
            .limit(1)
        )
        return await self.session.scalar(stmt)

    async def list_waiting(self, user_id: str | None = None) -> list[ChatSession]:
        stmt = select(ChatSession).where(ChatSession.status == SESSION_WAITING)
        if user_id:
            stmt = stmt.where(ChatSession.user_id == user_id)
        stmt = stmt.order_by(ChatSession.started_at.asc())
        return list((await self.session.scalars(stmt)).all())

    async def list_stale_waiting(self, older_than: datetime, user_id: str | None = None) -> list[ChatSession]:
        stmt = select(ChatSession).where(
            ChatSession.status == SESSION_WAITING,
            ChatSession.specialist_id.is_(None),
            ChatSession.started_at < older_than,
        )
        if user_id:
            stmt = stmt.where(ChatSession.user_id == user_id)
        return list((await self.session.scalars(stmt)).all())
