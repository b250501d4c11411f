from __future__ import annotations

from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from chatsync.models.message import KIND_TEXT, ChatMessage


class MessageRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(
        self,
        session_id: str,
        sender_id: str,
        sender_role: str,
        content: str,
        kind: str = KIND_TEXT,
        metadata: dict | None = None,
        client_message_id: str | None = None,
        when: datetime | None = None,
    ) -> ChatMessage:
        msg = ChatMessage(
            session_id=session_id,
            sender_id=sender_id,
            sender_role=sender_role,
            kind=kind,
            content=content,
            meta=metadata,
            client_message_id=client_message_id,
        )
        if when is not None:
            msg.created_at = when
        self.session.add(msg)
        return msg

    async def get_by_client_id(self, session_id: str, client_message_id: str) -> ChatMessage | None:
        stmt = select(ChatMessage).where(
            ChatMessage.session_id == session_id,
            ChatMessage.client_message_id == client_message_id,
        )
        return await self.session.scalar(stmt)

    async def list_for_session(
        self, session_id: str, since: datetime | None = None, limit: int | None = None
    ) -> list[ChatMessage]:
        stmt = select(ChatMessage).where(ChatMessage.session_id == session_id)
        if since is not None:
            stmt = stmt.where(ChatMessage.created_at >= since)
        stmt = stmt.order_by(ChatMessage.created_at.asc(), ChatMessage.id.asc())
        if limit:
            stmt = stmt.limit(limit)
        return list((await self.session.scalars(stmt)).all())

    async def mark_read(self, session_id: str, reader_id: str) -> None:
        await self.session.execute(
            update(ChatMessage)
            .where(
                ChatMessage.session_id == session_id,
                ChatMessage.sender_id != reader_id,
                ChatMessage.is_read.is_(False),
            )
            .values(is_read=True)
        )
