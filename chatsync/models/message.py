from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import Boolean, ForeignKey, JSON, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from chatsync.models.base import Base, UTCDateTime, isoformat, new_id, utcnow

ROLE_USER = "user"
ROLE_SPECIALIST = "specialist"
ROLE_SYSTEM = "system"
SENDER_ROLES = (ROLE_USER, ROLE_SPECIALIST, ROLE_SYSTEM)

KIND_TEXT = "text"
KIND_QUICK_ACTION = "quick_action"
KIND_SYSTEM = "system"
KIND_PHONE_CALL_REQUEST = "phone_call_request"
MESSAGE_KINDS = (KIND_TEXT, KIND_QUICK_ACTION, KIND_SYSTEM, KIND_PHONE_CALL_REQUEST)


class ChatMessage(Base):
    __tablename__ = "chat_messages"
    __table_args__ = (
        UniqueConstraint("session_id", "client_message_id", name="uq_message_client_id"),
    )

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    session_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("chat_sessions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    sender_id: Mapped[str] = mapped_column(String(64), nullable=False)
    sender_role: Mapped[str] = mapped_column(String(16), default=ROLE_USER, nullable=False)

    kind: Mapped[str] = mapped_column(String(32), default=KIND_TEXT, nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    # "metadata" is reserved on declarative classes
    meta: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)
    client_message_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    is_read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "sender_id": self.sender_id,
            "sender_role": self.sender_role,
            "kind": self.kind,
            "content": self.content,
            "metadata": self.meta,
            "client_message_id": self.client_message_id,
            "is_read": self.is_read,
            "created_at": isoformat(self.created_at),
        }
