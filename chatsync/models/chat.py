from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import Index, Integer, String, text
from sqlalchemy.orm import Mapped, mapped_column

from chatsync.models.base import Base, UTCDateTime, isoformat, new_id, utcnow

SESSION_WAITING = "waiting"
SESSION_ACTIVE = "active"
SESSION_ENDED = "ended"
OPEN_STATUSES = (SESSION_WAITING, SESSION_ACTIVE)


class ChatSession(Base):
    __tablename__ = "chat_sessions"
    __table_args__ = (
        # at most one non-ended session per user, enforced by the database
        Index(
            "uq_chat_sessions_open_user",
            "user_id",
            unique=True,
            sqlite_where=text("status != 'ended'"),
            postgresql_where=text("status != 'ended'"),
        ),
    )

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    specialist_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    status: Mapped[str] = mapped_column(String(16), default=SESSION_WAITING, nullable=False)
    end_reason: Mapped[str | None] = mapped_column(String(32), nullable=True)
    session_number: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    started_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    ended_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_activity_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "specialist_id": self.specialist_id,
            "status": self.status,
            "end_reason": self.end_reason,
            "session_number": self.session_number,
            "started_at": isoformat(self.started_at),
            "ended_at": isoformat(self.ended_at),
            "last_activity_at": isoformat(self.last_activity_at),
        }
