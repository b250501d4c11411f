from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import ForeignKey, JSON, String
from sqlalchemy.orm import Mapped, mapped_column

from chatsync.models.base import Base, UTCDateTime, isoformat, new_id, utcnow

CALL_PENDING = "pending"
CALL_ACCEPTED = "accepted"
CALL_DECLINED = "declined"
CALL_EXPIRED = "expired"
CALL_COMPLETED = "completed"


class PhoneCallRequest(Base):
    __tablename__ = "phone_call_requests"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    session_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("chat_sessions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    requester_id: Mapped[str] = mapped_column(String(64), nullable=False)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(16), default=CALL_PENDING, nullable=False)
    meta: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    responded_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    initiated_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "requester_id": self.requester_id,
            "user_id": self.user_id,
            "status": self.status,
            "metadata": self.meta,
            "created_at": isoformat(self.created_at),
            "expires_at": isoformat(self.expires_at),
            "responded_at": isoformat(self.responded_at),
            "initiated_at": isoformat(self.initiated_at),
            "completed_at": isoformat(self.completed_at),
        }
