from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Union

from chatsync.models.chat import SESSION_ACTIVE, SESSION_ENDED, SESSION_WAITING


def parse_timestamp(value: datetime | str | None) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class PendingMessage:
    """Optimistic message shown before the server confirms it."""

    local_id: str
    session_id: str
    sender_id: str
    sender_role: str
    kind: str
    content: str
    created_at: datetime
    metadata: dict[str, Any] | None = None
    client_message_id: str | None = None
    is_read: bool = False

    is_pending = True

    @property
    def key(self) -> str:
        return self.local_id


@dataclass(frozen=True)
class ConfirmedMessage:
    id: str
    session_id: str
    sender_id: str
    sender_role: str
    kind: str
    content: str
    created_at: datetime
    metadata: dict[str, Any] | None = None
    client_message_id: str | None = None
    is_read: bool = False

    is_pending = False

    @property
    def key(self) -> str:
        return self.id

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> ConfirmedMessage:
        return cls(
            id=row["id"],
            session_id=row["session_id"],
            sender_id=row["sender_id"],
            sender_role=row["sender_role"],
            kind=row.get("kind") or "text",
            content=row.get("content") or "",
            created_at=parse_timestamp(row["created_at"]),
            metadata=row.get("metadata"),
            client_message_id=row.get("client_message_id"),
            is_read=bool(row.get("is_read")),
        )


Message = Union[PendingMessage, ConfirmedMessage]

_STATUS_RANK = {SESSION_WAITING: 0, SESSION_ACTIVE: 1, SESSION_ENDED: 2}


@dataclass(frozen=True)
class SessionSnapshot:
    id: str
    user_id: str
    status: str
    started_at: datetime
    specialist_id: str | None = None
    ended_at: datetime | None = None
    last_activity_at: datetime | None = None
    end_reason: str | None = None
    session_number: int = 1
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> SessionSnapshot:
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            status=row["status"],
            started_at=parse_timestamp(row["started_at"]),
            specialist_id=row.get("specialist_id"),
            ended_at=parse_timestamp(row.get("ended_at")),
            last_activity_at=parse_timestamp(row.get("last_activity_at")),
            end_reason=row.get("end_reason"),
            session_number=row.get("session_number") or 1,
            raw=dict(row),
        )

    @property
    def rank(self) -> int:
        return _STATUS_RANK.get(self.status, 0)
