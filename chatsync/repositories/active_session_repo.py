from __future__ import annotations

from datetime import datetime

from sqlalchemy import delete
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from chatsync.models.active_session import ActiveSessionRecord


class ActiveSessionRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def upsert(self, user_id: str, token: str, device_info: str | None, when: datetime) -> None:
        dialect = self.session.bind.dialect.name if self.session.bind else "sqlite"
        insert = postgresql.insert if dialect == "postgresql" else sqlite.insert
        stmt = insert(ActiveSessionRecord).values(
            user_id=user_id,
            session_token=token,
            device_info=device_info,
            updated_at=when,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[ActiveSessionRecord.user_id],
            set_={
                "session_token": stmt.excluded.session_token,
                "device_info": stmt.excluded.device_info,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        await self.session.execute(stmt)

    async def get(self, user_id: str) -> ActiveSessionRecord | None:
        return await self.session.get(ActiveSessionRecord, user_id, populate_existing=True)

    async def delete_if_token(self, user_id: str, token: str) -> bool:
        result = await self.session.execute(
            delete(ActiveSessionRecord).where(
                ActiveSessionRecord.user_id == user_id,
                ActiveSessionRecord.session_token == token,
            )
        )
        return bool(result.rowcount)
