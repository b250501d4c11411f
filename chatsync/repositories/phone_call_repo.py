from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from chatsync.models.phone_call import CALL_PENDING, PhoneCallRequest


class PhoneCallRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        session_id: str,
        requester_id: str,
        user_id: str,
        when: datetime,
        expires_at: datetime,
        metadata: dict | None = None,
    ) -> PhoneCallRequest:
        req = PhoneCallRequest(
            session_id=session_id,
            requester_id=requester_id,
            user_id=user_id,
            status=CALL_PENDING,
            created_at=when,
            expires_at=expires_at,
            meta=metadata,
        )
        self.session.add(req)
        return req

    async def get(self, request_id: str) -> PhoneCallRequest | None:
        return await self.session.get(PhoneCallRequest, request_id)

    async def get_actionable(self, session_id: str, now: datetime) -> PhoneCallRequest | None:
        stmt = (
            select(PhoneCallRequest)
            .where(
                PhoneCallRequest.session_id == session_id,
                PhoneCallRequest.status == CALL_PENDING,
                PhoneCallRequest.expires_at > now,
            )
            .order_by(PhoneCallRequest.created_at.desc())
            .limit(1)
        )
        return await self.session.scalar(stmt)

    async def list_pending(self, session_id: str) -> list[PhoneCallRequest]:
        stmt = select(PhoneCallRequest).where(
            PhoneCallRequest.session_id == session_id,
            PhoneCallRequest.status == CALL_PENDING,
        )
        return list((await self.session.scalars(stmt)).all())
