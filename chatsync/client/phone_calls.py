from __future__ import annotations

import logging
from typing import Any

from chatsync.client.operations_client import OperationsClient
from chatsync.realtime.feed import EVENT_ANY, EventSpec
from chatsync.realtime.transport import RealtimeTransport
from chatsync.services.results import ChatOperationError

logger = logging.getLogger(__name__)


class PhoneCallTracker:
    """Follows the actionable phone-call request of one session for the user."""

    def __init__(self, user_id: str, operations: OperationsClient, transport: RealtimeTransport):
        self.user_id = user_id
        self.operations = operations
        self.transport = transport
        self.session_id: str | None = None
        self.active_request: dict[str, Any] | None = None
        self.error: str | None = None
        self._subscription: str | None = None

    async def watch(self, session_id: str) -> None:
        self.unwatch()
        self.session_id = session_id
        self._subscription = self.transport.subscribe(
            f"phone-requests-{session_id}",
            EventSpec(EVENT_ANY, "phone_call_requests", ("session_id", session_id)),
            self._on_change,
        )
        await self.refresh()

    def unwatch(self) -> None:
        if self._subscription:
            self.transport.unsubscribe(self._subscription)
        self._subscription = None
        self.session_id = None
        self.active_request = None

    async def refresh(self) -> dict[str, Any] | None:
        if not self.session_id:
            return None
        try:
            request = await self.operations.active_phone_request(self.session_id)
        except ChatOperationError as exc:
            self.error = str(exc)
            return self.active_request
        if request is not None and request["user_id"] != self.user_id:
            request = None
        self.active_request = request
        return request

    async def accept(self) -> bool:
        return await self._respond(True)

    async def decline(self) -> bool:
        return await self._respond(False)

    async def _respond(self, accept: bool) -> bool:
        if not self.active_request:
            return False
        try:
            await self.operations.respond_phone_call(self.active_request["id"], self.user_id, accept)
        except ChatOperationError as exc:
            logger.error("Error answering phone request: %s", exc)
            self.error = str(exc)
            await self.refresh()
            return False
        self.active_request = None
        return True

    async def _on_change(self, row: dict[str, Any]) -> None:
        logger.debug("Phone request update: %s", row.get("status"))
        await self.refresh()
