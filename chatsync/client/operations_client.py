from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Sequence

from sqlalchemy.exc import SQLAlchemyError

from chatsync.services.operations import ChatOperations
from chatsync.services.phone_calls import PhoneCallService
from chatsync.services.results import (
    INTERNAL_ERROR,
    NON_RETRYABLE,
    RETRY_FAILED,
    SESSION_EXISTS,
    ChatOperationError,
    OperationResult,
)

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


class OperationsClient:
    """Calls the atomic backend operations with retry and backoff.

    Domain refusals (see ``NON_RETRYABLE``) fail immediately; exceptions and
    internal errors are retried. Every failure surfaces as ``ChatOperationError``.
    """

    def __init__(
        self,
        operations: ChatOperations,
        phone_calls: PhoneCallService | None = None,
        retries: int = 3,
        delays: Sequence[float] = (1.0, 2.0, 4.0),
        sleep: Sleep = asyncio.sleep,
    ):
        self.operations = operations
        self.phone_calls = phone_calls
        self.retries = retries
        self.delays = list(delays) or [0.0]
        self.sleep = sleep

    async def _execute(
        self,
        name: str,
        call: Callable[[], Awaitable[OperationResult]],
        accept: frozenset[str] = frozenset(),
    ) -> OperationResult:
        last_error = "Operation failed after retries"
        for attempt in range(self.retries + 1):
            try:
                result = await call()
            except Exception as exc:
                last_error = str(exc) or exc.__class__.__name__
                logger.warning("%s attempt %s failed: %s", name, attempt + 1, last_error)
            else:
                if result.success or result.error_code in accept:
                    return result
                if result.error_code in NON_RETRYABLE:
                    raise ChatOperationError.from_result(result)
                last_error = result.error_message or last_error
                logger.warning("%s attempt %s failed: %s", name, attempt + 1, last_error)

            if attempt < self.retries:
                await self.sleep(self.delays[min(attempt, len(self.delays) - 1)])

        raise ChatOperationError(RETRY_FAILED, last_error)

    async def _read(self, name: str, call: Callable[[], Awaitable[Any]]) -> Any:
        try:
            return await call()
        except SQLAlchemyError as exc:
            logger.error("%s failed: %s", name, exc)
            raise ChatOperationError(INTERNAL_ERROR, str(exc)) from exc

    async def start_session(self, user_id: str) -> dict[str, Any]:
        result = await self._execute(
            "start_session",
            lambda: self.operations.start_or_reuse_session(user_id),
            accept=frozenset({SESSION_EXISTS}),
        )
        return result.data

    async def send_message(
        self,
        session_id: str,
        sender_id: str,
        sender_role: str,
        content: str,
        kind: str = "text",
        metadata: dict | None = None,
        client_message_id: str | None = None,
    ) -> dict[str, Any]:
        result = await self._execute(
            "send_message",
            lambda: self.operations.send_message(
                session_id, sender_id, sender_role, content, kind, metadata, client_message_id
            ),
        )
        return result.data

    async def end_session(self, session_id: str, user_id: str, reason: str) -> dict[str, Any]:
        result = await self._execute(
            "end_session", lambda: self.operations.end_session(session_id, user_id, reason)
        )
        return result.data

    async def claim_session(self, session_id: str, specialist_id: str) -> dict[str, Any]:
        result = await self._execute(
            "claim_session", lambda: self.operations.claim_session(session_id, specialist_id)
        )
        return result.data

    async def end_waiting_sessions(self, user_id: str) -> list[dict[str, Any]]:
        result = await self._execute(
            "end_waiting_sessions", lambda: self.operations.end_waiting_sessions(user_id)
        )
        return result.data["ended"]

    async def reap_stale_sessions(self, user_id: str) -> list[dict[str, Any]]:
        result = await self._execute(
            "reap_stale_sessions", lambda: self.operations.reap_stale_sessions(user_id)
        )
        return result.data["ended"]

    async def get_session(self, session_id: str) -> dict[str, Any] | None:
        return await self._read("get_session", lambda: self.operations.get_session(session_id))

    async def find_open_session(self, user_id: str, status: str) -> dict[str, Any] | None:
        return await self._read(
            "find_open_session", lambda: self.operations.find_open_session(user_id, status)
        )

    async def list_messages(self, session_id: str, since: datetime | None = None) -> list[dict[str, Any]]:
        return await self._read("list_messages", lambda: self.operations.list_messages(session_id, since))

    async def list_waiting(self) -> list[dict[str, Any]]:
        """Unclaimed sessions, oldest first; the specialist queue."""
        return await self._read("list_waiting", lambda: self.operations.list_waiting())

    async def active_phone_request(self, session_id: str) -> dict[str, Any] | None:
        if self.phone_calls is None:
            return None
        return await self._read(
            "active_phone_request", lambda: self.phone_calls.active_request(session_id)
        )

    async def respond_phone_call(self, request_id: str, user_id: str, accept: bool) -> dict[str, Any]:
        if self.phone_calls is None:
            raise ChatOperationError(INTERNAL_ERROR, "Phone calls are not configured")
        result = await self._execute(
            "respond_phone_call", lambda: self.phone_calls.respond(request_id, user_id, accept)
        )
        return result.data
