from __future__ import annotations

import inspect
import logging
import uuid
from typing import TYPE_CHECKING, Awaitable, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from chatsync.services.active_sessions import ActiveSessionService

if TYPE_CHECKING:
    from chatsync.client.session_manager import ChatSessionManager
    from chatsync.services.notifications import Notifier

logger = logging.getLogger(__name__)

TOKEN_KEY = "chatsync-session-token"
EVICTION_NOTICE = "You have been signed out because your account was logged in on another device."

SignOut = Callable[[], Awaitable[None] | None]


class ContextStorage:
    """Storage private to one browsing context (one tab or device); never shared."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)


class SingleSessionGuard:
    """Keeps one authoritative context per user.

    Registering overwrites the user's owner record (last writer wins). Every
    poll compares the record with this context's token; a different token
    means another context signed in since, so this one signs itself out. Two
    contexts may both believe they are active for at most one poll interval.
    """

    def __init__(
        self,
        active_sessions: ActiveSessionService,
        storage: ContextStorage,
        sign_out: SignOut,
        device_info: str = "",
        interval_sec: int = 30,
        session_manager: ChatSessionManager | None = None,
        notifier: Notifier | None = None,
    ):
        self.active_sessions = active_sessions
        self.storage = storage
        self.sign_out = sign_out
        self.device_info = device_info
        self.interval_sec = interval_sec
        self.session_manager = session_manager
        self.notifier = notifier

        self.user_id: str | None = None
        self.is_signed_in = False
        self.scheduler: AsyncIOScheduler | None = None

    @property
    def token(self) -> str:
        token = self.storage.get(TOKEN_KEY)
        if not token:
            token = uuid.uuid4().hex
            self.storage.set(TOKEN_KEY, token)
        return token

    async def register(self, user_id: str) -> bool:
        self.user_id = user_id
        self.is_signed_in = True
        result = await self.active_sessions.register(user_id, self.token, self.device_info)
        if not result.success:
            logger.error("Failed to register session: %s", result.error_message)
        return result.success

    async def check(self) -> bool:
        """One poll. Returns False once this context has been evicted."""
        if not self.is_signed_in or not self.user_id:
            return False
        current = self.storage.get(TOKEN_KEY)
        if not current:
            return True

        result = await self.active_sessions.current_token(self.user_id)
        if not result.success:
            logger.error("Session check error: %s", result.error_message)
            return True
        if result.data is None or result.data == current:
            return True

        await self._evict()
        return False

    async def start(self, user_id: str) -> None:
        await self.register(user_id)
        self.scheduler = AsyncIOScheduler()
        self.scheduler.add_job(
            self.check,
            "interval",
            seconds=self.interval_sec,
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.start()

    def stop(self) -> None:
        scheduler, self.scheduler = self.scheduler, None
        if scheduler is not None and scheduler.running:
            scheduler.shutdown(wait=False)

    async def sign_out_with_cleanup(self) -> None:
        self.stop()
        if self.user_id:
            result = await self.active_sessions.clear(self.user_id, self.token)
            if not result.success:
                logger.warning("Could not clear session record: %s", result.error_message)
        await self._finish_sign_out()

    async def _evict(self) -> None:
        logger.info("Session for %s superseded by another device, signing out", self.user_id)
        self.stop()
        if self.notifier is not None:
            await self.notifier.notify("Signed out", EVICTION_NOTICE, {"user_id": self.user_id})
        await self._finish_sign_out()

    async def _finish_sign_out(self) -> None:
        self.is_signed_in = False
        if self.session_manager is not None:
            self.session_manager.clear()
        result = self.sign_out()
        if inspect.isawaitable(result):
            await result
