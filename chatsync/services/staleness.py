from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from chatsync.models.chat import SESSION_WAITING
from chatsync.realtime.monitor import DISCONNECTED

if TYPE_CHECKING:
    from chatsync.services.notifications import Notifier
    from chatsync.services.operations import ChatOperations

logger = logging.getLogger(__name__)

DEFAULT_STALE_AFTER = timedelta(minutes=10)


def is_stale(
    status: str,
    started_at: datetime,
    now: datetime,
    threshold: timedelta = DEFAULT_STALE_AFTER,
) -> bool:
    """A waiting session older than ``threshold`` is stale; any other status never is."""
    if status != SESSION_WAITING:
        return False
    return now - started_at > threshold


class StaleSessionReaper:
    """Periodically ends waiting sessions nobody claimed in time."""

    def __init__(
        self,
        operations: ChatOperations,
        interval_min: int = 15,
        notifier: Notifier | None = None,
    ):
        self.operations = operations
        self.interval_min = interval_min
        self.notifier = notifier
        self.scheduler = AsyncIOScheduler()
        self._running = False
        self.paused = False

    def start(self) -> None:
        self.scheduler.add_job(
            self.run_once,
            "interval",
            minutes=self.interval_min,
            next_run_time=datetime.now(timezone.utc) + timedelta(minutes=1),
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.start()

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)

    def on_connection_change(self, state: str) -> None:
        """Heartbeat listener: no cleanup runs while the database is unreachable."""
        paused = state == DISCONNECTED
        if paused == self.paused:
            return
        self.paused = paused
        if self.scheduler.running:
            if paused:
                self.scheduler.pause()
            else:
                self.scheduler.resume()
        logger.info("Stale session cleanup %s", "paused" if paused else "resumed")

    async def run_once(self) -> int:
        if self.paused:
            logger.debug("Stale session cleanup paused, database unreachable")
            return 0
        if self._running:
            logger.debug("Stale session cleanup already running")
            return 0

        self._running = True
        try:
            result = await self.operations.reap_stale_sessions()
        finally:
            self._running = False

        if not result.success:
            logger.error("Stale session cleanup failed: %s", result.error_message)
            return 0

        ended = result.data["ended"]
        if ended:
            logger.info("Cleaned up %s stale sessions", len(ended))
        if self.notifier:
            for row in ended:
                await self.notifier.notify(
                    "Session timed out",
                    "A waiting chat session was closed because no specialist joined in time.",
                    {"session_id": row["id"], "user_id": row["user_id"]},
                )
        return len(ended)
