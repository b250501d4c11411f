from __future__ import annotations

import asyncio
import logging

from chatsync.config import settings
from chatsync.realtime.monitor import ConnectionMonitor
from chatsync.runtime import open_backend
from chatsync.services.staleness import StaleSessionReaper

logger = logging.getLogger(__name__)


async def main() -> None:
    logging.basicConfig(level=logging.INFO)
    backend = await open_backend()

    reaper = StaleSessionReaper(backend.operations, settings.cleanup_interval_min, backend.notifier)
    reaper.start()

    monitor = ConnectionMonitor(
        backend.operations.ping,
        interval_sec=settings.heartbeat_interval_sec,
        degraded_ms=settings.heartbeat_degraded_ms,
        missed_limit=settings.heartbeat_missed_limit,
    )
    monitor.add_listener(reaper.on_connection_change)
    monitor.start()
    logger.info("chatsync backend running on %s", settings.database_url)

    try:
        await asyncio.Event().wait()
    finally:
        await monitor.stop()
        reaper.stop()
        await backend.close()


if __name__ == "__main__":
    asyncio.run(main())
