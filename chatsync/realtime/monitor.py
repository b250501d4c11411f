from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Awaitable, Callable

from chatsync.realtime.transport import ConnectionStatus

logger = logging.getLogger(__name__)

CONNECTED = "connected"
DEGRADED = "degraded"
DISCONNECTED = "disconnected"

Heartbeat = Callable[[], Awaitable[None]]
Listener = Callable[[str], Awaitable[None] | None]


def classify_heartbeat(
    latency_ms: float | None, missed: int, degraded_ms: float = 1000, missed_limit: int = 2
) -> str:
    if missed >= missed_limit:
        return DISCONNECTED
    if missed > 0 or latency_ms is None or latency_ms > degraded_ms:
        return DEGRADED
    return CONNECTED


def connection_quality(latency_ms: float | None) -> str:
    if latency_ms is None:
        return "unknown"
    if latency_ms > 2000:
        return "poor"
    if latency_ms > 1000:
        return "good"
    return "excellent"


class ConnectionMonitor:
    """Heartbeat-driven liveness signal: connected, degraded or disconnected.

    Only observes; listeners decide what to do about a change.
    """

    def __init__(
        self,
        heartbeat: Heartbeat,
        interval_sec: float = 30,
        degraded_ms: float = 1000,
        missed_limit: int = 2,
        timeout_sec: float | None = None,
    ):
        self.heartbeat = heartbeat
        self.interval_sec = interval_sec
        self.degraded_ms = degraded_ms
        self.missed_limit = missed_limit
        self.timeout_sec = timeout_sec or max(interval_sec / 2, 1.0)

        self.state = DISCONNECTED
        self.latency_ms: float | None = None
        self.missed = 0
        self._listeners: list[Listener] = []
        self._task: asyncio.Task | None = None

    @property
    def quality(self) -> str:
        return connection_quality(self.latency_ms)

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def is_connected(self, transport_status: ConnectionStatus) -> bool:
        return self.state == CONNECTED and transport_status.is_connected

    async def check(self) -> str:
        loop = asyncio.get_running_loop()
        started = loop.time()
        try:
            await asyncio.wait_for(self.heartbeat(), timeout=self.timeout_sec)
        except Exception as exc:
            self.missed += 1
            self.latency_ms = None
            logger.warning("Heartbeat missed (%s/%s): %s", self.missed, self.missed_limit, exc)
        else:
            self.missed = 0
            self.latency_ms = (loop.time() - started) * 1000

        state = classify_heartbeat(self.latency_ms, self.missed, self.degraded_ms, self.missed_limit)
        await self._set_state(state)
        return state

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._run())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _run(self) -> None:
        while True:
            await self.check()
            await asyncio.sleep(self.interval_sec)

    async def _set_state(self, state: str) -> None:
        if state == self.state:
            return
        previous, self.state = self.state, state
        logger.info("Connection %s -> %s", previous, state)
        for listener in list(self._listeners):
            try:
                result = listener(state)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Connection listener failed")
