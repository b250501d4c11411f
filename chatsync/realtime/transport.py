from __future__ import annotations

import asyncio
import inspect
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Sequence

from chatsync.realtime.feed import ChangeFeed, EventSpec, FeedSubscription, FeedUnavailable

logger = logging.getLogger(__name__)

Handler = Callable[[dict[str, Any]], Awaitable[None] | None]

STATUS_CONNECTING = "connecting"
STATUS_CONNECTED = "connected"
STATUS_DISCONNECTED = "disconnected"
STATUS_ERROR = "error"

DEFAULT_RECONNECT_DELAYS = (1.0, 2.0, 4.0, 8.0, 16.0, 30.0)


@dataclass(frozen=True)
class ConnectionStatus:
    is_connected: bool
    status: str
    error: str | None = None


StatusListener = Callable[[ConnectionStatus], Awaitable[None] | None]


@dataclass(eq=False)
class _Subscription:
    id: str
    channel_key: str
    spec: EventSpec
    handlers: list[Handler]
    feed_sub: FeedSubscription | None = None
    task: asyncio.Task | None = None
    broken: str | None = field(default=None)


class RealtimeTransport:
    """Client-side adapter over a change feed.

    Keeps a registry of every subscription so ``reconnect_all`` can rebuild
    them after a transport failure. Subscribe and unsubscribe never raise on
    feed errors; the failure shows up in ``get_connection_status`` instead.
    A dropped channel is retried with backoff until it is back, and status
    listeners hear about every connected/disconnected flip.
    """

    def __init__(self, feed: ChangeFeed, reconnect_delays: Sequence[float] = DEFAULT_RECONNECT_DELAYS):
        self.feed = feed
        self.reconnect_delays = list(reconnect_delays) or [1.0]
        self._subscriptions: dict[str, _Subscription] = {}
        self._listeners: list[StatusListener] = []
        self._connected = False
        self._recovery: asyncio.Task | None = None
        self._closed = False

    def subscribe(self, channel_key: str, spec: EventSpec, handler: Handler) -> str:
        sub = _Subscription(uuid.uuid4().hex, channel_key, spec, [handler])
        self._subscriptions[sub.id] = sub
        self._open(sub)
        logger.debug("Subscribed %s on %s (%s)", sub.id, channel_key, spec.table)
        self._status_changed()
        return sub.id

    def unsubscribe(self, subscription_id: str, handler: Handler | None = None) -> None:
        sub = self._subscriptions.get(subscription_id)
        if sub is None:
            return
        if handler is not None and handler in sub.handlers:
            sub.handlers.remove(handler)
            if sub.handlers:
                return
        self._subscriptions.pop(subscription_id, None)
        self._teardown(sub)
        logger.debug("Unsubscribed %s from %s", subscription_id, sub.channel_key)
        self._status_changed()

    def get_connection_status(self) -> ConnectionStatus:
        if not self._subscriptions:
            return ConnectionStatus(False, STATUS_DISCONNECTED)
        for sub in self._subscriptions.values():
            if sub.broken:
                return ConnectionStatus(False, STATUS_ERROR, sub.broken)
        if not self.feed.connected:
            return ConnectionStatus(False, STATUS_ERROR, "Feed offline")
        return ConnectionStatus(True, STATUS_CONNECTED)

    def add_status_listener(self, listener: StatusListener) -> None:
        self._listeners.append(listener)

    def remove_status_listener(self, listener: StatusListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def reconnect_all(self) -> None:
        logger.info("Reconnecting %s realtime subscriptions", len(self._subscriptions))
        for sub in list(self._subscriptions.values()):
            self._teardown(sub)
            self._open(sub)
        self._status_changed()

    async def close(self) -> None:
        self._closed = True
        recovery, self._recovery = self._recovery, None
        if recovery is not None:
            recovery.cancel()
        subs = list(self._subscriptions.values())
        self._subscriptions.clear()
        tasks = [sub.task for sub in subs if sub.task]
        for sub in subs:
            self._teardown(sub)
        if recovery is not None:
            tasks.append(recovery)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    @property
    def subscription_ids(self) -> list[str]:
        return list(self._subscriptions)

    @property
    def is_recovering(self) -> bool:
        return self._recovery is not None and not self._recovery.done()

    def _open(self, sub: _Subscription) -> None:
        sub.broken = None
        try:
            sub.feed_sub = self.feed.attach(sub.channel_key, sub.spec)
        except FeedUnavailable as exc:
            sub.broken = str(exc)
            logger.warning("Subscribe on %s failed: %s", sub.channel_key, exc)
            self._schedule_recovery()
            return
        sub.task = asyncio.get_running_loop().create_task(self._pump(sub, sub.feed_sub))

    def _teardown(self, sub: _Subscription) -> None:
        if sub.feed_sub is not None:
            self.feed.detach(sub.feed_sub)
            sub.feed_sub = None
        # the pump exits on the close marker; it may be the caller itself
        sub.task = None

    async def _pump(self, sub: _Subscription, feed_sub: FeedSubscription) -> None:
        while True:
            change = await feed_sub.queue.get()
            if sub.feed_sub is not feed_sub:
                return
            if change is None:
                # dropped by the feed, not by us
                sub.broken = "Channel closed"
                logger.warning("Realtime channel %s closed", sub.channel_key)
                self._status_changed()
                self._schedule_recovery()
                return
            for handler in list(sub.handlers):
                try:
                    result = handler(change.new)
                    if inspect.isawaitable(result):
                        await result
                except Exception:
                    logger.exception("Realtime handler failed on %s", sub.channel_key)

    def _schedule_recovery(self) -> None:
        if self._closed or self.is_recovering:
            return
        self._recovery = asyncio.get_running_loop().create_task(self._recover())

    async def _recover(self) -> None:
        attempt = 0
        while True:
            delay = self.reconnect_delays[min(attempt, len(self.reconnect_delays) - 1)]
            await asyncio.sleep(delay)
            attempt += 1

            broken = [sub for sub in self._subscriptions.values() if sub.broken]
            if not broken:
                return
            if not self.feed.connected:
                logger.debug("Feed still offline, reconnect attempt %s skipped", attempt)
                continue
            for sub in broken:
                self._teardown(sub)
                self._open(sub)
            self._status_changed()
            if self.get_connection_status().is_connected:
                logger.info("Realtime channels restored after %s attempts", attempt)
                return

    def _status_changed(self) -> None:
        status = self.get_connection_status()
        if status.is_connected == self._connected:
            return
        self._connected = status.is_connected
        if self._listeners and not self._closed:
            asyncio.get_running_loop().create_task(self._notify(status))

    async def _notify(self, status: ConnectionStatus) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(status)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Transport status listener failed")
