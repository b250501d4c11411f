from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

EVENT_INSERT = "insert"
EVENT_UPDATE = "update"
EVENT_DELETE = "delete"
EVENT_ANY = "*"


class FeedUnavailable(Exception):
    pass


@dataclass(frozen=True)
class ChangeEvent:
    table: str
    event: str
    new: dict[str, Any]


@dataclass(frozen=True)
class EventSpec:
    """Selects change events: event type, table and an optional ``(column, value)`` filter."""

    event: str
    table: str
    filter: tuple[str, Any] | None = None

    def matches(self, change: ChangeEvent) -> bool:
        if self.table != change.table:
            return False
        if self.event != EVENT_ANY and self.event != change.event:
            return False
        if self.filter is not None:
            column, value = self.filter
            return change.new.get(column) == value
        return True


@dataclass(eq=False)
class FeedSubscription:
    channel_key: str
    spec: EventSpec
    queue: asyncio.Queue
    closed: bool = field(default=False)


class ChangeFeed:
    """Fans committed row changes out to subscriber mailboxes.

    Each subscriber gets a bounded queue; events are appended in publish order,
    so delivery is ordered per subscription and unordered across them. When a
    mailbox is full the oldest event is discarded; subscribers are expected to
    backfill from storage.
    """

    def __init__(self, queue_size: int = 256):
        self.queue_size = queue_size
        self.connected = True
        self._subscriptions: list[FeedSubscription] = []

    def attach(self, channel_key: str, spec: EventSpec) -> FeedSubscription:
        if not self.connected:
            raise FeedUnavailable("realtime feed is not reachable")
        sub = FeedSubscription(channel_key, spec, asyncio.Queue(maxsize=self.queue_size))
        self._subscriptions.append(sub)
        logger.debug("Feed attach %s %s", channel_key, spec)
        return sub

    def detach(self, sub: FeedSubscription) -> None:
        if sub in self._subscriptions:
            self._subscriptions.remove(sub)
        self._close(sub)

    def publish(self, table: str, event: str, new: dict[str, Any]) -> int:
        if not self.connected:
            logger.warning("Feed offline, dropping %s %s event", table, event)
            return 0

        change = ChangeEvent(table, event, dict(new))
        delivered = 0
        for sub in list(self._subscriptions):
            if sub.closed or not sub.spec.matches(change):
                continue
            if sub.queue.full():
                sub.queue.get_nowait()
                logger.warning("Mailbox full on %s, dropped oldest event", sub.channel_key)
            sub.queue.put_nowait(change)
            delivered += 1
        return delivered

    def disconnect(self) -> None:
        """Drop every subscriber, as a transport outage does."""
        self.connected = False
        subs, self._subscriptions = self._subscriptions, []
        for sub in subs:
            self._close(sub)
        logger.warning("Feed disconnected, %s subscriptions dropped", len(subs))

    def reconnect(self) -> None:
        self.connected = True

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    @staticmethod
    def _close(sub: FeedSubscription) -> None:
        if sub.closed:
            return
        sub.closed = True
        if sub.queue.full():
            sub.queue.get_nowait()
        # None wakes the consumer and tells it the subscription is gone
        sub.queue.put_nowait(None)
