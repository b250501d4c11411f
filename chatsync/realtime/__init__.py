from chatsync.realtime.feed import ChangeEvent, ChangeFeed, EventSpec, FeedUnavailable
from chatsync.realtime.monitor import ConnectionMonitor, classify_heartbeat
from chatsync.realtime.transport import ConnectionStatus, RealtimeTransport

__all__ = [
    "ChangeEvent",
    "ChangeFeed",
    "EventSpec",
    "FeedUnavailable",
    "ConnectionMonitor",
    "classify_heartbeat",
    "ConnectionStatus",
    "RealtimeTransport",
]
