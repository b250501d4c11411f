from chatsync.services.active_sessions import ActiveSessionService
from chatsync.services.notifications import LogNotifier, Notifier, RecordingNotifier, TelegramNotifier
from chatsync.services.operations import ChatOperations
from chatsync.services.phone_calls import PhoneCallService, is_expired
from chatsync.services.results import ChatOperationError, OperationResult
from chatsync.services.staleness import StaleSessionReaper, is_stale

__all__ = [
    "ActiveSessionService",
    "ChatOperations",
    "ChatOperationError",
    "OperationResult",
    "PhoneCallService",
    "is_expired",
    "StaleSessionReaper",
    "is_stale",
    "Notifier",
    "LogNotifier",
    "RecordingNotifier",
    "TelegramNotifier",
]
