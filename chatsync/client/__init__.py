from chatsync.client.arbitration import ContextStorage, SingleSessionGuard
from chatsync.client.messages import ConfirmedMessage, PendingMessage, SessionSnapshot
from chatsync.client.operations_client import OperationsClient
from chatsync.client.phone_calls import PhoneCallTracker
from chatsync.client.reconciliation import merge_snapshot, reconcile
from chatsync.client.session_manager import ChatSessionManager

__all__ = [
    "ContextStorage",
    "SingleSessionGuard",
    "ConfirmedMessage",
    "PendingMessage",
    "SessionSnapshot",
    "OperationsClient",
    "PhoneCallTracker",
    "merge_snapshot",
    "reconcile",
    "ChatSessionManager",
]
