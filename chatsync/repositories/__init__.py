from chatsync.repositories.chat_repo import ChatRepository
from chatsync.repositories.message_repo import MessageRepository
from chatsync.repositories.phone_call_repo import PhoneCallRepository
from chatsync.repositories.active_session_repo import ActiveSessionRepository

__all__ = [
    "ChatRepository",
    "MessageRepository",
    "PhoneCallRepository",
    "ActiveSessionRepository",
]
