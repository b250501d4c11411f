from chatsync.models.base import Base
from chatsync.models.chat import ChatSession
from chatsync.models.message import ChatMessage
from chatsync.models.phone_call import PhoneCallRequest
from chatsync.models.active_session import ActiveSessionRecord

__all__ = [
    "Base",
    "ChatSession",
    "ChatMessage",
    "PhoneCallRequest",
    "ActiveSessionRecord",
]
