"""Admin and customer chat notifications."""
from .read_status import InMemoryReadStatusStore, ReadStatus, RedisReadStatusStore
from .templates import NotificationContext, NotificationMessage
from .transport import BotApiSender, MessageSender, SentMessage

__all__ = [
    "BotApiSender",
    "InMemoryReadStatusStore",
    "MessageSender",
    "NotificationContext",
    "NotificationMessage",
    "ReadStatus",
    "RedisReadStatusStore",
    "SentMessage",
]
