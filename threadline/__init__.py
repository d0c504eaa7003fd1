"""threadline: realtime group-chat synchronization core."""

from .errors import (
    ChatError,
    InvalidScope,
    MalformedRecord,
    MessageNotFound,
    NotAuthenticated,
    PermissionDenied,
    TransientFeedError,
)
from .feed import ChangeFeed, MemoryFeed, Subscription
from .models import FeedEvent, Message, ReplyQuote, Scope, Session
from .session import ChatSession

__all__ = [
    "ChangeFeed",
    "ChatError",
    "ChatSession",
    "FeedEvent",
    "InvalidScope",
    "MalformedRecord",
    "MemoryFeed",
    "Message",
    "MessageNotFound",
    "NotAuthenticated",
    "PermissionDenied",
    "ReplyQuote",
    "Scope",
    "Session",
    "Subscription",
    "TransientFeedError",
]
