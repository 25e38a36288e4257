"""Reference chat gateway: threads, message log, unread counters and push fanout."""

from .directory import User, UserDirectory, load_users
from .hub import Subscription, SubscriptionHub
from .log import MessageLog, StoredMessage
from .runtime import Runtime
from .server import main
from .threads import Thread, ThreadStore
from .ws_transport import create_app

__all__ = [
    "MessageLog",
    "Runtime",
    "StoredMessage",
    "Subscription",
    "SubscriptionHub",
    "Thread",
    "ThreadStore",
    "User",
    "UserDirectory",
    "create_app",
    "load_users",
    "main",
]
