"""Real-time chat delivery core: optimistic sends, reconciliation and unread tracking."""

from .config import ClientConfig
from .gateway_client import GatewayClient, GatewayError, UnauthorizedError
from .models import Message, Sender, Thread, message_from_wire, thread_from_wire
from .push_channel import PushChannel
from .reconcile import Timeline
from .send_pipeline import SendPipeline
from .session import ChatSession
from .store import ChatStore
from .unread import UnreadTracker

__all__ = [
    "ChatSession",
    "ChatStore",
    "ClientConfig",
    "GatewayClient",
    "GatewayError",
    "Message",
    "PushChannel",
    "Sender",
    "SendPipeline",
    "Thread",
    "Timeline",
    "UnauthorizedError",
    "UnreadTracker",
    "message_from_wire",
    "thread_from_wire",
]
