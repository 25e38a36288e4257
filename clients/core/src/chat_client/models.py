"""Client-side message and thread records plus wire parsing."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

THREAD_TEAM = "TEAM"
THREAD_DIRECT = "DIRECT"

STATUS_SENDING = "sending"
STATUS_FAILED = "failed"

RECEIPT_SENT = "SENT"
RECEIPT_DELIVERED = "DELIVERED"
RECEIPT_READ = "READ"
RECEIPT_RANK = {RECEIPT_SENT: 0, RECEIPT_DELIVERED: 1, RECEIPT_READ: 2}

LOCAL_ID_PREFIX = "temp-"


@dataclass(frozen=True)
class Sender:
    id: str
    name: str
    email: str = ""
    role: str = ""


@dataclass(frozen=True)
class Message:
    """A timeline entry; local placeholders carry a ``status`` and no ``seq``."""

    id: str
    thread_id: str
    sender_id: str
    text: str
    created_at: int
    seq: Optional[int] = None
    sender: Optional[Sender] = None
    client_msg_id: Optional[str] = None
    receipts: Dict[str, str] = field(default_factory=dict)
    status: Optional[str] = None

    @property
    def is_local(self) -> bool:
        return self.id.startswith(LOCAL_ID_PREFIX)

    def with_status(self, status: str) -> "Message":
        return replace(self, status=status)

    def with_receipt(self, user_id: str, status: str) -> "Message":
        receipts = dict(self.receipts)
        receipts[user_id] = status
        return replace(self, receipts=receipts)


@dataclass(frozen=True)
class LastMessage:
    id: str
    text: str
    created_at: int
    sender: Optional[Sender] = None


@dataclass
class Thread:
    id: str
    type: str
    participants: List[Sender] = field(default_factory=list)
    unread_count: int = 0
    last_message: Optional[LastMessage] = None

    def title(self) -> str:
        if self.type == THREAD_TEAM:
            return "Team"
        names = [participant.name for participant in self.participants]
        return ", ".join(names) or self.id


def local_message_id(client_msg_id: str) -> str:
    return f"{LOCAL_ID_PREFIX}{client_msg_id}"


def advances_receipt(current: Optional[str], status: str) -> bool:
    """True when ``status`` moves a receipt strictly forward."""

    if not isinstance(status, str) or status not in RECEIPT_RANK:
        return False
    if current is None:
        return True
    return RECEIPT_RANK[status] > RECEIPT_RANK.get(current, -1)


def sender_from_wire(data: Any) -> Optional[Sender]:
    if not isinstance(data, dict):
        return None
    sender_id = data.get("id")
    if not isinstance(sender_id, str) or not sender_id:
        return None
    return Sender(
        id=sender_id,
        name=str(data.get("name") or sender_id),
        email=str(data.get("email") or ""),
        role=str(data.get("role") or ""),
    )


def message_from_wire(data: Any) -> Optional[Message]:
    """Parse a gateway message; malformed payloads are logged and dropped."""

    if not isinstance(data, dict):
        logger.warning("dropping malformed message payload", extra={"payload_type": type(data).__name__})
        return None
    message_id = data.get("id")
    thread_id = data.get("thread_id")
    seq = data.get("seq")
    text = data.get("text")
    sender = sender_from_wire(data.get("sender"))
    sender_id = data.get("sender_id")
    if sender is not None and (not isinstance(sender_id, str) or not sender_id):
        sender_id = sender.id
    if (
        not isinstance(message_id, str)
        or not message_id
        or not isinstance(thread_id, str)
        or not thread_id
        or sender is None
        or not isinstance(sender_id, str)
        or not isinstance(seq, int)
        or not isinstance(text, str)
    ):
        logger.warning("dropping malformed message", extra={"message_id": message_id, "thread_id": thread_id})
        return None

    receipts: Dict[str, str] = {}
    for entry in data.get("receipts") or []:
        if not isinstance(entry, dict):
            continue
        user_id = entry.get("user_id")
        status = entry.get("status")
        if isinstance(user_id, str) and advances_receipt(receipts.get(user_id), status):
            receipts[user_id] = status

    created_at = data.get("created_at")
    client_msg_id = data.get("client_msg_id")
    return Message(
        id=message_id,
        thread_id=thread_id,
        sender_id=sender_id,
        text=text,
        created_at=created_at if isinstance(created_at, int) else 0,
        seq=seq,
        sender=sender,
        client_msg_id=client_msg_id if isinstance(client_msg_id, str) and client_msg_id else None,
        receipts=receipts,
    )


def thread_from_wire(data: Any) -> Optional[Thread]:
    if not isinstance(data, dict):
        return None
    thread_id = data.get("id")
    thread_type = data.get("type")
    if not isinstance(thread_id, str) or thread_type not in {THREAD_TEAM, THREAD_DIRECT}:
        logger.warning("dropping malformed thread", extra={"thread_id": thread_id})
        return None

    participants = [
        sender for sender in (sender_from_wire(entry) for entry in data.get("participants") or []) if sender
    ]
    last_message = None
    raw_last = data.get("last_message")
    if isinstance(raw_last, dict) and isinstance(raw_last.get("id"), str):
        created_at = raw_last.get("created_at")
        last_message = LastMessage(
            id=raw_last["id"],
            text=str(raw_last.get("text") or ""),
            created_at=created_at if isinstance(created_at, int) else 0,
            sender=sender_from_wire(raw_last.get("sender")),
        )
    unread_count = data.get("unread_count")
    return Thread(
        id=thread_id,
        type=thread_type,
        participants=participants,
        unread_count=unread_count if isinstance(unread_count, int) and unread_count > 0 else 0,
        last_message=last_message,
    )
