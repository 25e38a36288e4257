"""Gateway operations shared by the HTTP routes and the push channel."""

from __future__ import annotations

import logging
from typing import Any, Dict, List

from .directory import UserDirectory
from .hub import SubscriptionHub
from .log import MessageLog, StoredMessage
from .sessions import SessionStore, _now_ms
from .threads import (
    RECEIPT_DELIVERED,
    RECEIPT_READ,
    RECEIPT_SENT,
    THREAD_DIRECT,
    Thread,
    ThreadStore,
)

logger = logging.getLogger(__name__)

MAX_TEXT_LENGTH = 4000


class Runtime:
    def __init__(
        self,
        *,
        directory: UserDirectory,
        threads: ThreadStore,
        log: MessageLog,
        hub: SubscriptionHub,
        sessions: SessionStore,
    ) -> None:
        self.directory = directory
        self.threads = threads
        self.log = log
        self.hub = hub
        self.sessions = sessions

    def message_to_wire(self, message: StoredMessage) -> Dict[str, Any]:
        sender = self.directory.get(message.sender_id)
        return {
            "id": message.id,
            "thread_id": message.thread_id,
            "seq": message.seq,
            "sender_id": message.sender_id,
            "sender": sender.to_wire() if sender is not None else None,
            "text": message.text,
            "client_msg_id": message.client_msg_id,
            "created_at": message.created_at_ms,
            "receipts": [
                {"user_id": user_id, "status": status}
                for user_id, status in self.threads.receipts(message.id)
            ],
        }

    def thread_summary(self, thread: Thread, viewer_id: str) -> Dict[str, Any]:
        latest = self.log.latest(thread.id)
        last_message = None
        if latest is not None:
            sender = self.directory.get(latest.sender_id)
            last_message = {
                "id": latest.id,
                "text": latest.text,
                "sender": sender.to_wire() if sender is not None else None,
                "created_at": latest.created_at_ms,
            }
        participants: List[Dict[str, str]] = []
        if thread.type == THREAD_DIRECT:
            for member_id in thread.member_ids:
                if member_id == viewer_id:
                    continue
                user = self.directory.get(member_id)
                if user is not None:
                    participants.append(user.to_wire())
        return {
            "id": thread.id,
            "type": thread.type,
            "unread_count": self.threads.unread_count(thread.id, viewer_id),
            "last_message": last_message,
            "participants": participants,
        }

    def unread_snapshot(self, user_id: str) -> Dict[str, Any]:
        per_thread = self.threads.unread_for(user_id)
        return {"total_unread": sum(per_thread.values()), "per_thread": per_thread}

    def send_message(
        self,
        sender_id: str,
        thread_id: str,
        text: Any,
        client_msg_id: Any,
    ) -> tuple[StoredMessage, bool]:
        """Persist a message and fan it out; idempotent on ``client_msg_id``."""

        if not isinstance(text, str) or not text.strip():
            raise ValueError("text required")
        if len(text) > MAX_TEXT_LENGTH:
            raise ValueError("text too long")
        if client_msg_id is not None and (not isinstance(client_msg_id, str) or not client_msg_id):
            raise ValueError("client_msg_id must be a non-empty string")
        self.threads.require_participant(thread_id, sender_id)

        message, created = self.log.append(thread_id, sender_id, text.strip(), client_msg_id, _now_ms())
        if not created:
            logger.info(
                "duplicate send collapsed",
                extra={"thread_id": thread_id, "message_id": message.id, "client_msg_id": client_msg_id},
            )
            return message, False

        recipients = [user_id for user_id in self.threads.participants(thread_id) if user_id != sender_id]
        for user_id in [sender_id, *recipients]:
            self.threads.record_receipt(message.id, user_id, RECEIPT_SENT)
        self.threads.increment_unread(thread_id, recipients)

        frame = {"v": 1, "t": "new_message", "body": {"message": self.message_to_wire(message)}}
        self.hub.publish_to_user(sender_id, frame)
        for user_id in recipients:
            delivered = self.hub.publish_to_user(user_id, frame)
            self.hub.publish_to_user(
                user_id, {"v": 1, "t": "unread_update", "body": self.unread_snapshot(user_id)}
            )
            if delivered and self.threads.record_receipt(message.id, user_id, RECEIPT_DELIVERED):
                self._publish_receipt(message, user_id, RECEIPT_DELIVERED)
        return message, True

    def mark_read(self, user_id: str, thread_id: str) -> int:
        """Reset the caller's unread counter and advance receipts to READ."""

        self.threads.require_participant(thread_id, user_id)
        cleared = self.threads.reset_unread(thread_id, user_id)
        latest = self.log.latest(thread_id)
        if latest is not None:
            for message in self.log.list_upto(thread_id, latest.seq):
                if message.sender_id == user_id:
                    continue
                if self.threads.record_receipt(message.id, user_id, RECEIPT_READ):
                    self._publish_receipt(message, user_id, RECEIPT_READ)
        self.hub.publish_to_user(user_id, {"v": 1, "t": "unread_update", "body": self.unread_snapshot(user_id)})
        return cleared

    def _publish_receipt(self, message: StoredMessage, user_id: str, status: str) -> None:
        self.hub.publish_to_user(
            message.sender_id,
            {
                "v": 1,
                "t": "receipt",
                "body": {
                    "thread_id": message.thread_id,
                    "message_id": message.id,
                    "user_id": user_id,
                    "status": status,
                },
            },
        )

    def session_started(self, user_id: str) -> None:
        """Announce ``user_id`` as online when this is its first live session."""

        if len(self.sessions.active_for(user_id)) == 1:
            self._publish_presence(user_id, True)

    def session_closed(self, user_id: str) -> None:
        if not self.sessions.active_for(user_id):
            self._publish_presence(user_id, False)

    def _publish_presence(self, user_id: str, online: bool) -> None:
        logger.info("presence changed", extra={"user_id": user_id, "online": online})
        self.hub.publish_to_all(
            {"v": 1, "t": "presence", "body": {"user_id": user_id, "online": online}},
            exclude_user=user_id,
        )
