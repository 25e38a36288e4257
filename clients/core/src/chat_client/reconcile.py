"""Per-thread reconciliation of optimistic placeholders with confirmed messages.

A :class:`Timeline` keeps two runs of messages: confirmed messages ordered by
their server ``seq`` followed by local placeholders in creation order. Every
incoming confirmed message goes through :meth:`Timeline.apply`, which
deduplicates on the server id first and on ``client_msg_id`` second, so the
push channel echo, the HTTP response, a history fetch and a replay after a
reconnect can all deliver the same message without it showing up twice.
"""

from __future__ import annotations

import bisect
import logging
from typing import Dict, Iterable, List, Optional

from .models import STATUS_FAILED, STATUS_SENDING, Message, advances_receipt

logger = logging.getLogger(__name__)

APPLY_DUPLICATE = "duplicate"
APPLY_REPLACED = "replaced"
APPLY_APPENDED = "appended"


class Timeline:
    def __init__(self, thread_id: str) -> None:
        self.thread_id = thread_id
        self._confirmed: List[Message] = []
        self._pending: List[Message] = []
        self._by_id: Dict[str, Message] = {}

    @property
    def messages(self) -> List[Message]:
        return [*self._confirmed, *self._pending]

    @property
    def oldest_seq(self) -> Optional[int]:
        if not self._confirmed:
            return None
        return self._confirmed[0].seq

    @property
    def newest_seq(self) -> Optional[int]:
        if not self._confirmed:
            return None
        return self._confirmed[-1].seq

    def __len__(self) -> int:
        return len(self._confirmed) + len(self._pending)

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._by_id

    def get(self, message_id: str) -> Optional[Message]:
        return self._by_id.get(message_id)

    def placeholder(self, client_msg_id: str) -> Optional[Message]:
        for message in self._pending:
            if message.client_msg_id == client_msg_id:
                return message
        return None

    def add_placeholder(self, message: Message) -> None:
        if not message.is_local or not message.client_msg_id:
            raise ValueError("placeholders need a local id and a client_msg_id")
        if message.thread_id != self.thread_id:
            raise ValueError("placeholder belongs to another thread")
        if message.id in self._by_id:
            raise ValueError(f"duplicate placeholder: {message.id}")
        self._pending.append(message)
        self._by_id[message.id] = message

    def apply(self, message: Message) -> str:
        """Merge a confirmed message.

        Returns ``APPLY_DUPLICATE`` when the id is already present,
        ``APPLY_REPLACED`` when it took over a placeholder with the same
        ``client_msg_id`` and ``APPLY_APPENDED`` otherwise.
        """

        if message.is_local or message.seq is None:
            raise ValueError("only confirmed messages can be applied")
        if message.id in self._by_id:
            return APPLY_DUPLICATE

        replaced = False
        if message.client_msg_id:
            placeholder = self.placeholder(message.client_msg_id)
            if placeholder is not None:
                self._pending.remove(placeholder)
                del self._by_id[placeholder.id]
                replaced = True

        bisect.insort(self._confirmed, message, key=lambda entry: entry.seq)
        self._by_id[message.id] = message
        return APPLY_REPLACED if replaced else APPLY_APPENDED

    def load_history(self, messages: Iterable[Message]) -> List[Message]:
        """Merge a fetched page; returns only the messages that were new."""

        added: List[Message] = []
        for message in messages:
            if message.thread_id != self.thread_id:
                logger.warning(
                    "history message for another thread ignored",
                    extra={"thread_id": self.thread_id, "message_id": message.id},
                )
                continue
            if self.apply(message) != APPLY_DUPLICATE:
                added.append(message)
        return added

    def _swap_pending(self, old: Message, new: Message) -> None:
        self._pending[self._pending.index(old)] = new
        self._by_id[new.id] = new

    def mark_failed(self, client_msg_id: str) -> Optional[Message]:
        placeholder = self.placeholder(client_msg_id)
        if placeholder is None or placeholder.status != STATUS_SENDING:
            return None
        failed = placeholder.with_status(STATUS_FAILED)
        self._swap_pending(placeholder, failed)
        return failed

    def mark_sending(self, client_msg_id: str) -> Optional[Message]:
        """Flip a failed placeholder back to sending in place."""

        placeholder = self.placeholder(client_msg_id)
        if placeholder is None or placeholder.status != STATUS_FAILED:
            return None
        sending = placeholder.with_status(STATUS_SENDING)
        self._swap_pending(placeholder, sending)
        return sending

    def apply_receipt(self, message_id: str, user_id: str, status: str) -> bool:
        message = self._by_id.get(message_id)
        if message is None or message.is_local:
            return False
        if not advances_receipt(message.receipts.get(user_id), status):
            return False
        updated = message.with_receipt(user_id, status)
        index = bisect.bisect_left(self._confirmed, message.seq, key=lambda entry: entry.seq)
        while self._confirmed[index].id != message_id:
            index += 1
        self._confirmed[index] = updated
        self._by_id[message_id] = updated
        return True
