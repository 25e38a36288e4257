from __future__ import annotations

import secrets
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple


@dataclass(frozen=True)
class StoredMessage:
    """An immutable message record owned by the gateway."""

    id: str
    thread_id: str
    seq: int
    sender_id: str
    text: str
    client_msg_id: Optional[str]
    created_at_ms: int


def _new_message_id() -> str:
    return f"msg_{secrets.token_hex(8)}"


class MessageLog:
    """In-memory, append-only message log with per-sender idempotency."""

    def __init__(self) -> None:
        self._messages: Dict[str, List[StoredMessage]] = {}
        self._idempotency: Dict[Tuple[str, str, str], StoredMessage] = {}

    def append(
        self,
        thread_id: str,
        sender_id: str,
        text: str,
        client_msg_id: Optional[str],
        created_at_ms: int,
    ) -> tuple[StoredMessage, bool]:
        """Append a message or return the existing one for the idempotency key.

        Sequence numbers are monotonic per thread starting at 1. When the same
        ``(thread_id, sender_id, client_msg_id)`` is appended again the original
        message is returned with ``created`` set to ``False``.
        """

        key = None
        if client_msg_id:
            key = (thread_id, sender_id, client_msg_id)
            existing = self._idempotency.get(key)
            if existing is not None:
                return existing, False

        seq = len(self._messages.get(thread_id, [])) + 1
        message = StoredMessage(
            id=_new_message_id(),
            thread_id=thread_id,
            seq=seq,
            sender_id=sender_id,
            text=text,
            client_msg_id=client_msg_id,
            created_at_ms=created_at_ms,
        )
        self._messages.setdefault(thread_id, []).append(message)
        if key is not None:
            self._idempotency[key] = message
        return message, True

    def latest(self, thread_id: str) -> StoredMessage | None:
        messages = self._messages.get(thread_id)
        if not messages:
            return None
        return messages[-1]

    def list_before(
        self, thread_id: str, before_seq: int | None = None, limit: int = 50
    ) -> list[StoredMessage]:
        """Return the newest ``limit`` messages older than ``before_seq``.

        Results are ordered by ascending ``seq`` so a page can be rendered as is.
        """

        if limit < 0:
            raise ValueError("limit must be non-negative")
        messages = self._messages.get(thread_id, [])
        end = len(messages) if before_seq is None else max(0, min(before_seq - 1, len(messages)))
        start = max(0, end - limit)
        return list(messages[start:end])

    def list_upto(self, thread_id: str, seq: int) -> list[StoredMessage]:
        messages = self._messages.get(thread_id, [])
        return list(messages[: max(0, seq)])
