from __future__ import annotations

import secrets
from dataclasses import dataclass
from typing import Dict, Iterable, List, Tuple

from .directory import UserDirectory
from .sessions import _now_ms


THREAD_TEAM = "TEAM"
THREAD_DIRECT = "DIRECT"

RECEIPT_SENT = "SENT"
RECEIPT_DELIVERED = "DELIVERED"
RECEIPT_READ = "READ"
RECEIPT_RANK = {RECEIPT_SENT: 0, RECEIPT_DELIVERED: 1, RECEIPT_READ: 2}


@dataclass
class Thread:
    id: str
    type: str
    member_ids: Tuple[str, ...]
    created_at_ms: int


def _new_thread_id() -> str:
    return f"thr_{secrets.token_hex(6)}"


class ThreadStore:
    """Threads, per-user unread counters and per-message receipts."""

    def __init__(self, directory: UserDirectory) -> None:
        self._directory = directory
        self._threads: Dict[str, Thread] = {}
        self._direct_index: Dict[frozenset, str] = {}
        self._unread: Dict[Tuple[str, str], int] = {}
        self._receipts: Dict[str, Dict[str, str]] = {}
        team = Thread(id=_new_thread_id(), type=THREAD_TEAM, member_ids=(), created_at_ms=_now_ms())
        self._threads[team.id] = team
        self._team_id = team.id

    @property
    def team_thread(self) -> Thread:
        return self._threads[self._team_id]

    def get(self, thread_id: str) -> Thread | None:
        return self._threads.get(thread_id)

    def require(self, thread_id: str) -> Thread:
        thread = self._threads.get(thread_id)
        if thread is None:
            raise LookupError("unknown thread")
        return thread

    def participants(self, thread_id: str) -> List[str]:
        thread = self.require(thread_id)
        if thread.type == THREAD_TEAM:
            return self._directory.ids()
        return list(thread.member_ids)

    def is_participant(self, thread_id: str, user_id: str) -> bool:
        thread = self._threads.get(thread_id)
        if thread is None:
            return False
        if thread.type == THREAD_TEAM:
            return user_id in self._directory
        return user_id in thread.member_ids

    def require_participant(self, thread_id: str, user_id: str) -> Thread:
        thread = self.require(thread_id)
        if not self.is_participant(thread_id, user_id):
            raise PermissionError("forbidden")
        return thread

    def threads_for(self, user_id: str) -> List[Thread]:
        """Team thread first, then direct threads newest first."""

        direct = [
            thread
            for thread in self._threads.values()
            if thread.type == THREAD_DIRECT and user_id in thread.member_ids
        ]
        direct.sort(key=lambda thread: thread.created_at_ms, reverse=True)
        return [self.team_thread, *direct]

    def get_or_create_direct(self, user_id: str, peer_user_id: str) -> tuple[Thread, bool]:
        if user_id == peer_user_id:
            raise ValueError("cannot open a direct thread with yourself")
        if peer_user_id not in self._directory:
            raise LookupError("unknown peer")
        key = frozenset((user_id, peer_user_id))
        existing_id = self._direct_index.get(key)
        if existing_id is not None:
            return self._threads[existing_id], False
        thread = Thread(
            id=_new_thread_id(),
            type=THREAD_DIRECT,
            member_ids=(user_id, peer_user_id),
            created_at_ms=_now_ms(),
        )
        self._threads[thread.id] = thread
        self._direct_index[key] = thread.id
        return thread, True

    def increment_unread(self, thread_id: str, recipients: Iterable[str]) -> None:
        for user_id in recipients:
            key = (thread_id, user_id)
            self._unread[key] = self._unread.get(key, 0) + 1

    def reset_unread(self, thread_id: str, user_id: str) -> int:
        return self._unread.pop((thread_id, user_id), 0)

    def unread_count(self, thread_id: str, user_id: str) -> int:
        return self._unread.get((thread_id, user_id), 0)

    def unread_for(self, user_id: str) -> Dict[str, int]:
        return {thread.id: self.unread_count(thread.id, user_id) for thread in self.threads_for(user_id)}

    def record_receipt(self, message_id: str, user_id: str, status: str) -> bool:
        """Advance a receipt; returns ``False`` when it would not move forward."""

        if status not in RECEIPT_RANK:
            raise ValueError(f"unknown receipt status: {status}")
        per_message = self._receipts.setdefault(message_id, {})
        current = per_message.get(user_id)
        if current is not None and RECEIPT_RANK[current] >= RECEIPT_RANK[status]:
            return False
        per_message[user_id] = status
        return True

    def receipts(self, message_id: str) -> List[Tuple[str, str]]:
        return sorted(self._receipts.get(message_id, {}).items())
