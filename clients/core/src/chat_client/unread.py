from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional

from .models import Message

logger = logging.getLogger(__name__)


class UnreadTracker:
    """Per-thread unread counters for one viewer.

    ``total`` is never stored; it is always the sum of the per-thread counts, so
    the badge and the thread list cannot disagree.
    """

    def __init__(self, viewer_id: str) -> None:
        self.viewer_id = viewer_id
        self.focused_thread_id: Optional[str] = None
        self._counts: Dict[str, int] = {}

    @property
    def total(self) -> int:
        return sum(self._counts.values())

    def count(self, thread_id: str) -> int:
        return self._counts.get(thread_id, 0)

    def per_thread(self) -> Dict[str, int]:
        return dict(self._counts)

    def focus(self, thread_id: Optional[str]) -> None:
        self.focused_thread_id = thread_id

    def on_inbound(self, message: Message) -> bool:
        if message.sender_id == self.viewer_id:
            return False
        if message.thread_id == self.focused_thread_id:
            return False
        self._counts[message.thread_id] = self.count(message.thread_id) + 1
        return True

    def mark_read(self, thread_id: str) -> int:
        cleared = self._counts.get(thread_id, 0)
        if cleared:
            self._counts[thread_id] = 0
        return cleared

    def replace(self, per_thread: Mapping[str, Any]) -> None:
        counts: Dict[str, int] = {}
        for thread_id, value in per_thread.items():
            if not isinstance(thread_id, str) or not isinstance(value, int) or isinstance(value, bool):
                logger.warning("ignoring malformed unread entry", extra={"thread_id": thread_id})
                continue
            counts[thread_id] = max(0, value)
        if self.focused_thread_id in counts:
            counts[self.focused_thread_id] = 0
        self._counts = counts

    def refresh(self, total: Any = None, per_thread: Any = None) -> bool:
        """Apply an ``unread_update``; returns ``False`` when the cache is stale.

        Per-thread data replaces the cache outright. A bare total is only
        compared against the local sum; a mismatch means the thread list has
        to be refetched.
        """

        if isinstance(per_thread, Mapping):
            self.replace(per_thread)
            return True
        if isinstance(total, int) and not isinstance(total, bool):
            if total != self.total:
                logger.info("unread total out of sync", extra={"local_total": self.total, "remote_total": total})
                return False
        return True
