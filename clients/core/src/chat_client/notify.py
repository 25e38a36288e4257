from __future__ import annotations

import logging
from collections import deque
from typing import Callable, Optional

from .models import Message
from .preferences import Preferences

logger = logging.getLogger(__name__)

NotifySink = Callable[[Message], None]


class Notifier:
    """Decides whether an arrival deserves a sound, at most once per message id."""

    def __init__(
        self,
        viewer_id: str,
        preferences: Preferences,
        *,
        sink: Optional[NotifySink] = None,
        max_tracked: int = 512,
    ) -> None:
        self.viewer_id = viewer_id
        self.preferences = preferences
        self.window_focused = True
        self._sink = sink
        self._max_tracked = max_tracked
        self._seen_order: deque[str] = deque()
        self._seen: set[str] = set()

    def _record(self, message_id: str) -> bool:
        if message_id in self._seen:
            return True
        self._seen_order.append(message_id)
        self._seen.add(message_id)
        if len(self._seen_order) > self._max_tracked:
            evicted = self._seen_order.popleft()
            self._seen.discard(evicted)
        return False

    def mark_processed(self, message_id: str) -> None:
        self._record(message_id)

    def consider(self, message: Message, *, thread_focused: bool) -> bool:
        if message.sender_id == self.viewer_id:
            return False
        if self._record(message.id):
            return False
        if thread_focused and self.window_focused:
            return False
        if not self.preferences.sound_enabled:
            return False

        logger.debug("notifying", extra={"thread_id": message.thread_id, "message_id": message.id})
        if self._sink is not None:
            try:
                self._sink(message)
            except Exception:
                logger.exception("notification sink failed")
        return True
