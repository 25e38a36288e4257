from __future__ import annotations

import time
from typing import Callable, Dict, List

DEFAULT_TYPING_EXPIRY_S = 3.0


class TypingTracker:
    """Who is typing in each thread; entries lapse without a refresh."""

    def __init__(
        self,
        viewer_id: str,
        *,
        expiry_s: float = DEFAULT_TYPING_EXPIRY_S,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.viewer_id = viewer_id
        self.expiry_s = expiry_s
        self._clock = clock
        self._typing: Dict[str, Dict[str, float]] = {}

    def on_event(self, thread_id: str, user_id: str, is_typing: bool) -> bool:
        """Record a typing event; returns ``True`` when the visible set changed."""

        if user_id == self.viewer_id:
            return False
        users = self._typing.setdefault(thread_id, {})
        if is_typing:
            was_visible = user_id in users and not self._expired(users[user_id])
            users[user_id] = self._clock() + self.expiry_s
            return not was_visible
        if users.pop(user_id, None) is None:
            return False
        if not users:
            self._typing.pop(thread_id, None)
        return True

    def _expired(self, deadline: float) -> bool:
        return deadline <= self._clock()

    def typing_users(self, thread_id: str) -> List[str]:
        users = self._typing.get(thread_id, {})
        return sorted(user_id for user_id, deadline in users.items() if not self._expired(deadline))

    def prune(self) -> List[str]:
        """Drop lapsed entries; returns the ids of threads that changed."""

        changed: List[str] = []
        for thread_id, users in list(self._typing.items()):
            lapsed = [user_id for user_id, deadline in users.items() if self._expired(deadline)]
            for user_id in lapsed:
                del users[user_id]
            if lapsed:
                changed.append(thread_id)
            if not users:
                del self._typing[thread_id]
        return changed
