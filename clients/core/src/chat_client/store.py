from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from .models import LastMessage, Message, Thread
from .reconcile import APPLY_DUPLICATE, Timeline
from .typing_state import DEFAULT_TYPING_EXPIRY_S, TypingTracker
from .unread import UnreadTracker

logger = logging.getLogger(__name__)

CHANGE_THREADS = "threads"
CHANGE_TIMELINE = "timeline"
CHANGE_UNREAD = "unread"
CHANGE_TYPING = "typing"
CHANGE_CONNECTION = "connection"
CHANGE_FOCUS = "focus"
CHANGE_PRESENCE = "presence"

Listener = Callable[[str, Optional[str]], None]


class ChatStore:
    """Single owner of client chat state.

    Every mutation goes through a method here and notifies listeners exactly
    once with ``(change_kind, thread_id)``.
    """

    def __init__(self, viewer_id: str, *, typing_expiry_s: float = DEFAULT_TYPING_EXPIRY_S) -> None:
        self.viewer_id = viewer_id
        self.threads: Dict[str, Thread] = {}
        self.unread = UnreadTracker(viewer_id)
        self.typing = TypingTracker(viewer_id, expiry_s=typing_expiry_s)
        self.connected = False
        self.online_users: Set[str] = set()
        self._timelines: Dict[str, Timeline] = {}
        self._placeholder_threads: Dict[str, str] = {}
        self._listeners: List[Listener] = []

    @property
    def focused_thread_id(self) -> Optional[str]:
        return self.unread.focused_thread_id

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, kind: str, thread_id: Optional[str] = None) -> None:
        for listener in list(self._listeners):
            try:
                listener(kind, thread_id)
            except Exception:
                logger.exception("store listener failed", extra={"change": kind, "thread_id": thread_id})

    def timeline(self, thread_id: str) -> Timeline:
        timeline = self._timelines.get(thread_id)
        if timeline is None:
            timeline = Timeline(thread_id)
            self._timelines[thread_id] = timeline
        return timeline

    def messages(self, thread_id: str) -> List[Message]:
        return self.timeline(thread_id).messages

    def thread_list(self) -> List[Thread]:
        """Most recent activity first; threads without messages keep their order at the end."""

        return sorted(
            self.threads.values(),
            key=lambda thread: thread.last_message.created_at if thread.last_message is not None else -1,
            reverse=True,
        )

    def set_threads(self, threads: Iterable[Thread]) -> None:
        self.threads = {thread.id: thread for thread in threads}
        self.unread.replace({thread.id: thread.unread_count for thread in self.threads.values()})
        self._sync_thread_counts()
        self._notify(CHANGE_THREADS)

    def upsert_thread(self, thread: Thread) -> None:
        self.threads[thread.id] = thread
        self._notify(CHANGE_THREADS, thread.id)

    def _sync_thread_counts(self) -> None:
        for thread in self.threads.values():
            thread.unread_count = self.unread.count(thread.id)

    def set_focus(self, thread_id: Optional[str]) -> None:
        self.unread.focus(thread_id)
        self._notify(CHANGE_FOCUS, thread_id)

    def set_connected(self, connected: bool) -> None:
        if self.connected == connected:
            return
        self.connected = connected
        self._notify(CHANGE_CONNECTION)

    def set_online_users(self, user_ids: Iterable[Any]) -> None:
        online = {user_id for user_id in user_ids if isinstance(user_id, str)}
        if online == self.online_users:
            return
        self.online_users = online
        self._notify(CHANGE_PRESENCE)

    def set_presence(self, user_id: str, online: bool) -> bool:
        if online == (user_id in self.online_users):
            return False
        if online:
            self.online_users.add(user_id)
        else:
            self.online_users.discard(user_id)
        self._notify(CHANGE_PRESENCE)
        return True

    def add_placeholder(self, message: Message) -> None:
        self.timeline(message.thread_id).add_placeholder(message)
        if message.client_msg_id:
            self._placeholder_threads[message.client_msg_id] = message.thread_id
        self._notify(CHANGE_TIMELINE, message.thread_id)

    def placeholder(self, client_msg_id: str) -> Optional[Message]:
        thread_id = self._placeholder_threads.get(client_msg_id)
        if thread_id is None:
            return None
        return self.timeline(thread_id).placeholder(client_msg_id)

    def _update_last_message(self, message: Message) -> None:
        thread = self.threads.get(message.thread_id)
        if thread is None:
            return
        current = thread.last_message
        newest_seq = self.timeline(message.thread_id).newest_seq
        if current is None or message.seq == newest_seq:
            thread.last_message = LastMessage(
                id=message.id,
                text=message.text,
                created_at=message.created_at,
                sender=message.sender,
            )

    def apply_message(self, message: Message) -> str:
        outcome = self.timeline(message.thread_id).apply(message)
        if outcome == APPLY_DUPLICATE:
            return outcome
        if message.client_msg_id:
            self._placeholder_threads.pop(message.client_msg_id, None)
        self._update_last_message(message)
        self._notify(CHANGE_TIMELINE, message.thread_id)
        return outcome

    def load_history(self, thread_id: str, messages: Iterable[Message]) -> List[Message]:
        timeline = self.timeline(thread_id)
        added = timeline.load_history(messages)
        for message in added:
            if message.client_msg_id:
                self._placeholder_threads.pop(message.client_msg_id, None)
        if added:
            self._update_last_message(max(added, key=lambda entry: entry.seq))
        self._notify(CHANGE_TIMELINE, thread_id)
        return added

    def mark_failed(self, client_msg_id: str) -> bool:
        thread_id = self._placeholder_threads.get(client_msg_id)
        if thread_id is None or self.timeline(thread_id).mark_failed(client_msg_id) is None:
            return False
        self._notify(CHANGE_TIMELINE, thread_id)
        return True

    def mark_sending(self, client_msg_id: str) -> Optional[Message]:
        thread_id = self._placeholder_threads.get(client_msg_id)
        if thread_id is None:
            return None
        message = self.timeline(thread_id).mark_sending(client_msg_id)
        if message is not None:
            self._notify(CHANGE_TIMELINE, thread_id)
        return message

    def apply_receipt(self, thread_id: str, message_id: str, user_id: str, status: str) -> bool:
        if not self.timeline(thread_id).apply_receipt(message_id, user_id, status):
            return False
        self._notify(CHANGE_TIMELINE, thread_id)
        return True

    def record_inbound(self, message: Message) -> bool:
        if not self.unread.on_inbound(message):
            return False
        self._sync_thread_counts()
        self._notify(CHANGE_UNREAD, message.thread_id)
        return True

    def mark_read(self, thread_id: str) -> int:
        cleared = self.unread.mark_read(thread_id)
        if cleared:
            self._sync_thread_counts()
            self._notify(CHANGE_UNREAD, thread_id)
        return cleared

    def refresh_unread(self, total: Any = None, per_thread: Any = None) -> bool:
        in_sync = self.unread.refresh(total, per_thread)
        if in_sync:
            self._sync_thread_counts()
            self._notify(CHANGE_UNREAD)
        return in_sync

    def set_typing(self, thread_id: str, user_id: str, is_typing: bool) -> bool:
        if not self.typing.on_event(thread_id, user_id, is_typing):
            return False
        self._notify(CHANGE_TYPING, thread_id)
        return True

    def prune_typing(self) -> List[str]:
        changed = self.typing.prune()
        for thread_id in changed:
            self._notify(CHANGE_TYPING, thread_id)
        return changed
