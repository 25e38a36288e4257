from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Dict, List, Set


Callback = Callable[[dict], None]


@dataclass
class Subscription:
    session_id: str
    user_id: str
    callback: Callback
    rooms: Set[str] = field(default_factory=set)

    def deliver(self, frame: dict) -> None:
        self.callback(frame)


class SubscriptionHub:
    """Registers push sessions and fans frames out per user or per room."""

    def __init__(self) -> None:
        self._subscriptions: Dict[str, List[Subscription]] = {}

    def subscribe(self, session_id: str, user_id: str, callback: Callback) -> Subscription:
        subscription = Subscription(session_id=session_id, user_id=user_id, callback=callback)
        self._subscriptions.setdefault(user_id, []).append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subs = self._subscriptions.get(subscription.user_id)
        if not subs:
            return
        try:
            subs.remove(subscription)
        except ValueError:
            return
        if not subs:
            self._subscriptions.pop(subscription.user_id, None)

    def join(self, subscription: Subscription, thread_id: str) -> None:
        subscription.rooms.add(thread_id)

    def leave(self, subscription: Subscription, thread_id: str) -> None:
        subscription.rooms.discard(thread_id)

    def is_online(self, user_id: str) -> bool:
        return bool(self._subscriptions.get(user_id))

    def publish_to_user(self, user_id: str, frame: dict) -> int:
        """Deliver to every session of ``user_id``; returns the session count."""

        subs = list(self._subscriptions.get(user_id, []))
        for subscription in subs:
            subscription.deliver(frame)
        return len(subs)

    def publish_to_room(self, thread_id: str, frame: dict, *, exclude_user: str | None = None) -> None:
        for user_id, subs in list(self._subscriptions.items()):
            if user_id == exclude_user:
                continue
            for subscription in list(subs):
                if thread_id in subscription.rooms:
                    subscription.deliver(frame)

    def publish_to_all(self, frame: dict, *, exclude_user: str | None = None) -> None:
        for user_id, subs in list(self._subscriptions.items()):
            if user_id == exclude_user:
                continue
            for subscription in list(subs):
                subscription.deliver(frame)

    def online_users(self) -> List[str]:
        return sorted(user_id for user_id, subs in self._subscriptions.items() if subs)
