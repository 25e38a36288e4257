"""Client session: connects the store to the push channel and the gateway."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Coroutine, Dict, List, Optional, Set

import aiohttp

from .composer import Composer
from .config import ClientConfig
from .gateway_client import GatewayClient, GatewayError
from .models import Message, Sender, Thread, message_from_wire
from .notify import Notifier, NotifySink
from .preferences import Preferences, load_preferences, save_preferences
from .push_channel import (
    EVENT_CONNECTED,
    EVENT_DISCONNECTED,
    EVENT_ERROR,
    EVENT_NEW_MESSAGE,
    EVENT_PRESENCE,
    EVENT_RECEIPT,
    EVENT_TYPING,
    EVENT_UNREAD_UPDATE,
    PushChannel,
)
from .reconcile import APPLY_DUPLICATE
from .send_pipeline import SendPipeline
from .store import ChatStore

logger = logging.getLogger(__name__)


class ChatSession:
    def __init__(
        self,
        config: ClientConfig,
        *,
        http_session: Optional[aiohttp.ClientSession] = None,
        channel: Optional[PushChannel] = None,
        gateway: Optional[GatewayClient] = None,
        notify_sink: Optional[NotifySink] = None,
    ) -> None:
        self.config = config
        self.store = ChatStore(config.user_id, typing_expiry_s=config.typing_expiry_s)
        self.channel = channel or PushChannel(
            config.base_url,
            reconnect_delay_s=config.reconnect_delay_s,
            http_session=http_session,
        )
        self._owns_gateway = gateway is None
        self.gateway = gateway or GatewayClient(
            config.base_url,
            config.user_id,
            session=http_session,
            timeout_s=config.send_timeout_s,
        )
        if config.preferences_path is not None:
            self.preferences = load_preferences(config.preferences_path)
        else:
            self.preferences = Preferences()
        self.notifier = Notifier(config.user_id, self.preferences, sink=notify_sink)
        self.viewer = Sender(id=config.user_id, name=config.display_name or config.user_id)
        self.pipeline = SendPipeline(
            self.store,
            self.channel,
            self.gateway,
            sender=self.viewer,
            send_timeout_s=config.send_timeout_s,
        )
        self.composer = Composer(self._emit_typing, self.pipeline.send, quiet_s=config.typing_quiet_s)
        self._unsubscribers: List[Callable[[], None]] = []
        self._tasks: Set[asyncio.Task] = set()
        self._typing_timers: List[asyncio.TimerHandle] = []
        self._poll_task: Optional[asyncio.Task] = None
        self._has_connected = False
        self._started = False

    @property
    def connected(self) -> bool:
        return self.store.connected

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        handlers: Dict[str, Callable[[Dict[str, Any]], None]] = {
            EVENT_CONNECTED: self._on_connected,
            EVENT_DISCONNECTED: self._on_disconnected,
            EVENT_NEW_MESSAGE: self._on_new_message,
            EVENT_TYPING: self._on_typing,
            EVENT_UNREAD_UPDATE: self._on_unread_update,
            EVENT_RECEIPT: self._on_receipt,
            EVENT_ERROR: self._on_error,
            EVENT_PRESENCE: self._on_presence,
        }
        for event_type, handler in handlers.items():
            self._unsubscribers.append(self.channel.subscribe(event_type, handler))
        await self.channel.acquire(self.config.user_id)
        await self.refresh_threads()
        self._poll_task = asyncio.create_task(self._poll_loop())

    async def close(self) -> None:
        if not self._started:
            return
        self._started = False
        self.composer.close()
        if self._poll_task is not None:
            self._poll_task.cancel()
            await asyncio.gather(self._poll_task, return_exceptions=True)
            self._poll_task = None
        for timer in self._typing_timers:
            timer.cancel()
        self._typing_timers.clear()
        # let the final typing=false frame go out before the channel is released
        if self._tasks:
            await asyncio.wait(list(self._tasks), timeout=1.0)
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        await self.pipeline.aclose()
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        await self.channel.release()
        if self._owns_gateway:
            await self.gateway.close()

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("background task failed", exc_info=exc)

    async def refresh_threads(self) -> bool:
        try:
            threads = await self.gateway.list_threads()
        except GatewayError as exc:
            logger.warning("thread refresh failed", extra={"error": str(exc)})
            return False
        self.store.set_threads(threads)
        return True

    async def resync(self) -> None:
        """Catch up over HTTP after a reconnect or while degraded."""

        await self.refresh_threads()
        focused = self.store.focused_thread_id
        if focused is not None:
            await self.catch_up(focused)
            await self._mark_read_remote(focused)

    async def open_thread(self, thread_id: str) -> None:
        previous = self.store.focused_thread_id
        self.composer.switch_thread(thread_id)
        if previous is not None and previous != thread_id:
            await self.channel.leave_room(previous)
        self.store.set_focus(thread_id)
        await self.channel.join_room(thread_id)
        await self.catch_up(thread_id)
        await self.mark_read(thread_id)

    async def _fetch_page(self, thread_id: str, before_seq: Optional[int]) -> Optional[List[Message]]:
        try:
            return await self.gateway.fetch_messages(
                thread_id,
                limit=self.config.history_page_size,
                before_seq=before_seq,
            )
        except GatewayError as exc:
            logger.warning("history fetch failed", extra={"thread_id": thread_id, "error": str(exc)})
            return None

    def _merge_history(self, thread_id: str, messages: List[Message]) -> List[Message]:
        added = self.store.load_history(thread_id, messages)
        for message in added:
            self.notifier.mark_processed(message.id)
        return added

    async def load_history(self, thread_id: str, *, before_seq: Optional[int] = None) -> List[Message]:
        messages = await self._fetch_page(thread_id, before_seq)
        if messages is None:
            return []
        return self._merge_history(thread_id, messages)

    async def catch_up(self, thread_id: str) -> List[Message]:
        """Fetch everything newer than the local timeline.

        Pages backward from the latest message until the fetched range meets
        ``newest_seq``, so a long outage cannot leave a gap in the middle of
        the timeline. An empty timeline gets a single page.
        """

        newest = self.store.timeline(thread_id).newest_seq
        if newest is None:
            return await self.load_history(thread_id)
        added: List[Message] = []
        before_seq: Optional[int] = None
        while True:
            page = await self._fetch_page(thread_id, before_seq)
            if not page:
                break
            added.extend(self._merge_history(thread_id, page))
            if page[0].seq is None or page[0].seq <= newest + 1 or len(page) < self.config.history_page_size:
                break
            before_seq = page[0].seq
        return added

    async def load_older(self, thread_id: str) -> List[Message]:
        oldest = self.store.timeline(thread_id).oldest_seq
        if oldest is None or oldest <= 1:
            return []
        return await self.load_history(thread_id, before_seq=oldest)

    async def mark_read(self, thread_id: str) -> int:
        cleared = self.store.mark_read(thread_id)
        await self._mark_read_remote(thread_id)
        return cleared

    async def _mark_read_remote(self, thread_id: str) -> None:
        try:
            await self.gateway.mark_read(thread_id)
        except GatewayError as exc:
            logger.warning("mark read failed", extra={"thread_id": thread_id, "error": str(exc)})

    async def list_users(self) -> List[Sender]:
        return await self.gateway.list_users()

    async def create_direct_thread(self, peer_user_id: str) -> Optional[Thread]:
        thread = await self.gateway.create_direct_thread(peer_user_id)
        if thread is not None:
            self.store.upsert_thread(thread)
        return thread

    def update_draft(self, text: str) -> None:
        self.composer.update(text)

    def send(self, text: Optional[str] = None) -> Optional[str]:
        """Send the composer draft, or ``text`` to the focused thread."""

        return self.composer.submit(text)

    def retry(self, client_msg_id: str) -> bool:
        return self.pipeline.retry(client_msg_id)

    def set_window_focused(self, focused: bool) -> None:
        self.notifier.window_focused = focused
        thread_id = self.store.focused_thread_id
        if focused and thread_id is not None:
            self._spawn(self._mark_read_remote(thread_id))

    def set_sound_enabled(self, enabled: bool) -> None:
        self.preferences.sound_enabled = enabled
        if self.config.preferences_path is not None:
            save_preferences(self.preferences, self.config.preferences_path)

    def _emit_typing(self, thread_id: str, is_typing: bool) -> None:
        self._spawn(self.channel.send_typing(thread_id, is_typing))

    async def _poll_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.poll_interval_s)
            if not self.channel.connected:
                logger.debug("push channel down; polling over http")
                await self.resync()

    def _ingest(self, message: Message) -> None:
        outcome = self.store.apply_message(message)
        if outcome == APPLY_DUPLICATE:
            return
        if message.client_msg_id:
            self.pipeline.confirm(message.client_msg_id)
        if message.thread_id not in self.store.threads:
            self._spawn(self.refresh_threads())
        focused = message.thread_id == self.store.focused_thread_id
        self.store.record_inbound(message)
        self.notifier.consider(message, thread_focused=focused)
        if focused and message.sender_id != self.config.user_id:
            self._spawn(self._mark_read_remote(message.thread_id))

    def _on_connected(self, body: Dict[str, Any]) -> None:
        self.store.set_connected(True)
        if isinstance(body.get("per_thread"), dict):
            self.store.refresh_unread(per_thread=body["per_thread"])
        if isinstance(body.get("online_users"), list):
            self.store.set_online_users(body["online_users"])
        if self._has_connected:
            self._spawn(self.resync())
        self._has_connected = True

    def _on_disconnected(self, body: Dict[str, Any]) -> None:
        self.store.set_connected(False)
        self.store.set_online_users(())

    def _on_new_message(self, body: Dict[str, Any]) -> None:
        message = message_from_wire(body.get("message"))
        if message is not None:
            self._ingest(message)

    def _on_unread_update(self, body: Dict[str, Any]) -> None:
        if not self.store.refresh_unread(body.get("total_unread"), body.get("per_thread")):
            self._spawn(self.refresh_threads())

    def _on_typing(self, body: Dict[str, Any]) -> None:
        thread_id = body.get("thread_id")
        user_id = body.get("user_id")
        if not isinstance(thread_id, str) or not isinstance(user_id, str):
            return
        is_typing = bool(body.get("is_typing"))
        self.store.set_typing(thread_id, user_id, is_typing)
        if is_typing:
            loop = asyncio.get_running_loop()
            now = loop.time()
            self._typing_timers = [timer for timer in self._typing_timers if timer.when() > now]
            self._typing_timers.append(
                loop.call_later(self.store.typing.expiry_s + 0.05, self.store.prune_typing)
            )

    def _on_receipt(self, body: Dict[str, Any]) -> None:
        thread_id = body.get("thread_id")
        message_id = body.get("message_id")
        user_id = body.get("user_id")
        status = body.get("status")
        if not all(isinstance(value, str) for value in (thread_id, message_id, user_id, status)):
            logger.warning("dropping malformed receipt")
            return
        self.store.apply_receipt(thread_id, message_id, user_id, status)

    def _on_presence(self, body: Dict[str, Any]) -> None:
        user_id = body.get("user_id")
        if not isinstance(user_id, str) or not isinstance(body.get("online"), bool):
            logger.warning("dropping malformed presence event")
            return
        self.store.set_presence(user_id, body["online"])

    def _on_error(self, body: Dict[str, Any]) -> None:
        logger.warning("gateway reported error", extra={"code": body.get("code"), "detail": body.get("message")})
        client_msg_id = body.get("client_msg_id")
        if isinstance(client_msg_id, str):
            self.pipeline.fail(client_msg_id)
