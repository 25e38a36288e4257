"""Optimistic sends: placeholder first, then push channel with HTTP fallback."""

from __future__ import annotations

import asyncio
import logging
import secrets
import time
from typing import Dict, Optional, Protocol, Set

from .gateway_client import GatewayError
from .models import STATUS_SENDING, Message, Sender, local_message_id
from .store import ChatStore

logger = logging.getLogger(__name__)

DEFAULT_SEND_TIMEOUT_S = 15.0


class ChannelSender(Protocol):
    async def send_message(self, thread_id: str, text: str, client_msg_id: str) -> bool: ...


class HttpSender(Protocol):
    async def send_message(self, thread_id: str, text: str, client_msg_id: str) -> Optional[Message]: ...


def _now_ms() -> int:
    return int(time.time() * 1000)


def new_client_msg_id() -> str:
    return f"c-{_now_ms()}-{secrets.token_hex(4)}"


class SendPipeline:
    def __init__(
        self,
        store: ChatStore,
        channel: ChannelSender,
        gateway: HttpSender,
        *,
        sender: Optional[Sender],
        send_timeout_s: float = DEFAULT_SEND_TIMEOUT_S,
    ) -> None:
        self._store = store
        self._channel = channel
        self._gateway = gateway
        self._sender = sender
        self._send_timeout_s = send_timeout_s
        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._tasks: Set[asyncio.Task] = set()

    def send(self, thread_id: Optional[str], text: str) -> Optional[str]:
        """Show a placeholder and schedule delivery; returns the ``client_msg_id``.

        Returns ``None`` without touching state when the text is blank or there
        is no thread or sender to attribute the message to.
        """

        if not thread_id or self._sender is None:
            return None
        if not isinstance(text, str) or not text.strip():
            return None
        text = text.strip()
        loop = asyncio.get_running_loop()
        client_msg_id = new_client_msg_id()
        self._store.add_placeholder(
            Message(
                id=local_message_id(client_msg_id),
                thread_id=thread_id,
                sender_id=self._sender.id,
                text=text,
                created_at=_now_ms(),
                sender=self._sender,
                client_msg_id=client_msg_id,
                status=STATUS_SENDING,
            )
        )
        self._schedule(thread_id, text, client_msg_id, loop)
        return client_msg_id

    def retry(self, client_msg_id: str) -> bool:
        loop = asyncio.get_running_loop()
        message = self._store.mark_sending(client_msg_id)
        if message is None:
            return False
        logger.info("retrying send", extra={"thread_id": message.thread_id, "client_msg_id": client_msg_id})
        self._schedule(message.thread_id, message.text, client_msg_id, loop)
        return True

    def fail(self, client_msg_id: str) -> bool:
        self._cancel_timer(client_msg_id)
        failed = self._store.mark_failed(client_msg_id)
        if failed:
            logger.info("send failed", extra={"client_msg_id": client_msg_id})
        return failed

    def _schedule(self, thread_id: str, text: str, client_msg_id: str, loop: asyncio.AbstractEventLoop) -> None:
        self._cancel_timer(client_msg_id)
        self._timers[client_msg_id] = loop.call_later(self._send_timeout_s, self._on_timeout, client_msg_id)
        task = loop.create_task(self.deliver(thread_id, text, client_msg_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _cancel_timer(self, client_msg_id: str) -> None:
        timer = self._timers.pop(client_msg_id, None)
        if timer is not None:
            timer.cancel()

    def _on_timeout(self, client_msg_id: str) -> None:
        self._timers.pop(client_msg_id, None)
        placeholder = self._store.placeholder(client_msg_id)
        if placeholder is not None and placeholder.status == STATUS_SENDING:
            logger.warning("send timed out", extra={"client_msg_id": client_msg_id})
            self._store.mark_failed(client_msg_id)

    async def deliver(self, thread_id: str, text: str, client_msg_id: str) -> bool:
        """Push channel first; HTTP when the channel cannot take the frame.

        A channel send is confirmed later by the echoed ``new_message``; an HTTP
        send is confirmed by its response right away.
        """

        if await self._channel.send_message(thread_id, text, client_msg_id):
            return True

        try:
            message = await asyncio.wait_for(
                self._gateway.send_message(thread_id, text, client_msg_id),
                timeout=self._send_timeout_s,
            )
        except (GatewayError, asyncio.TimeoutError) as exc:
            logger.warning(
                "http send failed",
                extra={"thread_id": thread_id, "client_msg_id": client_msg_id, "error": repr(exc)},
            )
            self.fail(client_msg_id)
            return False
        if message is None:
            self.fail(client_msg_id)
            return False

        self._cancel_timer(client_msg_id)
        self._store.apply_message(message)
        return True

    def confirm(self, client_msg_id: str) -> None:
        self._cancel_timer(client_msg_id)

    async def aclose(self) -> None:
        for client_msg_id in list(self._timers):
            self._cancel_timer(client_msg_id)
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
