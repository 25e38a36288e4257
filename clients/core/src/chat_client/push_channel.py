"""Reconnecting WebSocket push channel shared by every consumer of a session."""

from __future__ import annotations

import asyncio
import itertools
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Set

import aiohttp

logger = logging.getLogger(__name__)

DEFAULT_RECONNECT_DELAY_S = 3.0
HANDSHAKE_TIMEOUT_S = 10.0

EVENT_CONNECTED = "connected"
EVENT_DISCONNECTED = "disconnected"
EVENT_NEW_MESSAGE = "new_message"
EVENT_TYPING = "typing"
EVENT_UNREAD_UPDATE = "unread_update"
EVENT_RECEIPT = "receipt"
EVENT_ERROR = "error"
EVENT_PRESENCE = "presence"
EVENT_TYPES = frozenset(
    {
        EVENT_CONNECTED,
        EVENT_DISCONNECTED,
        EVENT_NEW_MESSAGE,
        EVENT_TYPING,
        EVENT_UNREAD_UPDATE,
        EVENT_RECEIPT,
        EVENT_ERROR,
        EVENT_PRESENCE,
    }
)
_SERVER_EVENTS = frozenset(
    {EVENT_NEW_MESSAGE, EVENT_TYPING, EVENT_UNREAD_UPDATE, EVENT_RECEIPT, EVENT_ERROR, EVENT_PRESENCE}
)

Handler = Callable[[Dict[str, Any]], None]


class HandshakeError(Exception):
    pass


def _ws_url(base_url: str) -> str:
    base = base_url.rstrip("/")
    if base.startswith("https://"):
        base = "wss://" + base[len("https://") :]
    elif base.startswith("http://"):
        base = "ws://" + base[len("http://") :]
    return f"{base}/v1/ws"


class PushChannel:
    """One push connection per user, reference counted across consumers.

    Transport failures never reach callers: the channel reports them as
    ``disconnected`` events and reconnects after a fixed delay until
    :meth:`disconnect` is called. Joined rooms survive reconnects.
    """

    def __init__(
        self,
        base_url: str,
        *,
        reconnect_delay_s: float = DEFAULT_RECONNECT_DELAY_S,
        http_session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.base_url = base_url
        self.reconnect_delay_s = reconnect_delay_s
        self.user_id: Optional[str] = None
        self.session_id: Optional[str] = None
        self._http_session = http_session
        self._owns_http_session = http_session is None
        self._handlers: Dict[str, List[Handler]] = {}
        self._rooms: Set[str] = set()
        self._refcount = 0
        self._task: Optional[asyncio.Task] = None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._connected = False
        self._closing = False
        self._frame_ids = itertools.count(1)

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def rooms(self) -> Set[str]:
        return set(self._rooms)

    @property
    def refcount(self) -> int:
        return self._refcount

    def subscribe(self, event_type: str, handler: Handler) -> Callable[[], None]:
        if event_type not in EVENT_TYPES:
            raise ValueError(f"unknown event type: {event_type}")
        self._handlers.setdefault(event_type, []).append(handler)

        def unsubscribe() -> None:
            handlers = self._handlers.get(event_type, [])
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def _emit(self, event_type: str, payload: Dict[str, Any]) -> None:
        for handler in list(self._handlers.get(event_type, [])):
            try:
                handler(payload)
            except Exception:
                logger.exception("push handler failed", extra={"event_type": event_type})

    async def connect(self, user_id: str) -> None:
        if self.user_id == user_id and self._task is not None and not self._task.done():
            return
        if self._task is not None:
            await self.disconnect()
        self.user_id = user_id
        self._closing = False
        self._task = asyncio.create_task(self._run(user_id))

    async def disconnect(self) -> None:
        self._closing = True
        task, self._task = self._task, None
        ws, self._ws = self._ws, None
        if ws is not None and not ws.closed:
            await ws.close()
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        self._set_disconnected()
        self._rooms.clear()
        self.user_id = None
        if self._owns_http_session and self._http_session is not None:
            await self._http_session.close()
            self._http_session = None

    async def acquire(self, user_id: str) -> None:
        self._refcount += 1
        await self.connect(user_id)

    async def release(self) -> None:
        if self._refcount == 0:
            return
        self._refcount -= 1
        if self._refcount == 0:
            await self.disconnect()

    @asynccontextmanager
    async def lease(self, user_id: str) -> AsyncIterator["PushChannel"]:
        await self.acquire(user_id)
        try:
            yield self
        finally:
            await self.release()

    async def join_room(self, thread_id: str) -> bool:
        self._rooms.add(thread_id)
        return await self._send_frame("room.join", {"thread_id": thread_id})

    async def leave_room(self, thread_id: str) -> bool:
        self._rooms.discard(thread_id)
        return await self._send_frame("room.leave", {"thread_id": thread_id})

    async def send_message(self, thread_id: str, text: str, client_msg_id: str) -> bool:
        return await self._send_frame(
            "message.send",
            {"thread_id": thread_id, "text": text, "client_msg_id": client_msg_id},
        )

    async def send_typing(self, thread_id: str, is_typing: bool) -> bool:
        return await self._send_frame("typing", {"thread_id": thread_id, "is_typing": is_typing})

    async def _send_frame(self, frame_type: str, body: Dict[str, Any]) -> bool:
        ws = self._ws
        if not self._connected or ws is None or ws.closed:
            return False
        frame = {"v": 1, "t": frame_type, "id": f"{frame_type}-{next(self._frame_ids)}", "body": body}
        try:
            await ws.send_json(frame)
        except (ConnectionError, RuntimeError, aiohttp.ClientError) as exc:
            logger.warning("push send failed", extra={"frame_type": frame_type, "error": repr(exc)})
            return False
        return True

    def _ensure_http_session(self) -> aiohttp.ClientSession:
        if self._http_session is None or self._http_session.closed:
            self._http_session = aiohttp.ClientSession()
            self._owns_http_session = True
        return self._http_session

    def _set_disconnected(self) -> None:
        if not self._connected:
            return
        self._connected = False
        self.session_id = None
        self._emit(EVENT_DISCONNECTED, {"user_id": self.user_id})

    async def _run(self, user_id: str) -> None:
        while not self._closing:
            try:
                await self._connect_once(user_id)
            except asyncio.CancelledError:
                raise
            except (aiohttp.ClientError, OSError, asyncio.TimeoutError, TypeError, ValueError, HandshakeError) as exc:
                logger.warning("push channel connection failed", extra={"user_id": user_id, "error": repr(exc)})
            finally:
                self._ws = None
                self._set_disconnected()
            if self._closing:
                break
            await asyncio.sleep(self.reconnect_delay_s)

    async def _connect_once(self, user_id: str) -> None:
        session = self._ensure_http_session()
        async with session.ws_connect(_ws_url(self.base_url)) as ws:
            self._ws = ws
            await ws.send_json({"v": 1, "t": "session.start", "id": "start", "body": {"user_id": user_id}})
            ready = await ws.receive_json(timeout=HANDSHAKE_TIMEOUT_S)
            if not isinstance(ready, dict) or ready.get("t") != "session.ready":
                body = ready.get("body") if isinstance(ready, dict) else None
                if isinstance(body, dict):
                    self._emit(EVENT_ERROR, body)
                raise HandshakeError(f"session rejected: {ready!r}")

            body = ready.get("body") or {}
            self.session_id = body.get("session_id")
            self._connected = True
            logger.info("push channel connected", extra={"user_id": user_id, "session_id": self.session_id})
            for thread_id in sorted(self._rooms):
                await ws.send_json({"v": 1, "t": "room.join", "id": f"rejoin-{thread_id}", "body": {"thread_id": thread_id}})
            self._emit(EVENT_CONNECTED, body)

            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    try:
                        frame = msg.json()
                    except ValueError:
                        logger.warning("dropping malformed push frame")
                        continue
                    await self._dispatch(ws, frame)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    logger.warning("push transport error", extra={"error": repr(ws.exception())})
                    break
        logger.info("push channel closed", extra={"user_id": user_id})

    async def _dispatch(self, ws: aiohttp.ClientWebSocketResponse, frame: Any) -> None:
        if not isinstance(frame, dict):
            return
        frame_type = frame.get("t")
        if frame_type == "ping":
            await ws.send_json({"v": 1, "t": "pong", "id": frame.get("id")})
            return
        if frame_type == "pong":
            return
        if frame_type not in _SERVER_EVENTS:
            logger.debug("ignoring push frame", extra={"frame_type": frame_type})
            return
        body = frame.get("body")
        if not isinstance(body, dict):
            logger.warning("dropping push frame without body", extra={"frame_type": frame_type})
            return
        if frame_type == EVENT_ERROR and frame.get("id") is not None:
            body = {**body, "request_id": frame.get("id")}
        self._emit(frame_type, body)
