"""aiohttp client for the gateway's HTTP routes."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

import aiohttp

from .models import Message, Sender, Thread, message_from_wire, sender_from_wire, thread_from_wire

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_S = 15.0


class GatewayError(Exception):
    def __init__(self, status: int, code: str, message: str):
        self.status = status
        self.code = code
        self.message = message
        super().__init__(f"{status} {code}: {message}")


class UnauthorizedError(GatewayError):
    pass


def _build_url(base_url: str, path: str) -> str:
    return f"{base_url.rstrip('/')}{path}"


class GatewayClient:
    def __init__(
        self,
        base_url: str,
        user_id: str,
        *,
        session: Optional[aiohttp.ClientSession] = None,
        timeout_s: float = DEFAULT_TIMEOUT_S,
    ) -> None:
        self.base_url = base_url
        self.user_id = user_id
        self._session = session
        self._owns_session = session is None
        self._timeout = aiohttp.ClientTimeout(total=timeout_s)

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _request(
        self,
        method: str,
        path: str,
        *,
        payload: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        session = self._ensure_session()
        headers = {"Authorization": f"Bearer {self.user_id}"}
        try:
            async with session.request(
                method,
                _build_url(self.base_url, path),
                json=payload,
                params=params,
                headers=headers,
                timeout=self._timeout,
            ) as response:
                try:
                    body = await response.json(content_type=None)
                except ValueError:
                    body = None
                status = response.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.warning("gateway request failed", extra={"method": method, "path": path, "error": repr(exc)})
            raise GatewayError(0, "unreachable", str(exc) or type(exc).__name__) from exc

        if status >= 400:
            code = "http_error"
            message = f"HTTP {status}"
            if isinstance(body, dict):
                code = str(body.get("code") or code)
                message = str(body.get("message") or message)
            error_cls = UnauthorizedError if status == 401 else GatewayError
            raise error_cls(status, code, message)
        if not isinstance(body, dict):
            raise GatewayError(status, "invalid_response", "expected a JSON object")
        return body

    async def list_users(self) -> List[Sender]:
        """Everyone the caller could open a direct thread with, sorted by name."""

        body = await self._request("GET", "/v1/users")
        users = []
        for entry in body.get("users") or []:
            user = sender_from_wire(entry)
            if user is not None:
                users.append(user)
        return users

    async def list_threads(self) -> List[Thread]:
        body = await self._request("GET", "/v1/threads")
        threads = []
        for entry in body.get("threads") or []:
            thread = thread_from_wire(entry)
            if thread is not None:
                threads.append(thread)
        return threads

    async def fetch_messages(
        self,
        thread_id: str,
        *,
        limit: int = 50,
        before_seq: Optional[int] = None,
    ) -> List[Message]:
        params: Dict[str, Any] = {"limit": limit}
        if before_seq is not None:
            params["before_seq"] = before_seq
        body = await self._request("GET", f"/v1/threads/{thread_id}/messages", params=params)
        messages = []
        for entry in body.get("messages") or []:
            message = message_from_wire(entry)
            if message is not None:
                messages.append(message)
        return messages

    async def send_message(self, thread_id: str, text: str, client_msg_id: str) -> Optional[Message]:
        body = await self._request(
            "POST",
            "/v1/messages",
            payload={"thread_id": thread_id, "text": text, "client_msg_id": client_msg_id},
        )
        return message_from_wire(body.get("message"))

    async def mark_read(self, thread_id: str) -> Dict[str, Any]:
        return await self._request("POST", "/v1/threads/read", payload={"thread_id": thread_id})

    async def create_direct_thread(self, peer_user_id: str) -> Optional[Thread]:
        body = await self._request("POST", "/v1/threads/direct", payload={"peer_user_id": peer_user_id})
        return thread_from_wire(body.get("thread"))

    async def unread(self) -> Dict[str, Any]:
        return await self._request("GET", "/v1/unread")
