from __future__ import annotations

import asyncio
import logging
from typing import Any, Iterable, List

from aiohttp import WSMsgType, web

from .directory import User, UserDirectory
from .logging_utils import request_logging_middleware
from .hub import Subscription, SubscriptionHub
from .log import MessageLog
from .runtime import Runtime
from .sessions import Session, SessionStore
from .threads import ThreadStore

logger = logging.getLogger(__name__)

RUNTIME_KEY = web.AppKey("runtime", Runtime)
WS_CONFIG_KEY = web.AppKey("ws_config", dict)

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 200


async def handle_health(_: web.Request) -> web.Response:
    return web.Response(text="ok")


def _error(code: str, message: str, status: int) -> web.Response:
    return web.json_response({"code": code, "message": message}, status=status)


def _unauthorized() -> web.Response:
    return _error("unauthorized", "unknown user", 401)


def _invalid_request(message: str) -> web.Response:
    return _error("invalid_request", message, 400)


def _forbidden() -> web.Response:
    return _error("forbidden", "not a participant", 403)


def _not_found(message: str) -> web.Response:
    return _error("not_found", message, 404)


def _with_no_store(response: web.Response) -> web.Response:
    response.headers["Cache-Control"] = "no-store"
    return response


def _authenticate_request(request: web.Request) -> str | None:
    runtime = request.app[RUNTIME_KEY]
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None
    user_id = auth_header[len("Bearer ") :].strip()
    if user_id not in runtime.directory:
        return None
    return user_id


async def _read_json(request: web.Request) -> dict | None:
    try:
        body = await request.json()
    except Exception:
        return None
    if not isinstance(body, dict):
        return None
    return body


async def handle_threads_list(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    user_id = _authenticate_request(request)
    if user_id is None:
        return _unauthorized()
    threads = [runtime.thread_summary(thread, user_id) for thread in runtime.threads.threads_for(user_id)]
    return _with_no_store(web.json_response({"threads": threads}))


async def handle_users_list(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    user_id = _authenticate_request(request)
    if user_id is None:
        return _unauthorized()
    users = [
        {**user.to_wire(), "online": runtime.hub.is_online(user.id)}
        for user in runtime.directory.users()
        if user.id != user_id
    ]
    return _with_no_store(web.json_response({"users": users}))


async def handle_direct_create(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    user_id = _authenticate_request(request)
    if user_id is None:
        return _unauthorized()
    body = await _read_json(request)
    if body is None:
        return _invalid_request("malformed json")

    peer_user_id = body.get("peer_user_id")
    if not isinstance(peer_user_id, str) or not peer_user_id:
        return _invalid_request("peer_user_id required")
    try:
        thread, created = runtime.threads.get_or_create_direct(user_id, peer_user_id)
    except LookupError as exc:
        return _not_found(str(exc))
    except ValueError as exc:
        return _invalid_request(str(exc))
    return web.json_response({"thread": runtime.thread_summary(thread, user_id), "created": created})


def _parse_positive_int(raw: str | None, *, default: int | None) -> int | None:
    if raw is None or raw == "":
        return default
    value = int(raw)
    if value < 1:
        raise ValueError("must be positive")
    return value


async def handle_messages_list(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    user_id = _authenticate_request(request)
    if user_id is None:
        return _unauthorized()
    thread_id = request.match_info["thread_id"]
    try:
        limit = _parse_positive_int(request.query.get("limit"), default=DEFAULT_PAGE_SIZE)
        before_seq = _parse_positive_int(request.query.get("before_seq"), default=None)
    except ValueError:
        return _invalid_request("limit and before_seq must be positive integers")
    try:
        runtime.threads.require_participant(thread_id, user_id)
    except LookupError:
        return _not_found("unknown thread")
    except PermissionError:
        return _forbidden()

    page = runtime.log.list_before(thread_id, before_seq, min(limit or DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE))
    messages = [runtime.message_to_wire(message) for message in page]
    return _with_no_store(web.json_response({"messages": messages}))


async def handle_message_send(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    user_id = _authenticate_request(request)
    if user_id is None:
        return _unauthorized()
    body = await _read_json(request)
    if body is None:
        return _invalid_request("malformed json")

    thread_id = body.get("thread_id")
    if not isinstance(thread_id, str) or not thread_id:
        return _invalid_request("thread_id required")
    try:
        message, created = runtime.send_message(user_id, thread_id, body.get("text"), body.get("client_msg_id"))
    except LookupError:
        return _not_found("unknown thread")
    except PermissionError:
        return _forbidden()
    except ValueError as exc:
        return _invalid_request(str(exc))
    return web.json_response({"message": runtime.message_to_wire(message), "created": created})


async def handle_mark_read(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    user_id = _authenticate_request(request)
    if user_id is None:
        return _unauthorized()
    body = await _read_json(request)
    if body is None:
        return _invalid_request("malformed json")

    thread_id = body.get("thread_id")
    if not isinstance(thread_id, str) or not thread_id:
        return _invalid_request("thread_id required")
    try:
        cleared = runtime.mark_read(user_id, thread_id)
    except LookupError:
        return _not_found("unknown thread")
    except PermissionError:
        return _forbidden()
    snapshot = runtime.unread_snapshot(user_id)
    return web.json_response(
        {
            "status": "ok",
            "thread_id": thread_id,
            "unread_count": 0,
            "cleared": cleared,
            "total_unread": snapshot["total_unread"],
        }
    )


async def handle_unread(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    user_id = _authenticate_request(request)
    if user_id is None:
        return _unauthorized()
    return _with_no_store(web.json_response(runtime.unread_snapshot(user_id)))


def create_app(
    *,
    users: Iterable[User] = (),
    ping_interval_s: int = 30,
    ping_miss_limit: int = 2,
    max_msg_size: int = 1_048_576,
    outbound_queue_size: int = 1000,
) -> web.Application:
    directory = UserDirectory(users)
    runtime = Runtime(
        directory=directory,
        threads=ThreadStore(directory),
        log=MessageLog(),
        hub=SubscriptionHub(),
        sessions=SessionStore(),
    )
    app = web.Application(middlewares=[request_logging_middleware])
    app[RUNTIME_KEY] = runtime
    app[WS_CONFIG_KEY] = {
        "ping_interval_s": ping_interval_s,
        "ping_miss_limit": ping_miss_limit,
        "max_msg_size": max_msg_size,
        "outbound_queue_size": outbound_queue_size,
    }
    app.router.add_get("/healthz", handle_health)
    app.router.add_get("/v1/users", handle_users_list)
    app.router.add_get("/v1/threads", handle_threads_list)
    app.router.add_post("/v1/threads/direct", handle_direct_create)
    app.router.add_post("/v1/threads/read", handle_mark_read)
    app.router.add_get("/v1/threads/{thread_id}/messages", handle_messages_list)
    app.router.add_post("/v1/messages", handle_message_send)
    app.router.add_get("/v1/unread", handle_unread)
    app.router.add_get("/v1/ws", websocket_handler)
    return app


def _error_frame(code: str, message: str, *, request_id: str | None = None, **extra: Any) -> dict[str, Any]:
    body: dict[str, Any] = {"code": code, "message": message}
    body.update(extra)
    return {"v": 1, "t": "error", "id": request_id, "body": body}


async def websocket_handler(request: web.Request) -> web.WebSocketResponse:
    runtime = request.app[RUNTIME_KEY]
    ws_config: dict[str, Any] = request.app[WS_CONFIG_KEY]

    ws = web.WebSocketResponse(max_msg_size=ws_config["max_msg_size"])
    await ws.prepare(request)

    loop = asyncio.get_running_loop()
    last_activity = loop.time()
    missed_heartbeats = 0
    outbound: asyncio.Queue[dict | None] = asyncio.Queue(maxsize=ws_config["outbound_queue_size"])
    subscriptions: List[Subscription] = []
    session: Session | None = None
    closed = False

    async def close_with_error(message: str) -> None:
        nonlocal closed
        if closed:
            return
        closed = True
        await ws.close(code=1011, message=message.encode("utf-8"))

    def mark_activity() -> None:
        nonlocal last_activity, missed_heartbeats
        last_activity = loop.time()
        missed_heartbeats = 0

    def enqueue_frame(frame: dict) -> None:
        try:
            outbound.put_nowait(frame)
        except asyncio.QueueFull:
            logger.warning("push session over backpressure limit; closing")
            asyncio.create_task(close_with_error("backpressure"))

    async def writer() -> None:
        try:
            while True:
                frame = await outbound.get()
                if frame is None:
                    break
                await ws.send_json(frame)
        except asyncio.CancelledError:
            return
        except ConnectionResetError:
            return

    async def heartbeat() -> None:
        nonlocal missed_heartbeats
        try:
            while True:
                await asyncio.sleep(ws_config["ping_interval_s"])
                if ws.closed:
                    return
                now = loop.time()
                if now - last_activity >= ws_config["ping_interval_s"]:
                    await ws.send_json({"v": 1, "t": "ping"})
                    missed_heartbeats += 1
                    if missed_heartbeats > ws_config["ping_miss_limit"]:
                        await ws.close(code=1001, message=b"heartbeat timeout")
                        return
        except asyncio.CancelledError:
            return

    writer_task = asyncio.create_task(writer())
    heartbeat_task = asyncio.create_task(heartbeat())

    try:
        first_msg = await ws.receive()
        if first_msg.type != WSMsgType.TEXT:
            await ws.close(code=1002, message=b"invalid handshake")
            return ws
        try:
            payload = first_msg.json()
        except Exception:
            await ws.close(code=1002, message=b"invalid json")
            return ws

        if not isinstance(payload, dict) or payload.get("v") != 1:
            await ws.send_json(_error_frame("invalid_request", "unsupported version"))
            await ws.close()
            return ws

        body = payload.get("body")
        if body is None:
            body = {}
        if payload.get("t") != "session.start" or not isinstance(body, dict):
            await ws.send_json(
                _error_frame("invalid_request", "first frame must be session.start with an object body", request_id=payload.get("id"))
            )
            await ws.close()
            return ws
        user_id = body.get("user_id")
        if not isinstance(user_id, str) or user_id not in runtime.directory:
            await ws.send_json(_error_frame("unauthorized", "unknown user", request_id=payload.get("id")))
            await ws.close()
            return ws

        session = runtime.sessions.create(user_id)
        mark_activity()
        subscription = runtime.hub.subscribe(session.session_id, user_id, enqueue_frame)
        subscriptions.append(subscription)
        logger.info("push session started", extra={"user_id": user_id, "session_id": session.session_id})
        runtime.session_started(user_id)
        await ws.send_json(
            {
                "v": 1,
                "t": "session.ready",
                "id": payload.get("id"),
                "body": {
                    "session_id": session.session_id,
                    "user_id": user_id,
                    "online_users": runtime.hub.online_users(),
                    **runtime.unread_snapshot(user_id),
                },
            }
        )

        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                try:
                    frame = msg.json()
                except Exception:
                    enqueue_frame(_error_frame("invalid_request", "malformed json"))
                    continue
                if not isinstance(frame, dict):
                    enqueue_frame(_error_frame("invalid_request", "frame must be an object"))
                    continue

                mark_activity()
                request_id = frame.get("id")
                if frame.get("v") != 1:
                    enqueue_frame(_error_frame("invalid_request", "unsupported version", request_id=request_id))
                    continue

                frame_type = frame.get("t")
                body = frame.get("body")
                if body is None:
                    body = {}
                if not isinstance(body, dict):
                    enqueue_frame(_error_frame("invalid_request", "body must be an object", request_id=request_id))
                    continue

                if frame_type == "ping":
                    enqueue_frame({"v": 1, "t": "pong", "id": request_id})
                elif frame_type == "pong":
                    continue
                elif frame_type in {"room.join", "room.leave"}:
                    thread_id = body.get("thread_id")
                    if not isinstance(thread_id, str) or not runtime.threads.is_participant(thread_id, user_id):
                        enqueue_frame(_error_frame("forbidden", "cannot join thread", request_id=request_id))
                        continue
                    if frame_type == "room.join":
                        runtime.hub.join(subscription, thread_id)
                    else:
                        runtime.hub.leave(subscription, thread_id)
                elif frame_type == "typing":
                    thread_id = body.get("thread_id")
                    if not isinstance(thread_id, str) or thread_id not in subscription.rooms:
                        continue
                    runtime.hub.publish_to_room(
                        thread_id,
                        {
                            "v": 1,
                            "t": "typing",
                            "body": {
                                "thread_id": thread_id,
                                "user_id": user_id,
                                "is_typing": bool(body.get("is_typing")),
                            },
                        },
                        exclude_user=user_id,
                    )
                elif frame_type == "message.send":
                    client_msg_id = body.get("client_msg_id")
                    try:
                        message, created = runtime.send_message(
                            user_id, str(body.get("thread_id") or ""), body.get("text"), client_msg_id
                        )
                    except LookupError:
                        enqueue_frame(
                            _error_frame("not_found", "unknown thread", request_id=request_id, client_msg_id=client_msg_id)
                        )
                        continue
                    except PermissionError:
                        enqueue_frame(
                            _error_frame("forbidden", "not a participant", request_id=request_id, client_msg_id=client_msg_id)
                        )
                        continue
                    except ValueError as exc:
                        enqueue_frame(
                            _error_frame("invalid_request", str(exc), request_id=request_id, client_msg_id=client_msg_id)
                        )
                        continue
                    if not created:
                        # Retried send: echo the stored record to this session only.
                        enqueue_frame(
                            {"v": 1, "t": "new_message", "body": {"message": runtime.message_to_wire(message)}}
                        )
                else:
                    enqueue_frame(_error_frame("invalid_request", "unknown frame type", request_id=request_id))
            elif msg.type in {WSMsgType.CLOSE, WSMsgType.CLOSED, WSMsgType.ERROR}:
                break
            else:
                await ws.close(code=1003, message=b"unsupported frame type")
                break
    finally:
        heartbeat_task.cancel()
        for subscription in subscriptions:
            runtime.hub.unsubscribe(subscription)
        if session is not None:
            runtime.sessions.close(session)
            runtime.session_closed(session.user_id)
            logger.info("push session closed", extra={"user_id": session.user_id, "session_id": session.session_id})
        try:
            outbound.put_nowait(None)
        except asyncio.QueueFull:
            writer_task.cancel()
        await asyncio.gather(heartbeat_task, writer_task, return_exceptions=True)

    return ws
