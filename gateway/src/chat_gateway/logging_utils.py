import logging
import sys
import time
import uuid
from datetime import datetime, timezone
from typing import Awaitable, Callable

from aiohttp import web
from pythonjsonlogger.json import JsonFormatter


class GatewayJsonFormatter(JsonFormatter):
    """JSON formatter with ISO-8601 timestamps and an explicit level field."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        if not log_record.get("ts"):
            now = datetime.now(timezone.utc)
            log_record["ts"] = now.strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"
        log_record["level"] = record.levelname


def setup_logging(log_level: str = "INFO") -> logging.Logger:
    """Route every logger through a single JSON handler on stdout."""

    logger = logging.getLogger()
    logger.setLevel(log_level.upper())
    logger.handlers = []

    json_handler = logging.StreamHandler(sys.stdout)
    json_handler.setFormatter(GatewayJsonFormatter("%(ts)s %(level)s %(name)s %(message)s"))
    logger.addHandler(json_handler)

    # aiohttp's access log duplicates request_logging_middleware
    logging.getLogger("aiohttp.access").disabled = True
    return logger


Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


@web.middleware
async def request_logging_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    request_id = str(uuid.uuid4())
    start_time = time.monotonic()
    response = await handler(request)
    if not isinstance(response, web.WebSocketResponse):
        response.headers["X-Request-ID"] = request_id

    log_data = {
        "request_id": request_id,
        "method": request.method,
        "path": request.path,
        "status": response.status,
        "latency_ms": round((time.monotonic() - start_time) * 1000, 2),
    }
    logger = logging.getLogger("chat_gateway.requests")
    if response.status >= 500:
        logger.error("Request completed", extra=log_data)
    elif response.status >= 400:
        logger.warning("Request completed", extra=log_data)
    else:
        logger.info("Request completed", extra=log_data)
    return response
