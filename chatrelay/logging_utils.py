"""
Structured JSON logging.

Every line is a JSON object with ``ts``, ``level``, ``name`` and ``message``.
Lines written while serving an HTTP request carry its ``request_id``;
lines written from a WebSocket session carry the ``viewer_id``.
"""

import logging
import sys
import time
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Callable, Iterator, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from pythonjsonlogger import jsonlogger

from chatrelay.metrics import record_http_request


request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
viewer_id_ctx: ContextVar[Optional[str]] = ContextVar("viewer_id", default=None)

_CONTEXT_FIELDS = (("request_id", request_id_ctx), ("viewer_id", viewer_id_ctx))


@contextmanager
def viewer_context(viewer_id: str) -> Iterator[None]:
    """Tag log lines emitted inside the block with ``viewer_id``."""
    token = viewer_id_ctx.set(viewer_id)
    try:
        yield
    finally:
        viewer_id_ctx.reset(token)


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """Adds an ISO-8601 UTC ``ts``, the level name and the active context ids."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        if not log_record.get("ts"):
            stamp = datetime.fromtimestamp(record.created, tz=timezone.utc)
            log_record["ts"] = stamp.strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"
        log_record["level"] = record.levelname

        for field, ctx in _CONTEXT_FIELDS:
            value = ctx.get()
            if value and field not in log_record:
                log_record[field] = value


def setup_logging(log_level: str = "INFO") -> logging.Logger:
    """
    Route the root logger and uvicorn's loggers to one JSON stdout handler.

    Args:
        log_level: Logging level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(CustomJsonFormatter("%(ts)s %(level)s %(name)s %(message)s"))

    root = logging.getLogger()
    root.setLevel(log_level.upper())
    root.handlers = [handler]

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        server_logger = logging.getLogger(name)
        server_logger.handlers = [handler]
        server_logger.propagate = False

    # Access lines come from RequestLoggingMiddleware instead
    logging.getLogger("uvicorn.access").disabled = True

    return root


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    One structured line per HTTP request.

    Keys: request_id, method, path, status, latency_ms. Webhook requests add
    the delivery outcome attached by ``log_webhook_data``. The request id is
    taken from an incoming ``X-Request-ID`` header when present and echoed
    back on the response.

    WebSocket sessions bypass this middleware; see ``viewer_context``.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        token = request_id_ctx.set(request_id)
        started = time.perf_counter()

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            elapsed = time.perf_counter() - started

            # /metrics is scraped constantly, keep it out of its own numbers
            if request.url.path != "/metrics":
                route = request.scope.get("route")
                record_http_request(
                    method=request.method,
                    path=getattr(route, "path", request.url.path),
                    status=response.status_code,
                    latency_seconds=elapsed,
                )

            fields = {
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code,
                "latency_ms": round(elapsed * 1000, 2),
            }
            fields.update(getattr(request.state, "webhook_log_data", {}))

            level = logging.INFO
            if response.status_code >= 500:
                level = logging.ERROR
            elif response.status_code >= 400:
                level = logging.WARNING
            logging.getLogger("chatrelay.requests").log(level, "Request completed", extra=fields)

            return response
        finally:
            request_id_ctx.reset(token)


def log_webhook_data(
    request: Request,
    result: str,
    ingested: int = 0,
    duplicates: int = 0,
    status_updates: int = 0,
    not_found: int = 0,
) -> None:
    """
    Attach the webhook outcome to the request so the request line includes it.

    Args:
        request: Incoming webhook request
        result: processed, invalid_signature, validation_error or error
        ingested: New messages stored
        duplicates: Messages that were already stored
        status_updates: Status changes applied
        not_found: Status updates for unknown messages
    """
    request.state.webhook_log_data = {
        "result": result,
        "ingested": ingested,
        "duplicates": duplicates,
        "status_updates": status_updates,
        "not_found": not_found,
    }
