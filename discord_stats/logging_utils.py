import logging
import sys
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Callable, Optional, TextIO

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from pythonjsonlogger import jsonlogger

from discord_stats.metrics import record_http_request


# Id of the HTTP request being served, if any
request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# The gateway library logs every heartbeat and dispatch at INFO
DISCORD_LOGGERS = (
    "discord",
    "discord.client",
    "discord.gateway",
    "discord.state",
    "discord.http",
)

UVICORN_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access")

LOG_FORMAT = "%(ts)s %(level)s %(name)s %(threadName)s %(message)s"


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """
    One JSON object per line.

    Adds a UTC `ts` (ISO-8601, millisecond precision, Z suffix), the level
    name, and the current request id when the record is emitted while an
    HTTP request is being served.
    """

    def add_fields(self, log_record, record, message_dict):
        super(CustomJsonFormatter, self).add_fields(log_record, record, message_dict)
        if not log_record.get("ts"):
            now = datetime.fromtimestamp(record.created, tz=timezone.utc)
            log_record["ts"] = now.strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"
        log_record["level"] = record.levelname

        request_id = request_id_ctx.get()
        if request_id and "request_id" not in log_record:
            log_record["request_id"] = request_id


def _json_handler(stream: TextIO) -> logging.Handler:
    handler = logging.StreamHandler(stream)
    handler.setFormatter(CustomJsonFormatter(LOG_FORMAT))
    return handler


def setup_logging(log_level: str = "INFO", stream: Optional[TextIO] = None) -> logging.Logger:
    """
    Route all logging through a single JSON handler.

    Logs go to stderr by default; stdout is left to command output. Uvicorn's
    own loggers are pointed at the same handler and its access log is turned
    off, since RequestLoggingMiddleware logs every request already.

    Args:
        log_level: Root level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        stream: Override for the output stream
    """
    handler = _json_handler(stream or sys.stderr)

    root = logging.getLogger()
    root.setLevel(log_level.upper())
    root.handlers = [handler]

    for name in UVICORN_LOGGERS:
        uvicorn_logger = logging.getLogger(name)
        uvicorn_logger.handlers = [handler]
        uvicorn_logger.propagate = False
    logging.getLogger("uvicorn.access").disabled = True

    for name in DISCORD_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root


def _level_for_status(status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    return logging.INFO


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Logs one line per API request and records its metrics.

    Logged keys: ts, level, request_id, method, path, status, latency_ms.
    The request id is echoed back in the X-Request-ID header.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id
        token = request_id_ctx.set(request_id)
        started = time.perf_counter()

        try:
            response = await call_next(request)
            elapsed = time.perf_counter() - started
            response.headers["X-Request-ID"] = request_id

            path = request.url.path
            # Scrapes of /metrics are not counted in the metrics they read
            if path != "/metrics":
                record_http_request(request.method, path, response.status_code, elapsed)

            logging.getLogger("discord_stats.requests").log(
                _level_for_status(response.status_code),
                "Request completed",
                extra={
                    "request_id": request_id,
                    "method": request.method,
                    "path": path,
                    "status": response.status_code,
                    "latency_ms": round(elapsed * 1000, 2),
                },
            )
            return response
        finally:
            request_id_ctx.reset(token)
