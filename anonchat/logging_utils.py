import logging
import os
import sys
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from logging.handlers import TimedRotatingFileHandler
from typing import Callable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from pythonjsonlogger import jsonlogger

from anonchat.metrics import record_http_request


# Context variable to store request_id for the current request
request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "same-origin",
    "Permissions-Policy": "geolocation=(), microphone=(), camera=()",
    "Content-Security-Policy": "default-src 'none'; frame-ancestors 'none'",
    "Cache-Control": "no-store",
}


def _iso_now() -> str:
    return datetime.now(timezone.utc).strftime('%Y-%m-%dT%H:%M:%S.%f')[:-3] + 'Z'


def _tag_request(log_record) -> None:
    req_id = request_id_ctx.get()
    if req_id and "request_id" not in log_record:
        log_record["request_id"] = req_id


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """Application log lines: ts (ISO-8601 UTC), level, name, message, request_id."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        if not log_record.get("ts"):
            log_record["ts"] = _iso_now()
        log_record["level"] = record.levelname
        _tag_request(log_record)


class SecurityJsonFormatter(jsonlogger.JsonFormatter):
    """One JSON object per security event: ts, event, ip, ua, data."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        log_record["ts"] = _iso_now()
        _tag_request(log_record)


def setup_security_log(log_dir: str) -> logging.Logger:
    """
    Attach the append-only security log file to the `anonchat.security` logger.

    Files rotate at UTC midnight as security.log.YYYY-MM-DD.
    """
    os.makedirs(log_dir, mode=0o750, exist_ok=True)

    security_logger = logging.getLogger("anonchat.security")
    security_logger.setLevel(logging.INFO)
    for handler in security_logger.handlers:
        handler.close()
    security_logger.handlers = []
    security_logger.propagate = False

    file_handler = TimedRotatingFileHandler(
        os.path.join(log_dir, "security.log"),
        when="midnight",
        utc=True,
        encoding="utf-8",
        delay=True,
    )
    file_handler.setFormatter(SecurityJsonFormatter('%(event)s %(ip)s %(ua)s %(data)s'))
    security_logger.addHandler(file_handler)

    return security_logger


# Server loggers that share the application's JSON handler
SERVER_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access")

# Paths kept out of the request metrics
UNMETERED_PATHS = frozenset({"/metrics"})


def setup_logging(log_level: str = "INFO", security_log_dir: Optional[str] = None):
    """
    Route all application and server logs to one JSON handler on stdout.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        security_log_dir: Directory for the security event file, if any
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(CustomJsonFormatter('%(ts)s %(level)s %(name)s %(message)s'))

    root = logging.getLogger()
    root.setLevel(log_level.upper())
    root.handlers = [handler]

    for name in SERVER_LOGGERS:
        server_logger = logging.getLogger(name)
        server_logger.handlers = [handler]
        server_logger.propagate = False

    # Requests are logged by RequestLoggingMiddleware instead
    logging.getLogger("uvicorn.access").disabled = True

    if security_log_dir:
        setup_security_log(security_log_dir)

    return root


def _level_for(status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    return logging.INFO


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    One structured log line per request, tagged with a fresh request id.

    Log keys: ts, level, request_id, method, path, status, latency_ms, plus
    whatever the route attached with log_action_data (action, result,
    conversation_id). The request id is echoed in X-Request-ID.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = uuid.uuid4().hex
        request.state.request_id = request_id
        ctx_token = request_id_ctx.set(request_id)
        started = time.perf_counter()

        try:
            response = await call_next(request)
            elapsed = time.perf_counter() - started
            response.headers["X-Request-ID"] = request_id

            path = request.url.path
            if path not in UNMETERED_PATHS:
                record_http_request(request.method, path, response.status_code, elapsed)

            fields = {
                "request_id": request_id,
                "method": request.method,
                "path": path,
                "status": response.status_code,
                "latency_ms": round(elapsed * 1000, 2),
            }
            fields.update(getattr(request.state, "action_log_data", {}))

            logging.getLogger("anonchat.requests").log(
                _level_for(response.status_code), "Request completed", extra=fields
            )
            return response
        finally:
            request_id_ctx.reset(ctx_token)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Attach the security header set to every response."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        response = await call_next(request)
        for name, value in SECURITY_HEADERS.items():
            response.headers.setdefault(name, value)
        return response


def log_action_data(request: Request, action: str, result: Optional[str] = None,
                    conversation_id: Optional[int] = None):
    """
    Attach action-specific logging data to the request state.
    This data will be included in the request log by the middleware.
    """
    action_data = {"action": action}

    if result is not None:
        action_data["result"] = result

    if conversation_id is not None:
        action_data["conversation_id"] = conversation_id

    request.state.action_log_data = action_data
