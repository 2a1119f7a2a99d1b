"""Structured logging for the gateway.

Provides JSON or text log lines on stderr with the current request id
attached to every record, plus a small Flask middleware that assigns the
id and logs request completion.

Usage:
    from ghproxy.logging_config import setup_logging, get_logger

    setup_logging(level="INFO", format_type="text")
    logger = get_logger(__name__)
"""

import json
import logging
import os
import sys
import time
import uuid
from contextvars import ContextVar
from typing import Any, Optional

_request_id: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = os.environ.get("LOG_FORMAT", "json")  # "json" or "text"

# Attributes every LogRecord carries; anything else came in via ``extra=``.
_STANDARD_ATTRS = frozenset({
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "pathname", "process", "processName", "relativeCreated",
    "stack_info", "exc_info", "exc_text", "thread", "threadName",
    "message", "taskName",
})


def set_request_id(request_id: Optional[str]) -> None:
    _request_id.set(request_id)


def get_request_id() -> Optional[str]:
    return _request_id.get()


def _timestamp(record: logging.LogRecord) -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%S", time.gmtime(record.created)) + f".{int(record.msecs):03d}Z"


class JSONFormatter(logging.Formatter):
    """One JSON object per line.

    {"timestamp": "...", "level": "INFO", "logger": "ghproxy.engine",
     "message": "...", "request_id": "...", <extra fields>}
    """

    def format(self, record: logging.LogRecord) -> str:
        log_dict: dict[str, Any] = {
            "timestamp": _timestamp(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        request_id = _request_id.get()
        if request_id:
            log_dict["request_id"] = request_id
        if record.exc_info:
            log_dict["exception"] = self.formatException(record.exc_info)
        for key, value in record.__dict__.items():
            if key not in _STANDARD_ATTRS and not key.startswith("_"):
                log_dict[key] = value
        return json.dumps(log_dict, default=str)


class TextFormatter(logging.Formatter):
    """2024-01-15T10:30:00.123Z INFO [ghproxy.engine] [req-123] message"""

    def format(self, record: logging.LogRecord) -> str:
        parts = [_timestamp(record), record.levelname, f"[{record.name}]"]
        request_id = _request_id.get()
        if request_id:
            parts.append(f"[{request_id}]")
        parts.append(record.getMessage())
        result = " ".join(parts)
        if record.exc_info:
            result += "\n" + self.formatException(record.exc_info)
        return result


def setup_logging(level: Optional[str] = None, format_type: Optional[str] = None) -> None:
    """Configure the root logger.

    Args:
        level: Log level name. Defaults to the LOG_LEVEL environment variable.
        format_type: "json" or "text". Defaults to LOG_FORMAT.
    """
    level = (level or LOG_LEVEL).upper()
    format_type = (format_type or LOG_FORMAT).lower()

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if format_type == "json" else TextFormatter())

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level, logging.INFO))
    root_logger.handlers.clear()
    root_logger.addHandler(handler)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def flask_request_middleware(app) -> None:
    """Attach request id assignment and completion logging to *app*.

    The id comes from an inbound ``X-Request-ID`` header when present and
    is echoed back on the response. The header is still forwarded to the
    upstream untouched.
    """
    logger = get_logger("ghproxy.http")

    @app.before_request
    def _start_request():
        from flask import g, request

        g.request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        g.request_start_time = time.monotonic()
        set_request_id(g.request_id)

    @app.after_request
    def _finish_request(response):
        from flask import g, request

        duration_ms = None
        if hasattr(g, "request_start_time"):
            duration_ms = (time.monotonic() - g.request_start_time) * 1000
        logger.info(
            "%s %s -> %s",
            request.method,
            request.path,
            response.status_code,
            extra={"status_code": response.status_code, "duration_ms": duration_ms},
        )
        if hasattr(g, "request_id"):
            response.headers["X-Request-ID"] = g.request_id
        return response

    @app.teardown_request
    def _teardown_request(exception=None):
        if exception is not None:
            logger.error("Request failed with exception: %s", exception)
        set_request_id(None)
