"""JSON logging configuration for the gateway.

Every record is rendered as one JSON line. Structured fields travel under
``extra={"context": {...}}``; the id of the HTTP request being served (if any)
is attached automatically through a context variable.
"""

import json
import logging
import secrets
import sys
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from typing import Any, Optional

_request_id: ContextVar[str] = ContextVar("request_id", default="")

NOISY_LOGGERS = ("httpx", "httpcore", "uvicorn.access", "websockets")


def new_request_id() -> str:
    return secrets.token_hex(3)


def get_request_id() -> str:
    return _request_id.get()


def bind_request_id(request_id: Optional[str] = None) -> Token:
    return _request_id.set(request_id or new_request_id())


def reset_request_id(token: Token) -> None:
    _request_id.reset(token)


class RequestIdFilter(logging.Filter):
    """Attach the current request id to each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "request_id", None):
            record.request_id = get_request_id()
        return True


class JSONFormatter(logging.Formatter):
    """Format log records as JSON."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        request_id = getattr(record, "request_id", "")
        if request_id:
            log_data["request_id"] = request_id

        if getattr(record, "context", None):
            log_data["context"] = record.context

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, ensure_ascii=False, default=str)


def setup_logging(level: str = "INFO") -> None:
    """Configure JSON logging for the application."""
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())
    handler.addFilter(RequestIdFilter())
    root_logger.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a logger with the given name."""
    return logging.getLogger(f"wa_gateway.{name}")


class SessionLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that stamps ``session_id`` into the record context."""

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        context = kwargs.pop("context", None)
        combined_context = {**self.extra, **(context or {})}
        kwargs["extra"] = {"context": combined_context}
        return msg, kwargs


def session_logger(name: str, session_id: str) -> SessionLoggerAdapter:
    return SessionLoggerAdapter(get_logger(name), {"session_id": session_id})
