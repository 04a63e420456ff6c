from __future__ import annotations

import json
import logging
import re
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar, Token
from datetime import UTC, datetime
from typing import Any

from notify_digest.core.settings import get_settings

_request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)
_configured = False

# Attributes every LogRecord carries; anything else arrived through ``extra``.
_RECORD_ATTRIBUTES = frozenset(logging.LogRecord("", 0, "", 0, "", None, None).__dict__) | {"message", "asctime"}
_PROMOTED_KEYS = {"component", "request_id"}

# Unsubscribe links embed a live token; recipient addresses are personal data.
_REDACTED_KEYS = {"recipient_email", "unsubscribe_url", "list_unsubscribe", "authorization"}
_REDACTED_KEY_FRAGMENTS = ("secret", "token", "password", "apikey", "api_key", "_key")
_EMAIL_PATTERN = re.compile(r"[\w.+-]+@[\w-]+(?:\.[\w-]+)+")

# httpx logs full request URLs, which carry PostgREST filters on user ids.
_NOISY_LOGGERS = ("httpx", "httpcore")


def set_request_id(request_id: str | None) -> Token[str | None]:
    return _request_id_var.set(request_id)


def reset_request_id(token: Token[str | None]) -> None:
    _request_id_var.reset(token)


def get_request_id() -> str | None:
    return _request_id_var.get()


@contextmanager
def bound_request_id(request_id: str) -> Iterator[str]:
    """Tag every log line emitted inside the block with ``request_id``."""

    token = set_request_id(request_id)
    try:
        yield request_id
    finally:
        reset_request_id(token)


def _utc_stamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat().replace("+00:00", "Z")


def _is_redacted_key(key: str) -> bool:
    lowered = key.lower()
    return lowered in _REDACTED_KEYS or any(fragment in lowered for fragment in _REDACTED_KEY_FRAGMENTS)


def _loggable(value: Any) -> Any:
    if value is None or isinstance(value, bool | int | float):
        return value
    if isinstance(value, str):
        return _EMAIL_PATTERN.sub("[email]", value)
    if isinstance(value, datetime):
        return _utc_stamp(value)
    if isinstance(value, dict):
        return {str(key): "[redacted]" if _is_redacted_key(str(key)) else _loggable(item) for key, item in value.items()}
    if isinstance(value, list | tuple | set | frozenset):
        return [_loggable(item) for item in value]
    return _loggable(str(value))


class JsonLogFormatter(logging.Formatter):
    """One JSON object per line: ``ts``, ``level``, ``msg``, ``component``, the
    current request or run id, then any ``extra`` fields with credentials,
    unsubscribe links and recipient addresses removed."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": _utc_stamp(datetime.fromtimestamp(record.created, UTC)),
            "level": record.levelname,
            "msg": record.getMessage(),
            "component": getattr(record, "component", record.name),
        }

        request_id = getattr(record, "request_id", None) or get_request_id()
        if request_id:
            payload["request_id"] = request_id

        for key, value in record.__dict__.items():
            if key in _RECORD_ATTRIBUTES or key in _PROMOTED_KEYS or key.startswith("_"):
                continue
            payload[key] = "[redacted]" if _is_redacted_key(key) else _loggable(value)

        if record.exc_info and record.exc_info[0] is not None:
            payload["error_type"] = record.exc_info[0].__name__
            payload.setdefault("error", _loggable(str(record.exc_info[1])[:500]))

        return json.dumps(payload, separators=(",", ":"), ensure_ascii=True)


def configure_logging(level_name: str | None = None) -> None:
    global _configured
    if _configured:
        return

    if level_name is None:
        level_name = get_settings().LOG_LEVEL
    level = getattr(logging, level_name.strip().upper() or "INFO", logging.INFO)

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(JsonLogFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    _configured = True


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
