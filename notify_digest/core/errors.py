from __future__ import annotations

import re

from fastapi import HTTPException

_MAX_ERROR_LENGTH = 500
_SENSITIVE_PATTERNS = (
    re.compile(r"bearer\s+[a-z0-9\-_\.]+", re.IGNORECASE),
    re.compile(r"(api[_-]?key|token|secret|password)\s*[:=]\s*[^\s,;]+", re.IGNORECASE),
    re.compile(r"eyJ[a-z0-9\-_]+\.[a-z0-9\-_]+\.[a-z0-9\-_]+", re.IGNORECASE),
    re.compile(r"[a-z0-9._%+\-]+@[a-z0-9.\-]+\.[a-z]{2,}", re.IGNORECASE),
)


class StoreError(RuntimeError):
    """Raised when the backing store cannot be read or written."""


def sanitize_error(exc: BaseException, *, default_message: str) -> str:
    if isinstance(exc, HTTPException) and isinstance(exc.detail, str) and exc.detail.strip():
        message = exc.detail.strip()
    else:
        message = str(exc).strip()
    if not message:
        message = default_message

    sanitized = message
    for pattern in _SENSITIVE_PATTERNS:
        sanitized = pattern.sub("[redacted]", sanitized)
    return sanitized[:_MAX_ERROR_LENGTH]
