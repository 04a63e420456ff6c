import asyncio
import json
import logging
from datetime import UTC, datetime

from fastapi import HTTPException

from notify_digest.core import logging as notify_logging
from notify_digest.core.errors import StoreError, sanitize_error
from notify_digest.core.logging import (
    JsonLogFormatter,
    bound_request_id,
    configure_logging,
    get_request_id,
    reset_request_id,
    set_request_id,
)
from notify_digest.core.settings import Settings
from notify_digest.worker import maintenance


def _format(**extra) -> dict[str, object]:
    record = logging.LogRecord("worker.digest_sender", logging.INFO, __file__, 1, "digest.chunk_failed", None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return json.loads(JsonLogFormatter().format(record))


def test_json_formatter_redacts_secrets_and_recipient_addresses() -> None:
    payload = _format(
        component="digest",
        unsubscribe_token="eyJhbGciOiJIUzI1NiJ9.e30.sig",
        api_key="re_live",
        recipient_email="owner@example.com",
        recipient_id="user-1",
        scheduled_for=datetime(2026, 10, 19, 21, 0, tzinfo=UTC),
    )

    assert payload["msg"] == "digest.chunk_failed"
    assert payload["component"] == "digest"
    assert payload["unsubscribe_token"] == "[redacted]"
    assert payload["api_key"] == "[redacted]"
    assert payload["recipient_email"] == "[redacted]"
    assert payload["recipient_id"] == "user-1"
    assert payload["scheduled_for"] == "2026-10-19T21:00:00Z"


def test_json_formatter_includes_current_request_id() -> None:
    token = set_request_id("digest-daily-2026-10-19")
    try:
        payload = _format()
    finally:
        reset_request_id(token)

    assert payload["request_id"] == "digest-daily-2026-10-19"
    assert payload["component"] == "worker.digest_sender"


def test_json_formatter_masks_addresses_inside_values_and_unsubscribe_links() -> None:
    payload = _format(
        error="mailbox owner@example.com unavailable",
        unsubscribe_url="https://portfolio.example.com/unsubscribe/abc",
        context={"authorization": "Bearer abc", "recipients": ["a@example.com", "user-2"]},
        entries=("q-1", "q-2"),
    )

    assert payload["error"] == "mailbox [email] unavailable"
    assert payload["unsubscribe_url"] == "[redacted]"
    assert payload["context"] == {"authorization": "[redacted]", "recipients": ["[email]", "user-2"]}
    assert payload["entries"] == ["q-1", "q-2"]


def test_json_formatter_uses_record_time_and_skips_record_internals() -> None:
    record = logging.LogRecord("cli", logging.INFO, __file__, 1, "cli.done", None, None)
    record.created = datetime(2026, 10, 19, 22, 0, tzinfo=UTC).timestamp()

    payload = json.loads(JsonLogFormatter().format(record))

    assert payload["ts"] == "2026-10-19T22:00:00Z"
    assert set(payload) == {"ts", "level", "msg", "component"}


def test_bound_request_id_restores_previous_value() -> None:
    with bound_request_id("digest-weekly-2026-10-19") as request_id:
        assert get_request_id() == request_id
        assert _format()["request_id"] == "digest-weekly-2026-10-19"
    assert get_request_id() is None


def test_configure_logging_quiets_http_client_loggers(monkeypatch) -> None:
    root = logging.getLogger()
    monkeypatch.setattr(notify_logging, "_configured", False)
    monkeypatch.setattr(root, "handlers", list(root.handlers))
    monkeypatch.setattr(root, "level", root.level)
    monkeypatch.setattr(logging.getLogger("httpx"), "level", logging.NOTSET)
    monkeypatch.setattr(logging.getLogger("httpcore"), "level", logging.NOTSET)

    configure_logging("DEBUG")

    assert logging.getLogger("httpx").level == logging.WARNING
    assert isinstance(root.handlers[-1].formatter, JsonLogFormatter)


def test_sanitize_error_redacts_credentials_tokens_and_emails() -> None:
    message = sanitize_error(
        RuntimeError(
            "Bearer abc.def failed for owner@example.com with token=xyz "
            "and jwt eyJhbGciOiJIUzI1NiJ9.eyJzdWIiOiJ1In0.c2ln"
        ),
        default_message="failed",
    )

    assert "abc.def" not in message
    assert "owner@example.com" not in message
    assert "xyz" not in message
    assert "eyJ" not in message
    assert "[redacted]" in message


def test_sanitize_error_falls_back_and_truncates() -> None:
    assert sanitize_error(StoreError(""), default_message="store error") == "store error"
    assert sanitize_error(HTTPException(status_code=400, detail="bad link"), default_message="x") == "bad link"
    assert len(sanitize_error(RuntimeError("x" * 2000), default_message="x")) == 500


def test_purge_revocations_cleans_shared_quota_windows(monkeypatch) -> None:
    class _FakeTokenService:
        async def purge_expired_revocations(self, *, now=None) -> int:
            return 2

    class _FakeSharedLimiter(maintenance.SharedRateLimiter):
        async def cleanup_expired(self) -> int:
            return 5

    monkeypatch.setattr(maintenance, "build_rate_limiter", lambda settings: _FakeSharedLimiter())

    result = asyncio.run(
        maintenance.purge_revocations(
            Settings(EMAIL_RATE_LIMIT_BACKEND="shared"),
            token_service=_FakeTokenService(),
        )
    )

    assert result == {"revocations_removed": 2, "quota_windows_removed": 5}


def test_purge_revocations_skips_quota_cleanup_for_memory_backend() -> None:
    class _FakeTokenService:
        async def purge_expired_revocations(self, *, now=None) -> int:
            return 0

    result = asyncio.run(maintenance.purge_revocations(Settings(), token_service=_FakeTokenService()))

    assert result == {"revocations_removed": 0, "quota_windows_removed": 0}
