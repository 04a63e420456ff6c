"""Mail transports used by the digest sender.

Whatever a provider returns is turned into ``Accepted`` or ``Rejected``
right here, one result per submitted message and in submission order. An
exception from ``send_batch`` means the whole batch failed and nothing in it
may be treated as delivered.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx
from fastapi.concurrency import run_in_threadpool

from notify_digest.core.errors import sanitize_error
from notify_digest.core.logging import get_logger
from notify_digest.core.settings import Settings, get_settings
from notify_digest.notifications.emailer import EmailNotConfiguredError, EmailSendError, send_email

logger = get_logger("notifications.transport")


@dataclass(frozen=True)
class RenderedMessage:
    to: str
    subject: str
    html: str
    text: str
    headers: dict[str, str] = field(default_factory=dict)
    tags: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Accepted:
    provider_message_id: str | None


@dataclass(frozen=True)
class Rejected:
    reason: str


TransportResult = Accepted | Rejected


class MailTransport(Protocol):
    max_batch_size: int

    async def send_batch(self, messages: list[RenderedMessage]) -> list[TransportResult]:
        ...


def interpret_batch_response(payload: Any, submitted: int) -> list[TransportResult]:
    """Map a Resend batch response onto the submitted messages.

    In permissive validation mode Resend returns ids for the messages it
    accepted under ``data`` (in submission order) and per-index failures
    under ``errors``.
    """

    if not isinstance(payload, dict):
        raise EmailSendError("Unexpected batch response from mail provider.")

    errors_by_index: dict[int, str] = {}
    raw_errors = payload.get("errors")
    if isinstance(raw_errors, list):
        for item in raw_errors:
            if not isinstance(item, dict):
                continue
            index = item.get("index")
            if isinstance(index, int) and 0 <= index < submitted:
                message = item.get("message")
                errors_by_index[index] = str(message).strip() if message else "rejected by provider"

    raw_data = payload.get("data")
    if not isinstance(raw_data, list):
        raise EmailSendError("Mail provider response is missing accepted message ids.")
    accepted_ids: list[str | None] = []
    for item in raw_data:
        provider_id = item.get("id") if isinstance(item, dict) else None
        accepted_ids.append(str(provider_id) if provider_id else None)

    results: list[TransportResult] = []
    accepted_iter = iter(accepted_ids)
    for index in range(submitted):
        if index in errors_by_index:
            results.append(Rejected(reason=errors_by_index[index]))
            continue
        try:
            provider_id = next(accepted_iter)
        except StopIteration:
            results.append(Rejected(reason="mail provider did not confirm this message"))
            continue
        results.append(Accepted(provider_message_id=provider_id))
    return results


def _tag_value(value: str) -> str:
    cleaned = "".join(char if char.isalnum() or char in "_-" else "_" for char in value.strip())
    return cleaned[:256] or "none"


class ResendBatchTransport:
    def __init__(
        self,
        *,
        api_key: str,
        from_email: str,
        api_url: str = "https://api.resend.com",
        max_batch_size: int = 100,
        timeout_seconds: float = 15.0,
    ) -> None:
        if not api_key.strip() or not from_email.strip():
            raise EmailNotConfiguredError("Resend transport is not configured.")
        self.api_key = api_key.strip()
        self.from_email = from_email.strip()
        self.api_url = api_url.rstrip("/")
        self.max_batch_size = max(1, min(max_batch_size, 100))
        self.timeout_seconds = timeout_seconds

    def _message_payload(self, message: RenderedMessage) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "from": self.from_email,
            "to": [message.to],
            "subject": message.subject,
            "html": message.html,
            "text": message.text,
        }
        if message.headers:
            payload["headers"] = dict(message.headers)
        if message.tags:
            payload["tags"] = [
                {"name": _tag_value(name), "value": _tag_value(value)} for name, value in message.tags.items()
            ]
        return payload

    async def send_batch(self, messages: list[RenderedMessage]) -> list[TransportResult]:
        if not messages:
            return []
        if len(messages) > self.max_batch_size:
            raise ValueError(f"batch of {len(messages)} exceeds provider maximum of {self.max_batch_size}")

        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "x-batch-validation": "permissive",
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                response = await client.post(
                    f"{self.api_url}/emails/batch",
                    json=[self._message_payload(message) for message in messages],
                    headers=headers,
                )
                response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise EmailSendError(
                f"Mail provider rejected the batch with status {exc.response.status_code}."
            ) from exc
        except httpx.HTTPError as exc:
            raise EmailSendError("Mail provider request failed.") from exc

        try:
            payload = response.json()
        except ValueError as exc:
            raise EmailSendError("Mail provider returned a non-JSON response.") from exc

        results = interpret_batch_response(payload, len(messages))
        logger.info(
            "transport.batch_submitted",
            extra={
                "component": "mail",
                "provider": "resend",
                "submitted": len(messages),
                "accepted": sum(1 for result in results if isinstance(result, Accepted)),
            },
        )
        return results


class SmtpTransport:
    """Sends each message of a batch over its own SMTP session."""

    def __init__(self, *, max_batch_size: int = 100) -> None:
        self.max_batch_size = max(1, max_batch_size)

    async def send_batch(self, messages: list[RenderedMessage]) -> list[TransportResult]:
        results: list[TransportResult] = []
        for message in messages:
            try:
                message_id = await run_in_threadpool(
                    send_email,
                    to=message.to,
                    subject=message.subject,
                    html=message.html,
                    text=message.text,
                    headers=message.headers,
                )
            except EmailSendError as exc:
                results.append(Rejected(reason=sanitize_error(exc, default_message="smtp delivery failed")))
                continue
            results.append(Accepted(provider_message_id=message_id))
        return results


def build_transport(settings: Settings | None = None) -> ResendBatchTransport | SmtpTransport:
    settings = settings or get_settings()
    if settings.EMAIL_PROVIDER == "smtp":
        return SmtpTransport(max_batch_size=settings.DIGEST_CHUNK_SIZE)
    return ResendBatchTransport(
        api_key=settings.RESEND_API_KEY or "",
        from_email=settings.EMAIL_FROM or "",
        api_url=settings.RESEND_API_URL,
        max_batch_size=settings.RESEND_MAX_BATCH_SIZE,
    )
