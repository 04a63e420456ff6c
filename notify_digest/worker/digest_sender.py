from __future__ import annotations

import asyncio
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Literal

from notify_digest.core.errors import sanitize_error
from notify_digest.core.logging import get_logger
from notify_digest.core.settings import Settings, get_settings
from notify_digest.core.supabase_rest import insert_email_log_service, mark_digest_entries_processed_service
from notify_digest.core.tokens import TokenService
from notify_digest.notifications.emailer import EmailSendError
from notify_digest.notifications.models import Cadence, PreparedDigest, utc_iso
from notify_digest.notifications.rate_limiter import RateLimiter, build_rate_limiter
from notify_digest.notifications.templates import digest_email
from notify_digest.notifications.transport import (
    Accepted,
    MailTransport,
    Rejected,
    RenderedMessage,
    build_transport,
)

logger = get_logger("worker.digest_sender")

SendStatus = Literal["sent", "failed", "deferred"]


@dataclass(frozen=True)
class OutboundMessage:
    recipient_id: str
    cadence: Cadence
    entry_ids: tuple[str, ...]
    event_ids: tuple[str, ...]
    rendered: RenderedMessage
    critical: bool = False
    unsubscribe_jti: str | None = None


@dataclass(frozen=True)
class SendResult:
    message: OutboundMessage
    status: SendStatus
    provider_message_id: str | None = None
    error: str | None = None


def _utc_now() -> datetime:
    return datetime.now(UTC)


class DigestSender:
    """Renders prepared digests and delivers them in provider-sized chunks.

    Queue entries are marked processed only for messages the transport
    accepted. Rate-limited messages come back ``deferred`` and failed ones
    ``failed``; both leave their entries for the next run, so a retry can
    repeat a delivery but never drops one.
    """

    def __init__(
        self,
        *,
        transport: MailTransport,
        rate_limiter: RateLimiter,
        token_service: TokenService,
        app_url: str,
        chunk_size: int = 100,
        chunk_concurrency: int = 1,
        critical_event_types: frozenset[str] = frozenset(),
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.transport = transport
        self.rate_limiter = rate_limiter
        self.token_service = token_service
        self.app_url = app_url.rstrip("/")
        self.chunk_size = max(1, min(chunk_size, transport.max_batch_size))
        self.chunk_concurrency = max(1, chunk_concurrency)
        self.critical_event_types = frozenset(item.lower() for item in critical_event_types)
        self._clock = clock or _utc_now

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        *,
        transport: MailTransport | None = None,
        rate_limiter: RateLimiter | None = None,
        token_service: TokenService | None = None,
    ) -> "DigestSender":
        settings = settings or get_settings()
        return cls(
            transport=transport or build_transport(settings),
            rate_limiter=rate_limiter or build_rate_limiter(settings),
            token_service=token_service or TokenService.from_settings(settings),
            app_url=settings.APP_URL,
            chunk_size=settings.DIGEST_CHUNK_SIZE,
            chunk_concurrency=settings.DIGEST_CHUNK_CONCURRENCY,
            critical_event_types=settings.critical_event_types,
        )

    def prepare(self, digest: PreparedDigest) -> OutboundMessage:
        issued = self.token_service.issue_unsubscribe(digest.recipient.id)
        unsubscribe_url = f"{self.app_url}/unsubscribe/{issued.token}"
        content = digest_email(digest, app_url=self.app_url, unsubscribe_url=unsubscribe_url)

        rendered = RenderedMessage(
            to=digest.recipient.email.strip(),
            subject=content["subject"],
            html=content["html"],
            text=content["text"],
            headers={"List-Unsubscribe": f"<{unsubscribe_url}>"},
            tags={
                "category": f"{digest.cadence}_digest",
                "cadence": digest.cadence,
                "digest_date": digest.generated_at.date().isoformat(),
            },
        )
        critical = any(event_type.lower() in self.critical_event_types for event_type in digest.event_types)
        return OutboundMessage(
            recipient_id=digest.recipient.id,
            cadence=digest.cadence,
            entry_ids=tuple(digest.entry_ids),
            event_ids=tuple(digest.event_ids),
            rendered=rendered,
            critical=critical,
            unsubscribe_jti=issued.jti,
        )

    async def send_all(self, messages: Sequence[OutboundMessage]) -> list[SendResult]:
        if not messages:
            return []

        chunks = [list(messages[start : start + self.chunk_size]) for start in range(0, len(messages), self.chunk_size)]
        semaphore = asyncio.Semaphore(self.chunk_concurrency)

        async def _guarded(index: int, chunk: list[OutboundMessage]) -> list[SendResult]:
            async with semaphore:
                return await self._send_chunk(index, chunk)

        chunk_results = await asyncio.gather(*(_guarded(index, chunk) for index, chunk in enumerate(chunks)))
        results = [result for chunk in chunk_results for result in chunk]

        logger.info(
            "digest.send_all_finished",
            extra={
                "component": "digest",
                "chunks": len(chunks),
                "sent": sum(1 for result in results if result.status == "sent"),
                "failed": sum(1 for result in results if result.status == "failed"),
                "deferred": sum(1 for result in results if result.status == "deferred"),
            },
        )
        return results

    async def _send_chunk(self, chunk_index: int, chunk: list[OutboundMessage]) -> list[SendResult]:
        results: dict[int, SendResult] = {}
        allowed: list[tuple[int, OutboundMessage]] = []

        for position, message in enumerate(chunk):
            try:
                permitted = await self.rate_limiter.try_consume(message.recipient_id, bypass=message.critical)
            except Exception as exc:
                error_text = sanitize_error(exc, default_message="rate limiter unavailable")
                logger.warning(
                    "digest.rate_limiter_failed",
                    extra={"component": "digest", "recipient_id": message.recipient_id, "error": error_text},
                )
                results[position] = SendResult(message=message, status="deferred", error=error_text)
                continue

            if not permitted:
                logger.info(
                    "digest.send_deferred",
                    extra={"component": "digest", "recipient_id": message.recipient_id, "cadence": message.cadence},
                )
                results[position] = SendResult(message=message, status="deferred", error="rate limit exceeded")
                continue
            allowed.append((position, message))

        if allowed:
            try:
                outcomes = await self.transport.send_batch([message.rendered for _, message in allowed])
                if len(outcomes) != len(allowed):
                    raise EmailSendError(
                        f"transport returned {len(outcomes)} results for {len(allowed)} messages"
                    )
            except Exception as exc:
                error_text = sanitize_error(exc, default_message="mail transport failed")
                logger.error(
                    "digest.chunk_failed",
                    extra={
                        "component": "digest",
                        "chunk": chunk_index,
                        "messages": len(allowed),
                        "error": error_text,
                    },
                )
                for position, message in allowed:
                    await self._release_quota(message)
                    results[position] = SendResult(message=message, status="failed", error=error_text)
            else:
                sent_at = self._clock()
                for (position, message), outcome in zip(allowed, outcomes):
                    if isinstance(outcome, Accepted):
                        await self._commit_sent(message, outcome, sent_at)
                        results[position] = SendResult(
                            message=message,
                            status="sent",
                            provider_message_id=outcome.provider_message_id,
                        )
                    else:
                        reason = outcome.reason if isinstance(outcome, Rejected) else "unknown transport result"
                        await self._record_rejection(message, reason, sent_at)
                        await self._release_quota(message)
                        results[position] = SendResult(message=message, status="failed", error=reason)

        return [results[position] for position in range(len(chunk))]

    async def _release_quota(self, message: OutboundMessage) -> None:
        if message.critical:
            return
        try:
            await self.rate_limiter.release(message.recipient_id)
        except Exception as exc:
            logger.warning(
                "digest.rate_limit_release_failed",
                extra={
                    "component": "digest",
                    "recipient_id": message.recipient_id,
                    "error": sanitize_error(exc, default_message="rate limit release failed"),
                },
            )

    async def _commit_sent(self, message: OutboundMessage, outcome: Accepted, sent_at: datetime) -> None:
        try:
            updated = await mark_digest_entries_processed_service(list(message.entry_ids), utc_iso(sent_at))
        except Exception as exc:
            logger.error(
                "digest.mark_processed_failed",
                extra={
                    "component": "digest",
                    "recipient_id": message.recipient_id,
                    "entries": len(message.entry_ids),
                    "error": sanitize_error(exc, default_message="mark processed failed"),
                },
            )
        else:
            if len(updated) != len(message.entry_ids):
                logger.info(
                    "digest.entries_already_processed",
                    extra={
                        "component": "digest",
                        "recipient_id": message.recipient_id,
                        "expected": len(message.entry_ids),
                        "updated": len(updated),
                    },
                )

        await self._write_log(
            message,
            status="sent",
            provider_message_id=outcome.provider_message_id,
            last_error=None,
            sent_at=sent_at,
        )

    async def _record_rejection(self, message: OutboundMessage, reason: str, sent_at: datetime) -> None:
        logger.warning(
            "digest.message_rejected",
            extra={"component": "digest", "recipient_id": message.recipient_id, "error": reason},
        )
        await self._write_log(
            message,
            status="failed",
            provider_message_id=None,
            last_error=reason,
            sent_at=sent_at,
        )

    async def _write_log(
        self,
        message: OutboundMessage,
        *,
        status: str,
        provider_message_id: str | None,
        last_error: str | None,
        sent_at: datetime,
    ) -> None:
        try:
            await insert_email_log_service(
                {
                    "user_id": message.recipient_id,
                    "notification_id": None,
                    "email_type": f"{message.cadence}_digest",
                    "recipient_email": message.rendered.to,
                    "subject": message.rendered.subject,
                    "status": status,
                    "resend_id": provider_message_id,
                    "attempts": 1,
                    "last_error": last_error,
                    "sent_at": utc_iso(sent_at),
                }
            )
        except Exception as exc:
            logger.warning(
                "digest.email_log_failed",
                extra={
                    "component": "digest",
                    "recipient_id": message.recipient_id,
                    "status": status,
                    "error": sanitize_error(exc, default_message="email log write failed"),
                },
            )
