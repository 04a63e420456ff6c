from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from notify_digest.core.errors import sanitize_error
from notify_digest.core.logging import bound_request_id, get_logger
from notify_digest.core.settings import Settings, get_settings
from notify_digest.notifications.digest_queue import resolve_timezone
from notify_digest.notifications.models import CADENCES, Cadence, as_utc, utc_iso
from notify_digest.worker.digest_aggregator import DigestAggregator
from notify_digest.worker.digest_sender import DigestSender, OutboundMessage

logger = get_logger("worker.digest_runner")


@dataclass
class CadenceSummary:
    cadence: Cadence
    skipped: bool = False
    recipients: int = 0
    sent: int = 0
    failed: int = 0
    deferred: int = 0
    errors: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "cadence": self.cadence,
            "skipped": self.skipped,
            "recipients": self.recipients,
            "sent": self.sent,
            "failed": self.failed,
            "deferred": self.deferred,
            "errors": list(self.errors),
        }


@dataclass
class DigestRunSummary:
    started_at: datetime
    cadences: dict[str, CadenceSummary] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)

    @property
    def sent_count(self) -> int:
        return sum(item.sent for item in self.cadences.values())

    def as_dict(self) -> dict[str, Any]:
        return {
            "started_at": utc_iso(self.started_at),
            "sent_count": self.sent_count,
            "cadences": {name: item.as_dict() for name, item in self.cadences.items()},
            "errors": list(self.errors),
        }


def _selected_cadences(cadence: str) -> tuple[Cadence, ...]:
    normalized = (cadence or "all").strip().lower()
    if normalized == "all":
        return CADENCES
    for candidate in CADENCES:
        if candidate == normalized:
            return (candidate,)
    raise ValueError(f"unknown digest cadence: {cadence!r}")


class DigestRunner:
    """Runs one digest pass per selected cadence.

    Weekly digests only go out on the configured trigger weekday, read in
    ``trigger_timezone`` (UTC when unset) so a local Monday-morning schedule
    still counts as Monday. On any other day the weekly pass returns without
    touching the store. A failure
    inside one cadence is recorded in the summary and the next cadence still
    runs.
    """

    def __init__(
        self,
        *,
        aggregator: DigestAggregator,
        sender: DigestSender,
        weekly_trigger_weekday: int = 0,
        trigger_timezone: str | None = None,
    ) -> None:
        self.aggregator = aggregator
        self.sender = sender
        self.weekly_trigger_weekday = max(0, min(weekly_trigger_weekday, 6))
        self.trigger_zone = resolve_timezone(trigger_timezone)

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "DigestRunner":
        settings = settings or get_settings()
        return cls(
            aggregator=DigestAggregator(),
            sender=DigestSender.from_settings(settings),
            weekly_trigger_weekday=settings.DIGEST_WEEKLY_TRIGGER_WEEKDAY,
            trigger_timezone=settings.DIGEST_DEFAULT_TIMEZONE,
        )

    async def run_digests(self, cadence: str = "all", now: datetime | None = None) -> DigestRunSummary:
        selected = _selected_cadences(cadence)
        current = as_utc(now or datetime.now(UTC))
        summary = DigestRunSummary(started_at=current)

        for item in selected:
            with bound_request_id(f"digest-{item}-{current.date().isoformat()}"):
                try:
                    summary.cadences[item] = await self._run_cadence(item, current)
                except Exception as exc:
                    error_text = sanitize_error(exc, default_message=f"{item} digest run failed")
                    logger.error(
                        "digest.cadence_failed",
                        extra={"component": "digest", "cadence": item, "error": error_text},
                    )
                    summary.cadences[item] = CadenceSummary(cadence=item, errors=[error_text])
                    summary.errors.append(f"{item}: {error_text}")

        logger.info(
            "digest.run_finished",
            extra={
                "component": "digest",
                "cadence": cadence,
                "sent": summary.sent_count,
                "errors": len(summary.errors),
            },
        )
        return summary

    async def _run_cadence(self, cadence: Cadence, now: datetime) -> CadenceSummary:
        result = CadenceSummary(cadence=cadence)
        local_weekday = now.astimezone(self.trigger_zone).weekday()
        if cadence == "weekly" and local_weekday != self.weekly_trigger_weekday:
            logger.info(
                "digest.weekly_not_due",
                extra={"component": "digest", "weekday": local_weekday, "trigger_weekday": self.weekly_trigger_weekday},
            )
            result.skipped = True
            return result

        entries = await self.aggregator.collect_pending(cadence, now)
        grouped = self.aggregator.group_by_recipient(entries)
        result.recipients = len(grouped)

        messages: list[OutboundMessage] = []
        for recipient_id, recipient_entries in grouped.items():
            try:
                digest = await self.aggregator.build_digest(recipient_id, recipient_entries, now=now)
                if digest is None:
                    continue
                messages.append(self.sender.prepare(digest))
            except Exception as exc:
                error_text = sanitize_error(exc, default_message="digest build failed")
                logger.warning(
                    "digest.recipient_failed",
                    extra={"component": "digest", "cadence": cadence, "recipient_id": recipient_id, "error": error_text},
                )
                result.errors.append(f"{recipient_id}: {error_text}")

        for send_result in await self.sender.send_all(messages):
            if send_result.status == "sent":
                result.sent += 1
            elif send_result.status == "deferred":
                result.deferred += 1
            else:
                result.failed += 1

        logger.info(
            "digest.cadence_finished",
            extra={
                "component": "digest",
                "cadence": cadence,
                "entries": len(entries),
                "recipients": result.recipients,
                "sent": result.sent,
                "failed": result.failed,
                "deferred": result.deferred,
            },
        )
        return result
