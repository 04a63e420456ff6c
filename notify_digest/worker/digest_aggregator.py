from __future__ import annotations

from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

from notify_digest.core.logging import get_logger
from notify_digest.core.supabase_rest import (
    select_notification_preferences_service,
    select_notifications_by_ids_service,
    select_pending_digest_entries_service,
    select_projects_by_ids_service,
    select_users_by_ids_service,
)
from notify_digest.notifications.models import (
    UNKNOWN_PROJECT_NAME,
    Cadence,
    DigestGroup,
    DigestQueueEntry,
    NotificationEvent,
    PreparedDigest,
    Recipient,
    RecipientPreference,
    as_utc,
    utc_iso,
)

logger = get_logger("worker.digest_aggregator")

ModelT = TypeVar("ModelT", bound=BaseModel)


def _parse_rows(rows: Iterable[dict[str, Any]], model: type[ModelT], *, kind: str) -> list[ModelT]:
    parsed: list[ModelT] = []
    for row in rows:
        try:
            parsed.append(model.model_validate(row))
        except ValidationError:
            logger.warning(
                "digest.row_invalid",
                extra={"component": "digest", "kind": kind, "row_id": str(row.get("id") or row.get("user_id"))},
            )
    return parsed


class DigestAggregator:
    async def collect_pending(self, cadence: Cadence, as_of: datetime) -> list[DigestQueueEntry]:
        """Return unprocessed entries due by ``as_of`` whose recipient still wants ``cadence``."""

        cutoff = as_utc(as_of)
        rows = await select_pending_digest_entries_service(cadence, utc_iso(cutoff))
        entries = [
            entry
            for entry in _parse_rows(rows, DigestQueueEntry, kind="digest_queue")
            if entry.digest_type == cadence and not entry.processed and entry.scheduled_for <= cutoff
        ]
        if not entries:
            return []

        preference_rows = await select_notification_preferences_service([entry.user_id for entry in entries])
        current_cadence = {
            preference.user_id: preference.email_digest_frequency
            for preference in _parse_rows(preference_rows, RecipientPreference, kind="notification_preferences")
        }
        eligible = [entry for entry in entries if current_cadence.get(entry.user_id) == cadence]

        skipped = len(entries) - len(eligible)
        if skipped:
            logger.info(
                "digest.entries_skipped_by_preference",
                extra={"component": "digest", "cadence": cadence, "count": skipped},
            )
        return eligible

    @staticmethod
    def group_by_recipient(entries: Iterable[DigestQueueEntry]) -> dict[str, list[DigestQueueEntry]]:
        grouped: dict[str, list[DigestQueueEntry]] = {}
        for entry in entries:
            grouped.setdefault(entry.user_id, []).append(entry)
        return grouped

    async def build_digest(
        self,
        recipient_id: str,
        entries: list[DigestQueueEntry],
        *,
        now: datetime | None = None,
    ) -> PreparedDigest | None:
        """Resolve and group one recipient's events; None when nothing is left to send."""

        if not entries:
            return None
        cadence = entries[0].digest_type

        user_rows = await select_users_by_ids_service([recipient_id])
        recipients = [user for user in _parse_rows(user_rows, Recipient, kind="users") if user.id == recipient_id]
        if not recipients or not recipients[0].email.strip():
            logger.warning(
                "digest.recipient_unresolved",
                extra={"component": "digest", "recipient_id": recipient_id, "cadence": cadence},
            )
            return None
        recipient = recipients[0]

        event_rows = await select_notifications_by_ids_service([entry.notification_id for entry in entries])
        events_by_id = {
            event.id: event
            for event in _parse_rows(event_rows, NotificationEvent, kind="notifications")
            if event.user_id == recipient_id
        }

        resolved: list[tuple[DigestQueueEntry, NotificationEvent]] = []
        seen_events: set[str] = set()
        covered_entry_ids: list[str] = []
        for entry in entries:
            event = events_by_id.get(entry.notification_id)
            if event is None:
                continue
            covered_entry_ids.append(entry.id)
            # Two queue rows for one event still render the event once.
            if event.id in seen_events:
                continue
            seen_events.add(event.id)
            resolved.append((entry, event))

        unresolved = len(entries) - len(covered_entry_ids)
        if unresolved:
            logger.info(
                "digest.events_unresolved",
                extra={"component": "digest", "recipient_id": recipient_id, "count": unresolved},
            )
        if not resolved:
            return None

        resolved.sort(key=lambda pair: pair[1].created_at)

        project_ids = [event.project_id for _, event in resolved if event.project_id]
        project_names: dict[str, str] = {}
        if project_ids:
            for row in await select_projects_by_ids_service(project_ids):
                project_id = row.get("id")
                name = row.get("name")
                if isinstance(project_id, str) and isinstance(name, str) and name.strip():
                    project_names[project_id] = name.strip()

        groups: dict[str, DigestGroup] = {}
        for _, event in resolved:
            key = event.project_id or ""
            group = groups.get(key)
            if group is None:
                group = DigestGroup(
                    project_id=event.project_id,
                    project_name=project_names.get(event.project_id or "", UNKNOWN_PROJECT_NAME),
                )
                groups[key] = group
            group.events.append(event)

        return PreparedDigest(
            recipient=recipient,
            cadence=cadence,
            groups=groups,
            generated_at=as_utc(now or datetime.now(UTC)),
            entry_ids=covered_entry_ids,
        )
