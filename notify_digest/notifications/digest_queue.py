from __future__ import annotations

from datetime import UTC, datetime, time, timedelta, tzinfo
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from notify_digest.core.logging import get_logger
from notify_digest.core.settings import Settings, get_settings
from notify_digest.core.supabase_rest import (
    insert_digest_queue_entry_service,
    select_notification_preferences_service,
)
from notify_digest.notifications.models import (
    CADENCES,
    Cadence,
    DigestQueueEntry,
    RecipientPreference,
    as_utc,
    utc_iso,
)

logger = get_logger("notifications.digest_queue")

_MONDAY = 0


def resolve_timezone(name: str | None) -> tzinfo:
    if not name or not name.strip():
        return UTC
    try:
        return ZoneInfo(name.strip())
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("digest_queue.invalid_timezone", extra={"component": "digest", "timezone": name})
        return UTC


def next_digest_time(
    cadence: Cadence,
    timezone: str | None,
    now: datetime | None = None,
    *,
    send_hour: int = 8,
) -> datetime:
    """Return the UTC instant the next ``cadence`` digest is due for a recipient.

    Daily digests go out at ``send_hour`` local time, today if that hour is
    still ahead and tomorrow otherwise. Weekly digests go out at ``send_hour``
    on the next Monday, which on a Monday means the following week.
    """

    zone = resolve_timezone(timezone)
    local_now = as_utc(now or datetime.now(UTC)).astimezone(zone)
    send_at = time(hour=max(0, min(send_hour, 23)))

    if cadence == "weekly":
        days_ahead = (_MONDAY - local_now.weekday()) % 7 or 7
        target_date = local_now.date() + timedelta(days=days_ahead)
    else:
        target_date = local_now.date()
        if datetime.combine(target_date, send_at, tzinfo=zone) <= local_now:
            target_date += timedelta(days=1)

    return datetime.combine(target_date, send_at, tzinfo=zone).astimezone(UTC)


async def queue_for_digest(
    user_id: str,
    notification_id: str,
    cadence: Cadence,
    timezone: str | None = None,
    *,
    now: datetime | None = None,
    settings: Settings | None = None,
) -> DigestQueueEntry:
    if cadence not in CADENCES:
        raise ValueError(f"unknown digest cadence: {cadence!r}")
    settings = settings or get_settings()
    current = as_utc(now or datetime.now(UTC))
    scheduled_for = next_digest_time(
        cadence,
        timezone or settings.DIGEST_DEFAULT_TIMEZONE,
        current,
        send_hour=settings.DIGEST_SEND_HOUR,
    )

    row = await insert_digest_queue_entry_service(
        {
            "user_id": user_id,
            "notification_id": notification_id,
            "digest_type": cadence,
            "scheduled_for": utc_iso(scheduled_for),
            "processed": False,
        }
    )
    entry = DigestQueueEntry.model_validate(row)
    logger.info(
        "digest_queue.queued",
        extra={
            "component": "digest",
            "user_id": user_id,
            "cadence": cadence,
            "scheduled_for": entry.scheduled_for,
        },
    )
    return entry


async def queue_notification(
    user_id: str,
    notification_id: str,
    *,
    now: datetime | None = None,
    settings: Settings | None = None,
) -> DigestQueueEntry | None:
    """Queue a notification when the recipient receives digests.

    Returns None for recipients on ``immediate`` or ``never``; immediate
    delivery is handled outside this package.
    """

    rows = await select_notification_preferences_service([user_id])
    preference = None
    for row in rows:
        if row.get("user_id") == user_id:
            preference = RecipientPreference.model_validate(row)
            break
    if preference is None or preference.email_digest_frequency not in CADENCES:
        return None

    return await queue_for_digest(
        user_id,
        notification_id,
        preference.email_digest_frequency,
        preference.timezone,
        now=now,
        settings=settings,
    )
