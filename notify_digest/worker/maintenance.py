from __future__ import annotations

from datetime import UTC, datetime

from notify_digest.core.errors import sanitize_error
from notify_digest.core.logging import get_logger
from notify_digest.core.settings import Settings, get_settings
from notify_digest.core.tokens import TokenService
from notify_digest.notifications.rate_limiter import SharedRateLimiter, build_rate_limiter

logger = get_logger("worker.maintenance")


async def purge_revocations(
    settings: Settings | None = None,
    *,
    token_service: TokenService | None = None,
    now: datetime | None = None,
) -> dict[str, int]:
    """Drop revocation records for tokens past expiry, plus stale shared quota windows."""

    settings = settings or get_settings()
    service = token_service or TokenService.from_settings(settings)
    current = now or datetime.now(UTC)

    removed_revocations = await service.purge_expired_revocations(now=current)

    removed_windows = 0
    limiter = build_rate_limiter(settings)
    if isinstance(limiter, SharedRateLimiter):
        try:
            removed_windows = await limiter.cleanup_expired()
        except Exception as exc:
            logger.warning(
                "maintenance.quota_cleanup_failed",
                extra={
                    "component": "maintenance",
                    "error": sanitize_error(exc, default_message="quota window cleanup failed"),
                },
            )

    return {"revocations_removed": removed_revocations, "quota_windows_removed": removed_windows}
