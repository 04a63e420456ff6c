from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from threading import Lock
from typing import Protocol

from notify_digest.core.errors import StoreError
from notify_digest.core.settings import Settings, get_settings
from notify_digest.core.supabase_rest import (
    delete_email_quota_service,
    rpc_consume_email_quota,
    rpc_release_email_quota,
    select_email_quota_service,
)
from notify_digest.notifications.models import as_utc, utc_iso


Clock = Callable[[], datetime]


def _utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass
class _Window:
    count: int
    reset_at: datetime


@dataclass(frozen=True)
class RateLimitUsage:
    count: int
    reset_at: datetime | None


class RateLimiter(Protocol):
    async def try_consume(self, subject_id: str, *, bypass: bool = False) -> bool:
        ...

    async def current_usage(self, subject_id: str) -> RateLimitUsage:
        ...

    async def release(self, subject_id: str) -> None:
        ...


class InMemoryRateLimiter:
    """Per-subject sliding window kept in process memory.

    The window opens on the first send and lasts ``window``; once
    ``reset_at`` is reached the next send starts a fresh window at count 1.
    ``release`` hands back a slot for a send the provider never took.
    Only valid when a single worker consumes quota at a time.
    """

    def __init__(
        self,
        *,
        limit: int = 10,
        window: timedelta = timedelta(hours=1),
        clock: Clock | None = None,
    ) -> None:
        self.limit = max(1, limit)
        self.window = window
        self._clock = clock or _utc_now
        self._windows: dict[str, _Window] = {}
        self._lock = Lock()

    def consume(self, subject_id: str, *, bypass: bool = False) -> bool:
        if bypass:
            return True

        now = self._clock()
        with self._lock:
            window = self._windows.get(subject_id)
            if window is None or now >= window.reset_at:
                self._windows[subject_id] = _Window(count=1, reset_at=now + self.window)
                return True

            if window.count >= self.limit:
                return False

            window.count += 1
            return True

    def refund(self, subject_id: str) -> None:
        now = self._clock()
        with self._lock:
            window = self._windows.get(subject_id)
            if window is not None and now < window.reset_at and window.count > 0:
                window.count -= 1

    def usage(self, subject_id: str) -> RateLimitUsage:
        now = self._clock()
        with self._lock:
            window = self._windows.get(subject_id)
            if window is None or now >= window.reset_at:
                return RateLimitUsage(count=0, reset_at=None)
            return RateLimitUsage(count=window.count, reset_at=window.reset_at)

    async def try_consume(self, subject_id: str, *, bypass: bool = False) -> bool:
        return self.consume(subject_id, bypass=bypass)

    async def current_usage(self, subject_id: str) -> RateLimitUsage:
        return self.usage(subject_id)

    async def release(self, subject_id: str) -> None:
        self.refund(subject_id)

    def reset(self, subject_id: str) -> None:
        with self._lock:
            self._windows.pop(subject_id, None)

    def clear(self) -> None:
        with self._lock:
            self._windows.clear()

    def cleanup_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [key for key, window in self._windows.items() if now >= window.reset_at]
            for key in expired:
                del self._windows[key]
        return len(expired)


class SharedRateLimiter:
    """Sliding window held in the shared store for multi-worker deployments.

    Counting happens inside the ``consume_email_quota`` database function so
    concurrent workers increment one row atomically.
    """

    def __init__(
        self,
        *,
        limit: int = 10,
        window: timedelta = timedelta(hours=1),
        clock: Clock | None = None,
    ) -> None:
        self.limit = max(1, limit)
        self.window = window
        self._clock = clock or _utc_now

    async def try_consume(self, subject_id: str, *, bypass: bool = False) -> bool:
        if bypass:
            return True
        result = await rpc_consume_email_quota(
            subject_id,
            self.limit,
            max(1, int(self.window.total_seconds())),
        )
        allowed = result.get("allowed")
        if not isinstance(allowed, bool):
            raise StoreError("Email quota response is missing 'allowed'.")
        return allowed

    async def release(self, subject_id: str) -> None:
        await rpc_release_email_quota(subject_id)

    async def current_usage(self, subject_id: str) -> RateLimitUsage:
        row = await select_email_quota_service(subject_id)
        if row is None:
            return RateLimitUsage(count=0, reset_at=None)

        raw_reset = row.get("reset_at")
        try:
            reset_at = as_utc(datetime.fromisoformat(str(raw_reset).replace("Z", "+00:00")))
        except ValueError:
            return RateLimitUsage(count=0, reset_at=None)
        if self._clock() >= reset_at:
            return RateLimitUsage(count=0, reset_at=None)

        count = row.get("count")
        return RateLimitUsage(count=count if isinstance(count, int) else 0, reset_at=reset_at)

    async def reset(self, subject_id: str) -> None:
        await delete_email_quota_service(subject_id)

    async def clear(self) -> None:
        await delete_email_quota_service()

    async def cleanup_expired(self) -> int:
        return await delete_email_quota_service(expired_before=utc_iso(self._clock()))


def build_rate_limiter(settings: Settings | None = None) -> InMemoryRateLimiter | SharedRateLimiter:
    settings = settings or get_settings()
    window = timedelta(seconds=max(1, settings.EMAIL_RATE_LIMIT_WINDOW_SECONDS))
    if settings.EMAIL_RATE_LIMIT_BACKEND == "shared":
        return SharedRateLimiter(limit=settings.EMAIL_RATE_LIMIT_MAX, window=window)
    return InMemoryRateLimiter(limit=settings.EMAIL_RATE_LIMIT_MAX, window=window)
