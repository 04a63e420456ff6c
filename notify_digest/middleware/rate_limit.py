from datetime import timedelta

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from notify_digest.notifications.rate_limiter import InMemoryRateLimiter


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Per-IP request limit for /api routes, one window per minute."""

    def __init__(self, app, max_requests_per_minute: int = 30, enabled: bool = True) -> None:
        super().__init__(app)
        self.enabled = enabled
        self.limiter = InMemoryRateLimiter(limit=max_requests_per_minute, window=timedelta(minutes=1))

    @staticmethod
    def _extract_forwarded_ip(request: Request) -> str:
        forwarded_for = request.headers.get("x-forwarded-for", "")
        if forwarded_for:
            first_ip = forwarded_for.split(",")[0].strip()
            if first_ip:
                return first_ip

        real_ip = request.headers.get("x-real-ip", "").strip()
        if real_ip:
            return real_ip

        return request.client.host if request.client else "unknown"

    async def dispatch(self, request: Request, call_next) -> Response:  # type: ignore[override]
        if not self.enabled or not request.url.path.startswith("/api"):
            return await call_next(request)

        client_key = f"ip:{self._extract_forwarded_ip(request)}"
        if not self.limiter.consume(client_key):
            return JSONResponse(status_code=429, content={"detail": "Too Many Requests"})

        return await call_next(request)
