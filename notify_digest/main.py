from fastapi import FastAPI

from notify_digest.api.v1.router import router as v1_router
from notify_digest.core.logging import configure_logging
from notify_digest.core.settings import get_settings
from notify_digest.middleware.rate_limit import RateLimitMiddleware
from notify_digest.middleware.request_id import RequestIDMiddleware

configure_logging()
settings = get_settings()

app = FastAPI(title="Notify Digest API")

app.add_middleware(
    RateLimitMiddleware,
    max_requests_per_minute=settings.API_RATE_LIMIT_PER_MINUTE,
    enabled=settings.API_RATE_LIMIT_ENABLED,
)
app.add_middleware(RequestIDMiddleware)

app.include_router(v1_router, prefix="/api/v1")


@app.get("/healthz")
def root_healthz() -> dict[str, str]:
    return {"status": "ok"}
