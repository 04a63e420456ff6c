import uuid
from time import perf_counter

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from notify_digest.core.logging import get_logger, reset_request_id, set_request_id

logger = get_logger("api.request")

_MAX_REQUEST_ID_LENGTH = 128


def _path_for_log(request: Request) -> str:
    # Unsubscribe paths embed the token itself.
    path = request.url.path
    if "/unsubscribe/" in path:
        return path.split("/unsubscribe/", maxsplit=1)[0] + "/unsubscribe/{token}"
    return path


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Attach a stable request ID to every response."""

    async def dispatch(self, request: Request, call_next) -> Response:  # type: ignore[override]
        incoming = (request.headers.get("X-Request-ID") or "").strip()
        request_id = incoming[:_MAX_REQUEST_ID_LENGTH] or str(uuid.uuid4())
        request.state.request_id = request_id
        request_id_token = set_request_id(request_id)
        started = perf_counter()
        response: Response | None = None
        path = _path_for_log(request)

        logger.info(
            "request.start",
            extra={"component": "api", "method": request.method, "path": path},
        )
        try:
            response = await call_next(request)
            return response
        except Exception:
            logger.exception(
                "request.error",
                extra={"component": "api", "method": request.method, "path": path},
            )
            raise
        finally:
            duration_ms = int((perf_counter() - started) * 1000)
            status_code = response.status_code if response is not None else 500
            logger.info(
                "request.end",
                extra={
                    "component": "api",
                    "method": request.method,
                    "path": path,
                    "status_code": status_code,
                    "duration_ms": duration_ms,
                },
            )
            if response is not None:
                response.headers["X-Request-ID"] = request_id
            reset_request_id(request_id_token)
