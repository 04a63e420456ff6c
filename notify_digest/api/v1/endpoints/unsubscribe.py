from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from notify_digest.api.v1.schemas.unsubscribe import UnsubscribeOut, UnsubscribeTokenOut
from notify_digest.core.errors import StoreError, sanitize_error
from notify_digest.core.logging import get_logger
from notify_digest.core.supabase_rest import upsert_notification_preference_service
from notify_digest.core.tokens import (
    TokenError,
    TokenExpired,
    TokenPayload,
    TokenPurpose,
    TokenRevoked,
    TokenService,
)

router = APIRouter()
logger = get_logger("api.unsubscribe")


def get_token_service() -> TokenService:
    return TokenService.from_settings()


token_service_dependency = Depends(get_token_service)


def _token_error(exc: TokenError) -> HTTPException:
    # Expired and already-used links are gone for good; anything else is a bad link.
    status_code = (
        status.HTTP_410_GONE if isinstance(exc, (TokenExpired, TokenRevoked)) else status.HTTP_400_BAD_REQUEST
    )
    return HTTPException(status_code=status_code, detail={"code": exc.code, "message": exc.detail})


def _store_unavailable(exc: StoreError) -> HTTPException:
    logger.error(
        "unsubscribe.store_error",
        extra={"component": "api", "error": sanitize_error(exc, default_message="store error")},
    )
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail={"code": "store_unavailable", "message": "Unsubscribe is temporarily unavailable. Try again shortly."},
    )


async def _verified(token: str, service: TokenService) -> TokenPayload:
    try:
        return await service.verify(token, TokenPurpose.UNSUBSCRIBE)
    except TokenError as exc:
        logger.info("unsubscribe.token_rejected", extra={"component": "api", "code": exc.code})
        raise _token_error(exc) from None
    except StoreError as exc:
        raise _store_unavailable(exc) from None


@router.get("/unsubscribe/{token}")
async def get_unsubscribe_token(
    token: str,
    service: TokenService = token_service_dependency,
) -> UnsubscribeTokenOut:
    payload = await _verified(token, service)
    return UnsubscribeTokenOut(
        user_id=payload.subject_id,
        purpose=payload.purpose.value,
        expires_at=payload.expires_at,
    )


@router.post("/unsubscribe/{token}")
async def post_unsubscribe(
    token: str,
    service: TokenService = token_service_dependency,
) -> UnsubscribeOut:
    payload = await _verified(token, service)
    try:
        await upsert_notification_preference_service(payload.subject_id, "never")
        await service.revoke(token, reason="unsubscribed")
    except StoreError as exc:
        raise _store_unavailable(exc) from None

    logger.info("unsubscribe.completed", extra={"component": "api", "user_id": payload.subject_id})
    return UnsubscribeOut(user_id=payload.subject_id)
