"""Signed, purpose-scoped tokens for actions taken without a session.

Tokens are HS256 JWTs bound to a configured issuer/audience pair. Each one
carries a unique ``jti`` so a single token can be revoked; every successful
verification consults the revocation store after the cryptographic checks.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

import jwt
from jwt.exceptions import (
    ExpiredSignatureError,
    InvalidAudienceError,
    InvalidIssuerError,
    InvalidSignatureError,
    InvalidTokenError,
)

from notify_digest.core.logging import get_logger
from notify_digest.core.settings import Settings, get_settings
from notify_digest.core.supabase_rest import (
    delete_expired_revoked_tokens_service,
    insert_revoked_token_service,
    select_revoked_token_service,
)

logger = get_logger("core.tokens")

_ALGORITHM = "HS256"
_REQUIRED_CLAIMS = ["sub", "purpose", "jti", "iat", "exp", "iss", "aud"]


class TokenPurpose(str, Enum):
    UNSUBSCRIBE = "unsubscribe"
    PASSWORD_RESET = "password_reset"
    EMAIL_VERIFICATION = "email_verification"


DEFAULT_TOKEN_TTLS: dict[TokenPurpose, timedelta] = {
    TokenPurpose.UNSUBSCRIBE: timedelta(days=90),
    TokenPurpose.PASSWORD_RESET: timedelta(hours=1),
    TokenPurpose.EMAIL_VERIFICATION: timedelta(hours=24),
}


class TokenError(Exception):
    code = "token_invalid"
    detail = "This link is not valid."

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.detail)


class TokenExpired(TokenError):
    code = "token_expired"
    detail = "This link has expired. Request a new one from your notification settings."


class TokenRevoked(TokenError):
    code = "token_revoked"
    detail = "This link has already been used or was revoked."


class TokenMalformed(TokenError):
    code = "token_malformed"
    detail = "This link is malformed. Make sure the whole link was copied."


class TokenInvalidSignature(TokenError):
    code = "token_invalid_signature"
    detail = "This link was not issued by this service."


class TokenPurposeMismatch(TokenError):
    code = "token_purpose_mismatch"
    detail = "This link cannot be used for this action."


@dataclass(frozen=True)
class IssuedToken:
    token: str
    jti: str
    expires_at: datetime


@dataclass(frozen=True)
class TokenPayload:
    subject_id: str
    purpose: TokenPurpose
    jti: str
    issued_at: datetime
    expires_at: datetime


def _coerce_purpose(value: object) -> TokenPurpose:
    if isinstance(value, TokenPurpose):
        return value
    if isinstance(value, str):
        try:
            return TokenPurpose(value.strip().lower())
        except ValueError:
            pass
    raise TokenMalformed(f"unknown token purpose: {value!r}")


def _payload_from_claims(claims: dict[str, Any]) -> TokenPayload:
    subject_id = claims.get("sub")
    jti = claims.get("jti")
    issued_at = claims.get("iat")
    expires_at = claims.get("exp")
    if not isinstance(subject_id, str) or not subject_id.strip():
        raise TokenMalformed("token subject is missing")
    if not isinstance(jti, str) or not jti.strip():
        raise TokenMalformed("token id is missing")
    if not isinstance(issued_at, int | float) or not isinstance(expires_at, int | float):
        raise TokenMalformed("token timestamps are invalid")

    return TokenPayload(
        subject_id=subject_id.strip(),
        purpose=_coerce_purpose(claims.get("purpose")),
        jti=jti.strip(),
        issued_at=datetime.fromtimestamp(issued_at, tz=UTC),
        expires_at=datetime.fromtimestamp(expires_at, tz=UTC),
    )


class TokenService:
    def __init__(
        self,
        *,
        secret: str,
        issuer: str,
        audience: str,
        ttls: dict[TokenPurpose, timedelta] | None = None,
    ) -> None:
        if not secret or not secret.strip():
            raise ValueError("token signing secret must be configured")
        self._secret = secret
        self.issuer = issuer
        self.audience = audience
        self.ttls = {**DEFAULT_TOKEN_TTLS, **(ttls or {})}

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "TokenService":
        settings = settings or get_settings()
        return cls(
            secret=settings.TOKEN_SIGNING_SECRET,
            issuer=settings.TOKEN_ISSUER,
            audience=settings.TOKEN_AUDIENCE,
            ttls={TokenPurpose.UNSUBSCRIBE: timedelta(days=max(1, settings.UNSUBSCRIBE_TOKEN_TTL_DAYS))},
        )

    def issue(
        self,
        subject_id: str,
        purpose: TokenPurpose | str,
        ttl: timedelta | None = None,
        *,
        now: datetime | None = None,
    ) -> IssuedToken:
        if not isinstance(subject_id, str) or not subject_id.strip():
            raise ValueError("subject_id is required")
        token_purpose = _coerce_purpose(purpose)
        lifetime = ttl if ttl is not None else self.ttls[token_purpose]
        if lifetime <= timedelta(0):
            raise ValueError("token ttl must be positive")

        issued_at = (now or datetime.now(UTC)).astimezone(UTC).replace(microsecond=0)
        expires_at = issued_at + lifetime
        jti = str(uuid.uuid4())
        claims = {
            "sub": subject_id.strip(),
            "purpose": token_purpose.value,
            "jti": jti,
            "iat": int(issued_at.timestamp()),
            "exp": int(expires_at.timestamp()),
            "iss": self.issuer,
            "aud": self.audience,
        }
        token = jwt.encode(claims, self._secret, algorithm=_ALGORITHM)
        return IssuedToken(token=token, jti=jti, expires_at=expires_at)

    def issue_unsubscribe(self, subject_id: str) -> IssuedToken:
        return self.issue(subject_id, TokenPurpose.UNSUBSCRIBE)

    def _decode(self, token: str, *, verify_exp: bool) -> TokenPayload:
        if not isinstance(token, str) or token.count(".") != 2:
            raise TokenMalformed()
        try:
            claims = jwt.decode(
                token.strip(),
                self._secret,
                algorithms=[_ALGORITHM],
                issuer=self.issuer,
                audience=self.audience,
                options={"require": _REQUIRED_CLAIMS, "verify_exp": verify_exp},
            )
        except ExpiredSignatureError:
            raise TokenExpired() from None
        except InvalidSignatureError:
            raise TokenInvalidSignature() from None
        except (InvalidIssuerError, InvalidAudienceError):
            raise TokenInvalidSignature() from None
        except InvalidTokenError:
            raise TokenMalformed() from None

        if not isinstance(claims, dict):
            raise TokenMalformed()
        return _payload_from_claims(claims)

    async def verify(
        self,
        token: str,
        expected_purpose: TokenPurpose | str | None = None,
    ) -> TokenPayload:
        payload = self._decode(token, verify_exp=True)

        if expected_purpose is not None and payload.purpose != _coerce_purpose(expected_purpose):
            raise TokenPurposeMismatch()

        revoked = await select_revoked_token_service(payload.jti)
        if revoked is not None:
            raise TokenRevoked()
        return payload

    async def revoke(self, token: str, reason: str | None = None, *, now: datetime | None = None) -> bool:
        """Record a revocation for ``token``.

        Returns True when a new record was written. Expired and already
        revoked tokens are accepted and leave the store unchanged.
        """

        payload = self._decode(token, verify_exp=False)
        current = (now or datetime.now(UTC)).astimezone(UTC)
        if payload.expires_at <= current:
            logger.info(
                "tokens.revoke_skipped_expired",
                extra={"component": "tokens", "jti": payload.jti, "purpose": payload.purpose.value},
            )
            return False

        created = await insert_revoked_token_service(
            {
                "jti": payload.jti,
                "user_id": payload.subject_id,
                "purpose": payload.purpose.value,
                "expires_at": payload.expires_at.isoformat().replace("+00:00", "Z"),
                "reason": (reason or "").strip()[:200] or None,
                "revoked_at": current.isoformat().replace("+00:00", "Z"),
            }
        )
        logger.info(
            "tokens.revoked" if created else "tokens.revoke_already_recorded",
            extra={"component": "tokens", "jti": payload.jti, "purpose": payload.purpose.value},
        )
        return created

    async def purge_expired_revocations(self, *, now: datetime | None = None) -> int:
        current = (now or datetime.now(UTC)).astimezone(UTC)
        removed = await delete_expired_revoked_tokens_service(current.isoformat().replace("+00:00", "Z"))
        logger.info("tokens.revocations_purged", extra={"component": "tokens", "count": removed})
        return removed
