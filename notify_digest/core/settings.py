from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(case_sensitive=True, extra="ignore")

    NOTIFY_ENV: str = "development"
    LOG_LEVEL: str = "INFO"
    API_HOST: str = "127.0.0.1"
    API_PORT: int = 8000
    API_RATE_LIMIT_ENABLED: bool = True
    API_RATE_LIMIT_PER_MINUTE: int = 30
    APP_URL: str = "http://localhost:3000"
    SUPABASE_URL: str
    SUPABASE_SERVICE_ROLE_KEY: str | None = None
    STORE_TIMEOUT_SECONDS: float = 10.0
    TOKEN_SIGNING_SECRET: str
    TOKEN_ISSUER: str = "real-estate-portfolio"
    TOKEN_AUDIENCE: str = "user"
    UNSUBSCRIBE_TOKEN_TTL_DAYS: int = 90
    EMAIL_PROVIDER: str = "resend"
    EMAIL_FROM: str | None = None
    RESEND_API_KEY: str | None = None
    RESEND_API_URL: str = "https://api.resend.com"
    RESEND_MAX_BATCH_SIZE: int = 100
    SMTP_HOST: str | None = None
    SMTP_PORT: int = 587
    SMTP_USERNAME: str | None = None
    SMTP_PASSWORD: str | None = None
    SMTP_USE_TLS: bool = True
    SMTP_USE_SSL: bool = False
    EMAIL_RATE_LIMIT_MAX: int = 10
    EMAIL_RATE_LIMIT_WINDOW_SECONDS: int = 3600
    EMAIL_RATE_LIMIT_BACKEND: str = "memory"
    DIGEST_SEND_HOUR: int = 8
    DIGEST_DEFAULT_TIMEZONE: str = "Australia/Sydney"
    DIGEST_WEEKLY_TRIGGER_WEEKDAY: int = 0
    DIGEST_CHUNK_SIZE: int = 100
    DIGEST_CHUNK_CONCURRENCY: int = 1
    DIGEST_CRITICAL_EVENT_TYPES: str = "large_expense"

    @model_validator(mode="after")
    def validate_required_values(self) -> "Settings":
        if not self.SUPABASE_URL.strip():
            raise ValueError("SUPABASE_URL must be configured")
        if not self.TOKEN_SIGNING_SECRET.strip():
            raise ValueError("TOKEN_SIGNING_SECRET must be configured")

        provider = self.EMAIL_PROVIDER.strip().lower()
        if provider not in {"resend", "smtp"}:
            raise ValueError("EMAIL_PROVIDER must be 'resend' or 'smtp'")
        self.EMAIL_PROVIDER = provider

        backend = self.EMAIL_RATE_LIMIT_BACKEND.strip().lower()
        if backend not in {"memory", "shared"}:
            raise ValueError("EMAIL_RATE_LIMIT_BACKEND must be 'memory' or 'shared'")
        self.EMAIL_RATE_LIMIT_BACKEND = backend

        if not 0 <= self.DIGEST_WEEKLY_TRIGGER_WEEKDAY <= 6:
            raise ValueError("DIGEST_WEEKLY_TRIGGER_WEEKDAY must be between 0 (Monday) and 6 (Sunday)")

        if self.NOTIFY_ENV.strip().lower() == "production":
            if not (self.EMAIL_FROM or "").strip():
                raise ValueError("EMAIL_FROM must be configured in production")
        return self

    @property
    def critical_event_types(self) -> frozenset[str]:
        return frozenset(
            item.strip().lower() for item in self.DIGEST_CRITICAL_EVENT_TYPES.split(",") if item.strip()
        )


@lru_cache
def get_settings() -> Settings:
    return Settings()
