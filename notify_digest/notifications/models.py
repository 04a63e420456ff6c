from __future__ import annotations

from datetime import UTC, datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

Cadence = Literal["daily", "weekly"]
DigestFrequency = Literal["immediate", "daily", "weekly", "never"]

CADENCES: tuple[Cadence, ...] = ("daily", "weekly")
UNKNOWN_PROJECT_NAME = "Unknown Project"


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def utc_iso(value: datetime) -> str:
    return as_utc(value).isoformat().replace("+00:00", "Z")


class NotificationEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    type: str
    message: str = ""
    entity_id: str | None = None
    project_id: str | None = None
    created_at: datetime

    @field_validator("created_at")
    @classmethod
    def _utc_created_at(cls, value: datetime) -> datetime:
        return as_utc(value)


class DigestQueueEntry(BaseModel):
    id: str
    user_id: str
    notification_id: str
    digest_type: Cadence
    scheduled_for: datetime
    processed: bool = False
    processed_at: datetime | None = None
    created_at: datetime | None = None

    @field_validator("digest_type", mode="before")
    @classmethod
    def _normalize_digest_type(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("scheduled_for", "processed_at", "created_at")
    @classmethod
    def _utc_timestamps(cls, value: datetime | None) -> datetime | None:
        return as_utc(value) if value is not None else None


class RecipientPreference(BaseModel):
    user_id: str
    email_digest_frequency: DigestFrequency = "immediate"
    timezone: str | None = None

    @field_validator("email_digest_frequency", mode="before")
    @classmethod
    def _normalize_frequency(cls, value: object) -> object:
        if value is None:
            return "immediate"
        if isinstance(value, str):
            return value.strip().lower()
        return value


class Recipient(BaseModel):
    id: str
    email: str
    name: str | None = None

    @property
    def display_name(self) -> str:
        name = (self.name or "").strip()
        return name or "there"


class DigestGroup(BaseModel):
    project_id: str | None
    project_name: str = UNKNOWN_PROJECT_NAME
    events: list[NotificationEvent] = Field(default_factory=list)


class PreparedDigest(BaseModel):
    """One recipient's pending events for one run, grouped by project.

    ``groups`` keeps first-seen project order; events inside a group keep
    creation order. ``entry_ids`` lists every queue entry the digest covers,
    which is the set marked processed once the send is accepted.
    """

    recipient: Recipient
    cadence: Cadence
    groups: dict[str, DigestGroup]
    generated_at: datetime
    entry_ids: list[str]

    @property
    def event_count(self) -> int:
        return sum(len(group.events) for group in self.groups.values())

    @property
    def event_types(self) -> set[str]:
        return {event.type for group in self.groups.values() for event in group.events}

    @property
    def event_ids(self) -> list[str]:
        return [event.id for group in self.groups.values() for event in group.events]
