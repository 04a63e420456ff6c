from __future__ import annotations

from typing import Any

import pytest

from notify_digest.core.settings import get_settings
from notify_digest.notifications.emailer import EmailSendError
from notify_digest.notifications.transport import Accepted, Rejected, RenderedMessage
from notify_digest.worker import digest_aggregator, digest_sender


class FakeStore:
    """In-memory stand-in for the PostgREST tables the digest worker touches."""

    def __init__(self) -> None:
        self.queue: list[dict[str, Any]] = []
        self.notifications: dict[str, dict[str, Any]] = {}
        self.preferences: dict[str, dict[str, Any]] = {}
        self.users: dict[str, dict[str, Any]] = {}
        self.projects: dict[str, dict[str, Any]] = {}
        self.email_logs: list[dict[str, Any]] = []
        self.mark_calls: list[list[str]] = []
        self.pending_reads = 0
        self.fail_marking = False

    def add_user(self, user_id: str, email: str, *, name: str | None = None, frequency: str | None = "daily") -> None:
        self.users[user_id] = {"id": user_id, "email": email, "name": name}
        if frequency is not None:
            self.preferences[user_id] = {
                "user_id": user_id,
                "email_digest_frequency": frequency,
                "timezone": "Australia/Sydney",
            }

    def add_event(
        self,
        event_id: str,
        user_id: str,
        *,
        event_type: str = "cost_added",
        message: str = "",
        project_id: str | None = None,
        created_at: str = "2026-10-18T01:00:00Z",
        cadence: str = "daily",
        scheduled_for: str = "2026-10-18T21:00:00Z",
        queue: bool = True,
    ) -> None:
        self.notifications[event_id] = {
            "id": event_id,
            "user_id": user_id,
            "type": event_type,
            "message": message or f"{event_type} {event_id}",
            "entity_id": None,
            "project_id": project_id,
            "created_at": created_at,
        }
        if queue:
            self.queue.append(
                {
                    "id": f"q-{event_id}",
                    "user_id": user_id,
                    "notification_id": event_id,
                    "digest_type": cadence,
                    "scheduled_for": scheduled_for,
                    "processed": False,
                    "processed_at": None,
                    "created_at": created_at,
                }
            )

    def processed_ids(self) -> set[str]:
        return {row["id"] for row in self.queue if row["processed"]}

    async def select_pending(self, cadence: str, as_of: str) -> list[dict[str, Any]]:
        self.pending_reads += 1
        return [dict(row) for row in self.queue if row["digest_type"] == cadence and not row["processed"]]

    async def select_preferences(self, user_ids: list[str]) -> list[dict[str, Any]]:
        return [dict(self.preferences[user_id]) for user_id in dict.fromkeys(user_ids) if user_id in self.preferences]

    async def select_notifications(self, ids: list[str]) -> list[dict[str, Any]]:
        return [dict(self.notifications[item]) for item in dict.fromkeys(ids) if item in self.notifications]

    async def select_projects(self, ids: list[str]) -> list[dict[str, Any]]:
        return [dict(self.projects[item]) for item in dict.fromkeys(ids) if item in self.projects]

    async def select_users(self, ids: list[str]) -> list[dict[str, Any]]:
        return [dict(self.users[item]) for item in dict.fromkeys(ids) if item in self.users]

    async def mark_processed(self, entry_ids: list[str], processed_at: str) -> list[str]:
        if self.fail_marking:
            raise RuntimeError("store unavailable")
        self.mark_calls.append(list(entry_ids))
        updated: list[str] = []
        for row in self.queue:
            if row["id"] in entry_ids and not row["processed"]:
                row["processed"] = True
                row["processed_at"] = processed_at
                updated.append(row["id"])
        return updated

    async def insert_email_log(self, payload: dict[str, Any]) -> None:
        self.email_logs.append(dict(payload))

    def install(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(digest_aggregator, "select_pending_digest_entries_service", self.select_pending)
        monkeypatch.setattr(digest_aggregator, "select_notification_preferences_service", self.select_preferences)
        monkeypatch.setattr(digest_aggregator, "select_notifications_by_ids_service", self.select_notifications)
        monkeypatch.setattr(digest_aggregator, "select_projects_by_ids_service", self.select_projects)
        monkeypatch.setattr(digest_aggregator, "select_users_by_ids_service", self.select_users)
        monkeypatch.setattr(digest_sender, "mark_digest_entries_processed_service", self.mark_processed)
        monkeypatch.setattr(digest_sender, "insert_email_log_service", self.insert_email_log)


class FakeTransport:
    def __init__(
        self,
        *,
        max_batch_size: int = 100,
        fail_if_any: set[str] | None = None,
        reject: set[str] | None = None,
    ) -> None:
        self.max_batch_size = max_batch_size
        self.fail_if_any = fail_if_any or set()
        self.reject = reject or set()
        self.batches: list[list[RenderedMessage]] = []

    async def send_batch(self, messages: list[RenderedMessage]) -> list[Accepted | Rejected]:
        batch_index = len(self.batches)
        self.batches.append(list(messages))
        if any(message.to in self.fail_if_any for message in messages):
            raise EmailSendError("Mail provider rejected the batch with status 503.")
        return [
            Rejected(reason="mailbox unavailable")
            if message.to in self.reject
            else Accepted(provider_message_id=f"msg-{batch_index}-{position}")
            for position, message in enumerate(messages)
        ]

    @property
    def sent_to(self) -> list[str]:
        return [message.to for batch in self.batches for message in batch]


@pytest.fixture
def fake_store(monkeypatch: pytest.MonkeyPatch) -> FakeStore:
    store = FakeStore()
    store.install(monkeypatch)
    return store


@pytest.fixture
def clear_settings_cache():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def make_transport() -> type[FakeTransport]:
    return FakeTransport
