from datetime import UTC, datetime

from notify_digest.notifications.models import DigestGroup, NotificationEvent, PreparedDigest, Recipient
from notify_digest.notifications.templates import digest_email

GENERATED_AT = datetime(2026, 10, 19, 22, 0, tzinfo=UTC)
UNSUBSCRIBE_URL = "https://portfolio.example.com/unsubscribe/tok.en.value"


def _digest(cadence: str = "daily", *, message: str = "Plumbing invoice added") -> PreparedDigest:
    return PreparedDigest(
        recipient=Recipient(id="user-1", email="owner@example.com", name="Riley"),
        cadence=cadence,
        groups={
            "P1": DigestGroup(
                project_id="P1",
                project_name="Harbour Flats",
                events=[
                    NotificationEvent(
                        id="e1",
                        user_id="user-1",
                        type="cost_added",
                        message=message,
                        project_id="P1",
                        created_at=datetime(2026, 10, 18, 1, 0, tzinfo=UTC),
                    ),
                    NotificationEvent(
                        id="e2",
                        user_id="user-1",
                        type="large_expense",
                        message="Roof replacement over budget",
                        project_id="P1",
                        created_at=datetime(2026, 10, 18, 3, 0, tzinfo=UTC),
                    ),
                ],
            ),
            "": DigestGroup(
                project_id=None,
                events=[
                    NotificationEvent(
                        id="e3",
                        user_id="user-1",
                        type="cost_added",
                        message="Orphaned cost",
                        created_at=datetime(2026, 10, 18, 5, 0, tzinfo=UTC),
                    )
                ],
            ),
        },
        generated_at=GENERATED_AT,
        entry_ids=["q-e1", "q-e2", "q-e3"],
    )


def test_daily_digest_email_groups_by_project() -> None:
    content = digest_email(_digest(), app_url="https://portfolio.example.com/", unsubscribe_url=UNSUBSCRIBE_URL)

    assert content["subject"] == "Your daily project digest (3 updates) - Real Estate Portfolio"
    assert "Hi Riley," in content["text"]
    assert "3 notifications from 2 project(s)" in content["text"]
    assert content["text"].index("Harbour Flats") < content["text"].index("Unknown Project")
    assert "View Project: https://portfolio.example.com/projects/P1" in content["text"]
    assert f"Unsubscribe: {UNSUBSCRIBE_URL}" in content["text"]
    assert "<h3>Harbour Flats</h3>" in content["html"]
    assert UNSUBSCRIBE_URL in content["html"]


def test_weekly_digest_email_mentions_the_week() -> None:
    content = digest_email(
        _digest("weekly"),
        app_url="https://portfolio.example.com",
        unsubscribe_url=UNSUBSCRIBE_URL,
    )

    assert content["subject"].startswith("Your weekly project digest (3 updates)")
    assert "from 12 Oct 2026 to 18 Oct 2026" in content["text"]
    assert "Weekly Project Digest" in content["html"]


def test_digest_email_escapes_event_text_in_html() -> None:
    content = digest_email(
        _digest(message="<script>alert(1)</script>"),
        app_url="https://portfolio.example.com",
        unsubscribe_url=UNSUBSCRIBE_URL,
    )

    assert "<script>" not in content["html"]
    assert "&lt;script&gt;" in content["html"]
    assert "<script>alert(1)</script>" in content["text"]
