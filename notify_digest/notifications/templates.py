from __future__ import annotations

from datetime import datetime, timedelta
from html import escape

from notify_digest.notifications.models import PreparedDigest

_APP_NAME = "Real Estate Portfolio"


def _format_date(value: datetime) -> str:
    return value.strftime("%d %b %Y").lstrip("0")


def _week_range(generated_at: datetime) -> tuple[datetime, datetime]:
    week_end = generated_at - timedelta(days=1)
    return week_end - timedelta(days=6), week_end


def digest_email(digest: PreparedDigest, *, app_url: str, unsubscribe_url: str) -> dict[str, str]:
    base_url = app_url.rstrip("/")
    weekly = digest.cadence == "weekly"
    title = "Weekly Project Digest" if weekly else "Daily Project Digest"
    total = digest.event_count
    project_count = len(digest.groups)

    if weekly:
        week_start, week_end = _week_range(digest.generated_at)
        period_line = f"Here's your weekly summary of project activities from {_format_date(week_start)} to {_format_date(week_end)}:"
        subject = f"Your weekly project digest ({total} updates) - {_APP_NAME}"
    else:
        period_line = f"Here's your daily summary of project activities from {_format_date(digest.generated_at)}:"
        subject = f"Your daily project digest ({total} updates) - {_APP_NAME}"
    summary_line = f"{total} notifications from {project_count} project(s)"

    text_sections: list[str] = []
    html_sections: list[str] = []
    for group in digest.groups.values():
        project_url = f"{base_url}/projects/{group.project_id}" if group.project_id else f"{base_url}/projects"
        text_lines = [group.project_name]
        html_items: list[str] = []
        for event in group.events:
            text_lines.append(f"  - {event.type}: {event.message} ({_format_date(event.created_at)})")
            html_items.append(
                f"<li><strong>{escape(event.type)}:</strong> {escape(event.message)}"
                f"<br/><small>{escape(_format_date(event.created_at))}</small></li>"
            )
        text_lines.append(f"View Project: {project_url}")
        text_sections.append("\n".join(text_lines))
        html_sections.append(
            f"<h3>{escape(group.project_name)}</h3>"
            f"<ul>{''.join(html_items)}</ul>"
            f'<p><a href="{escape(project_url, quote=True)}">View Project</a></p>'
        )

    text = "\n".join(
        [
            f"{title.upper()} - {_APP_NAME}",
            "",
            f"Hi {digest.recipient.display_name},",
            "",
            period_line,
            "",
            f"Summary: {summary_line}",
            "",
            "\n\n".join(text_sections),
            "",
            f"Manage notification settings: {base_url}/settings/notifications",
            f"Unsubscribe: {unsubscribe_url}",
        ]
    )

    html = (
        "<html><body>"
        f"<h1>{escape(title)}</h1>"
        f"<p>Hi {escape(digest.recipient.display_name)},</p>"
        f"<p>{escape(period_line)}</p>"
        f"<p><strong>{escape(summary_line)}</strong></p>"
        f"{''.join(html_sections)}"
        f'<p><a href="{escape(base_url, quote=True)}/settings/notifications">Manage notification settings</a></p>'
        f'<p><a href="{escape(unsubscribe_url, quote=True)}">Unsubscribe from these emails</a></p>'
        "</body></html>"
    )

    return {"subject": subject, "html": html, "text": text}
