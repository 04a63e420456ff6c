from __future__ import annotations

from collections.abc import Iterable, Iterator
from typing import Any

import httpx

from notify_digest.core.errors import StoreError
from notify_digest.core.settings import get_settings

# Keeps `in.(...)` filters well under common URL length limits.
_ID_FILTER_CHUNK = 150
# Below the usual PostgREST `max-rows` cap so a short page always means the end.
_PENDING_PAGE_SIZE = 500


def supabase_service_role_headers() -> dict[str, str]:
    settings = get_settings()
    service_role_key = settings.SUPABASE_SERVICE_ROLE_KEY
    if not service_role_key or not service_role_key.strip():
        raise StoreError("SUPABASE_SERVICE_ROLE_KEY must be configured for store access.")
    return {
        "Authorization": f"Bearer {service_role_key}",
        "apikey": service_role_key,
        "Accept": "application/json",
    }


def _rest_url(path: str) -> str:
    settings = get_settings()
    return f"{settings.SUPABASE_URL.rstrip('/')}/rest/v1/{path}"


def _timeout() -> float:
    return get_settings().STORE_TIMEOUT_SECONDS


def _in_filter(values: Iterable[str]) -> str:
    return "in.(" + ",".join(values) + ")"


def _chunked(values: list[str], size: int = _ID_FILTER_CHUNK) -> Iterator[list[str]]:
    for start in range(0, len(values), size):
        yield values[start : start + size]


def _unique(values: Iterable[str]) -> list[str]:
    seen: dict[str, None] = {}
    for value in values:
        if isinstance(value, str) and value.strip():
            seen.setdefault(value.strip(), None)
    return list(seen)


def _supabase_error_detail(response: httpx.Response) -> str | None:
    try:
        payload = response.json()
    except ValueError:
        return None
    if not isinstance(payload, dict):
        return None
    for field in ("message", "detail", "hint"):
        detail = payload.get(field)
        if isinstance(detail, str) and detail:
            return detail
    return None


def _validated_list_payload(payload: Any, error_message: str) -> list[dict[str, Any]]:
    if not isinstance(payload, list):
        raise StoreError(error_message)
    for item in payload:
        if not isinstance(item, dict):
            raise StoreError(error_message)
    return payload


async def _service_role_request(
    method: str,
    path: str,
    *,
    params: dict[str, str] | None = None,
    json: Any = None,
    prefer: str | None = None,
    error_detail: str,
) -> httpx.Response:
    headers = supabase_service_role_headers()
    if prefer:
        headers["Prefer"] = prefer

    try:
        async with httpx.AsyncClient(timeout=_timeout()) as client:
            response = await client.request(method, _rest_url(path), params=params, json=json, headers=headers)
            response.raise_for_status()
    except httpx.HTTPStatusError as exc:
        upstream = _supabase_error_detail(exc.response)
        message = f"{error_detail} ({upstream})" if upstream else error_detail
        raise StoreError(message) from exc
    except httpx.HTTPError as exc:
        raise StoreError(error_detail) from exc
    return response


async def _service_role_select(path: str, params: dict[str, str], *, error_detail: str) -> list[dict[str, Any]]:
    response = await _service_role_request("GET", path, params=params, error_detail=error_detail)
    try:
        payload = response.json()
    except ValueError as exc:
        raise StoreError(error_detail) from exc
    return _validated_list_payload(payload, error_detail)


async def _service_role_write(
    method: str,
    path: str,
    *,
    params: dict[str, str] | None = None,
    json: Any = None,
    prefer: str,
    error_detail: str,
) -> list[dict[str, Any]]:
    response = await _service_role_request(
        method,
        path,
        params=params,
        json=json,
        prefer=prefer,
        error_detail=error_detail,
    )
    if "return=representation" not in prefer or not response.content:
        return []
    try:
        payload = response.json()
    except ValueError as exc:
        raise StoreError(error_detail) from exc
    return _validated_list_payload(payload, error_detail)


async def select_pending_digest_entries_service(
    cadence: str,
    as_of: str,
    *,
    page_size: int = _PENDING_PAGE_SIZE,
) -> list[dict[str, Any]]:
    """Read every due, unprocessed entry for ``cadence``, one page at a time.

    A single request could be truncated by the server's row cap and split one
    recipient's entries across two runs, so pages are read until a short one.
    """

    rows: list[dict[str, Any]] = []
    offset = 0
    while True:
        page = await _service_role_select(
            "digest_queue",
            {
                "select": "id,user_id,notification_id,digest_type,scheduled_for,processed,processed_at,created_at",
                "digest_type": f"eq.{cadence}",
                "processed": "is.false",
                "scheduled_for": f"lte.{as_of}",
                "order": "scheduled_for.asc,created_at.asc,id.asc",
                "limit": str(page_size),
                "offset": str(offset),
            },
            error_detail="Failed to fetch pending digest queue entries.",
        )
        rows.extend(page)
        if len(page) < page_size:
            return rows
        offset += page_size


async def select_notification_preferences_service(user_ids: list[str]) -> list[dict[str, Any]]:
    rows: list[dict[str, Any]] = []
    for chunk in _chunked(_unique(user_ids)):
        rows.extend(
            await _service_role_select(
                "notification_preferences",
                {
                    "select": "user_id,email_digest_frequency,timezone",
                    "user_id": _in_filter(chunk),
                },
                error_detail="Failed to fetch notification preferences.",
            )
        )
    return rows


async def select_notifications_by_ids_service(notification_ids: list[str]) -> list[dict[str, Any]]:
    rows: list[dict[str, Any]] = []
    for chunk in _chunked(_unique(notification_ids)):
        rows.extend(
            await _service_role_select(
                "notifications",
                {
                    "select": "id,user_id,type,message,entity_id,project_id,created_at",
                    "id": _in_filter(chunk),
                    "order": "created_at.asc",
                },
                error_detail="Failed to fetch notifications.",
            )
        )
    return rows


async def select_projects_by_ids_service(project_ids: list[str]) -> list[dict[str, Any]]:
    rows: list[dict[str, Any]] = []
    for chunk in _chunked(_unique(project_ids)):
        rows.extend(
            await _service_role_select(
                "projects",
                {"select": "id,name", "id": _in_filter(chunk)},
                error_detail="Failed to fetch projects.",
            )
        )
    return rows


async def select_users_by_ids_service(user_ids: list[str]) -> list[dict[str, Any]]:
    rows: list[dict[str, Any]] = []
    for chunk in _chunked(_unique(user_ids)):
        rows.extend(
            await _service_role_select(
                "users",
                {"select": "id,name,email", "id": _in_filter(chunk)},
                error_detail="Failed to fetch users.",
            )
        )
    return rows


async def mark_digest_entries_processed_service(entry_ids: list[str], processed_at: str) -> list[str]:
    """Mark every listed entry processed; rows already processed are left untouched."""

    updated: list[str] = []
    for chunk in _chunked(_unique(entry_ids)):
        rows = await _service_role_write(
            "PATCH",
            "digest_queue",
            params={"id": _in_filter(chunk), "processed": "is.false", "select": "id"},
            json={"processed": True, "processed_at": processed_at},
            prefer="return=representation",
            error_detail="Failed to mark digest queue entries processed.",
        )
        updated.extend(str(row.get("id")) for row in rows if row.get("id"))
    return updated


async def insert_digest_queue_entry_service(payload: dict[str, Any]) -> dict[str, Any]:
    rows = await _service_role_write(
        "POST",
        "digest_queue",
        json=payload,
        prefer="return=representation",
        error_detail="Failed to queue notification for digest.",
    )
    if not rows:
        raise StoreError("Digest queue insert returned no row.")
    return rows[0]


async def insert_email_log_service(payload: dict[str, Any]) -> None:
    await _service_role_write(
        "POST",
        "email_logs",
        json=payload,
        prefer="return=minimal",
        error_detail="Failed to write email log.",
    )


async def upsert_notification_preference_service(user_id: str, email_digest_frequency: str) -> None:
    await _service_role_write(
        "POST",
        "notification_preferences",
        params={"on_conflict": "user_id"},
        json={"user_id": user_id, "email_digest_frequency": email_digest_frequency},
        prefer="resolution=merge-duplicates,return=minimal",
        error_detail="Failed to update notification preferences.",
    )


async def insert_revoked_token_service(payload: dict[str, Any]) -> bool:
    """Insert a revocation record unless one already exists for the jti.

    Returns True when this call created the record.
    """

    rows = await _service_role_write(
        "POST",
        "revoked_tokens",
        params={"on_conflict": "jti"},
        json=payload,
        prefer="resolution=ignore-duplicates,return=representation",
        error_detail="Failed to record token revocation.",
    )
    return bool(rows)


async def select_revoked_token_service(jti: str) -> dict[str, Any] | None:
    rows = await _service_role_select(
        "revoked_tokens",
        {"select": "jti,user_id,purpose,expires_at,reason,revoked_at", "jti": f"eq.{jti}", "limit": "1"},
        error_detail="Failed to check token revocation.",
    )
    return rows[0] if rows else None


async def delete_expired_revoked_tokens_service(before: str) -> int:
    rows = await _service_role_write(
        "DELETE",
        "revoked_tokens",
        params={"expires_at": f"lt.{before}", "select": "jti"},
        prefer="return=representation",
        error_detail="Failed to purge expired token revocations.",
    )
    return len(rows)


async def rpc_consume_email_quota(subject_id: str, limit: int, window_seconds: int) -> dict[str, Any]:
    """Atomically count one send for ``subject_id`` in the shared store."""

    response = await _service_role_request(
        "POST",
        "rpc/consume_email_quota",
        json={"p_subject_id": subject_id, "p_limit": limit, "p_window_seconds": window_seconds},
        error_detail="Failed to consume email quota.",
    )
    try:
        payload = response.json()
    except ValueError as exc:
        raise StoreError("Invalid email quota response.") from exc
    if isinstance(payload, list):
        payload = payload[0] if payload else None
    if not isinstance(payload, dict):
        raise StoreError("Invalid email quota response.")
    return payload


async def rpc_release_email_quota(subject_id: str) -> None:
    """Give back one counted send for ``subject_id`` in its live window."""

    await _service_role_request(
        "POST",
        "rpc/release_email_quota",
        json={"p_subject_id": subject_id},
        error_detail="Failed to release email quota.",
    )


async def select_email_quota_service(subject_id: str) -> dict[str, Any] | None:
    rows = await _service_role_select(
        "email_quota_windows",
        {"select": "subject_id,count,reset_at", "subject_id": f"eq.{subject_id}", "limit": "1"},
        error_detail="Failed to read email quota.",
    )
    return rows[0] if rows else None


async def delete_email_quota_service(subject_id: str | None = None, *, expired_before: str | None = None) -> int:
    params: dict[str, str] = {"select": "subject_id"}
    if subject_id is not None:
        params["subject_id"] = f"eq.{subject_id}"
    if expired_before is not None:
        params["reset_at"] = f"lt.{expired_before}"
    if len(params) == 1:
        # PostgREST refuses unfiltered deletes.
        params["subject_id"] = "not.is.null"
    rows = await _service_role_write(
        "DELETE",
        "email_quota_windows",
        params=params,
        prefer="return=representation",
        error_detail="Failed to clear email quota.",
    )
    return len(rows)
