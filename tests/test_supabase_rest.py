import asyncio

from notify_digest.core import supabase_rest


def _install_queue_pages(monkeypatch, total: int) -> list[dict[str, str]]:
    rows = [{"id": f"q-{index}"} for index in range(total)]
    calls: list[dict[str, str]] = []

    async def fake_select(path: str, params: dict[str, str], *, error_detail: str):
        assert path == "digest_queue"
        calls.append(dict(params))
        offset = int(params["offset"])
        return rows[offset : offset + int(params["limit"])]

    monkeypatch.setattr(supabase_rest, "_service_role_select", fake_select)
    return calls


def test_pending_entries_are_read_page_by_page(monkeypatch) -> None:
    calls = _install_queue_pages(monkeypatch, total=5)

    rows = asyncio.run(
        supabase_rest.select_pending_digest_entries_service("daily", "2026-10-19T22:00:00Z", page_size=2)
    )

    assert [row["id"] for row in rows] == [f"q-{index}" for index in range(5)]
    assert [call["offset"] for call in calls] == ["0", "2", "4"]
    assert calls[0]["digest_type"] == "eq.daily"
    assert calls[0]["processed"] == "is.false"
    assert calls[0]["scheduled_for"] == "lte.2026-10-19T22:00:00Z"
    assert calls[0]["order"].endswith("id.asc")


def test_pending_entries_stop_after_a_full_final_page(monkeypatch) -> None:
    calls = _install_queue_pages(monkeypatch, total=4)

    rows = asyncio.run(
        supabase_rest.select_pending_digest_entries_service("weekly", "2026-10-19T22:00:00Z", page_size=2)
    )

    assert len(rows) == 4
    assert [call["offset"] for call in calls] == ["0", "2", "4"]


def test_release_email_quota_posts_subject(monkeypatch) -> None:
    requests: list[tuple[str, str, object]] = []

    async def fake_request(method: str, path: str, *, json=None, error_detail: str, **kwargs):
        requests.append((method, path, json))

    monkeypatch.setattr(supabase_rest, "_service_role_request", fake_request)

    asyncio.run(supabase_rest.rpc_release_email_quota("user-1"))

    assert requests == [("POST", "rpc/release_email_quota", {"p_subject_id": "user-1"})]
