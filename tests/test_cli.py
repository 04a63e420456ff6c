import json
from datetime import datetime

from notify_digest import __main__ as cli
from notify_digest.worker.digest_runner import CadenceSummary, DigestRunSummary


class _FakeRunner:
    calls: list[str] = []
    fail = False

    @classmethod
    def from_settings(cls, settings) -> "_FakeRunner":
        return cls()

    async def run_digests(self, cadence: str = "all", now=None) -> DigestRunSummary:
        if type(self).fail:
            raise RuntimeError("store unreachable")
        type(self).calls.append(cadence)
        summary = DigestRunSummary(started_at=datetime(2026, 10, 19, 22, 0))
        summary.cadences["daily"] = CadenceSummary(cadence="daily", recipients=2, sent=2)
        return summary


def _install_runner(monkeypatch, *, fail: bool = False) -> type[_FakeRunner]:
    _FakeRunner.calls = []
    _FakeRunner.fail = fail
    monkeypatch.setattr(cli, "DigestRunner", _FakeRunner)
    return _FakeRunner


def test_run_prints_summary_and_exits_zero(monkeypatch, capsys) -> None:
    runner = _install_runner(monkeypatch)

    exit_code = cli.main(["run", "daily"])

    assert exit_code == 0
    assert runner.calls == ["daily"]
    payload = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
    assert payload["sent_count"] == 2
    assert payload["cadences"]["daily"]["recipients"] == 2


def test_run_defaults_to_all_cadences(monkeypatch) -> None:
    runner = _install_runner(monkeypatch)

    assert cli.main(["run"]) == 0
    assert runner.calls == ["all"]


def test_run_failure_exits_one(monkeypatch) -> None:
    _install_runner(monkeypatch, fail=True)

    assert cli.main(["run", "weekly"]) == 1


def test_missing_signing_secret_exits_one(monkeypatch, clear_settings_cache) -> None:
    runner = _install_runner(monkeypatch)
    monkeypatch.delenv("TOKEN_SIGNING_SECRET", raising=False)

    assert cli.main(["run"]) == 1
    assert runner.calls == []


def test_purge_revocations_prints_counts(monkeypatch, capsys) -> None:
    async def fake_purge(settings):
        return {"revocations_removed": 4, "quota_windows_removed": 0}

    monkeypatch.setattr(cli, "purge_revocations", fake_purge)

    assert cli.main(["purge-revocations"]) == 0
    payload = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
    assert payload["revocations_removed"] == 4


def test_serve_runs_uvicorn_with_configured_address(monkeypatch) -> None:
    calls: list[tuple[str, str, int]] = []

    def fake_run(app_path: str, *, host: str, port: int) -> None:
        calls.append((app_path, host, port))

    monkeypatch.setattr(cli.uvicorn, "run", fake_run)

    assert cli.main(["serve"]) == 0
    assert calls == [("notify_digest.main:app", "127.0.0.1", 8000)]
