from __future__ import annotations

import json
from pathlib import Path

import pytest

from ehs_scrape.scraper import config, run
from ehs_scrape.scraper.adapters.base import AdapterConfigError
from ehs_scrape.scraper.coordinator import Coordinator
from ehs_scrape.scraper.progress import ProgressPublisher
from ehs_scrape.scraper.records import SqliteRecordStore
from ehs_scrape.scraper.resolver import RecordResolver
from ehs_scrape.scraper.session_store import SessionStore
from ehs_scrape.scraper.supervisor import TaskSupervisor
from tests.test_coordinator import _FakePaginatedAdapter
from tests.test_session_store import _configure_temp_paths
from tests.test_supervisor import _supervisor


@pytest.fixture(autouse=True)
def _enable_scraping(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(config, "SCRAPING_ENABLED", True)


def test_cli_runs_session_and_prints_summary(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture
) -> None:
    adapter = _FakePaginatedAdapter({1: ["A"], 2: ["B", "C"]})
    supervisor = _supervisor(tmp_path, monkeypatch, adapter=adapter)

    exit_code = run.main(
        ["--source", "hse", "--start", "1", "--end", "2", "--initiator", "nightly"],
        supervisor=supervisor,
    )

    assert exit_code == 0
    summary = json.loads(capsys.readouterr().out)
    assert summary["status"] == "completed"
    assert summary["items_created"] == 3
    assert summary["source"] == "hse_cases"


def test_cli_passes_adapter_options(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)
    seen: dict = {}

    def _factory(source, options):
        seen["source"] = source
        seen["options"] = dict(options)
        return _FakePaginatedAdapter({1: []})

    store = SessionStore()
    publisher = ProgressPublisher()
    supervisor = TaskSupervisor(
        store=store,
        publisher=publisher,
        coordinator=Coordinator(
            store=store,
            resolver=RecordResolver(SqliteRecordStore()),
            publisher=publisher,
            adapter_factory=_factory,
        ),
    )

    exit_code = run.main(
        ["--source", "notices", "--start", "1", "--end", "1", "--country", "Scotland", "--no-stop-on-existing"],
        supervisor=supervisor,
    )

    assert exit_code == 0
    assert seen == {"source": "hse_notices", "options": {"country": "Scotland"}}
    session = store.latest()
    assert session.params["stop_on_existing"] is False


def test_cli_rejects_invalid_range(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    supervisor = _supervisor(tmp_path, monkeypatch)

    assert run.main(["--source", "ea", "--start", "2024-02-01", "--end", "2024-01-01"], supervisor=supervisor) == 2
    assert supervisor.store.latest() is None


def test_cli_reports_failed_session(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    def _factory(source, options):
        raise AdapterConfigError("bad options")

    _configure_temp_paths(tmp_path, monkeypatch)
    store = SessionStore()
    publisher = ProgressPublisher()
    supervisor = TaskSupervisor(
        store=store,
        publisher=publisher,
        coordinator=Coordinator(
            store=store,
            resolver=RecordResolver(SqliteRecordStore()),
            publisher=publisher,
            adapter_factory=_factory,
        ),
    )

    assert run.main(["--source", "hse_cases", "--start", "1", "--end", "1"], supervisor=supervisor) == 1


def test_cli_refuses_when_key_is_active(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    supervisor = _supervisor(tmp_path, monkeypatch)
    supervisor.store.create(source="hse_cases", initiator_id="cli", range_start=1, range_end=1)

    assert run.main(["--source", "hse_cases", "--start", "1", "--end", "1"], supervisor=supervisor) == 3
