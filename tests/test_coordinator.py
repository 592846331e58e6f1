from __future__ import annotations

import threading
from pathlib import Path
from typing import Any, Callable, Optional

import pytest

from ehs_scrape.scraper import db, progress
from ehs_scrape.scraper.adapters.base import (
    AdapterConfigError,
    AdapterFetchError,
    Candidate,
    CandidateDetail,
    PaginatedAdapter,
)
from ehs_scrape.scraper.coordinator import Coordinator
from ehs_scrape.scraper.processing_log import ProcessingLog
from ehs_scrape.scraper.progress import ProgressPublisher
from ehs_scrape.scraper.records import SqliteRecordStore
from ehs_scrape.scraper.resolver import RecordResolver
from ehs_scrape.scraper.scrape_request import ScrapeRequest
from ehs_scrape.scraper.session_store import SessionStatus, SessionStore
from tests.test_session_store import _configure_temp_paths


def _detail(key: str, subject: Optional[str] = None) -> CandidateDetail:
    return CandidateDetail(
        natural_key=key,
        record_kind="case",
        subject_reference=subject or f"Org {key}",
        event_date="2024-02-01",
    )


class _FakePaginatedAdapter(PaginatedAdapter):
    source = "hse_cases"

    def __init__(
        self,
        pages: dict[int, Any],
        *,
        detail_errors: tuple[str, ...] = (),
        subjects: Optional[dict[str, str]] = None,
        on_list: Optional[Callable[[int], None]] = None,
    ) -> None:
        self.pages = pages
        self.detail_errors = detail_errors
        self.subjects = subjects or {}
        self.on_list = on_list
        self.listed: list[int] = []
        self.closed = False

    def list_page(self, page_number: int) -> list[Candidate]:
        self.listed.append(page_number)
        if self.on_list is not None:
            self.on_list(page_number)
        page = self.pages.get(page_number, [])
        if isinstance(page, Exception):
            raise page
        return [Candidate(natural_key=key) for key in page]

    def fetch_detail(self, candidate: Candidate) -> CandidateDetail:
        if candidate.natural_key in self.detail_errors:
            raise AdapterFetchError("http_404_not_found", "detail page gone", http_status=404)
        return _detail(candidate.natural_key, self.subjects.get(candidate.natural_key))

    def close(self) -> None:
        self.closed = True


def _request(range_start: int = 1, range_end: int = 3, *, stop_on_existing: bool = True) -> ScrapeRequest:
    return ScrapeRequest(
        source="hse_cases",
        range_start=range_start,
        range_end=range_end,
        initiator_id="tester",
        stop_on_existing=stop_on_existing,
    )


def _setup(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, existing: tuple[str, ...] = ()):
    _configure_temp_paths(tmp_path, monkeypatch)
    db.initialize_schema()
    resolver = RecordResolver(SqliteRecordStore())
    for key in existing:
        resolver.resolve("hse_cases", _detail(key))
    return SessionStore(), resolver, ProgressPublisher()


def _run(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    adapter: Any,
    request: ScrapeRequest,
    *,
    existing: tuple[str, ...] = (),
    cancel_event: Optional[threading.Event] = None,
    factory: Optional[Callable[..., Any]] = None,
):
    store, resolver, publisher = _setup(tmp_path, monkeypatch, existing)
    subscription = publisher.subscribe()
    coordinator = Coordinator(
        store=store,
        resolver=resolver,
        publisher=publisher,
        adapter_factory=factory or (lambda source, options: adapter),
    )
    session = store.create(
        source=request.source,
        initiator_id=request.initiator_id,
        range_start=request.range_start,
        range_end=request.range_end,
    )
    final = coordinator.run(session.id, request, cancel_event)
    return final, subscription.drain()


def _assert_snapshot_invariants(events: list[progress.ProgressEvent]) -> None:
    processed = 0
    for event in events:
        if event.topic != progress.SESSION_UPDATED:
            continue
        snapshot = event.payload["session"]
        assert snapshot["items_found"] == (
            snapshot["items_created"] + snapshot["items_updated"] + snapshot["items_existing"]
        )
        assert snapshot["pages_or_batches_processed"] >= processed
        processed = snapshot["pages_or_batches_processed"]


def test_three_page_scenario_stops_after_all_existing_page(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    adapter = _FakePaginatedAdapter({1: ["A", "B"], 2: ["C", "X"], 3: ["Y", "Z"]})

    final, events = _run(tmp_path, monkeypatch, adapter, _request(1, 3), existing=("X", "Y", "Z"))

    assert final.status == SessionStatus.COMPLETED
    assert final.items_created == 3
    assert final.items_existing == 3
    assert final.items_updated == 0
    assert final.items_found == 6
    assert final.pages_or_batches_processed == 3
    assert final.errors_count == 0
    assert adapter.listed == [1, 2, 3]
    assert adapter.closed is True
    _assert_snapshot_invariants(events)

    terminal = [e for e in events if e.topic == progress.SESSION_TERMINAL]
    assert len(terminal) == 1
    assert terminal[0].payload["reason"] == "early_stop"
    assert terminal[0].payload["summary"]["items_created"] == 3


def test_failed_page_is_counted_and_crawl_continues(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    adapter = _FakePaginatedAdapter(
        {1: ["A"], 2: AdapterFetchError("http_5xx", "HTTP 503", http_status=503), 3: ["B"]}
    )

    final, events = _run(tmp_path, monkeypatch, adapter, _request(1, 3))

    assert final.status == SessionStatus.COMPLETED
    assert final.errors_count == 1
    assert final.pages_or_batches_processed == 3
    assert final.items_created == 2
    assert adapter.listed == [1, 2, 3]

    errors = ProcessingLog().for_session(final.id, outcome="error")
    assert len(errors) == 1
    assert errors[0].batch_position == "2"
    assert errors[0].error_code == "http_5xx"
    assert errors[0].natural_key is None

    reasons = [e.payload["reason"] for e in events if e.topic == progress.SESSION_UPDATED]
    assert "unit_failed" in reasons
    _assert_snapshot_invariants(events)


def test_unexpected_listing_exception_is_absorbed(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    adapter = _FakePaginatedAdapter({1: ValueError("table missing"), 2: ["A"]})

    final, _ = _run(tmp_path, monkeypatch, adapter, _request(1, 2))

    assert final.status == SessionStatus.COMPLETED
    assert final.errors_count == 1
    assert final.pages_or_batches_processed == 2
    assert ProcessingLog().for_session(final.id, outcome="error")[0].error_code == "internal_error"


def test_early_stop_halts_before_remaining_pages(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    adapter = _FakePaginatedAdapter({1: ["A"], 2: ["X", "Y"], 3: ["B"], 4: ["C"]})

    final, _ = _run(tmp_path, monkeypatch, adapter, _request(1, 4), existing=("X", "Y"))

    assert final.status == SessionStatus.COMPLETED
    assert adapter.listed == [1, 2]
    assert final.pages_or_batches_processed == 2
    assert final.items_created == 1
    assert final.items_existing == 2


def test_updated_record_keeps_crawl_going(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    adapter = _FakePaginatedAdapter(
        {1: ["X", "Y"], 2: ["Z"]},
        subjects={"X": "Renamed Ltd"},
    )

    final, _ = _run(tmp_path, monkeypatch, adapter, _request(1, 2), existing=("X", "Y", "Z"))

    assert adapter.listed == [1, 2]
    assert final.items_updated == 1
    assert final.items_existing == 2
    assert final.status == SessionStatus.COMPLETED


def test_empty_units_never_trigger_early_stop(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    adapter = _FakePaginatedAdapter({1: [], 2: ["", "  "], 3: ["A"]})

    final, events = _run(tmp_path, monkeypatch, adapter, _request(1, 3))

    assert adapter.listed == [1, 2, 3]
    assert final.pages_or_batches_processed == 3
    assert final.errors_count == 0
    assert final.items_found == 1
    assert final.status == SessionStatus.COMPLETED
    terminal = [e for e in events if e.topic == progress.SESSION_TERMINAL]
    assert terminal[0].payload["reason"] == "range_exhausted"


def test_item_errors_are_counted_and_do_not_stop(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    adapter = _FakePaginatedAdapter({1: ["X", "B"], 2: ["C"]}, detail_errors=("B",))

    final, events = _run(tmp_path, monkeypatch, adapter, _request(1, 2), existing=("X",))

    assert adapter.listed == [1, 2]
    assert final.errors_count == 1
    assert final.items_found == 2
    assert final.items_existing == 1
    assert final.items_created == 1

    resolved = [e.payload for e in events if e.topic == progress.RECORD_RESOLVED]
    assert [(p["natural_key"], p["outcome"]) for p in resolved] == [
        ("X", "existing"),
        ("B", "error"),
        ("C", "created"),
    ]
    assert resolved[1]["error_code"] == "http_404_not_found"

    log = ProcessingLog().for_session(final.id)
    assert [(e.natural_key, e.outcome) for e in log] == [
        ("X", "existing"),
        ("B", "error"),
        ("C", "created"),
    ]


def test_stop_on_existing_disabled_crawls_whole_range(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    adapter = _FakePaginatedAdapter({1: ["X"], 2: ["Y"], 3: ["Z"]})

    final, _ = _run(
        tmp_path,
        monkeypatch,
        adapter,
        _request(1, 3, stop_on_existing=False),
        existing=("X", "Y", "Z"),
    )

    assert adapter.listed == [1, 2, 3]
    assert final.items_existing == 3
    assert final.status == SessionStatus.COMPLETED


def test_cancellation_is_observed_between_units(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    cancel = threading.Event()
    adapter = _FakePaginatedAdapter(
        {1: ["A", "B"], 2: ["C"], 3: ["D"]},
        on_list=lambda page: cancel.set() if page == 1 else None,
    )

    final, events = _run(tmp_path, monkeypatch, adapter, _request(1, 3), cancel_event=cancel)

    assert final.status == SessionStatus.STOPPED
    assert adapter.listed == [1]
    # The unit in flight when cancellation arrived still finishes.
    assert final.items_created == 2
    assert final.pages_or_batches_processed == 1
    assert events[-1].topic == progress.SESSION_TERMINAL
    assert events[-1].payload["status"] == "stopped"


def test_cancel_before_first_unit(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    cancel = threading.Event()
    cancel.set()
    adapter = _FakePaginatedAdapter({1: ["A"]})

    final, _ = _run(tmp_path, monkeypatch, adapter, _request(1, 1), cancel_event=cancel)

    assert final.status == SessionStatus.STOPPED
    assert adapter.listed == []
    assert final.pages_or_batches_processed == 0


def test_adapter_config_error_fails_session(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    def _factory(source: str, options: Any) -> Any:
        raise AdapterConfigError("Unknown HSE notice country 'Mars'")

    final, events = _run(tmp_path, monkeypatch, None, _request(1, 2), factory=_factory)

    assert final.status == SessionStatus.FAILED
    assert "Mars" in final.error_summary
    assert final.pages_or_batches_processed == 0
    terminal = [e for e in events if e.topic == progress.SESSION_TERMINAL]
    assert terminal[0].payload["reason"] == "adapter_config"


def test_config_error_during_listing_aborts_immediately(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    adapter = _FakePaginatedAdapter({1: ["A"], 2: AdapterConfigError("bad selector config"), 3: ["B"]})

    final, _ = _run(tmp_path, monkeypatch, adapter, _request(1, 3))

    assert final.status == SessionStatus.FAILED
    assert adapter.listed == [1, 2]
    assert final.items_created == 1
    assert adapter.closed is True


def test_resolving_same_keys_in_second_session_never_creates(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    store, resolver, publisher = _setup(tmp_path, monkeypatch)
    coordinator = Coordinator(
        store=store,
        resolver=resolver,
        publisher=publisher,
        adapter_factory=lambda source, options: _FakePaginatedAdapter({1: ["A", "B"]}),
    )

    outcomes = []
    for _ in range(2):
        session = store.create(source="hse_cases", initiator_id="tester", range_start=1, range_end=1)
        outcomes.append(coordinator.run(session.id, _request(1, 1)))

    assert outcomes[0].items_created == 2
    assert outcomes[1].items_created == 0
    assert outcomes[1].items_existing == 2
    assert SqliteRecordStore().count("hse_cases") == 2
