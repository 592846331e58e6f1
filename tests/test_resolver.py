from __future__ import annotations

from decimal import Decimal
from pathlib import Path
from typing import Any, Mapping, Optional

import pytest

from ehs_scrape.scraper import db
from ehs_scrape.scraper.adapters.base import CandidateDetail
from ehs_scrape.scraper.records import (
    EnforcementRecord,
    RecordStorageError,
    SqliteRecordStore,
    UniquenessConflictError,
)
from ehs_scrape.scraper.resolver import RecordResolver, ResolutionOutcome
from tests.test_session_store import _configure_temp_paths


def _detail(key: str = "4012345", **overrides: Any) -> CandidateDetail:
    fields: dict[str, Any] = {
        "natural_key": key,
        "record_kind": "case",
        "subject_reference": "Acme Ltd",
        "event_date": "2024-03-01",
        "monetary_amount": Decimal("5000.00"),
        "free_text_fields": {"local_authority": "Leeds"},
        "source_url": f"https://example.test/case/{key}",
    }
    fields.update(overrides)
    return CandidateDetail(**fields)


def _sqlite_resolver(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> tuple[RecordResolver, SqliteRecordStore]:
    _configure_temp_paths(tmp_path, monkeypatch)
    db.initialize_schema()
    storage = SqliteRecordStore()
    ticks = iter(f"2024-01-01T00:00:{second:02d}Z" for second in range(60))
    return RecordResolver(storage, clock=lambda: next(ticks)), storage


def test_first_sighting_creates_record(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    resolver, storage = _sqlite_resolver(tmp_path, monkeypatch)

    resolution = resolver.resolve("hse_cases", _detail())

    assert resolution.outcome == ResolutionOutcome.CREATED
    assert resolution.record is not None
    assert resolution.record.monetary_amount == Decimal("5000.00")
    assert storage.count("hse_cases") == 1


def test_unchanged_sighting_is_existing_and_touches(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    resolver, storage = _sqlite_resolver(tmp_path, monkeypatch)
    first = resolver.resolve("hse_cases", _detail())

    second = resolver.resolve("hse_cases", _detail())

    assert second.outcome == ResolutionOutcome.EXISTING
    assert second.record.id == first.record.id
    assert second.record.last_synced_at > first.record.last_synced_at
    assert storage.count() == 1


def test_changed_fields_report_updated(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    resolver, storage = _sqlite_resolver(tmp_path, monkeypatch)
    resolver.resolve("hse_cases", _detail())

    resolution = resolver.resolve(
        "hse_cases",
        _detail(monetary_amount=Decimal("7500"), free_text_fields={"result": "Guilty"}),
    )

    assert resolution.outcome == ResolutionOutcome.UPDATED
    assert resolution.changed_fields == ("free_text_fields", "monetary_amount")
    stored = storage.find_by_natural_key("hse_cases", "4012345")
    assert stored.monetary_amount == Decimal("7500")
    assert stored.free_text_fields == {"local_authority": "Leeds", "result": "Guilty"}


def test_missing_fields_do_not_overwrite_stored_values(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    resolver, storage = _sqlite_resolver(tmp_path, monkeypatch)
    resolver.resolve("hse_cases", _detail())

    resolution = resolver.resolve(
        "hse_cases",
        _detail(monetary_amount=None, subject_reference=None, free_text_fields={}),
    )

    assert resolution.outcome == ResolutionOutcome.EXISTING
    assert storage.find_by_natural_key("hse_cases", "4012345").subject_reference == "Acme Ltd"


def test_same_key_in_other_source_is_a_new_record(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    resolver, storage = _sqlite_resolver(tmp_path, monkeypatch)
    resolver.resolve("hse_cases", _detail())

    resolution = resolver.resolve("hse_notices", _detail(record_kind="notice"))

    assert resolution.outcome == ResolutionOutcome.CREATED
    assert storage.count() == 2


def test_sqlite_store_raises_uniqueness_conflict(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)
    db.initialize_schema()
    storage = SqliteRecordStore()
    record = EnforcementRecord(source="ea_cases", natural_key="77", record_kind="case")
    storage.create(record)

    with pytest.raises(UniquenessConflictError):
        storage.create(record)


class _RacingStorage:
    """Storage whose first lookup misses because another writer wins the insert."""

    def __init__(self) -> None:
        self.winner = EnforcementRecord(
            id=1,
            source="hse_cases",
            natural_key="4012345",
            record_kind="case",
            subject_reference="Acme Ltd",
        )
        self.lookups = 0
        self.updates: list[Mapping[str, Any]] = []

    def find_by_natural_key(self, source: str, natural_key: str) -> Optional[EnforcementRecord]:
        self.lookups += 1
        return None if self.lookups == 1 else self.winner

    def create(self, record: EnforcementRecord) -> EnforcementRecord:
        raise UniquenessConflictError("taken")

    def update(self, record_id: int, changes: Mapping[str, Any]) -> EnforcementRecord:
        self.updates.append(dict(changes))
        return self.winner


def test_uniqueness_conflict_resolves_as_existing_with_touch() -> None:
    storage = _RacingStorage()
    resolver = RecordResolver(storage, clock=lambda: "2024-01-01T00:00:00Z")

    resolution = resolver.resolve("hse_cases", _detail())

    assert resolution.outcome == ResolutionOutcome.EXISTING
    assert storage.lookups == 2
    assert len(storage.updates) == 1
    assert storage.updates[0]["last_synced_at"] == "2024-01-01T00:00:00Z"


class _BrokenStorage:
    def find_by_natural_key(self, source: str, natural_key: str) -> Optional[EnforcementRecord]:
        raise RecordStorageError("database is locked")

    def create(self, record: EnforcementRecord) -> EnforcementRecord:  # pragma: no cover
        raise AssertionError("not reached")

    def update(self, record_id: int, changes: Mapping[str, Any]) -> EnforcementRecord:  # pragma: no cover
        raise AssertionError("not reached")


def test_storage_failure_is_reported_not_raised() -> None:
    resolver = RecordResolver(_BrokenStorage())

    resolution = resolver.resolve("hse_cases", _detail())

    assert resolution.outcome == ResolutionOutcome.ERROR
    assert resolution.error_code == "storage_error"
    assert "database is locked" in resolution.detail


def test_blank_natural_key_is_an_error() -> None:
    resolver = RecordResolver(_BrokenStorage())

    resolution = resolver.resolve("hse_cases", _detail(key="  "))

    assert resolution.outcome == ResolutionOutcome.ERROR
    assert resolution.error_code == "parse_error"
