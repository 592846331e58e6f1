from __future__ import annotations

import importlib
import sys
import threading
from pathlib import Path

import pytest

from ehs_scrape.scraper import config, db
from ehs_scrape.scraper.session_store import (
    SessionDelta,
    SessionNotFoundError,
    SessionStateError,
    SessionStatus,
    SessionStore,
    session_summary,
)


def _configure_temp_paths(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    data_dir = tmp_path / "data"
    data_dir.mkdir(parents=True, exist_ok=True)
    db_path = data_dir / "ehs_scrape.db"

    monkeypatch.setattr(config, "DATA_DIR", data_dir)
    monkeypatch.setattr(config, "LOG_DIR", data_dir / "logs")
    monkeypatch.setattr(config, "LOG_FILE", data_dir / "logs" / "latest.log")
    monkeypatch.setattr(config, "DB_PATH", db_path)
    monkeypatch.setattr(db, "DB_PATH", db_path)


def _reload_main_module():
    if "ehs_scrape.main" in sys.modules:
        del sys.modules["ehs_scrape.main"]
    return importlib.import_module("ehs_scrape.main")


def _new_store(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> SessionStore:
    _configure_temp_paths(tmp_path, monkeypatch)
    db.initialize_schema()
    return SessionStore()


def _create_session(store: SessionStore, *, source: str = "hse_cases", initiator_id: str = "tester"):
    return store.create(
        source=source,
        initiator_id=initiator_id,
        range_start=1,
        range_end=3,
        params={"stop_on_existing": True},
    )


def test_create_starts_idle_with_zero_counters(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    store = _new_store(tmp_path, monkeypatch)

    session = _create_session(store)

    assert session.status == SessionStatus.IDLE
    assert session.range_start == 1
    assert session.range_end == 3
    assert session.items_found == 0
    assert session.pages_or_batches_processed == 0
    assert len(session.session_token) == 16
    assert session.params == {"stop_on_existing": True}
    assert store.get(session.id) == session


def test_outcome_deltas_keep_found_equal_to_components(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    store = _new_store(tmp_path, monkeypatch)
    session = store.mark_running(_create_session(store).id)

    for outcome in ("created", "created", "updated", "existing", "error"):
        session = store.apply_delta(session.id, SessionDelta.for_outcome(outcome))
        assert session.items_found == (
            session.items_created + session.items_updated + session.items_existing
        )

    assert session.items_created == 2
    assert session.items_updated == 1
    assert session.items_existing == 1
    assert session.items_found == 4
    assert session.errors_count == 1
    assert session.items_created_current_batch == 2
    assert session.items_existing_current_batch == 1


def test_unit_started_resets_batch_counters(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    store = _new_store(tmp_path, monkeypatch)
    session = store.mark_running(_create_session(store).id)
    store.apply_delta(session.id, SessionDelta.for_outcome("created"))

    session = store.apply_delta(session.id, SessionDelta.unit_started("2"))

    assert session.current_position == 2
    assert session.items_created_current_batch == 0
    assert session.items_existing_current_batch == 0
    assert session.items_created == 1


def test_delta_rejects_direct_items_found_and_negative_values(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    store = _new_store(tmp_path, monkeypatch)
    session = _create_session(store)

    with pytest.raises(ValueError):
        store.apply_delta(session.id, SessionDelta(increments={"items_found": 1}))
    with pytest.raises(ValueError):
        store.apply_delta(session.id, SessionDelta(increments={"pages_or_batches_processed": -1}))
    with pytest.raises(ValueError):
        store.apply_delta(session.id, SessionDelta(sets={"status": "completed"}))


def test_terminal_status_is_set_once_and_blocks_deltas(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    store = _new_store(tmp_path, monkeypatch)
    session = store.mark_running(_create_session(store).id)

    assert store.mark_terminal(session.id, SessionStatus.STOPPED) is True
    assert store.mark_terminal(session.id, SessionStatus.FAILED, error_summary="late") is False

    final = store.get(session.id)
    assert final.status == SessionStatus.STOPPED
    assert final.error_summary is None
    assert final.ended_at

    with pytest.raises(SessionStateError):
        store.apply_delta(session.id, SessionDelta.unit_finished())
    with pytest.raises(SessionStateError):
        store.mark_running(session.id)


def test_mark_terminal_rejects_non_terminal_status(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    store = _new_store(tmp_path, monkeypatch)
    session = _create_session(store)

    with pytest.raises(ValueError):
        store.mark_terminal(session.id, SessionStatus.RUNNING)


def test_missing_session_raises_not_found(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    store = _new_store(tmp_path, monkeypatch)

    with pytest.raises(SessionNotFoundError):
        store.get(999)
    with pytest.raises(SessionNotFoundError):
        store.apply_delta(999, SessionDelta.unit_finished())
    with pytest.raises(SessionNotFoundError):
        store.mark_terminal(999, SessionStatus.FAILED)


def test_list_active_filters_by_key(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    store = _new_store(tmp_path, monkeypatch)
    first = _create_session(store, initiator_id="alice")
    second = _create_session(store, source="ea_cases", initiator_id="alice")
    done = _create_session(store, initiator_id="bob")
    store.mark_running(done.id)
    store.mark_terminal(done.id, SessionStatus.COMPLETED)

    assert [s.id for s in store.list_active()] == [first.id, second.id]
    assert [s.id for s in store.list_active(source="hse_cases", initiator_id="alice")] == [first.id]
    assert store.list_active(initiator_id="bob") == []
    assert store.latest().id == done.id


def test_concurrent_deltas_are_not_lost(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    store = _new_store(tmp_path, monkeypatch)
    session = store.mark_running(_create_session(store).id)

    def _worker(outcome: str) -> None:
        for _ in range(20):
            store.apply_delta(session.id, SessionDelta.for_outcome(outcome))

    threads = [
        threading.Thread(target=_worker, args=(outcome,))
        for outcome in ("created", "updated", "existing", "created")
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    final = store.get(session.id)
    assert final.items_created == 40
    assert final.items_updated == 20
    assert final.items_existing == 20
    assert final.items_found == 80


def test_session_summary_reports_success_rate(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    store = _new_store(tmp_path, monkeypatch)
    session = store.mark_running(_create_session(store).id)
    for outcome in ("created", "existing", "existing"):
        store.apply_delta(session.id, SessionDelta.for_outcome(outcome))
    store.mark_terminal(session.id, SessionStatus.COMPLETED)

    summary = session_summary(store.get(session.id))

    assert summary["status"] == "completed"
    assert summary["items_found"] == 3
    assert summary["success_rate"] == 33.33
    assert summary["duration_seconds"] >= 0


def test_session_summary_with_nothing_found(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    store = _new_store(tmp_path, monkeypatch)
    session = _create_session(store)

    summary = session_summary(session)

    assert summary["success_rate"] == 0.0
    assert summary["status"] == "idle"


def test_idle_session_only_ends_by_passing_through_running(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    store = _new_store(tmp_path, monkeypatch)
    session = _create_session(store)

    assert store.mark_terminal(session.id, SessionStatus.FAILED) is False
    still_idle = store.get(session.id)
    assert still_idle.status == SessionStatus.IDLE
    assert still_idle.ended_at is None

    assert store.mark_terminal(session.id, SessionStatus.FAILED, start_if_idle=True) is True
    final = store.get(session.id)
    assert final.status == SessionStatus.FAILED
    assert final.started_at is not None
    assert final.ended_at is not None


def test_sessions_record_their_owner(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    store = _new_store(tmp_path, monkeypatch)
    monkeypatch.setattr("ehs_scrape.scraper.session_store.process_owner_id", lambda: "worker-a:101")

    implicit = _create_session(store)
    explicit = store.create(
        source="hse_cases", initiator_id="other", range_start=1, range_end=1, owner_id="worker-b:202"
    )

    assert store.get(implicit.id).owner_id == "worker-a:101"
    assert store.get(explicit.id).to_dict()["owner_id"] == "worker-b:202"


def test_initialize_schema_adds_owner_column_to_old_tables(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)
    conn = db.get_connection()
    conn.execute(
        "CREATE TABLE scrape_sessions (id INTEGER PRIMARY KEY AUTOINCREMENT, session_token TEXT NOT NULL UNIQUE,"
        " source TEXT NOT NULL, initiator_id TEXT NOT NULL, range_start TEXT NOT NULL, range_end TEXT NOT NULL,"
        " params_json TEXT NOT NULL, status TEXT NOT NULL, current_position TEXT,"
        " pages_or_batches_processed INTEGER NOT NULL DEFAULT 0, items_found INTEGER NOT NULL DEFAULT 0,"
        " items_created INTEGER NOT NULL DEFAULT 0, items_updated INTEGER NOT NULL DEFAULT 0,"
        " items_existing INTEGER NOT NULL DEFAULT 0, items_created_current_batch INTEGER NOT NULL DEFAULT 0,"
        " items_existing_current_batch INTEGER NOT NULL DEFAULT 0, errors_count INTEGER NOT NULL DEFAULT 0,"
        " error_summary TEXT, started_at TEXT, ended_at TEXT, created_at TEXT NOT NULL, updated_at TEXT NOT NULL)"
    )
    conn.commit()
    conn.close()

    db.initialize_schema()
    db.initialize_schema()

    session = _create_session(SessionStore())
    assert session.owner_id
