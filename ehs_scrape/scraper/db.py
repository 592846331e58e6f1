"""SQLite helpers for the enforcement scrape engine.

This module defines the project database path, the connection helper,
schema initialisation and a write-transaction context manager shared by the
session store, the record store and the processing log.
"""
from __future__ import annotations

import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterable, Iterator

from . import config

DB_PATH: Path = config.DB_PATH

# Seconds a writer waits for a competing writer's lock before giving up.
BUSY_TIMEOUT_SECONDS = 30.0


def get_connection() -> sqlite3.Connection:
    """Return a SQLite connection to the project database.

    The parent directory is created if missing and ``check_same_thread`` is
    disabled to allow reuse from different threads. Callers must manage
    concurrency at a higher layer.
    """

    DB_PATH.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(DB_PATH, check_same_thread=False, timeout=BUSY_TIMEOUT_SECONDS)
    conn.row_factory = sqlite3.Row
    return conn


@contextmanager
def transaction() -> Iterator[sqlite3.Connection]:
    """Yield a connection inside a ``BEGIN IMMEDIATE`` transaction.

    The write lock is taken up front so read-then-write sequences from
    different threads serialise instead of failing on upgrade. The
    transaction commits on normal exit and rolls back on any exception.
    """

    conn = get_connection()
    conn.isolation_level = None
    try:
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")
    finally:
        conn.close()


def initialize_schema() -> None:
    """Create the baseline tables if they do not yet exist.

    Safe to call multiple times; each statement uses ``IF NOT EXISTS`` to avoid
    duplicate objects.
    """

    statements: Iterable[str] = (
        """
        CREATE TABLE IF NOT EXISTS scrape_sessions (
            id                           INTEGER PRIMARY KEY AUTOINCREMENT,
            session_token                TEXT NOT NULL UNIQUE,
            source                       TEXT NOT NULL,
            initiator_id                 TEXT NOT NULL,
            range_start                  TEXT NOT NULL,
            range_end                    TEXT NOT NULL,
            params_json                  TEXT NOT NULL,
            status                       TEXT NOT NULL,
            current_position             TEXT,
            pages_or_batches_processed   INTEGER NOT NULL DEFAULT 0,
            items_found                  INTEGER NOT NULL DEFAULT 0,
            items_created                INTEGER NOT NULL DEFAULT 0,
            items_updated                INTEGER NOT NULL DEFAULT 0,
            items_existing               INTEGER NOT NULL DEFAULT 0,
            items_created_current_batch  INTEGER NOT NULL DEFAULT 0,
            items_existing_current_batch INTEGER NOT NULL DEFAULT 0,
            errors_count                 INTEGER NOT NULL DEFAULT 0,
            error_summary                TEXT,
            owner_id                     TEXT,
            started_at                   TEXT,
            ended_at                     TEXT,
            created_at                   TEXT NOT NULL,
            updated_at                   TEXT NOT NULL
        );
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_scrape_sessions_status
            ON scrape_sessions(status);
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_scrape_sessions_source_initiator
            ON scrape_sessions(source, initiator_id);
        """,
        """
        CREATE TABLE IF NOT EXISTS enforcement_records (
            id                INTEGER PRIMARY KEY AUTOINCREMENT,
            source            TEXT NOT NULL,
            natural_key       TEXT NOT NULL,
            record_kind       TEXT NOT NULL,
            subject_reference TEXT,
            event_date        TEXT,
            monetary_amount   TEXT,
            free_text_json    TEXT NOT NULL DEFAULT '{}',
            source_url        TEXT,
            created_at        TEXT NOT NULL,
            last_synced_at    TEXT NOT NULL,
            UNIQUE(source, natural_key)
        );
        """,
        """
        CREATE TABLE IF NOT EXISTS processing_logs (
            id             INTEGER PRIMARY KEY AUTOINCREMENT,
            session_id     INTEGER NOT NULL,
            batch_position TEXT,
            natural_key    TEXT,
            outcome        TEXT NOT NULL,
            error_code     TEXT,
            detail         TEXT,
            created_at     TEXT NOT NULL,
            FOREIGN KEY(session_id) REFERENCES scrape_sessions(id)
        );
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_processing_logs_session
            ON processing_logs(session_id, id);
        """,
    )

    conn = get_connection()
    with conn:
        for statement in statements:
            conn.execute(statement)
        _add_missing_columns(conn, "scrape_sessions", {"owner_id": "TEXT"})
    conn.close()


def _add_missing_columns(conn: sqlite3.Connection, table: str, columns: dict[str, str]) -> None:
    """Add ``columns`` to a table created by an older schema."""

    existing = {row["name"] for row in conn.execute(f"PRAGMA table_info({table})")}
    for name, column_type in columns.items():
        if name not in existing:
            conn.execute(f"ALTER TABLE {table} ADD COLUMN {name} {column_type}")


def _utc_now() -> str:
    """Return a UTC timestamp formatted as ISO8601 without fractional seconds."""

    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())
