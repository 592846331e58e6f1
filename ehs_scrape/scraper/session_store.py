"""Durable crawl-session state with atomic, server-side counter updates."""
from __future__ import annotations

import calendar
import json
import secrets
import threading
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional

from . import db
from .logging_utils import _scraper_event
from .utils import process_owner_id


class SessionStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    STOPPED = "stopped"
    FAILED = "failed"


ACTIVE_STATUSES = (SessionStatus.IDLE, SessionStatus.RUNNING)
TERMINAL_STATUSES = (SessionStatus.COMPLETED, SessionStatus.STOPPED, SessionStatus.FAILED)

# Counters a delta may increment. ``items_found`` is absent on purpose: it is
# derived from the three outcome counters inside the same UPDATE.
INCREMENT_FIELDS = (
    "pages_or_batches_processed",
    "items_created",
    "items_updated",
    "items_existing",
    "items_created_current_batch",
    "items_existing_current_batch",
    "errors_count",
)
FOUND_COMPONENTS = ("items_created", "items_updated", "items_existing")
SET_FIELDS = (
    "current_position",
    "items_created_current_batch",
    "items_existing_current_batch",
    "error_summary",
)


class SessionNotFoundError(LookupError):
    """Raised when a session id or token does not exist."""


class SessionStateError(RuntimeError):
    """Raised when a write is attempted against a session in the wrong status."""


def _decode_bound(value: Any) -> Any:
    # Page bounds are stored as text alongside ISO dates.
    if isinstance(value, str) and value.isdigit():
        return int(value)
    return value


def _encode_bound(value: Any) -> Optional[str]:
    if value is None:
        return None
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return str(value)


def _parse_utc(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return float(calendar.timegm(time.strptime(value, "%Y-%m-%dT%H:%M:%SZ")))
    except ValueError:
        return None


@dataclass
class ScrapeSession:
    id: int
    session_token: str
    source: str
    initiator_id: str
    range_start: Any
    range_end: Any
    status: SessionStatus
    current_position: Any = None
    pages_or_batches_processed: int = 0
    items_found: int = 0
    items_created: int = 0
    items_updated: int = 0
    items_existing: int = 0
    items_created_current_batch: int = 0
    items_existing_current_batch: int = 0
    errors_count: int = 0
    error_summary: Optional[str] = None
    params: dict[str, Any] = field(default_factory=dict)
    owner_id: Optional[str] = None
    started_at: Optional[str] = None
    ended_at: Optional[str] = None
    created_at: str = ""
    updated_at: str = ""

    @classmethod
    def _from_row(cls, row: Any) -> "ScrapeSession":
        try:
            params = json.loads(row["params_json"] or "{}")
        except ValueError:
            params = {}
        return cls(
            id=int(row["id"]),
            session_token=row["session_token"],
            source=row["source"],
            initiator_id=row["initiator_id"],
            range_start=_decode_bound(row["range_start"]),
            range_end=_decode_bound(row["range_end"]),
            status=SessionStatus(row["status"]),
            current_position=_decode_bound(row["current_position"]),
            pages_or_batches_processed=int(row["pages_or_batches_processed"]),
            items_found=int(row["items_found"]),
            items_created=int(row["items_created"]),
            items_updated=int(row["items_updated"]),
            items_existing=int(row["items_existing"]),
            items_created_current_batch=int(row["items_created_current_batch"]),
            items_existing_current_batch=int(row["items_existing_current_batch"]),
            errors_count=int(row["errors_count"]),
            error_summary=row["error_summary"],
            params=params if isinstance(params, dict) else {},
            owner_id=row["owner_id"],
            started_at=row["started_at"],
            ended_at=row["ended_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict[str, Any]:
        """Return the session as a flat, JSON-serialisable record."""

        payload = asdict(self)
        payload["status"] = self.status.value
        return payload


@dataclass(frozen=True)
class SessionDelta:
    """A partial update: counters to add to and fields to overwrite."""

    increments: Mapping[str, int] = field(default_factory=dict)
    sets: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def for_outcome(cls, outcome: str) -> "SessionDelta":
        """Delta for one resolved item with the given resolution outcome."""

        value = getattr(outcome, "value", outcome)
        if value == "created":
            return cls(increments={"items_created": 1, "items_created_current_batch": 1})
        if value == "updated":
            return cls(increments={"items_updated": 1})
        if value == "existing":
            return cls(increments={"items_existing": 1, "items_existing_current_batch": 1})
        if value == "error":
            return cls(increments={"errors_count": 1})
        raise ValueError(f"Unknown resolution outcome: {outcome!r}")

    @classmethod
    def unit_started(cls, position: Any) -> "SessionDelta":
        return cls(
            sets={
                "current_position": position,
                "items_created_current_batch": 0,
                "items_existing_current_batch": 0,
            }
        )

    @classmethod
    def unit_finished(cls) -> "SessionDelta":
        return cls(increments={"pages_or_batches_processed": 1})

    @classmethod
    def unit_failed(cls) -> "SessionDelta":
        return cls(increments={"pages_or_batches_processed": 1, "errors_count": 1})

    def validate(self) -> None:
        for name, amount in self.increments.items():
            if name not in INCREMENT_FIELDS:
                raise ValueError(f"Field {name!r} cannot be incremented")
            if not isinstance(amount, int) or amount < 0:
                raise ValueError(f"Increment for {name!r} must be a non-negative int")
        for name in self.sets:
            if name not in SET_FIELDS:
                raise ValueError(f"Field {name!r} cannot be set directly")
            if name in self.increments:
                raise ValueError(f"Field {name!r} is both set and incremented")


def _new_session_token() -> str:
    return secrets.token_hex(8)


class SessionStore:
    """SQLite-backed store for :class:`ScrapeSession` rows.

    Every write is a single conditional statement inside ``BEGIN IMMEDIATE``,
    so concurrent deltas for the same session serialise at the database and
    counters are incremented server-side. A process-wide lock additionally
    serialises writers inside one process.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()

    def create(
        self,
        *,
        source: str,
        initiator_id: str,
        range_start: Any,
        range_end: Any,
        params: Mapping[str, Any] | None = None,
        owner_id: Optional[str] = None,
    ) -> ScrapeSession:
        """Insert an ``idle`` session owned by ``owner_id`` (default: this process)."""

        now = db._utc_now()
        params_json = json.dumps(dict(params or {}), sort_keys=True, default=str)
        with self._lock, db.transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO scrape_sessions (
                    session_token, source, initiator_id, range_start, range_end,
                    params_json, status, owner_id, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    _new_session_token(),
                    source,
                    initiator_id,
                    _encode_bound(range_start),
                    _encode_bound(range_end),
                    params_json,
                    SessionStatus.IDLE.value,
                    owner_id or process_owner_id(),
                    now,
                    now,
                ),
            )
            session = self._fetch(conn, int(cursor.lastrowid))

        _scraper_event(
            "state",
            phase="session_created",
            session_id=session.id,
            source=source,
            initiator_id=initiator_id,
            range_start=session.range_start,
            range_end=session.range_end,
        )
        return session

    def apply_delta(self, session_id: int, delta: SessionDelta) -> ScrapeSession:
        """Atomically merge ``delta`` into a non-terminal session and return it."""

        delta.validate()
        assignments: list[str] = []
        values: list[Any] = []
        for name, amount in delta.increments.items():
            assignments.append(f"{name} = {name} + ?")
            values.append(amount)
        found = sum(delta.increments.get(name, 0) for name in FOUND_COMPONENTS)
        if found:
            assignments.append("items_found = items_found + ?")
            values.append(found)
        for name, value in delta.sets.items():
            assignments.append(f"{name} = ?")
            values.append(_encode_bound(value) if name == "current_position" else value)
        assignments.append("updated_at = ?")
        values.append(db._utc_now())

        active = tuple(status.value for status in ACTIVE_STATUSES)
        with self._lock, db.transaction() as conn:
            cursor = conn.execute(
                f"""
                UPDATE scrape_sessions
                SET {", ".join(assignments)}
                WHERE id = ? AND status IN (?, ?)
                """,
                (*values, session_id, *active),
            )
            if cursor.rowcount == 0:
                current = self._fetch(conn, session_id)
                raise SessionStateError(
                    f"Session {session_id} is {current.status.value}; delta rejected"
                )
            return self._fetch(conn, session_id)

    def mark_running(self, session_id: int) -> ScrapeSession:
        """Move an ``idle`` session to ``running``."""

        now = db._utc_now()
        with self._lock, db.transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE scrape_sessions
                SET status = ?, started_at = ?, updated_at = ?
                WHERE id = ? AND status = ?
                """,
                (SessionStatus.RUNNING.value, now, now, session_id, SessionStatus.IDLE.value),
            )
            if cursor.rowcount == 0:
                current = self._fetch(conn, session_id)
                raise SessionStateError(
                    f"Session {session_id} is {current.status.value}; cannot start"
                )
            session = self._fetch(conn, session_id)

        _scraper_event("state", phase="session_running", session_id=session_id)
        return session

    def mark_terminal(
        self,
        session_id: int,
        status: SessionStatus | str,
        *,
        error_summary: Optional[str] = None,
        start_if_idle: bool = False,
    ) -> bool:
        """Set a terminal status exactly once.

        Only a ``running`` session can end. With ``start_if_idle`` an ``idle``
        session is first moved to ``running`` (stamping ``started_at``) inside
        the same transaction, so a session that never got to run still follows
        idle -> running -> terminal.

        Returns ``True`` for the caller whose update ended the session and
        ``False`` when it was already terminal or still idle.
        """

        target = SessionStatus(status)
        if target not in TERMINAL_STATUSES:
            raise ValueError(f"{target.value!r} is not a terminal status")

        now = db._utc_now()
        with self._lock, db.transaction() as conn:
            if start_if_idle:
                conn.execute(
                    """
                    UPDATE scrape_sessions
                    SET status = ?, started_at = ?, updated_at = ?
                    WHERE id = ? AND status = ?
                    """,
                    (SessionStatus.RUNNING.value, now, now, session_id, SessionStatus.IDLE.value),
                )
            cursor = conn.execute(
                """
                UPDATE scrape_sessions
                SET status = ?, ended_at = ?, updated_at = ?,
                    error_summary = COALESCE(?, error_summary)
                WHERE id = ? AND status = ?
                """,
                (target.value, now, now, error_summary, session_id, SessionStatus.RUNNING.value),
            )
            won = cursor.rowcount == 1
            if not won:
                # Surface a missing id instead of reporting a lost race.
                self._fetch(conn, session_id)

        _scraper_event(
            "state",
            phase="session_terminal",
            session_id=session_id,
            status=target.value,
            applied=won,
            error_summary=error_summary,
        )
        return won

    def get(self, session_id: int) -> ScrapeSession:
        conn = db.get_connection()
        try:
            return self._fetch(conn, session_id)
        finally:
            conn.close()

    def get_by_token(self, session_token: str) -> ScrapeSession:
        conn = db.get_connection()
        try:
            row = conn.execute(
                "SELECT * FROM scrape_sessions WHERE session_token = ?",
                (session_token,),
            ).fetchone()
        finally:
            conn.close()
        if row is None:
            raise SessionNotFoundError(f"No session with token {session_token!r}")
        return ScrapeSession._from_row(row)

    def list_active(
        self,
        *,
        source: Optional[str] = None,
        initiator_id: Optional[str] = None,
    ) -> list[ScrapeSession]:
        """Return idle or running sessions, optionally filtered by key."""

        clauses = ["status IN (?, ?)"]
        params: list[Any] = [s.value for s in ACTIVE_STATUSES]
        if source is not None:
            clauses.append("source = ?")
            params.append(source)
        if initiator_id is not None:
            clauses.append("initiator_id = ?")
            params.append(initiator_id)

        conn = db.get_connection()
        try:
            rows = conn.execute(
                f"SELECT * FROM scrape_sessions WHERE {' AND '.join(clauses)} ORDER BY id",
                params,
            ).fetchall()
        finally:
            conn.close()
        return [ScrapeSession._from_row(row) for row in rows]

    def list_recent(self, limit: int = 50) -> list[ScrapeSession]:
        conn = db.get_connection()
        try:
            rows = conn.execute(
                "SELECT * FROM scrape_sessions ORDER BY id DESC LIMIT ?",
                (max(1, int(limit)),),
            ).fetchall()
        finally:
            conn.close()
        return [ScrapeSession._from_row(row) for row in rows]

    def latest(self) -> Optional[ScrapeSession]:
        recent = self.list_recent(limit=1)
        return recent[0] if recent else None

    @staticmethod
    def _fetch(conn: Any, session_id: int) -> ScrapeSession:
        row = conn.execute(
            "SELECT * FROM scrape_sessions WHERE id = ?",
            (session_id,),
        ).fetchone()
        if row is None:
            raise SessionNotFoundError(f"No session with id {session_id}")
        return ScrapeSession._from_row(row)


def session_summary(session: ScrapeSession, *, now: Optional[float] = None) -> dict[str, Any]:
    """Return the human-facing summary used for terminal events and the CLI."""

    started = _parse_utc(session.started_at) or _parse_utc(session.created_at)
    ended = _parse_utc(session.ended_at)
    if ended is None:
        ended = now if now is not None else time.time()
    duration = max(0.0, ended - started) if started is not None else 0.0

    success_rate = 0.0
    if session.items_found > 0:
        success_rate = round(session.items_created / session.items_found * 100, 2)

    return {
        "session_id": session.id,
        "session_token": session.session_token,
        "source": session.source,
        "status": session.status.value,
        "duration_seconds": round(duration, 3),
        "pages_or_batches_processed": session.pages_or_batches_processed,
        "items_found": session.items_found,
        "items_created": session.items_created,
        "items_updated": session.items_updated,
        "items_existing": session.items_existing,
        "errors_count": session.errors_count,
        "success_rate": success_rate,
        "error_summary": session.error_summary,
    }


__all__ = [
    "ACTIVE_STATUSES",
    "ScrapeSession",
    "SessionDelta",
    "SessionNotFoundError",
    "SessionStateError",
    "SessionStatus",
    "SessionStore",
    "TERMINAL_STATUSES",
    "session_summary",
]
