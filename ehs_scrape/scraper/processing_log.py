"""Append-only audit trail of resolved items and failed units."""
from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Optional

from . import config, db
from .logging_utils import _scraper_event

OUTCOMES = ("created", "updated", "existing", "error")


@dataclass(frozen=True)
class ProcessingLogEntry:
    id: int
    session_id: int
    batch_position: Optional[str]
    natural_key: Optional[str]
    outcome: str
    error_code: Optional[str]
    detail: Optional[str]
    timestamp: str

    @classmethod
    def _from_row(cls, row: Any) -> "ProcessingLogEntry":
        return cls(
            id=int(row["id"]),
            session_id=int(row["session_id"]),
            batch_position=row["batch_position"],
            natural_key=row["natural_key"],
            outcome=row["outcome"],
            error_code=row["error_code"],
            detail=row["detail"],
            timestamp=row["created_at"],
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class ProcessingLog:
    """Thin writer/reader over the ``processing_logs`` table.

    Rows are never updated; the only mutation besides ``append`` is
    :meth:`prune`, which removes the oldest rows beyond a retention cap.
    """

    def append(
        self,
        *,
        session_id: int,
        batch_position: Any,
        outcome: str,
        natural_key: Optional[str] = None,
        error_code: Optional[str] = None,
        detail: Optional[str] = None,
    ) -> ProcessingLogEntry:
        value = getattr(outcome, "value", outcome)
        if value not in OUTCOMES:
            raise ValueError(f"Unknown processing outcome: {outcome!r}")

        position = None if batch_position is None else str(batch_position)
        with db.transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO processing_logs (
                    session_id, batch_position, natural_key, outcome,
                    error_code, detail, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (session_id, position, natural_key, value, error_code, detail, db._utc_now()),
            )
            row = conn.execute(
                "SELECT * FROM processing_logs WHERE id = ?",
                (cursor.lastrowid,),
            ).fetchone()
        return ProcessingLogEntry._from_row(row)

    def for_session(
        self,
        session_id: int,
        *,
        outcome: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[ProcessingLogEntry]:
        """Return a session's entries in insertion order."""

        query = "SELECT * FROM processing_logs WHERE session_id = ?"
        params: list[Any] = [session_id]
        if outcome:
            query += " AND outcome = ?"
            params.append(outcome)
        query += " ORDER BY id"
        if limit is not None:
            query += " LIMIT ?"
            params.append(max(1, int(limit)))

        conn = db.get_connection()
        try:
            rows = conn.execute(query, params).fetchall()
        finally:
            conn.close()
        return [ProcessingLogEntry._from_row(row) for row in rows]

    def prune(self, max_entries: Optional[int] = None) -> int:
        """Delete the oldest entries beyond ``max_entries``; return the count removed."""

        cap = config.PROCESSING_LOG_MAX_ENTRIES if max_entries is None else int(max_entries)
        if cap < 0:
            raise ValueError("max_entries must be >= 0")

        with db.transaction() as conn:
            cursor = conn.execute(
                """
                DELETE FROM processing_logs
                WHERE id NOT IN (
                    SELECT id FROM processing_logs ORDER BY id DESC LIMIT ?
                )
                """,
                (cap,),
            )
            removed = cursor.rowcount

        if removed:
            _scraper_event("state", phase="processing_log_pruned", removed=removed, cap=cap)
        return removed


__all__ = ["OUTCOMES", "ProcessingLog", "ProcessingLogEntry"]
