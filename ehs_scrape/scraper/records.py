"""Enforcement record storage.

The engine only needs three operations from the record store:
find-by-natural-key, create and update. :class:`RecordStorage` names that
interface; :class:`SqliteRecordStore` implements it on the project database
and relies on ``UNIQUE(source, natural_key)`` to serialise racing creates.
"""
from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Optional, Protocol

from . import db

# Fields an agency page can confirm and that may change between sightings.
MUTABLE_FIELDS = (
    "subject_reference",
    "event_date",
    "monetary_amount",
    "free_text_fields",
    "source_url",
)


class RecordStorageError(RuntimeError):
    """Raised for any failure of the record store."""


class UniquenessConflictError(RecordStorageError):
    """Raised when a create collides with an existing ``(source, natural_key)``."""


def _to_decimal(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


@dataclass
class EnforcementRecord:
    source: str
    natural_key: str
    record_kind: str
    subject_reference: Optional[str] = None
    event_date: Optional[str] = None
    monetary_amount: Optional[Decimal] = None
    free_text_fields: dict[str, str] = field(default_factory=dict)
    source_url: Optional[str] = None
    last_synced_at: Optional[str] = None
    created_at: Optional[str] = None
    id: Optional[int] = None

    @classmethod
    def _from_row(cls, row: Any) -> "EnforcementRecord":
        try:
            free_text = json.loads(row["free_text_json"] or "{}")
        except ValueError:
            free_text = {}
        return cls(
            id=int(row["id"]),
            source=row["source"],
            natural_key=row["natural_key"],
            record_kind=row["record_kind"],
            subject_reference=row["subject_reference"],
            event_date=row["event_date"],
            monetary_amount=_to_decimal(row["monetary_amount"]),
            free_text_fields=free_text if isinstance(free_text, dict) else {},
            source_url=row["source_url"],
            last_synced_at=row["last_synced_at"],
            created_at=row["created_at"],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "source": self.source,
            "natural_key": self.natural_key,
            "record_kind": self.record_kind,
            "subject_reference": self.subject_reference,
            "event_date": self.event_date,
            "monetary_amount": None if self.monetary_amount is None else str(self.monetary_amount),
            "free_text_fields": dict(self.free_text_fields),
            "source_url": self.source_url,
            "last_synced_at": self.last_synced_at,
            "created_at": self.created_at,
        }


class RecordStorage(Protocol):
    def find_by_natural_key(self, source: str, natural_key: str) -> Optional[EnforcementRecord]:
        ...

    def create(self, record: EnforcementRecord) -> EnforcementRecord:
        ...

    def update(self, record_id: int, changes: Mapping[str, Any]) -> EnforcementRecord:
        ...


def _column_values(changes: Mapping[str, Any]) -> dict[str, Any]:
    columns: dict[str, Any] = {}
    for name, value in changes.items():
        if name == "free_text_fields":
            columns["free_text_json"] = json.dumps(dict(value or {}), sort_keys=True)
        elif name == "monetary_amount":
            columns["monetary_amount"] = None if value is None else str(value)
        elif name in MUTABLE_FIELDS or name == "last_synced_at":
            columns[name] = value
        else:
            raise ValueError(f"Field {name!r} cannot be updated")
    return columns


class SqliteRecordStore:
    """:class:`RecordStorage` backed by the ``enforcement_records`` table."""

    def find_by_natural_key(self, source: str, natural_key: str) -> Optional[EnforcementRecord]:
        try:
            conn = db.get_connection()
            try:
                row = conn.execute(
                    """
                    SELECT * FROM enforcement_records
                    WHERE source = ? AND natural_key = ?
                    LIMIT 1
                    """,
                    (source, natural_key),
                ).fetchone()
            finally:
                conn.close()
        except sqlite3.Error as exc:
            raise RecordStorageError(str(exc)) from exc
        return EnforcementRecord._from_row(row) if row else None

    def create(self, record: EnforcementRecord) -> EnforcementRecord:
        now = db._utc_now()
        try:
            with db.transaction() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO enforcement_records (
                        source, natural_key, record_kind, subject_reference,
                        event_date, monetary_amount, free_text_json, source_url,
                        created_at, last_synced_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        record.source,
                        record.natural_key,
                        record.record_kind,
                        record.subject_reference,
                        record.event_date,
                        None if record.monetary_amount is None else str(record.monetary_amount),
                        json.dumps(dict(record.free_text_fields), sort_keys=True),
                        record.source_url,
                        now,
                        record.last_synced_at or now,
                    ),
                )
                row = conn.execute(
                    "SELECT * FROM enforcement_records WHERE id = ?",
                    (cursor.lastrowid,),
                ).fetchone()
        except sqlite3.IntegrityError as exc:
            if "UNIQUE" in str(exc).upper():
                raise UniquenessConflictError(
                    f"{record.source}:{record.natural_key} already exists"
                ) from exc
            raise RecordStorageError(str(exc)) from exc
        except sqlite3.Error as exc:
            raise RecordStorageError(str(exc)) from exc
        return EnforcementRecord._from_row(row)

    def update(self, record_id: int, changes: Mapping[str, Any]) -> EnforcementRecord:
        columns = _column_values(changes)
        try:
            with db.transaction() as conn:
                if columns:
                    assignments = ", ".join(f"{name} = ?" for name in columns)
                    conn.execute(
                        f"UPDATE enforcement_records SET {assignments} WHERE id = ?",
                        (*columns.values(), record_id),
                    )
                row = conn.execute(
                    "SELECT * FROM enforcement_records WHERE id = ?",
                    (record_id,),
                ).fetchone()
        except sqlite3.Error as exc:
            raise RecordStorageError(str(exc)) from exc
        if row is None:
            raise RecordStorageError(f"No enforcement record with id {record_id}")
        return EnforcementRecord._from_row(row)

    def count(self, source: Optional[str] = None) -> int:
        conn = db.get_connection()
        try:
            if source is None:
                row = conn.execute("SELECT COUNT(*) AS n FROM enforcement_records").fetchone()
            else:
                row = conn.execute(
                    "SELECT COUNT(*) AS n FROM enforcement_records WHERE source = ?",
                    (source,),
                ).fetchone()
        finally:
            conn.close()
        return int(row["n"])


__all__ = [
    "EnforcementRecord",
    "MUTABLE_FIELDS",
    "RecordStorage",
    "RecordStorageError",
    "SqliteRecordStore",
    "UniquenessConflictError",
]
