"""Idempotent create/update/existing resolution of enriched candidates."""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Optional

from . import db
from .adapters.base import CandidateDetail
from .error_codes import ErrorCode
from .logging_utils import _scraper_event
from .records import (
    MUTABLE_FIELDS,
    EnforcementRecord,
    RecordStorage,
    RecordStorageError,
    UniquenessConflictError,
)
from .utils import short_error_message


class ResolutionOutcome(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    EXISTING = "existing"
    ERROR = "error"


@dataclass(frozen=True)
class Resolution:
    outcome: ResolutionOutcome
    natural_key: str
    record: Optional[EnforcementRecord] = None
    changed_fields: tuple[str, ...] = ()
    error_code: Optional[str] = None
    detail: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "natural_key": self.natural_key,
            "record_id": self.record.id if self.record is not None else None,
            "changed_fields": list(self.changed_fields),
            "error_code": self.error_code,
            "detail": self.detail,
        }


def _confirmed_fields(detail: CandidateDetail) -> dict[str, Any]:
    """Mutable fields the agency actually supplied for this sighting.

    ``None`` and empty values mean "not shown on this page", not "cleared",
    so they never overwrite stored data.
    """

    confirmed: dict[str, Any] = {}
    for name in MUTABLE_FIELDS:
        value = getattr(detail, name)
        if value is None or value == "" or value == {}:
            continue
        confirmed[name] = value
    return confirmed


def _differs(stored: Any, incoming: Any) -> bool:
    if isinstance(incoming, Decimal) or isinstance(stored, Decimal):
        if stored is None or incoming is None:
            return stored is not incoming
        return Decimal(stored) != Decimal(incoming)
    if isinstance(incoming, dict):
        merged = dict(stored or {})
        merged.update(incoming)
        return merged != (stored or {})
    return stored != incoming


class RecordResolver:
    """Resolve one candidate against the record store.

    Lookup is by ``(source, natural_key)``:

    * absent: create, reported as ``created``;
    * create loses a uniqueness race: re-fetch and touch, ``existing``;
    * present with changed agency-confirmed fields: write them, ``updated``;
    * present and unchanged: refresh ``last_synced_at``, ``existing``;
    * any other storage failure: ``error`` (never raised).

    Safe to call concurrently for different keys; the coordinator calls it
    sequentially within one session.
    """

    def __init__(
        self,
        storage: RecordStorage,
        *,
        clock: Callable[[], str] = db._utc_now,
    ) -> None:
        self.storage = storage
        self._clock = clock

    def resolve(self, source: str, detail: CandidateDetail) -> Resolution:
        key = (detail.natural_key or "").strip()
        if not key:
            return Resolution(
                outcome=ResolutionOutcome.ERROR,
                natural_key="",
                error_code=ErrorCode.PARSE,
                detail="Candidate detail has no natural key",
            )

        try:
            resolution = self._resolve(source, key, detail)
        except RecordStorageError as exc:
            resolution = Resolution(
                outcome=ResolutionOutcome.ERROR,
                natural_key=key,
                error_code=ErrorCode.STORAGE,
                detail=short_error_message(exc),
            )

        _scraper_event(
            "item",
            phase="resolved",
            source=source,
            natural_key=key,
            outcome=resolution.outcome.value,
            changed_fields=list(resolution.changed_fields) or None,
            error_code=resolution.error_code,
        )
        return resolution

    def _resolve(self, source: str, key: str, detail: CandidateDetail) -> Resolution:
        existing = self.storage.find_by_natural_key(source, key)
        if existing is None:
            record = EnforcementRecord(
                source=source,
                natural_key=key,
                record_kind=detail.record_kind,
                subject_reference=detail.subject_reference,
                event_date=detail.event_date,
                monetary_amount=detail.monetary_amount,
                free_text_fields=dict(detail.free_text_fields),
                source_url=detail.source_url,
                last_synced_at=self._clock(),
            )
            try:
                created = self.storage.create(record)
            except UniquenessConflictError:
                # Another writer created it between lookup and insert.
                existing = self.storage.find_by_natural_key(source, key)
                if existing is None:
                    raise RecordStorageError(
                        f"{source}:{key} conflicted on create but cannot be re-read"
                    )
                touched = self._touch(existing, detail)
                return Resolution(
                    outcome=ResolutionOutcome.EXISTING,
                    natural_key=key,
                    record=touched,
                    detail="uniqueness conflict on create",
                )
            return Resolution(outcome=ResolutionOutcome.CREATED, natural_key=key, record=created)

        changes = self._changes(existing, detail)
        if changes:
            updated = self._write(existing, changes)
            return Resolution(
                outcome=ResolutionOutcome.UPDATED,
                natural_key=key,
                record=updated,
                changed_fields=tuple(sorted(changes)),
            )

        touched = self._write(existing, {})
        return Resolution(outcome=ResolutionOutcome.EXISTING, natural_key=key, record=touched)

    def _changes(self, existing: EnforcementRecord, detail: CandidateDetail) -> dict[str, Any]:
        changes: dict[str, Any] = {}
        for name, incoming in _confirmed_fields(detail).items():
            stored = getattr(existing, name)
            if not _differs(stored, incoming):
                continue
            if name == "free_text_fields":
                merged = dict(stored or {})
                merged.update(incoming)
                incoming = merged
            changes[name] = incoming
        return changes

    def _touch(self, existing: EnforcementRecord, detail: CandidateDetail) -> EnforcementRecord:
        # A conflict touch still carries whatever the agency confirmed.
        return self._write(existing, self._changes(existing, detail))

    def _write(self, existing: EnforcementRecord, changes: dict[str, Any]) -> EnforcementRecord:
        if existing.id is None:
            raise RecordStorageError(f"{existing.source}:{existing.natural_key} has no id")
        payload = dict(changes)
        payload["last_synced_at"] = self._clock()
        return self.storage.update(existing.id, payload)


__all__ = ["RecordResolver", "Resolution", "ResolutionOutcome"]
