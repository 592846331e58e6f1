"""Source adapter capability interface.

An adapter knows how to enumerate candidate records for one unit of work and
how to fetch full details for one candidate. Two variants exist:

* :class:`PaginatedAdapter`: one unit per listing page; detail pages are
  fetched per candidate.
* :class:`RangeQueryAdapter`: a single unit covering the whole date range;
  details may already be embedded in the listing.

The coordinator only talks to the methods defined on :class:`SourceAdapter`,
so adding an agency means adding an adapter, not a branch in the crawl loop.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Iterator, Mapping, Optional

from .. import sources
from ..error_codes import ErrorCode


class AdapterError(Exception):
    """Base class for adapter failures; carries an :class:`ErrorCode` value."""

    error_code: str = ErrorCode.INTERNAL

    def __init__(self, message: str, *, error_code: Optional[str] = None) -> None:
        super().__init__(message)
        if error_code is not None:
            self.error_code = error_code


class AdapterFetchError(AdapterError):
    """A listing or detail request failed after retries (absorbed per unit/item)."""

    def __init__(self, error_code: str, message: str, http_status: Optional[int] = None) -> None:
        super().__init__(message, error_code=error_code)
        self.http_status = http_status


class AdapterConfigError(AdapterError):
    """The adapter cannot run with its configuration; aborts the session."""

    error_code = ErrorCode.ADAPTER_CONFIG


@dataclass
class CandidateDetail:
    natural_key: str
    record_kind: str
    subject_reference: Optional[str] = None
    event_date: Optional[str] = None
    monetary_amount: Optional[Decimal] = None
    free_text_fields: dict[str, str] = field(default_factory=dict)
    source_url: Optional[str] = None


@dataclass
class Candidate:
    """One row of a listing unit.

    ``summary`` holds the listing columns; ``detail`` is set when the listing
    already carries everything needed to resolve the record.
    """

    natural_key: str
    source_url: Optional[str] = None
    summary: Mapping[str, Any] = field(default_factory=dict)
    detail: Optional[CandidateDetail] = None


class SourceAdapter(ABC):
    source: str = ""
    variant: str = ""

    @abstractmethod
    def units(self, range_start: Any, range_end: Any) -> Iterator[Any]:
        """Yield the units of work covering ``range_start..range_end``."""

    @abstractmethod
    def list_unit(self, unit: Any) -> list[Candidate]:
        """Enumerate the candidates of one unit; an empty list is normal."""

    @abstractmethod
    def fetch_detail(self, candidate: Candidate) -> CandidateDetail:
        """Return the enriched record for one candidate."""

    def describe_unit(self, unit: Any) -> str:
        return str(unit)

    def close(self) -> None:
        return None


class PaginatedAdapter(SourceAdapter):
    variant = sources.PAGINATED

    def units(self, range_start: int, range_end: int) -> Iterator[int]:
        yield from range(int(range_start), int(range_end) + 1)

    def list_unit(self, unit: int) -> list[Candidate]:
        return self.list_page(unit)

    @abstractmethod
    def list_page(self, page_number: int) -> list[Candidate]:
        ...


class RangeQueryAdapter(SourceAdapter):
    variant = sources.RANGE_QUERY

    def units(self, range_start: date, range_end: date) -> Iterator[tuple[date, date]]:
        yield (range_start, range_end)

    def list_unit(self, unit: tuple[date, date]) -> list[Candidate]:
        date_from, date_to = unit
        return self.list_range(date_from, date_to)

    def describe_unit(self, unit: tuple[date, date]) -> str:
        date_from, date_to = unit
        return f"{date_from.isoformat()}..{date_to.isoformat()}"

    def fetch_detail(self, candidate: Candidate) -> CandidateDetail:
        if candidate.detail is not None:
            return candidate.detail
        return self.load_detail(candidate)

    @abstractmethod
    def list_range(self, date_from: date, date_to: date) -> list[Candidate]:
        ...

    @abstractmethod
    def load_detail(self, candidate: Candidate) -> CandidateDetail:
        ...


__all__ = [
    "AdapterConfigError",
    "AdapterError",
    "AdapterFetchError",
    "Candidate",
    "CandidateDetail",
    "PaginatedAdapter",
    "RangeQueryAdapter",
    "SourceAdapter",
]
