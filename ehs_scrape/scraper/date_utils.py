from __future__ import annotations

import re
from datetime import date, datetime
from typing import Iterable, Optional

_DATE_FORMATS: Iterable[str] = (
    "%Y-%m-%d",
    "%d/%m/%Y",
    "%d-%b-%Y",
    "%d %B %Y",
    "%d %b %Y",
    "%Y-%b-%d",
)


def parse_agency_date(value: str | None) -> Optional[date]:
    """Parse the date formats used on agency listing and detail pages.

    Returns ``None`` when the value is empty or cannot be parsed.
    """

    candidate = (value or "").strip()
    if not candidate:
        return None

    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(candidate, fmt).date()
        except ValueError:
            continue
    return None


def iso_date(value: str | date | None) -> str:
    """Return ``value`` as ``YYYY-MM-DD`` or an empty string."""

    if isinstance(value, date):
        return value.isoformat()
    parsed = parse_agency_date(value)
    if parsed is not None:
        return parsed.isoformat()

    digits = re.sub(r"[^0-9]", "", value or "")
    if len(digits) == 8 and digits[:2] in {"19", "20"}:
        return f"{digits[:4]}-{digits[4:6]}-{digits[6:8]}"
    return ""


def coerce_date(value: str | date | None) -> Optional[date]:
    """Accept a ``date`` or an ISO string and return a ``date`` (or ``None``)."""

    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if value is None:
        return None
    try:
        return date.fromisoformat(str(value).strip())
    except ValueError:
        return None
