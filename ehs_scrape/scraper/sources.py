from __future__ import annotations

"""Logical sources for the enforcement scrape engine.

These values are persisted in the database (scrape_sessions.source,
enforcement_records.source) and should be treated as stable identifiers. If
you change them, you MUST provide a migration path for existing DBs.
"""

import logging

LOGGER = logging.getLogger("ehs_scrape")

HSE_CASES = "hse_cases"
HSE_NOTICES = "hse_notices"
EA_CASES = "ea_cases"
EA_NOTICES = "ea_notices"

ALL_SOURCES = (HSE_CASES, HSE_NOTICES, EA_CASES, EA_NOTICES)

PAGINATED = "paginated"
RANGE_QUERY = "range_query"

# Which capability variant each source's adapter implements. The request
# validator uses this to decide between page and date bounds.
SOURCE_VARIANTS = {
    HSE_CASES: PAGINATED,
    HSE_NOTICES: PAGINATED,
    EA_CASES: RANGE_QUERY,
    EA_NOTICES: RANGE_QUERY,
}

_HSE_CASES_ALIASES = {"hse", "hse-cases", "hse_cases", "convictions", "prosecutions"}
_HSE_NOTICES_ALIASES = {"hse-notices", "hse_notices", "notices"}
_EA_CASES_ALIASES = {"ea", "ea-cases", "ea_cases", "environment_agency", "environment-agency"}
_EA_NOTICES_ALIASES = {"ea-notices", "ea_notices", "ea_enforcement_notices"}


def normalize_source(value: str | None) -> str | None:
    """Return a canonical source selector, or ``None`` for unknown values.

    There is no default source: a start request naming something we do not
    know how to crawl must be rejected rather than silently redirected.
    """

    if not value:
        return None

    raw = value.strip().lower()
    if raw in ALL_SOURCES:
        return raw
    if raw in _HSE_CASES_ALIASES:
        return HSE_CASES
    if raw in _HSE_NOTICES_ALIASES:
        return HSE_NOTICES
    if raw in _EA_CASES_ALIASES:
        return EA_CASES
    if raw in _EA_NOTICES_ALIASES:
        return EA_NOTICES
    return None


def coerce_source(raw: str | None) -> str | None:
    """Normalise a raw source value, logging when it is not recognised."""

    normalized = normalize_source(raw)
    if normalized is None and raw:
        LOGGER.warning("[SOURCES][WARN] Unknown source %r.", raw)
    return normalized


def variant_for(source: str) -> str:
    """Return the adapter variant (``paginated``/``range_query``) for ``source``."""

    return SOURCE_VARIANTS[source]
