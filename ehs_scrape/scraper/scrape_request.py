"""Validation of start requests coming from the API or the CLI."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Any, Mapping, Optional

from . import config, sources
from .date_utils import coerce_date


class RequestValidationError(ValueError):
    """Raised when a start request is invalid; ``problems`` lists every reason."""

    def __init__(self, problems: list[str]) -> None:
        super().__init__("; ".join(problems))
        self.problems = list(problems)


@dataclass(frozen=True)
class ScrapeRequest:
    source: str
    range_start: Any
    range_end: Any
    initiator_id: str
    stop_on_existing: bool = True
    options: Mapping[str, Any] = field(default_factory=dict)

    @property
    def variant(self) -> str:
        return sources.variant_for(self.source)

    def session_key(self) -> tuple[str, str]:
        return (self.source, self.initiator_id)

    def to_params(self) -> dict[str, Any]:
        """Values persisted as the session's ``params_json``."""

        return {
            "source": self.source,
            "range_start": _as_json(self.range_start),
            "range_end": _as_json(self.range_end),
            "initiator_id": self.initiator_id,
            "stop_on_existing": self.stop_on_existing,
            "options": dict(self.options),
        }


def _as_json(value: Any) -> Any:
    return value.isoformat() if isinstance(value, date) else value


def _coerce_page(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    return None


def _coerce_flag(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    return None


def validate_request(payload: Mapping[str, Any]) -> ScrapeRequest:
    """Validate a raw start request and return a normalised :class:`ScrapeRequest`.

    Raises :class:`RequestValidationError` listing every problem found.
    """

    problems: list[str] = []

    if not config.SCRAPING_ENABLED:
        raise RequestValidationError(["Scraping is disabled (EHS_SCRAPING_ENABLED=false)"])

    raw_source = payload.get("source")
    source = sources.coerce_source(str(raw_source)) if raw_source is not None else None
    if source is None:
        problems.append(f"Unknown source {raw_source!r}; expected one of {list(sources.ALL_SOURCES)}")

    initiator = payload.get("initiator_id")
    initiator_id = str(initiator).strip() if initiator is not None else ""
    if not initiator_id:
        problems.append("initiator_id is required")

    stop_raw = payload.get("stop_on_existing", True)
    stop_on_existing = _coerce_flag(stop_raw)
    if stop_on_existing is None:
        problems.append(f"stop_on_existing must be a boolean, got {stop_raw!r}")

    options = payload.get("options") or {}
    if not isinstance(options, Mapping):
        problems.append("options must be an object")
        options = {}

    range_start: Any = None
    range_end: Any = None
    raw_start = payload.get("range_start")
    raw_end = payload.get("range_end")

    if source is not None and sources.variant_for(source) == sources.PAGINATED:
        range_start = _coerce_page(raw_start)
        range_end = _coerce_page(raw_end)
        if range_start is None:
            problems.append(f"range_start must be a page number, got {raw_start!r}")
        elif range_start < 1:
            problems.append("range_start must be >= 1")
        if range_end is None:
            problems.append(f"range_end must be a page number, got {raw_end!r}")
        if range_start is not None and range_end is not None and range_start >= 1:
            if range_end < range_start:
                problems.append("range_end must be >= range_start")
            elif range_end - range_start + 1 > config.MAX_RANGE_PAGES:
                problems.append(
                    f"Range spans {range_end - range_start + 1} pages; maximum is {config.MAX_RANGE_PAGES}"
                )
    elif source is not None:
        range_start = coerce_date(raw_start)
        range_end = coerce_date(raw_end)
        if range_start is None:
            problems.append(f"range_start must be an ISO date, got {raw_start!r}")
        if range_end is None:
            problems.append(f"range_end must be an ISO date, got {raw_end!r}")
        if range_start is not None and range_end is not None:
            if range_end < range_start:
                problems.append("range_end must be >= range_start")
            elif (range_end - range_start).days + 1 > config.MAX_RANGE_DAYS:
                problems.append(
                    f"Range spans {(range_end - range_start).days + 1} days; maximum is {config.MAX_RANGE_DAYS}"
                )

    if problems:
        raise RequestValidationError(problems)

    return ScrapeRequest(
        source=source,
        range_start=range_start,
        range_end=range_end,
        initiator_id=initiator_id,
        stop_on_existing=bool(stop_on_existing),
        options=dict(options),
    )


__all__ = ["RequestValidationError", "ScrapeRequest", "validate_request"]
