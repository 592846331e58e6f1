from __future__ import annotations

from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any

from .utils import log_line


def _render(value: Any) -> str:
    """Render a field value: enums by value, dates as ISO, amounts as plain text."""

    if isinstance(value, Enum):
        value = value.value
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    return repr(value)


def _scraper_event(label: str = "", *, phase: str | None = None, **fields: Any) -> None:
    """Emit a structured scraper log line.

    ``phase`` may be used as a keyword alias for the label. When both
    ``label`` and ``phase`` are provided, ``phase`` is emitted as part of the
    payload so the caller still captures the event stage. ``None`` fields are
    left out.
    """

    try:
        phase_label = label or (phase or "")
        if phase and label:
            fields.setdefault("phase", phase)
        payload = ", ".join(
            f"{k}={_render(v)}" for k, v in sorted(fields.items()) if v is not None
        )
        log_line(f"[SCRAPER][{phase_label.upper()}] {payload}")
    except Exception:  # noqa: BLE001
        # Never let logging break the crawl.
        return


__all__ = ["_scraper_event"]
