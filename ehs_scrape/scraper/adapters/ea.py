"""Environment Agency public-register adapter (date-range queries).

The register answers one search per action type with the complete result set
for the requested dates, so the whole range is a single unit. Each result
links to a detail page rendered as ``<dt>``/``<dd>`` pairs.
"""
from __future__ import annotations

import hashlib
import re
from dataclasses import replace
from datetime import date
from typing import Any, Iterable, Optional
from urllib.parse import urljoin

import requests

from .. import config, sources
from ..date_utils import iso_date
from ..error_codes import ErrorCode
from ..logging_utils import _scraper_event
from .base import AdapterConfigError, AdapterFetchError, Candidate, CandidateDetail, RangeQueryAdapter
from .http import build_http_session, cell_text, fetch_html, parse_html
from .money import parse_money

_RECORD_ID_PATTERN = re.compile(r"registration/(\d+)")

DETAIL_LABELS = {
    "Company No.": "company_registration_number",
    "Industry Sector": "industry_sector",
    "Address": "address",
    "Town": "town",
    "County": "county",
    "Postcode": "postcode",
    "Offence": "offence_description",
    "Case Reference": "case_reference",
    "Event Reference": "event_reference",
    "Agency Function": "agency_function",
    "Water Impact": "water_impact",
    "Land Impact": "land_impact",
    "Air Impact": "air_impact",
    "Act": "act",
    "Section": "section",
}


def record_id_from_url(url: str) -> str:
    """Registration id from a detail URL, or a short stable hash of the URL."""

    match = _RECORD_ID_PATTERN.search(url)
    if match:
        return match.group(1)
    return hashlib.sha256(url.encode("utf-8")).hexdigest()[:8]


def parse_summary_rows(html: str, *, base_url: str) -> list[dict[str, Any]]:
    """Parse the results table into name/address/date/detail_url rows."""

    soup = parse_html(html)
    rows: list[dict[str, Any]] = []
    for tr in soup.select("table tbody tr"):
        cells = tr.find_all("td")
        if len(cells) < 2:
            continue
        name_cell = cells[0]
        date_cell = cells[2] if len(cells) >= 3 else cells[1]
        address = cell_text(cells[1]) if len(cells) >= 3 else ""
        link = name_cell.find("a")
        href = link.get("href") if link is not None else None
        name = cell_text(name_cell)
        action_date = iso_date(cell_text(date_cell))
        if not (name and href and action_date):
            continue
        detail_url = urljoin(base_url + "/", href.strip())
        rows.append(
            {
                "offender_name": name,
                "summary_address": address,
                "action_date": action_date,
                "detail_url": detail_url,
                "record_id": record_id_from_url(detail_url),
            }
        )
    return rows


def parse_detail_fields(html: str) -> dict[str, str]:
    """Map ``<dt>`` labels (falling back to label/value ``<td>`` pairs) to text."""

    soup = parse_html(html)
    found: dict[str, str] = {}
    for dt in soup.find_all("dt"):
        label = cell_text(dt).rstrip(":")
        dd = dt.find_next_sibling("dd")
        if label and dd is not None and label not in found:
            found[label] = cell_text(dd)
    for tr in soup.find_all("tr"):
        cells = tr.find_all("td", recursive=False)
        if len(cells) == 2:
            label = cell_text(cells[0]).rstrip(":")
            if label and label not in found:
                found[label] = cell_text(cells[1])
    return found


def legal_reference(fields: dict[str, str]) -> str:
    act = fields.get("Act", "").strip()
    section = fields.get("Section", "").strip()
    if act and section:
        return f"{act} - {section}"
    return act


class EaCaseAdapter(RangeQueryAdapter):
    source = sources.EA_CASES
    record_kind = "case"

    def __init__(
        self,
        *,
        action_types: Optional[Iterable[str]] = None,
        session: Optional[requests.Session] = None,
        base_url: Optional[str] = None,
    ) -> None:
        selected = list(action_types or config.EA_DEFAULT_ACTION_TYPES)
        unknown = [name for name in selected if name not in config.EA_ACTION_TYPES]
        if unknown or not selected:
            raise AdapterConfigError(
                f"Unknown EA action type(s) {unknown}; expected {sorted(config.EA_ACTION_TYPES)}"
            )
        self.action_types = selected
        self.base_url = (base_url or config.EA_BASE_URL).rstrip("/")
        self._session = session or build_http_session()

    def search_params(self, action_type: str, date_from: date, date_to: date) -> dict[str, str]:
        return {
            "name-search": "",
            "actionType": config.EA_ACTION_TYPES[action_type],
            "offenceType": "",
            "agencyFunction": "",
            "after": date_from.isoformat(),
            "before": date_to.isoformat(),
        }

    def list_range(self, date_from: date, date_to: date) -> list[Candidate]:
        candidates: list[Candidate] = []
        seen: set[str] = set()
        for action_type in self.action_types:
            html = fetch_html(
                self.base_url,
                params=self.search_params(action_type, date_from, date_to),
                session=self._session,
            )
            rows = parse_summary_rows(html, base_url=config.EA_DETAIL_BASE_URL)
            for row in rows:
                if row["record_id"] in seen:
                    continue
                seen.add(row["record_id"])
                row["action_type"] = action_type
                candidates.append(
                    Candidate(
                        natural_key=row["record_id"],
                        source_url=row["detail_url"],
                        summary=row,
                    )
                )
            _scraper_event(
                "unit",
                phase="listed",
                source=self.source,
                action_type=action_type,
                date_from=date_from.isoformat(),
                date_to=date_to.isoformat(),
                candidates=len(rows),
            )
        return candidates

    def load_detail(self, candidate: Candidate) -> CandidateDetail:
        if not candidate.source_url:
            raise AdapterFetchError(
                ErrorCode.SITE_STRUCTURE,
                f"EA record {candidate.natural_key} has no detail link",
            )
        html = fetch_html(candidate.source_url, session=self._session)
        fields = parse_detail_fields(html)
        summary = candidate.summary

        free_text: dict[str, str] = {"action_type": summary.get("action_type", "")}
        for label, key in DETAIL_LABELS.items():
            value = fields.get(label, "")
            if value:
                free_text[key] = value
        if not free_text.get("address") and summary.get("summary_address"):
            free_text["address"] = summary["summary_address"]
        reference = legal_reference(fields)
        if reference:
            free_text["legal_reference"] = reference

        return CandidateDetail(
            natural_key=candidate.natural_key,
            record_kind=self.record_kind,
            subject_reference=summary.get("offender_name") or None,
            event_date=summary.get("action_date") or None,
            monetary_amount=parse_money(fields.get("Total Fine")),
            free_text_fields={k: v for k, v in free_text.items() if v},
            source_url=candidate.source_url,
        )

    def close(self) -> None:
        self._session.close()


class EaNoticeAdapter(EaCaseAdapter):
    """Enforcement notices: the register searched for one action type only.

    Notices have their own source, so their registration ids never share a
    key space with court cases and cautions.
    """

    source = sources.EA_NOTICES
    record_kind = "notice"
    notice_action_type = "enforcement_notice"

    def __init__(
        self,
        *,
        session: Optional[requests.Session] = None,
        base_url: Optional[str] = None,
    ) -> None:
        super().__init__(action_types=(self.notice_action_type,), session=session, base_url=base_url)

    def load_detail(self, candidate: Candidate) -> CandidateDetail:
        detail = super().load_detail(candidate)
        fields = dict(detail.free_text_fields)
        body = fields.pop("offence_description", None)
        if body:
            fields["notice_body"] = body
        fields["notice_type"] = "Enforcement Notice"
        return replace(detail, free_text_fields=fields)


__all__ = [
    "EaCaseAdapter",
    "EaNoticeAdapter",
    "parse_detail_fields",
    "parse_summary_rows",
    "record_id_from_url",
]
