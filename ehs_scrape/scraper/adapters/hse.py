"""Health and Safety Executive adapters (prosecution cases and notices).

Both HSE registers are classic ``.asp`` listings: a numbered results table
per page and one detail page per case or notice laid out as label/value
table cells.
"""
from __future__ import annotations

from abc import abstractmethod
from typing import Any, Optional

import requests

from .. import config, sources
from ..date_utils import iso_date
from ..logging_utils import _scraper_event
from .base import AdapterConfigError, Candidate, CandidateDetail, PaginatedAdapter
from .http import build_http_session, cell_text, fetch_html, parse_html
from .money import parse_money

CASE_LIST_COLUMNS = ("regulator_id", "offender_name", "action_date", "local_authority", "main_activity")
NOTICE_LIST_COLUMNS = (
    "regulator_id",
    "offender_name",
    "notice_type",
    "action_date",
    "local_authority",
    "sic",
)

# Detail-page labels copied into ``free_text_fields`` under these keys.
CASE_DETAIL_LABELS = {
    "HSE Directorate": "regulator_function",
    "Main Activity": "main_activity",
    "Industry": "industry",
    "Local Authority": "local_authority",
    "Total Costs Awarded to HSE": "costs",
    "Result": "result",
}
NOTICE_DETAIL_LABELS = {
    "HSE Directorate": "regulator_function",
    "Description": "description",
    "Main Activity": "main_activity",
    "Industry": "industry",
    "Result": "result",
    "Compliance Date": "compliance_date",
    "Revised Compliance Date": "revised_compliance_date",
}
_DATE_FIELDS = {"compliance_date", "revised_compliance_date"}


def parse_listing_rows(html: str, columns: tuple[str, ...]) -> list[dict[str, Any]]:
    """Return one dict per result row whose first cell links to a detail page.

    Header rows, pager rows and layout rows do not have exactly
    ``len(columns)`` data cells with a leading link and are skipped.
    """

    soup = parse_html(html)
    rows: list[dict[str, Any]] = []
    for tr in soup.find_all("tr"):
        cells = tr.find_all("td", recursive=False)
        if len(cells) != len(columns):
            continue
        link = cells[0].find("a")
        if link is None:
            continue
        values = {name: cell_text(cell) for name, cell in zip(columns, cells)}
        if not values["regulator_id"]:
            continue
        values["href"] = link.get("href")
        rows.append(values)
    return rows


def parse_label_pairs(html: str) -> dict[str, str]:
    """Collect ``label -> value`` pairs from a detail page's table cells."""

    soup = parse_html(html)
    pairs: dict[str, str] = {}
    for tr in soup.find_all("tr"):
        cells = tr.find_all("td", recursive=False)
        for index in range(0, len(cells) - 1, 2):
            label = cell_text(cells[index]).rstrip(":")
            if label and label not in pairs:
                pairs[label] = cell_text(cells[index + 1])
    return pairs


def _select_fields(pairs: dict[str, str], labels: dict[str, str]) -> dict[str, str]:
    fields: dict[str, str] = {}
    for label, key in labels.items():
        value = pairs.get(label, "")
        if key in _DATE_FIELDS:
            value = iso_date(value)
        if value:
            fields[key] = value
    return fields


class _HseAdapter(PaginatedAdapter):
    record_kind = ""
    list_columns: tuple[str, ...] = ()
    detail_labels: dict[str, str] = {}

    def __init__(self, *, session: Optional[requests.Session] = None, base_url: Optional[str] = None) -> None:
        self.base_url = (base_url or config.HSE_BASE_URL).rstrip("/")
        self._session = session or build_http_session()

    @abstractmethod
    def list_url(self) -> str:
        """Listing page URL."""

    @abstractmethod
    def list_params(self, page_number: int) -> dict[str, Any]:
        """Query parameters selecting ``page_number`` of the register."""

    @abstractmethod
    def detail_url(self, natural_key: str) -> str:
        """Detail page URL for one case or notice number."""

    def list_page(self, page_number: int) -> list[Candidate]:
        html = fetch_html(self.list_url(), params=self.list_params(page_number), session=self._session)
        candidates = [
            Candidate(
                natural_key=row["regulator_id"],
                source_url=self.detail_url(row["regulator_id"]),
                summary=row,
            )
            for row in parse_listing_rows(html, self.list_columns)
        ]
        _scraper_event(
            "unit",
            phase="listed",
            source=self.source,
            page=page_number,
            candidates=len(candidates),
        )
        return candidates

    def fetch_detail(self, candidate: Candidate) -> CandidateDetail:
        url = candidate.source_url or self.detail_url(candidate.natural_key)
        html = fetch_html(url, session=self._session)
        pairs = parse_label_pairs(html)
        return self.build_detail(candidate, pairs, url)

    @abstractmethod
    def build_detail(self, candidate: Candidate, pairs: dict[str, str], url: str) -> CandidateDetail:
        """Combine the listing row and the detail page label pairs into a record."""

    def close(self) -> None:
        self._session.close()


class HseCaseAdapter(_HseAdapter):
    source = sources.HSE_CASES
    record_kind = "case"
    list_columns = CASE_LIST_COLUMNS
    detail_labels = CASE_DETAIL_LABELS

    def __init__(self, *, database: Optional[str] = None, **kwargs: Any) -> None:
        self.database = (database or config.HSE_DEFAULT_DATABASE).strip().lower()
        if self.database not in config.HSE_DATABASES:
            raise AdapterConfigError(
                f"Unknown HSE database {database!r}; expected one of {config.HSE_DATABASES}"
            )
        super().__init__(**kwargs)

    def list_url(self) -> str:
        return f"{self.base_url}/{self.database}/case/case_list.asp"

    def list_params(self, page_number: int) -> dict[str, Any]:
        return {
            "PN": page_number,
            "ST": "C",
            "EO": "LIKE",
            "SN": "F",
            "SF": "DN",
            "SV": "",
            "SO": "DODS",
        }

    def detail_url(self, natural_key: str) -> str:
        return f"{self.base_url}/{self.database}/case/case_details.asp?SF=CN&SV={natural_key}"

    def build_detail(self, candidate: Candidate, pairs: dict[str, str], url: str) -> CandidateDetail:
        summary = candidate.summary
        free_text = {
            "local_authority": summary.get("local_authority", ""),
            "main_activity": summary.get("main_activity", ""),
        }
        free_text.update(_select_fields(pairs, self.detail_labels))
        return CandidateDetail(
            natural_key=candidate.natural_key,
            record_kind=self.record_kind,
            subject_reference=summary.get("offender_name") or None,
            event_date=iso_date(summary.get("action_date")) or None,
            monetary_amount=parse_money(pairs.get("Total Fine")),
            free_text_fields={k: v for k, v in free_text.items() if v},
            source_url=url,
        )


class HseNoticeAdapter(_HseAdapter):
    source = sources.HSE_NOTICES
    record_kind = "notice"
    list_columns = NOTICE_LIST_COLUMNS
    detail_labels = NOTICE_DETAIL_LABELS

    def __init__(self, *, country: Optional[str] = None, **kwargs: Any) -> None:
        wanted = (country or config.HSE_DEFAULT_COUNTRY).strip()
        matched = [c for c in config.HSE_COUNTRIES if c.lower() == wanted.lower()]
        if not matched:
            raise AdapterConfigError(
                f"Unknown HSE notice country {country!r}; expected one of {config.HSE_COUNTRIES}"
            )
        self.country = matched[0]
        super().__init__(**kwargs)

    def list_url(self) -> str:
        return f"{self.base_url}/notices/notices/notice_list.asp"

    def list_params(self, page_number: int) -> dict[str, Any]:
        return {
            "PN": page_number,
            "ST": "N",
            "CO": ",AND",
            "SN": "F",
            "EO": "=",
            "SF": "CTR",
            "SV": self.country,
            "SO": "DNIS",
        }

    def detail_url(self, natural_key: str) -> str:
        return f"{self.base_url}/notices/notices/notice_details.asp?SF=CN&SV={natural_key}"

    def build_detail(self, candidate: Candidate, pairs: dict[str, str], url: str) -> CandidateDetail:
        summary = candidate.summary
        free_text = {
            "notice_type": summary.get("notice_type", ""),
            "local_authority": summary.get("local_authority", ""),
            "sic": summary.get("sic", ""),
            "country": self.country,
        }
        free_text.update(_select_fields(pairs, self.detail_labels))
        return CandidateDetail(
            natural_key=candidate.natural_key,
            record_kind=self.record_kind,
            subject_reference=summary.get("offender_name") or None,
            event_date=iso_date(summary.get("action_date")) or None,
            monetary_amount=None,
            free_text_fields={k: v for k, v in free_text.items() if v},
            source_url=url,
        )


__all__ = ["HseCaseAdapter", "HseNoticeAdapter", "parse_label_pairs", "parse_listing_rows"]
