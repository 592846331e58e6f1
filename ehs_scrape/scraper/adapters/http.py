from __future__ import annotations

import time
from typing import Any, Callable, Mapping, Optional

import requests
from bs4 import BeautifulSoup

from .. import config
from ..error_codes import ErrorCode, classify_http_status
from ..logging_utils import _scraper_event
from ..retry_policy import compute_backoff_seconds, decide_retry
from .base import AdapterFetchError


def build_http_session() -> requests.Session:
    """Return a requests session carrying the shared browser-like headers."""

    session = requests.Session()
    session.headers.update(config.COMMON_HEADERS)
    return session


def _safe_url(url: str, params: Optional[Mapping[str, Any]]) -> str:
    if not params:
        return url
    return requests.Request("GET", url, params=params).prepare().url or url


def fetch_html(
    url: str,
    *,
    params: Optional[Mapping[str, Any]] = None,
    session: Optional[requests.Session] = None,
    max_attempts: Optional[int] = None,
    timeout: Optional[float] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> str:
    """GET ``url`` and return the body text, retrying transient failures.

    Network errors, HTTP 5xx and 429 are retried with capped exponential
    backoff; anything else (or running out of attempts) raises
    :class:`AdapterFetchError` with the classified error code.
    """

    http = session or build_http_session()
    attempts = max(1, int(max_attempts or config.HTTP_MAX_RETRIES))
    request_timeout = timeout or config.HTTP_TIMEOUT_SECONDS
    display_url = _safe_url(url, params)

    attempt = 0
    while True:
        attempt += 1
        if config.HTTP_REQUEST_DELAY_SECONDS > 0:
            sleep(config.HTTP_REQUEST_DELAY_SECONDS)

        status: Optional[int] = None
        error: Optional[BaseException] = None
        try:
            response = http.get(url, params=params, timeout=request_timeout)
            status = response.status_code
            if status < 400:
                _scraper_event("http", url=display_url, status=status, attempt=attempt)
                return response.text
            error_code = classify_http_status(status)
            message = f"HTTP {status} for {display_url}"
        except requests.RequestException as exc:
            error = exc
            error_code = ErrorCode.NETWORK
            message = f"{type(exc).__name__} for {display_url}: {exc}"

        _scraper_event(
            "http",
            url=display_url,
            status=status,
            attempt=attempt,
            error_code=error_code,
        )
        if not decide_retry(
            attempt_index=attempt,
            max_attempts=attempts,
            error=error,
            error_code=error_code,
            http_status=status,
        ):
            raise AdapterFetchError(error_code, message, http_status=status)
        sleep(compute_backoff_seconds(attempt, error_code=error_code))


def parse_html(html: str) -> BeautifulSoup:
    return BeautifulSoup(html, "html5lib")


def cell_text(node: Any) -> str:
    """Collapse whitespace in a tag's text; ``""`` for ``None``."""

    if node is None:
        return ""
    return " ".join(node.get_text(" ", strip=True).split())


__all__ = ["build_http_session", "cell_text", "fetch_html", "parse_html"]
