from __future__ import annotations

"""Error code taxonomy for scrape failures.

These codes are persisted in ``processing_logs.error_code`` and included in
structured logs so that a session summary can explain why an item or unit
failed. Keep them stable for reporting.
"""


class ErrorCode:
    NETWORK = "network_error"
    HTTP_4XX = "http_4xx"
    HTTP_404 = "http_404_not_found"
    HTTP_429 = "http_429_rate_limited"
    HTTP_5XX = "http_5xx"
    SITE_STRUCTURE = "site_structure_changed"
    PARSE = "parse_error"
    STORAGE = "storage_error"
    ADAPTER_CONFIG = "adapter_config"
    INTERNAL = "internal_error"


def classify_http_status(status: int | None) -> str:
    """Map an HTTP status code onto the error taxonomy."""

    if status is None:
        return ErrorCode.NETWORK
    if status == 404:
        return ErrorCode.HTTP_404
    if status == 429:
        return ErrorCode.HTTP_429
    if 400 <= status < 500:
        return ErrorCode.HTTP_4XX
    if status >= 500:
        return ErrorCode.HTTP_5XX
    return ErrorCode.INTERNAL


__all__ = ["ErrorCode", "classify_http_status"]
