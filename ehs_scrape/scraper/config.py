"""Configuration constants for the enforcement scrape engine."""
from __future__ import annotations

import os
from pathlib import Path

DATA_DIR: Path = Path(os.getenv("EHS_SCRAPE_DATA_DIR", "/app/data"))
LOG_DIR: Path = DATA_DIR / "logs"
LOG_FILE: Path = LOG_DIR / "latest.log"
DB_PATH: Path = DATA_DIR / "ehs_scrape.db"


def _env_flag(env_var: str, default: str) -> bool:
    return os.getenv(env_var, default).strip().lower() not in {"0", "false", "no", "off"}


def _parse_timeout_seconds(env_var: str, default: int, *, minimum: int = 1) -> int:
    """Parse a timeout value in seconds from the environment with bounds."""

    try:
        value = int(os.getenv(env_var, str(default)))
    except ValueError:
        return default
    return max(minimum, value)


# Feature flag: when false every start request is rejected.
SCRAPING_ENABLED: bool = _env_flag("EHS_SCRAPING_ENABLED", "true")

# Request bounds. Paginated sources are capped in pages, range sources in days.
MAX_RANGE_PAGES: int = int(os.getenv("EHS_MAX_RANGE_PAGES", "100"))
MAX_RANGE_DAYS: int = int(os.getenv("EHS_MAX_RANGE_DAYS", "366"))

# Oldest processing_logs rows beyond this count are pruned after each session.
PROCESSING_LOG_MAX_ENTRIES: int = int(os.getenv("EHS_PROCESSING_LOG_MAX_ENTRIES", "50000"))

# Per-subscriber buffer; events for a full buffer are dropped for that subscriber.
SUBSCRIBER_QUEUE_SIZE: int = int(os.getenv("EHS_SUBSCRIBER_QUEUE_SIZE", "1000"))
SSE_HEARTBEAT_SECONDS: float = float(os.getenv("EHS_SSE_HEARTBEAT_SECONDS", "15"))

# HTTP behaviour shared by all source adapters.
HTTP_TIMEOUT_SECONDS: int = _parse_timeout_seconds("EHS_HTTP_TIMEOUT_SECONDS", 30)
HTTP_MAX_RETRIES: int = int(os.getenv("EHS_HTTP_MAX_RETRIES", "3"))
HTTP_REQUEST_DELAY_SECONDS: float = float(os.getenv("EHS_HTTP_REQUEST_DELAY_SECONDS", "0"))

HSE_BASE_URL: str = os.getenv("EHS_HSE_BASE_URL", "https://resources.hse.gov.uk")
HSE_DATABASES = ("convictions", "notices")
HSE_DEFAULT_DATABASE: str = "convictions"
HSE_DEFAULT_COUNTRY: str = "England"
HSE_COUNTRIES = ("England", "Scotland", "Wales")

EA_BASE_URL: str = os.getenv(
    "EHS_EA_BASE_URL",
    "https://environment.data.gov.uk/public-register/enforcement-action/registration",
)
EA_DETAIL_BASE_URL: str = "https://environment.data.gov.uk"
EA_ACTION_TYPE_BASE: str = (
    "http://environment.data.gov.uk/public-register/enforcement-action/def/action-type/"
)
EA_ACTION_TYPES: dict[str, str] = {
    "court_case": EA_ACTION_TYPE_BASE + "court-case",
    "caution": EA_ACTION_TYPE_BASE + "caution",
    "enforcement_notice": EA_ACTION_TYPE_BASE + "enforcement-notice",
}
EA_DEFAULT_ACTION_TYPES = ("court_case",)

COMMON_HEADERS: dict[str, str] = {
    "User-Agent": (
        "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    ),
    "Accept": "text/html,application/xhtml+xml,*/*;q=0.8",
    "Accept-Language": "en-GB,en;q=0.9",
    "Connection": "keep-alive",
}
