from __future__ import annotations

from typing import Literal

from . import config
from .logging_utils import _scraper_event
from .utils import log_line

Entrypoint = Literal["api", "cli", "tests"]


class ScrapeConfigError(ValueError):
    """Blocking runtime misconfiguration."""


def _raise_config_error(message: str, *, entrypoint: Entrypoint, error: str) -> None:
    _scraper_event(
        "error",
        phase="config",
        context="runtime_validation",
        error=error,
        entrypoint=entrypoint,
    )
    log_line(f"[CONFIG] {message} (entrypoint={entrypoint})")
    raise ScrapeConfigError(message)


def _clamp(field_name: str, value: float, adjusted: float, *, entrypoint: Entrypoint, reason: str) -> None:
    _scraper_event(
        "state",
        phase="config",
        context="runtime_validation",
        kind="config_adjustment",
        field=field_name,
        value=value,
        adjusted=adjusted,
        entrypoint=entrypoint,
    )
    log_line(f"[CONFIG] {field_name} {reason}; clamping to {adjusted}.")
    setattr(config, field_name, adjusted)


def validate_runtime_config(entrypoint: Entrypoint) -> None:
    """Validate runtime configuration for the given entrypoint.

    Raises ``ScrapeConfigError`` (a ``ValueError``) when a blocking
    misconfiguration is detected. Non-fatal adjustments (e.g., clamping retry
    knobs) are logged but do not raise.
    """

    if config.HTTP_TIMEOUT_SECONDS <= 0:
        _raise_config_error(
            "HTTP_TIMEOUT_SECONDS must be greater than zero.",
            entrypoint=entrypoint,
            error="invalid_timeout",
        )

    if config.HTTP_MAX_RETRIES < 1:
        _clamp("HTTP_MAX_RETRIES", config.HTTP_MAX_RETRIES, 1, entrypoint=entrypoint, reason="< 1")

    if config.HTTP_REQUEST_DELAY_SECONDS < 0:
        _clamp(
            "HTTP_REQUEST_DELAY_SECONDS",
            config.HTTP_REQUEST_DELAY_SECONDS,
            0.0,
            entrypoint=entrypoint,
            reason="is negative",
        )

    if config.SUBSCRIBER_QUEUE_SIZE < 1:
        _clamp("SUBSCRIBER_QUEUE_SIZE", config.SUBSCRIBER_QUEUE_SIZE, 1, entrypoint=entrypoint, reason="< 1")

    for field_name in ("MAX_RANGE_PAGES", "MAX_RANGE_DAYS"):
        if getattr(config, field_name) < 1:
            _raise_config_error(
                f"{field_name} must be at least 1.",
                entrypoint=entrypoint,
                error="invalid_range_cap",
            )

    if config.PROCESSING_LOG_MAX_ENTRIES < 0:
        _raise_config_error(
            "PROCESSING_LOG_MAX_ENTRIES must be non-negative.",
            entrypoint=entrypoint,
            error="invalid_log_retention",
        )

    if config.HSE_DEFAULT_COUNTRY not in config.HSE_COUNTRIES:
        _raise_config_error(
            f"HSE_DEFAULT_COUNTRY {config.HSE_DEFAULT_COUNTRY!r} is not one of {config.HSE_COUNTRIES}.",
            entrypoint=entrypoint,
            error="invalid_hse_country",
        )

    unknown_actions = [
        name for name in config.EA_DEFAULT_ACTION_TYPES if name not in config.EA_ACTION_TYPES
    ]
    if unknown_actions:
        _raise_config_error(
            f"EA_DEFAULT_ACTION_TYPES contains unknown action types {unknown_actions}.",
            entrypoint=entrypoint,
            error="invalid_ea_action_type",
        )


__all__ = ["Entrypoint", "ScrapeConfigError", "validate_runtime_config"]
