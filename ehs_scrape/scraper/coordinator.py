"""The crawl loop: one session, one adapter, units processed strictly in order."""
from __future__ import annotations

import threading
from typing import Any, Callable, Mapping, Optional

from .adapters.base import AdapterConfigError, Candidate, SourceAdapter
from .adapters.registry import build_adapter
from .error_codes import ErrorCode
from .logging_utils import _scraper_event
from .processing_log import ProcessingLog
from .progress import RECORD_RESOLVED, SESSION_TERMINAL, SESSION_UPDATED, ProgressPublisher
from .resolver import RecordResolver, Resolution, ResolutionOutcome
from .scrape_request import ScrapeRequest
from .session_store import (
    ScrapeSession,
    SessionDelta,
    SessionStatus,
    SessionStore,
    session_summary,
)
from .utils import short_error_message

AdapterFactory = Callable[[str, Mapping[str, Any]], SourceAdapter]


class Coordinator:
    """Run one crawl session to a terminal status.

    Per unit: reset the per-unit counters, list candidates, then fetch detail,
    resolve, apply the counter delta, append a log entry and publish progress
    for each keyed candidate in turn. A failed listing is logged and counted
    and the loop moves on; only :class:`AdapterConfigError` aborts the crawl.
    Cancellation is checked between units.
    """

    def __init__(
        self,
        *,
        store: SessionStore,
        resolver: RecordResolver,
        publisher: ProgressPublisher,
        processing_log: Optional[ProcessingLog] = None,
        adapter_factory: AdapterFactory = build_adapter,
    ) -> None:
        self.store = store
        self.resolver = resolver
        self.publisher = publisher
        self.processing_log = processing_log or ProcessingLog()
        self.adapter_factory = adapter_factory

    def run(
        self,
        session_id: int,
        request: ScrapeRequest,
        cancel_event: Optional[threading.Event] = None,
    ) -> ScrapeSession:
        cancel = cancel_event or threading.Event()
        session = self.store.mark_running(session_id)
        self._publish_session(session, "session_started")
        _scraper_event(
            "plan",
            session_id=session_id,
            source=request.source,
            range_start=session.range_start,
            range_end=session.range_end,
            stop_on_existing=request.stop_on_existing,
            initiator_id=request.initiator_id,
        )

        adapter: Optional[SourceAdapter] = None
        error_summary: Optional[str] = None
        try:
            adapter = self.adapter_factory(request.source, request.options)
            status, reason = self._crawl(session_id, request, adapter, cancel)
        except AdapterConfigError as exc:
            status, reason = SessionStatus.FAILED, "adapter_config"
            error_summary = short_error_message(exc)
            _scraper_event(
                "error",
                phase="adapter_config",
                session_id=session_id,
                error_code=ErrorCode.ADAPTER_CONFIG,
                error=error_summary,
            )
        finally:
            if adapter is not None:
                adapter.close()

        return self.finish(session_id, status, reason=reason, error_summary=error_summary)

    def finish(
        self,
        session_id: int,
        status: SessionStatus,
        *,
        reason: str,
        error_summary: Optional[str] = None,
    ) -> ScrapeSession:
        """Mark the session terminal; publish ``session.terminal`` if this call won."""

        won = self.store.mark_terminal(session_id, status, error_summary=error_summary)
        final = self.store.get(session_id)
        if won:
            summary = session_summary(final)
            self._publish(
                SESSION_TERMINAL,
                session_id,
                {"status": final.status.value, "reason": reason, "summary": summary},
            )
            _scraper_event("state", phase="session_summary", reason=reason, **summary)
            try:
                self.processing_log.prune()
            except Exception as exc:  # noqa: BLE001
                _scraper_event("error", phase="prune", error=short_error_message(exc))
        return final

    def _crawl(
        self,
        session_id: int,
        request: ScrapeRequest,
        adapter: SourceAdapter,
        cancel: threading.Event,
    ) -> tuple[SessionStatus, str]:
        for unit in adapter.units(request.range_start, request.range_end):
            if cancel.is_set():
                return SessionStatus.STOPPED, "cancelled"

            position = adapter.describe_unit(unit)
            session = self.store.apply_delta(session_id, SessionDelta.unit_started(position))
            self._publish_session(session, "unit_started", position=position)
            _scraper_event("unit", phase="start", session_id=session_id, position=position)

            try:
                candidates = adapter.list_unit(unit)
            except AdapterConfigError:
                raise
            except Exception as exc:  # noqa: BLE001
                self._unit_failed(session_id, position, exc)
                continue

            outcomes = self._process_unit(session_id, request, adapter, candidates, position)
            session = self.store.apply_delta(session_id, SessionDelta.unit_finished())
            self._publish_session(session, "unit_completed", position=position, outcomes=outcomes)
            _scraper_event("unit", phase="done", session_id=session_id, position=position, **outcomes)

            if cancel.is_set():
                return SessionStatus.STOPPED, "cancelled"
            if request.stop_on_existing and self._unit_all_existing(outcomes):
                _scraper_event(
                    "state",
                    phase="early_stop",
                    session_id=session_id,
                    position=position,
                    existing=outcomes["existing"],
                )
                return SessionStatus.COMPLETED, "early_stop"

        if cancel.is_set():
            return SessionStatus.STOPPED, "cancelled"
        return SessionStatus.COMPLETED, "range_exhausted"

    @staticmethod
    def _unit_all_existing(outcomes: Mapping[str, int]) -> bool:
        keyed = sum(outcomes.values())
        return keyed > 0 and outcomes["existing"] == keyed

    def _process_unit(
        self,
        session_id: int,
        request: ScrapeRequest,
        adapter: SourceAdapter,
        candidates: list[Candidate],
        position: str,
    ) -> dict[str, int]:
        outcomes = {outcome.value: 0 for outcome in ResolutionOutcome}
        for candidate in candidates:
            key = (candidate.natural_key or "").strip()
            if not key:
                _scraper_event("item", phase="skipped", session_id=session_id, position=position)
                continue
            resolution = self._resolve_candidate(request.source, adapter, candidate, key)
            outcomes[resolution.outcome.value] += 1
            self._record(session_id, position, resolution)
        return outcomes

    def _resolve_candidate(
        self,
        source: str,
        adapter: SourceAdapter,
        candidate: Candidate,
        key: str,
    ) -> Resolution:
        try:
            detail = adapter.fetch_detail(candidate)
            return self.resolver.resolve(source, detail)
        except AdapterConfigError:
            raise
        except Exception as exc:  # noqa: BLE001
            error_code = getattr(exc, "error_code", ErrorCode.INTERNAL)
            _scraper_event(
                "error",
                phase="item",
                source=source,
                natural_key=key,
                error_code=error_code,
                error=short_error_message(exc),
            )
            return Resolution(
                outcome=ResolutionOutcome.ERROR,
                natural_key=key,
                error_code=error_code,
                detail=short_error_message(exc),
            )

    def _record(self, session_id: int, position: str, resolution: Resolution) -> None:
        session = self.store.apply_delta(session_id, SessionDelta.for_outcome(resolution.outcome))
        self.processing_log.append(
            session_id=session_id,
            batch_position=position,
            natural_key=resolution.natural_key,
            outcome=resolution.outcome.value,
            error_code=resolution.error_code,
            detail=resolution.detail,
        )
        payload = resolution.to_dict()
        payload["position"] = position
        self._publish(RECORD_RESOLVED, session_id, payload)
        self._publish_session(
            session,
            "record_resolved",
            natural_key=resolution.natural_key,
            outcome=resolution.outcome.value,
        )

    def _unit_failed(self, session_id: int, position: str, exc: Exception) -> None:
        error_code = getattr(exc, "error_code", ErrorCode.INTERNAL)
        message = short_error_message(exc)
        _scraper_event(
            "error",
            phase="unit",
            session_id=session_id,
            position=position,
            error_code=error_code,
            error=message,
        )
        self.processing_log.append(
            session_id=session_id,
            batch_position=position,
            outcome=ResolutionOutcome.ERROR.value,
            error_code=error_code,
            detail=message,
        )
        session = self.store.apply_delta(session_id, SessionDelta.unit_failed())
        self._publish_session(session, "unit_failed", position=position, error_code=error_code)

    def _publish_session(self, session: ScrapeSession, reason: str, **extra: Any) -> None:
        payload = {"reason": reason, "session": session.to_dict()}
        payload.update(extra)
        self._publish(SESSION_UPDATED, session.id, payload)

    def _publish(self, topic: str, session_id: int, payload: dict[str, Any]) -> None:
        try:
            self.publisher.publish(topic, session_id, payload)
        except Exception as exc:  # noqa: BLE001
            # Observers never affect the crawl.
            _scraper_event("error", phase="publish", topic=topic, error=short_error_message(exc))


__all__ = ["Coordinator"]
