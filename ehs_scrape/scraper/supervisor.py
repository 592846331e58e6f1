"""Background execution of crawl sessions.

Each session runs on its own ``threading.Thread``. The supervisor enforces one
active session per ``(source, initiator_id)``, hands out cooperative cancel
handles, and is the safety net that forces a session to ``failed`` when its
thread dies without reaching a terminal status.
"""
from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Callable, Optional

from .coordinator import Coordinator
from .logging_utils import _scraper_event
from .processing_log import ProcessingLog
from .progress import SESSION_CREATED, SESSION_TERMINAL, ProgressPublisher, get_default_publisher
from .records import SqliteRecordStore
from .resolver import RecordResolver
from .scrape_request import ScrapeRequest
from .session_store import (
    SessionStatus,
    SessionStore,
    session_summary,
)
from .utils import owned_by_live_process, short_error_message


class SessionAlreadyRunningError(RuntimeError):
    """Raised when the ``(source, initiator_id)`` key already has an active session."""

    def __init__(self, source: str, initiator_id: str, session_id: Optional[int] = None) -> None:
        super().__init__(
            f"A {source} session for {initiator_id!r} is already running"
            + (f" (session {session_id})" if session_id is not None else "")
        )
        self.source = source
        self.initiator_id = initiator_id
        self.session_id = session_id


class SessionNotRunningError(RuntimeError):
    """Raised when cancelling a session that is not currently ``running``."""


@dataclass(frozen=True)
class CancelHandle:
    session_id: int
    event: threading.Event


@dataclass(frozen=True)
class StartedSession:
    session_id: int
    session_token: str
    cancel_handle: CancelHandle

    def to_dict(self) -> dict[str, Any]:
        return {"session_id": self.session_id, "session_token": self.session_token}


@dataclass
class _Running:
    key: tuple[str, str]
    thread: threading.Thread
    handle: CancelHandle


class TaskSupervisor:
    def __init__(
        self,
        *,
        store: Optional[SessionStore] = None,
        publisher: Optional[ProgressPublisher] = None,
        coordinator: Optional[Coordinator] = None,
        thread_factory: Callable[..., threading.Thread] = threading.Thread,
    ) -> None:
        self.store = store or SessionStore()
        self.publisher = publisher or get_default_publisher()
        self.coordinator = coordinator or Coordinator(
            store=self.store,
            resolver=RecordResolver(SqliteRecordStore()),
            publisher=self.publisher,
            processing_log=ProcessingLog(),
        )
        self._thread_factory = thread_factory
        self._lock = threading.Lock()
        self._running: dict[int, _Running] = {}

    def start(self, request: ScrapeRequest) -> StartedSession:
        """Create a session for ``request`` and run it in the background."""

        key = request.session_key()
        with self._lock:
            for session_id, entry in self._running.items():
                if entry.key == key and entry.thread.is_alive():
                    raise SessionAlreadyRunningError(request.source, request.initiator_id, session_id)
            active = self.store.list_active(source=request.source, initiator_id=request.initiator_id)
            if active:
                raise SessionAlreadyRunningError(request.source, request.initiator_id, active[0].id)

            session = self.store.create(
                source=request.source,
                initiator_id=request.initiator_id,
                range_start=request.range_start,
                range_end=request.range_end,
                params=request.to_params(),
            )
            handle = CancelHandle(session_id=session.id, event=threading.Event())
            thread = self._thread_factory(
                target=self._run,
                args=(session.id, request, handle),
                name=f"scrape-session-{session.id}",
                daemon=True,
            )
            self._running[session.id] = _Running(key=key, thread=thread, handle=handle)

        self.publisher.publish(SESSION_CREATED, session.id, {"session": session.to_dict()})
        _scraper_event(
            "supervisor",
            phase="start",
            session_id=session.id,
            source=request.source,
            initiator_id=request.initiator_id,
        )
        thread.start()
        return StartedSession(session_id=session.id, session_token=session.session_token, cancel_handle=handle)

    def _run(self, session_id: int, request: ScrapeRequest, handle: CancelHandle) -> None:
        crash: Optional[str] = None
        try:
            self.coordinator.run(session_id, request, handle.event)
        except Exception as exc:  # noqa: BLE001
            crash = short_error_message(exc)
            _scraper_event("error", phase="supervisor_crash", session_id=session_id, error=crash)
        finally:
            try:
                self._ensure_terminal(session_id, crash)
            finally:
                with self._lock:
                    self._running.pop(session_id, None)
                self.publisher.forget_session(session_id)

    def _ensure_terminal(self, session_id: int, crash: Optional[str]) -> None:
        session = self.store.get(session_id)
        if session.is_terminal:
            return
        summary_text = crash or "Crawl ended without reaching a terminal status"
        if self.store.mark_terminal(
            session_id, SessionStatus.FAILED, error_summary=summary_text, start_if_idle=True
        ):
            final = self.store.get(session_id)
            self.publisher.publish(
                SESSION_TERMINAL,
                session_id,
                {"status": final.status.value, "reason": "crashed", "summary": session_summary(final)},
            )

    def cancel(self, handle: CancelHandle) -> None:
        """Request cooperative cancellation; the crawl stops between units."""

        handle.event.set()
        _scraper_event("supervisor", phase="cancel_requested", session_id=handle.session_id)

    def cancel_session(self, session_id: int) -> CancelHandle:
        """Cancel by id; only a ``running`` session owned by this process qualifies."""

        session = self.store.get(session_id)
        if session.status != SessionStatus.RUNNING:
            raise SessionNotRunningError(
                f"Session {session_id} is {session.status.value}, not running"
            )
        with self._lock:
            entry = self._running.get(session_id)
        if entry is None:
            raise SessionNotRunningError(f"Session {session_id} is not running in this process")
        self.cancel(entry.handle)
        return entry.handle

    def wait(self, session_id: int, timeout: Optional[float] = None) -> bool:
        """Join the session's thread; return ``True`` once it is no longer alive."""

        with self._lock:
            entry = self._running.get(session_id)
        if entry is None:
            return True
        entry.thread.join(timeout)
        return not entry.thread.is_alive()

    def is_running(self, session_id: int) -> bool:
        with self._lock:
            entry = self._running.get(session_id)
        return entry is not None and entry.thread.is_alive()

    def recover_orphans(self) -> list[int]:
        """Fail idle/running sessions whose owning process is gone.

        Sessions owned by another live process, or by a process on another
        host, are left alone so several workers can share one database.
        """

        recovered: list[int] = []
        for session in self.store.list_active():
            if self.is_running(session.id):
                continue
            if owned_by_live_process(session.owner_id):
                _scraper_event(
                    "supervisor",
                    phase="recover_skipped",
                    session_id=session.id,
                    owner_id=session.owner_id,
                )
                continue
            if self.store.mark_terminal(
                session.id,
                SessionStatus.FAILED,
                error_summary="Orphaned session recovered at startup",
                start_if_idle=True,
            ):
                final = self.store.get(session.id)
                self.publisher.publish(
                    SESSION_TERMINAL,
                    session.id,
                    {"status": final.status.value, "reason": "orphaned", "summary": session_summary(final)},
                )
                recovered.append(session.id)
        if recovered:
            _scraper_event("supervisor", phase="recover_orphans", session_ids=recovered)
        return recovered


__all__ = [
    "CancelHandle",
    "SessionAlreadyRunningError",
    "SessionNotRunningError",
    "StartedSession",
    "TaskSupervisor",
]
