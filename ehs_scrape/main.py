from __future__ import annotations

import json
import os
from typing import Any, Generator

from flask import Flask, Response, jsonify, request

from ehs_scrape.scraper import config, db
from ehs_scrape.scraper.config_validation import validate_runtime_config
from ehs_scrape.scraper.healthcheck import run_health_checks
from ehs_scrape.scraper.logging_utils import _scraper_event
from ehs_scrape.scraper.processing_log import OUTCOMES, ProcessingLog
from ehs_scrape.scraper.progress import SESSION_TERMINAL, Subscription
from ehs_scrape.scraper.scrape_request import RequestValidationError, validate_request
from ehs_scrape.scraper.session_store import ScrapeSession, SessionNotFoundError, session_summary
from ehs_scrape.scraper.supervisor import (
    SessionAlreadyRunningError,
    SessionNotRunningError,
    TaskSupervisor,
)
from ehs_scrape.scraper.utils import ensure_dirs

app = Flask(__name__)

# Initialise storage paths and SQLite schema on import so WSGI entrypoints
# also have the expected environment ready. Both calls are idempotent.
ensure_dirs()
db.initialize_schema()

SUPERVISOR = TaskSupervisor()
# Sessions left idle/running by a dead process on this host can never finish.
# Sessions owned by other live workers sharing the database are left alone.
SUPERVISOR.recover_orphans()


def _int_arg(name: str, default: int) -> int:
    raw = request.args.get(name)
    if raw is None or raw == "":
        return default
    return int(raw)


def _sse_message(event_name: str, payload: dict[str, Any], event_id: int | None = None) -> str:
    body = json.dumps(payload, default=str)
    prefix = f"id: {event_id}\n" if event_id is not None else ""
    return f"{prefix}event: {event_name}\ndata: {body}\n\n"


def _terminal_message(session: ScrapeSession) -> str:
    return _sse_message(SESSION_TERMINAL, {"status": session.status.value, "summary": session_summary(session)})


def _reconciled_terminal(session_id: int) -> str | None:
    """Re-read the session; a terminal message if it ended while events were missed."""

    session = SUPERVISOR.store.get(session_id)
    if not session.is_terminal:
        return None
    _scraper_event("state", phase="sse_reconciled", session_id=session_id, status=session.status)
    return _terminal_message(session)


def _session_event_generator(session_id: int, subscription: Subscription) -> Generator[str, None, None]:
    """Yield Server-Sent Event messages for one session until it terminates.

    A full subscriber queue drops events, ``session.terminal`` included. On
    every idle heartbeat and on every gap in ``sequence`` the stream re-reads
    the session, so it still ends once the store shows a terminal status.
    """

    try:
        session = SUPERVISOR.store.get(session_id)
        yield _sse_message("snapshot", {"session": session.to_dict()})
        if session.is_terminal:
            yield _terminal_message(session)
            return

        last_sequence: int | None = None
        while True:
            event = subscription.get(timeout=config.SSE_HEARTBEAT_SECONDS)
            if event is None:
                reconciled = _reconciled_terminal(session_id)
                if reconciled is not None:
                    yield reconciled
                    return
                yield ": heartbeat\n\n"
                continue
            yield _sse_message(event.topic, event.to_dict(), event_id=event.sequence)
            if event.topic == SESSION_TERMINAL:
                return
            skipped = last_sequence is not None and event.sequence != last_sequence + 1
            last_sequence = event.sequence
            if skipped:
                reconciled = _reconciled_terminal(session_id)
                if reconciled is not None:
                    yield reconciled
                    return
    finally:
        subscription.close()


@app.post("/api/scrape")
def api_start_scrape() -> Response:
    payload = request.get_json(silent=True) or {}
    if not isinstance(payload, dict):
        return jsonify({"ok": False, "error": "invalid_params", "details": ["Body must be a JSON object"]}), 400

    try:
        scrape_request = validate_request(payload)
    except RequestValidationError as exc:
        _scraper_event(
            "error",
            phase="api",
            context="start",
            error="invalid_params",
            details=exc.problems,
            remote_addr=request.remote_addr,
        )
        return jsonify({"ok": False, "error": "invalid_params", "details": exc.problems}), 400

    try:
        validate_runtime_config("api")
    except ValueError as exc:
        return jsonify({"ok": False, "error": "config_invalid", "details": str(exc)}), 500

    try:
        started = SUPERVISOR.start(scrape_request)
    except SessionAlreadyRunningError as exc:
        return (
            jsonify(
                {
                    "ok": False,
                    "error": "already_running",
                    "details": str(exc),
                    "session_id": exc.session_id,
                }
            ),
            409,
        )

    return jsonify({"ok": True, **started.to_dict()}), 202


@app.post("/api/sessions/<int:session_id>/cancel")
def api_cancel_session(session_id: int) -> Response:
    try:
        SUPERVISOR.cancel_session(session_id)
    except SessionNotFoundError:
        return jsonify({"ok": False, "error": "session_not_found", "session_id": session_id}), 404
    except SessionNotRunningError as exc:
        return (
            jsonify({"ok": False, "error": "not_running", "details": str(exc), "session_id": session_id}),
            409,
        )
    return jsonify({"ok": True, "session_id": session_id, "cancel_requested": True}), 202


@app.get("/api/sessions")
def api_sessions_list() -> Response:
    try:
        limit = _int_arg("limit", 50)
    except ValueError:
        return jsonify({"ok": False, "error": "invalid limit"}), 400

    if request.args.get("active") in {"1", "true", "yes"}:
        sessions = SUPERVISOR.store.list_active()
    else:
        sessions = SUPERVISOR.store.list_recent(limit=limit)
    rows = [session.to_dict() for session in sessions]
    return jsonify({"ok": True, "count": len(rows), "sessions": rows})


@app.get("/api/sessions/<int:session_id>")
def api_session_detail(session_id: int) -> Response:
    try:
        session = SUPERVISOR.store.get(session_id)
    except SessionNotFoundError:
        return jsonify({"ok": False, "error": "session_not_found", "session_id": session_id}), 404
    return jsonify({"ok": True, "session": session.to_dict(), "summary": session_summary(session)})


@app.get("/api/sessions/<int:session_id>/logs")
def api_session_logs(session_id: int) -> Response:
    try:
        SUPERVISOR.store.get(session_id)
    except SessionNotFoundError:
        return jsonify({"ok": False, "error": "session_not_found", "session_id": session_id}), 404

    outcome = request.args.get("outcome") or None
    if outcome is not None and outcome not in OUTCOMES:
        return jsonify({"ok": False, "error": "invalid outcome", "allowed": list(OUTCOMES)}), 400
    try:
        limit = _int_arg("limit", 500)
    except ValueError:
        return jsonify({"ok": False, "error": "invalid limit"}), 400

    entries = ProcessingLog().for_session(session_id, outcome=outcome, limit=limit)
    return jsonify(
        {
            "ok": True,
            "session_id": session_id,
            "count": len(entries),
            "entries": [entry.to_dict() for entry in entries],
        }
    )


@app.get("/api/sessions/<int:session_id>/events")
def api_session_events(session_id: int) -> Response:
    try:
        SUPERVISOR.store.get(session_id)
    except SessionNotFoundError:
        return jsonify({"ok": False, "error": "session_not_found", "session_id": session_id}), 404

    # Subscribe before reading the snapshot so no event falls in between.
    subscription = SUPERVISOR.publisher.subscribe(session_id=session_id)
    response = Response(
        _session_event_generator(session_id, subscription),
        mimetype="text/event-stream",
    )
    response.headers["Cache-Control"] = "no-cache"
    response.headers["X-Accel-Buffering"] = "no"
    return response


@app.get("/api/health")
def api_health() -> Response:
    """Return a JSON health summary for configuration, filesystem, and DB."""

    result = run_health_checks(entrypoint="api")
    status = 200 if result.ok else 503
    return jsonify({"ok": result.ok, "checks": result.checks}), status


if __name__ == "__main__":
    # Direct invocation is primarily for local development; directories and
    # schema are initialised above during module import.
    app.run(host="0.0.0.0", port=int(os.environ.get("PORT", 8080)), threaded=True)
