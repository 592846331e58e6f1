"""Foreground command-line entrypoint for one crawl session."""
from __future__ import annotations

import argparse
import json
from typing import List, Optional

from . import db, sources
from .config_validation import validate_runtime_config
from .scrape_request import RequestValidationError, validate_request
from .session_store import session_summary
from .supervisor import SessionAlreadyRunningError, TaskSupervisor
from .utils import ensure_dirs, log_line


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run one enforcement scrape session")
    parser.add_argument(
        "--source",
        required=True,
        help=f"Source to crawl: one of {', '.join(sources.ALL_SOURCES)} (aliases accepted).",
    )
    parser.add_argument(
        "--start",
        dest="range_start",
        required=True,
        help="First page number, or first date (YYYY-MM-DD) for range sources.",
    )
    parser.add_argument(
        "--end",
        dest="range_end",
        required=True,
        help="Last page number, or last date (YYYY-MM-DD) for range sources.",
    )
    parser.add_argument("--initiator", dest="initiator_id", default="cli")
    parser.add_argument(
        "--no-stop-on-existing",
        dest="stop_on_existing",
        action="store_false",
        help="Crawl the whole range even after a unit of already-known records.",
    )
    parser.add_argument("--country", default=None, help="HSE notices: England, Scotland or Wales.")
    parser.add_argument("--database", default=None, help="HSE cases: convictions or notices database.")
    parser.add_argument(
        "--action-type",
        dest="action_types",
        action="append",
        default=None,
        help="EA cases: court_case, caution or enforcement_notice (repeatable).",
    )
    return parser


def _options_from_args(args: argparse.Namespace) -> dict:
    options: dict = {}
    if args.country:
        options["country"] = args.country
    if args.database:
        options["database"] = args.database
    if args.action_types:
        options["action_types"] = list(args.action_types)
    return options


def main(argv: Optional[List[str]] = None, *, supervisor: Optional[TaskSupervisor] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    ensure_dirs()
    validate_runtime_config("cli")
    db.initialize_schema()

    try:
        request = validate_request(
            {
                "source": args.source,
                "range_start": args.range_start,
                "range_end": args.range_end,
                "initiator_id": args.initiator_id,
                "stop_on_existing": args.stop_on_existing,
                "options": _options_from_args(args),
            }
        )
    except RequestValidationError as exc:
        for problem in exc.problems:
            log_line(f"[CLI][ERROR] {problem}")
        return 2

    runner = supervisor or TaskSupervisor()
    try:
        started = runner.start(request)
    except SessionAlreadyRunningError as exc:
        log_line(f"[CLI][ERROR] {exc}")
        return 3

    try:
        runner.wait(started.session_id)
    except KeyboardInterrupt:
        log_line(f"[CLI] Interrupted; stopping session {started.session_id} after the current unit.")
        runner.cancel(started.cancel_handle)
        runner.wait(started.session_id)

    summary = session_summary(runner.store.get(started.session_id))
    print(json.dumps(summary, indent=2, sort_keys=True))
    return 0 if summary["status"] != "failed" else 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
