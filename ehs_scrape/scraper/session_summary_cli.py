from __future__ import annotations

"""CLI helper for printing a crawl session summary."""

import argparse
from collections import Counter
from typing import Sequence

from .processing_log import ProcessingLog
from .session_store import SessionNotFoundError, SessionStore, session_summary


def _build_parser() -> argparse.ArgumentParser:
    """Return an argument parser for the session summary CLI."""

    parser = argparse.ArgumentParser(
        description="Show the summary of a scrape session.",
    )
    parser.add_argument(
        "--session-id",
        type=int,
        help="Session ID to summarise.",
    )
    parser.add_argument(
        "--latest",
        action="store_true",
        help="Summarise the most recent session.",
    )
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the session summary CLI."""

    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    store = SessionStore()
    session_id = args.session_id
    if args.latest and session_id is None:
        latest = store.latest()
        session_id = latest.id if latest is not None else None
    if session_id is None:
        parser.error("You must provide --session-id or --latest")

    try:
        session = store.get(session_id)
    except SessionNotFoundError as exc:
        parser.error(str(exc))

    summary = session_summary(session)
    print(f"Session {summary['session_id']} ({summary['source']}): {summary['status']}")
    for key in (
        "pages_or_batches_processed",
        "items_found",
        "items_created",
        "items_updated",
        "items_existing",
        "errors_count",
        "success_rate",
        "duration_seconds",
    ):
        print(f"  {key}: {summary[key]}")

    errors = ProcessingLog().for_session(session.id, outcome="error")
    if errors:
        print("\nError codes:")
        for code, count in sorted(Counter(e.error_code or "unknown" for e in errors).items()):
            print(f"  {code}: {count}")

    return 0


if __name__ == "__main__":  # pragma: no cover - CLI entry
    raise SystemExit(main())
