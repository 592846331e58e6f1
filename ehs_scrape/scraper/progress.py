"""In-process progress event bus.

Publishing never blocks: each subscriber owns a bounded queue and an event
that does not fit is dropped for that subscriber only. Delivery is ordered per
session because a session has exactly one publishing coordinator; every event
carries a per-session ``sequence`` so a subscriber can detect gaps and
reconcile through ``SessionStore.get``.
"""
from __future__ import annotations

import queue
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Iterable, Iterator, Optional

from . import config
from .logging_utils import _scraper_event

SESSION_CREATED = "session.created"
SESSION_UPDATED = "session.updated"
RECORD_RESOLVED = "record.resolved"
SESSION_TERMINAL = "session.terminal"

ALL_TOPICS = (SESSION_CREATED, SESSION_UPDATED, RECORD_RESOLVED, SESSION_TERMINAL)


@dataclass(frozen=True)
class ProgressEvent:
    topic: str
    session_id: int
    sequence: int
    payload: dict[str, Any] = field(default_factory=dict)
    published_at: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "topic": self.topic,
            "session_id": self.session_id,
            "sequence": self.sequence,
            "payload": self.payload,
            "published_at": self.published_at,
        }


class Subscription:
    """A subscriber's view of the bus: a filtered, bounded event queue."""

    def __init__(
        self,
        publisher: "ProgressPublisher",
        topics: frozenset[str],
        session_id: Optional[int],
        maxsize: int,
    ) -> None:
        self._publisher = publisher
        self.topics = topics
        self.session_id = session_id
        self._queue: "queue.Queue[ProgressEvent]" = queue.Queue(maxsize=maxsize)
        self.dropped = 0
        self.closed = False

    def matches(self, event: ProgressEvent) -> bool:
        if event.topic not in self.topics:
            return False
        return self.session_id is None or self.session_id == event.session_id

    def offer(self, event: ProgressEvent) -> bool:
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            self.dropped += 1
            return False
        return True

    def get(self, timeout: Optional[float] = None) -> Optional[ProgressEvent]:
        """Return the next event, or ``None`` if none arrives within ``timeout``."""

        try:
            if timeout is not None and timeout <= 0:
                return self._queue.get_nowait()
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> list[ProgressEvent]:
        events: list[ProgressEvent] = []
        while True:
            event = self.get(timeout=0)
            if event is None:
                return events
            events.append(event)

    def __iter__(self) -> Iterator[ProgressEvent]:
        while not self.closed:
            event = self.get(timeout=0.5)
            if event is not None:
                yield event

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._publisher.unsubscribe(self)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()


class ProgressPublisher:
    def __init__(self, *, queue_size: Optional[int] = None) -> None:
        self._lock = threading.Lock()
        self._subscriptions: list[Subscription] = []
        self._sequences: dict[int, int] = {}
        self._queue_size = queue_size

    def subscribe(
        self,
        topics: str | Iterable[str] | None = None,
        *,
        session_id: Optional[int] = None,
        maxsize: Optional[int] = None,
    ) -> Subscription:
        """Subscribe to one topic, several topics, or (``None``) all of them."""

        if topics is None:
            wanted = frozenset(ALL_TOPICS)
        elif isinstance(topics, str):
            wanted = frozenset({topics})
        else:
            wanted = frozenset(topics)
        unknown = wanted - set(ALL_TOPICS)
        if unknown:
            raise ValueError(f"Unknown topic(s): {sorted(unknown)}")

        size = maxsize or self._queue_size or config.SUBSCRIBER_QUEUE_SIZE
        subscription = Subscription(self, wanted, session_id, size)
        with self._lock:
            self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)
        subscription.closed = True

    def publish(self, topic: str, session_id: int, payload: dict[str, Any] | None = None) -> ProgressEvent:
        """Fan an event out to matching subscribers without blocking."""

        if topic not in ALL_TOPICS:
            raise ValueError(f"Unknown topic: {topic!r}")

        with self._lock:
            sequence = self._sequences.get(session_id, 0) + 1
            self._sequences[session_id] = sequence
            event = ProgressEvent(
                topic=topic,
                session_id=session_id,
                sequence=sequence,
                payload=dict(payload or {}),
                published_at=time.time(),
            )
            targets = [sub for sub in self._subscriptions if sub.matches(event)]
            # Delivery happens under the lock so two publishers cannot
            # interleave one session's events in a subscriber's queue.
            for subscription in targets:
                if not subscription.offer(event):
                    _scraper_event(
                        "state",
                        phase="progress_dropped",
                        topic=topic,
                        session_id=session_id,
                        sequence=sequence,
                        dropped=subscription.dropped,
                    )
        return event

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def forget_session(self, session_id: int) -> None:
        """Release the sequence counter of a finished session."""

        with self._lock:
            self._sequences.pop(session_id, None)


_DEFAULT_PUBLISHER: Optional[ProgressPublisher] = None
_DEFAULT_LOCK = threading.Lock()


def get_default_publisher() -> ProgressPublisher:
    global _DEFAULT_PUBLISHER
    with _DEFAULT_LOCK:
        if _DEFAULT_PUBLISHER is None:
            _DEFAULT_PUBLISHER = ProgressPublisher()
        return _DEFAULT_PUBLISHER


__all__ = [
    "ALL_TOPICS",
    "ProgressEvent",
    "ProgressPublisher",
    "RECORD_RESOLVED",
    "SESSION_CREATED",
    "SESSION_TERMINAL",
    "SESSION_UPDATED",
    "Subscription",
    "get_default_publisher",
]
