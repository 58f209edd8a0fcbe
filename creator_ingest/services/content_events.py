"""In-process content event stream.

Consumers that want to react to newly stored content (UI push, cache warmers)
subscribe explicitly and own the returned ``Subscription``; closing it is the
only way to stop delivery. Publishing never blocks the store: each subscriber
has a bounded buffer and the oldest event is dropped when it overflows.
"""
from __future__ import annotations

import queue
import threading
from dataclasses import dataclass, field
from typing import Any, Iterable, Iterator, Optional

from creator_ingest.utils import get_logger
from creator_ingest.utils.time import utc_now

logger = get_logger(__name__)

CONTENT_CREATED = "content_created"
CONTENT_UPDATED = "content_updated"

# Placed in a buffer by close() to wake a blocked consumer
_CLOSED = object()


@dataclass(slots=True, frozen=True)
class ContentEvent:
    event_type: str
    content_id: str
    creator_id: str
    platform: str
    occurred_at: Any = field(default_factory=utc_now)


class Subscription:
    def __init__(self, stream: "ContentEventStream", event_types: Optional[frozenset[str]], maxsize: int) -> None:
        self._stream = stream
        self.event_types = event_types
        self._buffer: queue.Queue[Any] = queue.Queue(maxsize=maxsize)
        self._closed = threading.Event()
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def _offer(self, event: ContentEvent) -> None:
        if self.closed or (self.event_types is not None and event.event_type not in self.event_types):
            return
        self._put_dropping_oldest(event)

    def _put_dropping_oldest(self, item: Any) -> None:
        while True:
            try:
                self._buffer.put_nowait(item)
                return
            except queue.Full:
                try:
                    self._buffer.get_nowait()
                    self.dropped += 1
                except queue.Empty:
                    pass

    def get(self, timeout: Optional[float] = None) -> Optional[ContentEvent]:
        """Next event, or None on timeout / once closed and drained."""
        if self.closed and self._buffer.empty():
            return None
        try:
            item = self._buffer.get(timeout=timeout)
        except queue.Empty:
            return None
        if item is _CLOSED:
            # Keep it for any other consumer still blocked on this subscription
            self._put_dropping_oldest(item)
            return None
        return item

    def drain(self) -> list[ContentEvent]:
        events: list[ContentEvent] = []
        while True:
            try:
                item = self._buffer.get_nowait()
            except queue.Empty:
                return events
            if item is _CLOSED:
                self._put_dropping_oldest(item)
                return events
            events.append(item)

    def close(self) -> None:
        if not self._closed.is_set():
            self._closed.set()
            self._stream._unsubscribe(self)
            self._put_dropping_oldest(_CLOSED)

    def __iter__(self) -> Iterator[ContentEvent]:
        while True:
            event = self.get()
            if event is None:
                return
            yield event

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()


class ContentEventStream:
    def __init__(self, *, buffer_size: int = 1000) -> None:
        self._buffer_size = buffer_size
        self._subscribers: list[Subscription] = []
        self._lock = threading.Lock()

    def subscribe(self, event_types: Optional[Iterable[str]] = None) -> Subscription:
        sub = Subscription(self, frozenset(event_types) if event_types is not None else None, self._buffer_size)
        with self._lock:
            self._subscribers.append(sub)
        logger.debug("Content event subscriber added", subscribers=len(self._subscribers))
        return sub

    def _unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            if sub in self._subscribers:
                self._subscribers.remove(sub)

    def publish(self, event: ContentEvent) -> int:
        with self._lock:
            targets = list(self._subscribers)
        for sub in targets:
            sub._offer(event)
        return len(targets)

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def close(self) -> None:
        with self._lock:
            targets = list(self._subscribers)
        for sub in targets:
            sub.close()


__all__ = ["ContentEvent", "ContentEventStream", "Subscription", "CONTENT_CREATED", "CONTENT_UPDATED"]
