"""In-process event distribution and the bounded recent-events cache."""

import logging
import threading
from collections import deque
from typing import Callable, Deque, Dict, List, Optional

from .models import SecurityEvent

logger = logging.getLogger(__name__)

EventHandler = Callable[[SecurityEvent], None]


class RecentEvents:
    """Thread-safe ring buffer of canonical events, newest first.

    Older events are evicted once ``maxlen`` is reached.
    """

    def __init__(self, maxlen: int = 100):
        self._events: Deque[SecurityEvent] = deque(maxlen=maxlen)
        self._lock = threading.Lock()

    def add(self, event: SecurityEvent) -> None:
        with self._lock:
            self._events.appendleft(event)

    def snapshot(self, limit: Optional[int] = None) -> List[SecurityEvent]:
        with self._lock:
            events = list(self._events)
        return events if limit is None else events[:limit]

    def clear(self) -> None:
        with self._lock:
            self._events.clear()

    def __len__(self) -> int:
        return len(self._events)


class EventBus:
    """Fan-out of canonical events to subscribers keyed by service name.

    Subscribing under ``"*"`` receives events from every service. A failing
    handler is logged and skipped.
    """

    def __init__(self):
        self._handlers: Dict[str, List[EventHandler]] = {}
        self._lock = threading.Lock()

    def subscribe(self, handler: EventHandler, service: str = "*") -> None:
        with self._lock:
            self._handlers.setdefault(service, []).append(handler)

    def unsubscribe(self, handler: EventHandler, service: str = "*") -> None:
        with self._lock:
            handlers = self._handlers.get(service, [])
            if handler in handlers:
                handlers.remove(handler)

    def publish(self, event: SecurityEvent) -> None:
        with self._lock:
            handlers = list(self._handlers.get(event.service, []))
            handlers += self._handlers.get("*", [])
        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                logger.error(f"Event handler {handler!r} failed for {event.service}: {e}", exc_info=True)
