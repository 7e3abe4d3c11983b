"""Observer registration for bridge events.

Subscribers register a callback (optionally for a subset of event types)
and get back an unsubscribe function. A failing callback is logged and never
affects other subscribers or the operation that emitted the event.

Usage:
    bus = EventBus()
    unsubscribe = bus.subscribe(print, {DownloadEventType.PROGRESS})
    bus.emit(Event(DownloadEventType.PROGRESS, {"percent": 42.0}))
    unsubscribe()
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

logger = logging.getLogger(__name__)


class DownloadEventType(StrEnum):
    """Events emitted while a model download runs."""

    STARTED = "download-started"
    PROGRESS = "download-progress"
    COMPLETE = "download-complete"
    ERROR = "download-error"


@dataclass
class Event:
    """A single notification delivered to subscribers."""

    type: DownloadEventType
    payload: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type.value, **self.payload}


EventCallback = Callable[[Event], None]


class EventBus:
    """Thread-safe fan-out of events to registered callbacks."""

    def __init__(self) -> None:
        self._subscribers: list[tuple[EventCallback, frozenset[DownloadEventType] | None]] = []
        self._lock = threading.Lock()

    def subscribe(
        self,
        callback: EventCallback,
        event_types: Iterable[DownloadEventType] | None = None,
    ) -> Callable[[], None]:
        """Register a callback.

        Args:
            callback: Called with every matching Event.
            event_types: Event types to receive. None means all.

        Returns:
            A function that removes this subscription.
        """
        entry = (callback, frozenset(event_types) if event_types is not None else None)
        with self._lock:
            self._subscribers.append(entry)

        def unsubscribe() -> None:
            with self._lock:
                if entry in self._subscribers:
                    self._subscribers.remove(entry)

        return unsubscribe

    def emit(self, event: Event) -> None:
        """Deliver an event to all matching subscribers."""
        with self._lock:
            subscribers = list(self._subscribers)

        for callback, types in subscribers:
            if types is not None and event.type not in types:
                continue
            try:
                callback(event)
            except Exception:
                logger.exception("Error in event callback for %s", event.type.value)

    def __len__(self) -> int:
        with self._lock:
            return len(self._subscribers)
