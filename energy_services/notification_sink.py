"""
Notification sink -- best-effort publication of settlement domain events.

Responsibility:
    ``NotificationSink`` is the publication contract. The in-process sink
    keeps a subscriber registry and a bounded per-category event buffer.
    ``NotificationPublisher`` is what the coordinator calls: it retries
    critical event types with exponential backoff and never lets a
    notification failure fail a settlement call.

Architecture position:
    Services -- imperative shell, consumed by SettlementCoordinator.

Invariants enforced:
    - Event types are ``{category}.{action}``; the buffer is keyed by
      category and holds at most ``buffer_size`` events (oldest dropped).
    - A failing subscriber never affects other subscribers or the caller.
    - ``NotificationPublisher.publish`` never raises.

Failure modes:
    - Sink failures are logged as ``notification_failed`` after the last
      attempt and otherwise swallowed.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from energy_kernel.domain.clock import Clock, SystemClock
from energy_kernel.logging_config import get_logger

logger = get_logger("services.notification")

Subscriber = Callable[[Mapping[str, Any]], Any]


@runtime_checkable
class NotificationSink(Protocol):
    def publish(self, event_type: str, payload: Mapping[str, Any]) -> None: ...


@dataclass(frozen=True)
class BufferedEvent:
    event_type: str
    timestamp: datetime
    payload: Mapping[str, Any]


def event_category(event_type: str) -> str:
    return event_type.split(".", 1)[0]


class InProcessNotificationSink:
    """
    Subscriber registry plus per-category event buffer.

    Contract:
        ``publish`` buffers the event under its category, then calls every
        subscriber registered for the exact event type, in subscription
        order.
    """

    def __init__(self, buffer_size: int = 100, clock: Clock | None = None):
        if buffer_size < 1:
            raise ValueError("buffer_size must be at least 1")
        self._buffer_size = buffer_size
        self._clock = clock or SystemClock()
        self._subscribers: dict[str, list[Subscriber]] = {}
        self._buffers: dict[str, deque[BufferedEvent]] = {}
        self._lock = threading.Lock()

    def publish(self, event_type: str, payload: Mapping[str, Any]) -> None:
        event = BufferedEvent(event_type, self._clock.now(), dict(payload))
        with self._lock:
            buffer = self._buffers.setdefault(
                event_category(event_type), deque(maxlen=self._buffer_size)
            )
            buffer.append(event)
            subscribers = list(self._subscribers.get(event_type, ()))

        logger.info("event_published", extra={
            "event_type": event_type,
            "subscriber_count": len(subscribers),
        })
        for callback in subscribers:
            try:
                callback(event.payload)
            except Exception:
                logger.exception("subscriber_failed", extra={"event_type": event_type})

    def subscribe(self, event_type: str, callback: Subscriber) -> None:
        with self._lock:
            self._subscribers.setdefault(event_type, []).append(callback)
        logger.debug("subscriber_added", extra={"event_type": event_type})

    def unsubscribe(self, event_type: str, callback: Subscriber) -> bool:
        with self._lock:
            callbacks = self._subscribers.get(event_type, [])
            if callback not in callbacks:
                return False
            callbacks.remove(callback)
        logger.debug("subscriber_removed", extra={"event_type": event_type})
        return True

    def buffered_events(self, category: str) -> list[BufferedEvent]:
        with self._lock:
            return list(self._buffers.get(category, ()))

    def clear_buffer(self, category: str | None = None) -> None:
        with self._lock:
            if category is None:
                self._buffers.clear()
            else:
                self._buffers.pop(category, None)


class NotificationPublisher:
    """
    Best-effort publisher with bounded retry for critical events.

    Critical event types get up to ``max_retries`` additional attempts,
    sleeping ``backoff_seconds * 2**attempt`` between them. Everything
    else is attempted once.
    """

    def __init__(
        self,
        sink: NotificationSink,
        critical_events: Iterable[str] = (),
        max_retries: int = 3,
        backoff_seconds: float = 0.1,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._sink = sink
        self._critical = frozenset(critical_events)
        self._max_retries = max_retries
        self._backoff = backoff_seconds
        self._sleep = sleep

    def is_critical(self, event_type: str) -> bool:
        return event_type in self._critical

    def publish(self, event_type: str, payload: Mapping[str, Any]) -> bool:
        """Publish; return True if the sink accepted the event."""
        retries = self._max_retries if self.is_critical(event_type) else 0
        for attempt in range(retries + 1):
            try:
                self._sink.publish(event_type, payload)
                return True
            except Exception as exc:
                if attempt < retries:
                    delay = self._backoff * (2 ** attempt)
                    logger.warning("notification_retry", extra={
                        "event_type": event_type,
                        "attempt": attempt + 1,
                        "delay_seconds": delay,
                        "error_type": type(exc).__name__,
                    })
                    self._sleep(delay)
                else:
                    logger.error("notification_failed", extra={
                        "event_type": event_type,
                        "attempts": attempt + 1,
                        "error_type": type(exc).__name__,
                        "error": str(exc),
                    })
        return False
