"""Synchronous lifecycle-event fan-out with a bounded replay buffer.

Subscribers run inline on the publishing thread. An exception in one of them
is captured as a ``DispatchError`` and never reaches the run supervisor.
"""

from __future__ import annotations

import itertools
import threading
from collections import deque
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Final

from delivery_pipeline.domain.events import EventType, PipelineEvent

Subscriber = Callable[[PipelineEvent], object]

_ERROR_HISTORY: Final[int] = 1024


@dataclass(frozen=True, slots=True)
class DispatchError:
    event_id: str
    target: str
    error_type: str
    message: str


class EventBus:
    def __init__(self, *, buffer_size: int = 512) -> None:
        if isinstance(buffer_size, bool) or not isinstance(buffer_size, int):
            raise ValueError(f"buffer_size must be an integer, got {type(buffer_size).__name__}")
        if buffer_size < 1:
            raise ValueError("buffer_size must be > 0")
        self._history: deque[PipelineEvent] = deque(maxlen=buffer_size)
        self._failures: deque[DispatchError] = deque(maxlen=_ERROR_HISTORY)
        self._listeners: dict[int, tuple[EventType | None, Subscriber]] = {}
        self._tokens = itertools.count(1)
        self._lock = threading.RLock()

    def subscribe(self, event_type: str | EventType | None, callback: Subscriber) -> int:
        """Listen for one event type, or for everything when ``event_type`` is ``None``.

        Returns a token for ``unsubscribe``.
        """

        if not callable(callback):
            raise ValueError("callback must be callable")
        wanted = None if event_type is None else EventType.parse(event_type)
        with self._lock:
            token = next(self._tokens)
            self._listeners[token] = (wanted, callback)
        return token

    def unsubscribe(self, token: int) -> bool:
        with self._lock:
            return self._listeners.pop(token, None) is not None

    def publish(self, event: PipelineEvent) -> tuple[DispatchError, ...]:
        if not isinstance(event, PipelineEvent):
            raise ValueError(f"event must be PipelineEvent, got {type(event).__name__}")
        with self._lock:
            self._history.append(event)
            targets = [
                callback
                for wanted, callback in self._listeners.values()
                if wanted is None or wanted is event.event_type
            ]

        failures: list[DispatchError] = []
        for callback in targets:
            try:
                callback(event)
            except Exception as exc:  # noqa: BLE001
                failures.append(
                    DispatchError(
                        event_id=event.event_id,
                        target=getattr(callback, "__name__", None) or type(callback).__name__,
                        error_type=type(exc).__name__,
                        message=str(exc),
                    )
                )
        if failures:
            with self._lock:
                self._failures.extend(failures)
        return tuple(failures)

    def emit(
        self,
        event_type: str | EventType,
        payload: Mapping[str, object],
        *,
        correlation_id: str | None = None,
    ) -> tuple[PipelineEvent, tuple[DispatchError, ...]]:
        event = PipelineEvent.create(event_type, payload, correlation_id=correlation_id)
        return event, self.publish(event)

    def replay(
        self,
        *,
        correlation_id: str | None = None,
        event_type: str | EventType | None = None,
        limit: int | None = None,
    ) -> tuple[PipelineEvent, ...]:
        """Buffered events in publish order, newest ``limit`` kept when given."""

        wanted = None if event_type is None else EventType.parse(event_type)
        with self._lock:
            matches = [
                event
                for event in self._history
                if correlation_id in (None, event.correlation_id)
                and wanted in (None, event.event_type)
            ]
        if limit is None:
            return tuple(matches)
        if limit <= 0:
            return ()
        return tuple(matches[-limit:])

    def dispatch_errors(self) -> tuple[DispatchError, ...]:
        with self._lock:
            return tuple(self._failures)


__all__ = ["DispatchError", "EventBus", "Subscriber"]
