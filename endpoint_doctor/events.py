"""Structured progress events published by the executor.

One ActionEvent is published per action transition. Any number of observers
(console logger, API job stream, audit recorder) subscribe independently.
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any, Callable

from endpoint_doctor.config import APP_NAME, now_utc_iso

RUN_STARTED = "run_started"
ACTION_STARTED = "action_started"
ACTION_FINISHED = "action_finished"
RUN_COMPLETED = "run_completed"


@dataclass(frozen=True)
class ActionEvent:
    event: str
    run_id: str
    index: int = 0
    total: int = 0
    action_key: str = ""
    title: str = ""
    status: str = ""
    freed_mb: int = 0
    message: str = ""
    event_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: str = field(default_factory=now_utc_iso)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


Subscriber = Callable[[ActionEvent], None]


class EventBus:
    """Fan out events to subscribers; a failing subscriber never blocks the others."""

    def __init__(self, logger: logging.Logger | None = None):
        self._subs: list[Subscriber] = []
        self._lock = threading.Lock()
        self.logger = logger or logging.getLogger(APP_NAME)

    def subscribe(self, callback: Subscriber) -> Subscriber:
        with self._lock:
            if callback not in self._subs:
                self._subs.append(callback)
        return callback

    def unsubscribe(self, callback: Subscriber) -> None:
        with self._lock:
            if callback in self._subs:
                self._subs.remove(callback)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subs)

    def publish(self, event: ActionEvent) -> None:
        with self._lock:
            subs = list(self._subs)

        for callback in subs:
            try:
                callback(event)
            except Exception as exc:  # pylint: disable=broad-except
                self.logger.warning("event_subscriber_failed event=%s error=%s", event.event, exc)


class LoggingObserver:
    """Write each event as a key=value log line."""

    def __init__(self, logger: logging.Logger | None = None):
        self.logger = logger or logging.getLogger(APP_NAME)

    def __call__(self, event: ActionEvent) -> None:
        if event.event == ACTION_FINISHED:
            self.logger.info(
                "%s run=%s step=%s/%s key=%s status=%s freed_mb=%s message=%s",
                event.event, event.run_id, event.index, event.total,
                event.action_key, event.status, event.freed_mb, event.message,
            )
        elif event.event == ACTION_STARTED:
            self.logger.info(
                "%s run=%s step=%s/%s key=%s",
                event.event, event.run_id, event.index, event.total, event.action_key,
            )
        else:
            self.logger.info("%s run=%s total=%s %s", event.event, event.run_id, event.total, event.message)


class EventRecorder:
    """Keep every event in memory, in publish order."""

    def __init__(self) -> None:
        self.events: list[ActionEvent] = []
        self._lock = threading.Lock()

    def __call__(self, event: ActionEvent) -> None:
        with self._lock:
            self.events.append(event)

    def of_type(self, name: str) -> list[ActionEvent]:
        with self._lock:
            return [e for e in self.events if e.event == name]


__all__ = [
    "ACTION_FINISHED",
    "ACTION_STARTED",
    "RUN_COMPLETED",
    "RUN_STARTED",
    "ActionEvent",
    "EventBus",
    "EventRecorder",
    "LoggingObserver",
]
