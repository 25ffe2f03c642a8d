"""Structured event sink for provisioning progress.

The orchestrator never writes to the terminal. It emits SetupEvent records
on an EventSink; the console presenter subscribes to render them and tests
subscribe to assert on them. Every event is also written to the log.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    """Kinds of progress events."""

    PHASE_START = "phase_start"
    STEP = "step"
    SUCCESS = "success"
    WARNING = "warning"
    SKIPPED = "skipped"
    ERROR = "error"
    FATAL = "fatal"
    WAIT = "wait"


_LOG_LEVELS = {
    EventKind.PHASE_START: logging.INFO,
    EventKind.STEP: logging.INFO,
    EventKind.SUCCESS: logging.INFO,
    EventKind.WARNING: logging.WARNING,
    EventKind.SKIPPED: logging.INFO,
    EventKind.ERROR: logging.ERROR,
    EventKind.FATAL: logging.ERROR,
    EventKind.WAIT: logging.DEBUG,
}


@dataclass(frozen=True)
class SetupEvent:
    """A single progress event."""

    kind: EventKind
    message: str
    phase: str | None = None
    details: dict[str, Any] = field(default_factory=dict)


EventCallback = Callable[[SetupEvent], None]


class EventSink:
    """Fan-out of SetupEvents to subscribers.

    Keeps the emitted history so callers (and tests) can inspect what
    happened after the fact.
    """

    def __init__(self) -> None:
        self._subscribers: list[EventCallback] = []
        self._history: list[SetupEvent] = []
        self._phase: str | None = None

    @property
    def history(self) -> list[SetupEvent]:
        return list(self._history)

    @property
    def current_phase(self) -> str | None:
        return self._phase

    def subscribe(self, callback: EventCallback) -> None:
        self._subscribers.append(callback)

    def emit(self, kind: EventKind, message: str, **details: Any) -> SetupEvent:
        event = SetupEvent(kind=kind, message=message, phase=self._phase, details=details)
        self._history.append(event)

        logger.log(
            _LOG_LEVELS[kind],
            message,
            extra={"event": kind.value, "phase": self._phase, **_loggable(details)},
        )

        for callback in self._subscribers:
            callback(event)
        return event

    def phase_start(self, phase: str, title: str) -> SetupEvent:
        self._phase = phase
        return self.emit(EventKind.PHASE_START, title)

    def step(self, message: str, **details: Any) -> SetupEvent:
        return self.emit(EventKind.STEP, message, **details)

    def success(self, message: str, **details: Any) -> SetupEvent:
        return self.emit(EventKind.SUCCESS, message, **details)

    def warning(self, message: str, **details: Any) -> SetupEvent:
        return self.emit(EventKind.WARNING, message, **details)

    def skipped(self, message: str, **details: Any) -> SetupEvent:
        return self.emit(EventKind.SKIPPED, message, **details)

    def error(self, message: str, **details: Any) -> SetupEvent:
        return self.emit(EventKind.ERROR, message, **details)

    def fatal(self, message: str, **details: Any) -> SetupEvent:
        return self.emit(EventKind.FATAL, message, **details)

    def wait(self, message: str, remaining: float, **details: Any) -> SetupEvent:
        return self.emit(EventKind.WAIT, message, remaining=remaining, **details)

    def of_kind(self, kind: EventKind) -> list[SetupEvent]:
        return [e for e in self._history if e.kind == kind]


# Keys reserved by LogRecord that may not be passed through `extra`.
_RESERVED = frozenset({"message", "asctime", "args", "msg", "name", "module", "filename"})


def _loggable(details: dict[str, Any]) -> dict[str, Any]:
    """Drop secret-bearing and reserved keys before logging."""
    return {
        key: value
        for key, value in details.items()
        if key not in _RESERVED and "secret" not in key.lower()
    }
