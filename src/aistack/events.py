"""Structured supervisor events and the sinks that receive them."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Mapping, Protocol

logger = logging.getLogger(__name__)


class EventKind(Enum):
    """Kinds of events emitted during lifecycle operations."""

    INSPECTED = "inspected"
    MULTIPLE_CANDIDATES = "multiple_candidates"
    HEALTH_PROBE = "health_probe"
    EXECUTABLE_RESOLVED = "executable_resolved"
    LAUNCHED = "launched"
    WAITING = "waiting"
    READY = "ready"
    TERMINATE_REQUESTED = "terminate_requested"
    SHUTDOWN_PROGRESS = "shutdown_progress"
    FORCE_KILL = "force_kill"
    COMPANION_KILLED = "companion_killed"
    PORT_HELD = "port_held"
    RESULT = "result"
    WARNING = "warning"


_WARNING_KINDS = {EventKind.MULTIPLE_CANDIDATES, EventKind.PORT_HELD, EventKind.WARNING, EventKind.FORCE_KILL}


@dataclass(frozen=True)
class SupervisorEvent:
    kind: EventKind
    service: str
    message: str
    data: Mapping[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


class EventSink(Protocol):
    """Receives supervisor events."""

    def emit(self, event: SupervisorEvent) -> None: ...


class LoggingEventSink:
    """Write events to a logger, warning-level for the kinds an operator must see."""

    def __init__(self, target: logging.Logger | None = None):
        self._logger = target or logger

    def emit(self, event: SupervisorEvent) -> None:
        level = logging.WARNING if event.kind in _WARNING_KINDS else logging.INFO
        self._logger.log(level, "[%s] %s", event.service, event.message)


class RecordingEventSink:
    """Keep every event in memory; optionally forward to another sink."""

    def __init__(self, forward: EventSink | None = None):
        self.events: List[SupervisorEvent] = []
        self._forward = forward

    def emit(self, event: SupervisorEvent) -> None:
        self.events.append(event)
        if self._forward is not None:
            self._forward.emit(event)

    def kinds(self, service: str | None = None) -> List[EventKind]:
        return [event.kind for event in self.events if service is None or event.service == service]


__all__ = ["EventKind", "EventSink", "LoggingEventSink", "RecordingEventSink", "SupervisorEvent"]
