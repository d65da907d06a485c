"""Core-to-presentation events.

Components publish these to an :class:`EventBus`; presentation layers (CLI,
servers, dashboards) subscribe. Subscribers never drive core state through
the bus.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from typing import Any

logger = logging.getLogger(__name__)


def _now() -> float:
    return time.time()


@dataclass(frozen=True)
class Event:
    """Base class for all events."""

    timestamp: float = field(default_factory=_now, kw_only=True)

    @property
    def kind(self) -> str:
        return type(self).__name__

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["kind"] = self.kind
        return data


@dataclass(frozen=True)
class PhaseChanged(Event):
    """A TDD run moved from one phase to another."""

    work_item_id: str
    previous: str | None
    next: str
    iteration: int


@dataclass(frozen=True)
class WorktreeCreated(Event):
    repo: str
    task_key: str
    path: str
    branch: str
    base_commit: str


@dataclass(frozen=True)
class WorktreeReleased(Event):
    repo: str
    task_key: str
    path: str
    outcome: str
    dirty: bool = False


@dataclass(frozen=True)
class AgentOutput(Event):
    """One decoded message from an agent's output stream."""

    run_id: str
    message_type: str
    summary: str
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Escalated(Event):
    """A workflow exhausted its iteration budget and needs a human."""

    work_item_id: str
    phase: str
    reason: str
    iterations: int


@dataclass(frozen=True)
class WorkItemReady(Event):
    work_item_id: str


@dataclass(frozen=True)
class WorkItemBlocked(Event):
    work_item_id: str
    blocked_by: tuple[str, ...]


@dataclass(frozen=True)
class WorkItemCompleted(Event):
    work_item_id: str
    status: str
    detail: str = ""


EventListener = Callable[[Event], None]


class EventBus:
    """Thread-safe fan-out of events to subscribers.

    A subscriber that raises is logged and skipped; publishing never fails.
    """

    def __init__(self) -> None:
        self._listeners: list[EventListener] = []
        self._lock = threading.Lock()

    def subscribe(self, listener: EventListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def unsubscribe(self, listener: EventListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def publish(self, event: Event) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.exception("Event listener %r failed on %s", listener, event.kind)


class EventRecorder:
    """Subscriber that keeps every event it sees, mainly for inspection."""

    def __init__(self) -> None:
        self.events: list[Event] = []
        self._lock = threading.Lock()

    def __call__(self, event: Event) -> None:
        with self._lock:
            self.events.append(event)

    def of_type(self, event_type: type[Event]) -> list[Event]:
        with self._lock:
            return [e for e in self.events if isinstance(e, event_type)]
