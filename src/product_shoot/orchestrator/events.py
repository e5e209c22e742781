"""Immutable task events, observer fan-out and the once-only first-success latch."""

from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Protocol

from product_shoot.orchestrator.models import SlotView, TaskStatus
from product_shoot.storage.common import utc_now

logger = logging.getLogger(__name__)


class TaskEventType(str, Enum):
    """Observable task lifecycle events."""

    TASK_STARTED = "task_started"
    SLOT_STARTED = "slot_started"
    SLOT_COMPLETED = "slot_completed"
    SLOT_FAILED = "slot_failed"
    SLOT_PERSISTED = "slot_persisted"
    FIRST_SUCCESS = "first_success"
    QUOTA_SETTLED = "quota_settled"
    TASK_COMPLETED = "task_completed"
    TASK_FAILED = "task_failed"


@dataclass(frozen=True, slots=True)
class TaskEvent:
    """One observable change of a task; never mutated after publish."""

    event_type: TaskEventType
    task_id: str
    task_status: TaskStatus
    slot: SlotView | None = None
    created_at: datetime = field(default_factory=utc_now)
    details: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))

    def __post_init__(self) -> None:
        if not isinstance(self.details, MappingProxyType):
            object.__setattr__(self, "details", MappingProxyType(dict(self.details)))


class TaskObserver(Protocol):
    """Callable receiving task events."""

    def __call__(self, event: TaskEvent) -> None:
        """Handle one event; must not block for long."""


class EventBus:
    """Fan events out to subscribed observers; observer errors never reach the task."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscriptions: list[tuple[str | None, TaskObserver]] = []

    def subscribe(self, observer: TaskObserver, *, task_id: str | None = None) -> None:
        with self._lock:
            self._subscriptions.append((task_id, observer))

    def unsubscribe(self, observer: TaskObserver) -> None:
        with self._lock:
            self._subscriptions = [
                (task_filter, subscribed)
                for task_filter, subscribed in self._subscriptions
                if subscribed is not observer
            ]

    def publish(self, event: TaskEvent) -> None:
        with self._lock:
            targets = [
                observer
                for task_filter, observer in self._subscriptions
                if task_filter is None or task_filter == event.task_id
            ]
        for observer in targets:
            try:
                observer(event)
            except Exception:  # noqa: BLE001
                logger.exception(
                    "Observer failed on %s for task %s",
                    event.event_type.value,
                    event.task_id,
                )


class QueueObserver:
    """Observer that buffers events in a thread-safe queue."""

    def __init__(self) -> None:
        self._queue: queue.Queue[TaskEvent] = queue.Queue()

    def __call__(self, event: TaskEvent) -> None:
        self._queue.put(event)

    def get(self, timeout: float | None = None) -> TaskEvent:
        return self._queue.get(timeout=timeout)

    def drain(self) -> list[TaskEvent]:
        events: list[TaskEvent] = []
        while True:
            try:
                events.append(self._queue.get_nowait())
            except queue.Empty:
                return events


class FirstSuccessLatch:
    """Fires at most once, even when several slots succeed concurrently."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._fired = False

    @property
    def fired(self) -> bool:
        with self._lock:
            return self._fired

    def try_fire(self) -> bool:
        """Return True for exactly one caller."""

        with self._lock:
            if self._fired:
                return False
            self._fired = True
            return True
