"""Per-task slot state machine guarded by a single lock."""

from __future__ import annotations

import threading

from product_shoot.orchestrator.errors import SlotTransitionError
from product_shoot.orchestrator.models import (
    TERMINAL_SLOT_STATUSES,
    BackendTier,
    Slot,
    SlotError,
    SlotStatus,
    SlotView,
)

_ALLOWED_TRANSITIONS: dict[SlotStatus, frozenset[SlotStatus]] = {
    SlotStatus.PENDING: frozenset({SlotStatus.GENERATING}),
    SlotStatus.GENERATING: frozenset({SlotStatus.COMPLETED, SlotStatus.FAILED}),
    SlotStatus.COMPLETED: frozenset(),
    SlotStatus.FAILED: frozenset(),
}


class SlotStateMachine:
    """Own the slots of one task; every mutation returns an immutable snapshot."""

    def __init__(self, slots: list[Slot]) -> None:
        for position, slot in enumerate(slots):
            if slot.index != position:
                raise ValueError(f"Slot at position {position} has index {slot.index}.")
        self._slots = slots
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._slots)

    def start(self, index: int) -> SlotView:
        with self._lock:
            slot = self._slot(index)
            self._transition(slot, SlotStatus.GENERATING)
            return slot.snapshot()

    def complete(
        self,
        index: int,
        *,
        image_url: str,
        backend: BackendTier,
        persisted_id: str | None = None,
    ) -> SlotView:
        if not image_url:
            raise SlotTransitionError(f"Slot {index} cannot complete without an image url.")
        with self._lock:
            slot = self._slot(index)
            self._transition(slot, SlotStatus.COMPLETED)
            slot.image_url = image_url
            slot.backend_used = backend
            slot.persisted_id = persisted_id
            slot.persistence_pending = persisted_id is None
            return slot.snapshot()

    def fail(self, index: int, error: SlotError) -> SlotView:
        with self._lock:
            slot = self._slot(index)
            self._transition(slot, SlotStatus.FAILED)
            slot.error = error
            return slot.snapshot()

    def mark_persisted(self, index: int, persisted_id: str) -> SlotView:
        """Attach the store id to a completed slot; repeated calls must agree."""

        with self._lock:
            slot = self._slot(index)
            if slot.status != SlotStatus.COMPLETED:
                raise SlotTransitionError(
                    f"Slot {index} is {slot.status.value}; only completed slots are persisted.",
                )
            if slot.persisted_id is not None and slot.persisted_id != persisted_id:
                raise SlotTransitionError(
                    f"Slot {index} already persisted as {slot.persisted_id}.",
                )
            slot.persisted_id = persisted_id
            slot.persistence_pending = False
            return slot.snapshot()

    def mark_persistence_pending(self, index: int) -> SlotView:
        with self._lock:
            slot = self._slot(index)
            if slot.status != SlotStatus.COMPLETED:
                raise SlotTransitionError(
                    f"Slot {index} is {slot.status.value}; only completed slots are persisted.",
                )
            slot.persistence_pending = slot.persisted_id is None
            return slot.snapshot()

    def snapshot(self) -> tuple[SlotView, ...]:
        with self._lock:
            return tuple(slot.snapshot() for slot in self._slots)

    def view(self, index: int) -> SlotView:
        with self._lock:
            return self._slot(index).snapshot()

    def pending_persistence(self) -> list[int]:
        with self._lock:
            return [slot.index for slot in self._slots if slot.persistence_pending]

    def all_settled(self) -> bool:
        with self._lock:
            return all(slot.status in TERMINAL_SLOT_STATUSES for slot in self._slots)

    def success_count(self) -> int:
        with self._lock:
            return sum(1 for slot in self._slots if slot.status == SlotStatus.COMPLETED)

    def _slot(self, index: int) -> Slot:
        if not 0 <= index < len(self._slots):
            raise SlotTransitionError(f"Slot index {index} out of range.")
        return self._slots[index]

    @staticmethod
    def _transition(slot: Slot, target: SlotStatus) -> None:
        if target not in _ALLOWED_TRANSITIONS[slot.status]:
            raise SlotTransitionError(
                f"Slot {slot.index}: illegal transition {slot.status.value} -> {target.value}.",
            )
        slot.status = target
