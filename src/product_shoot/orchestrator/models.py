"""Domain models for generation tasks, slots and quota reservations."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any


class TaskStatus(str, Enum):
    """Task lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_TASK_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED})


class SlotStatus(str, Enum):
    """Per-image slot lifecycle states."""

    PENDING = "pending"
    GENERATING = "generating"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_SLOT_STATUSES = frozenset({SlotStatus.COMPLETED, SlotStatus.FAILED})


class BackendTier(str, Enum):
    """Which backend tier produced a slot image."""

    PRIMARY = "primary"
    FALLBACK = "fallback"


class GenerationMode(str, Enum):
    """Prompt flavor used for one slot."""

    SIMPLE = "simple"
    EXTENDED = "extended"


class FailureClass(str, Enum):
    """Internal failure classes for tasks and slots."""

    QUOTA_EXHAUSTED = "quota_exhausted"
    BACKEND_TRANSIENT = "backend_transient"
    BACKEND_TERMINAL = "backend_terminal"
    PERSISTENCE_FAILURE = "persistence_failure"
    RESERVATION_SYSTEM_UNAVAILABLE = "reservation_system_unavailable"
    MALFORMED_RESPONSE = "malformed_response"


class ErrorCategory(str, Enum):
    """Stable user-facing error categories."""

    OVERSIZED_PAYLOAD = "oversized_payload"
    RATE_LIMITED = "rate_limited"
    SERVER_ERROR = "server_error"
    NETWORK_ERROR = "network_error"
    TIMEOUT = "timeout"
    CONTENT_BLOCKED = "content_blocked"
    NO_IMAGE = "no_image"
    QUOTA_EXHAUSTED = "quota_exhausted"
    UNKNOWN = "unknown"


class TaskKind(str, Enum):
    """Canonical generation workflows."""

    MODEL_STUDIO = "model_studio"
    PRODUCT_STUDIO = "product_studio"
    PRO_STUDIO = "pro_studio"
    GROUP_SHOOT = "group_shoot"
    EDIT = "edit"
    CREATE_MODEL = "create_model"
    REFERENCE_SHOT = "reference_shot"
    LIFESTYLE = "lifestyle"
    TRY_ON = "try_on"
    BRAND_STYLE = "brand_style"


@dataclass(frozen=True, slots=True)
class TaskInput:
    """Immutable submission snapshot; params are passed through untouched."""

    input_image: str
    input_image2: str | None = None
    params: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))

    def __post_init__(self) -> None:
        if not isinstance(self.params, MappingProxyType):
            object.__setattr__(self, "params", MappingProxyType(dict(self.params)))


@dataclass(frozen=True, slots=True)
class SlotError:
    """Why one slot failed."""

    failure_class: FailureClass
    category: ErrorCategory
    message: str


@dataclass(frozen=True, slots=True)
class SlotView:
    """Immutable slot snapshot handed to observers and callers."""

    index: int
    status: SlotStatus
    image_url: str | None = None
    backend_used: BackendTier | None = None
    error: SlotError | None = None
    persisted_id: str | None = None
    persistence_pending: bool = False
    generation_mode: GenerationMode = GenerationMode.EXTENDED


@dataclass(slots=True)
class Slot:
    """Mutable slot state owned by one task's state machine."""

    index: int
    status: SlotStatus = SlotStatus.PENDING
    image_url: str | None = None
    backend_used: BackendTier | None = None
    error: SlotError | None = None
    persisted_id: str | None = None
    persistence_pending: bool = False
    generation_mode: GenerationMode = GenerationMode.EXTENDED
    prompt: str = ""

    def snapshot(self) -> SlotView:
        return SlotView(
            index=self.index,
            status=self.status,
            image_url=self.image_url,
            backend_used=self.backend_used,
            error=self.error,
            persisted_id=self.persisted_id,
            persistence_pending=self.persistence_pending,
            generation_mode=self.generation_mode,
        )


@dataclass(frozen=True, slots=True)
class TaskView:
    """Immutable task snapshot."""

    task_id: str
    user_id: str
    kind: TaskKind
    status: TaskStatus
    requested_slot_count: int
    slots: tuple[SlotView, ...]
    created_at: datetime
    finished_at: datetime | None = None
    failure_class: FailureClass | None = None
    error_message: str | None = None
    record_id: str | None = None

    @property
    def success_count(self) -> int:
        return sum(1 for slot in self.slots if slot.status == SlotStatus.COMPLETED)

    @property
    def image_urls(self) -> list[str]:
        """Completed image urls in slot order."""

        return [
            slot.image_url
            for slot in self.slots
            if slot.status == SlotStatus.COMPLETED and slot.image_url
        ]

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TASK_STATUSES


@dataclass(slots=True)
class Task:
    """One user submission fanned out into a fixed number of slots."""

    task_id: str
    user_id: str
    kind: TaskKind
    inputs: TaskInput
    requested_slot_count: int
    slots: list[Slot]
    created_at: datetime
    status: TaskStatus = TaskStatus.PENDING
    failure_class: FailureClass | None = None
    error_message: str | None = None
    finished_at: datetime | None = None
    record_id: str | None = None

    def view(self, slots: tuple[SlotView, ...] | None = None) -> TaskView:
        return TaskView(
            task_id=self.task_id,
            user_id=self.user_id,
            kind=self.kind,
            status=self.status,
            requested_slot_count=self.requested_slot_count,
            slots=slots if slots is not None else tuple(slot.snapshot() for slot in self.slots),
            created_at=self.created_at,
            finished_at=self.finished_at,
            failure_class=self.failure_class,
            error_message=self.error_message,
            record_id=self.record_id,
        )


@dataclass(frozen=True, slots=True)
class SlotRequest:
    """Everything one slot execution needs, frozen at dispatch time."""

    task_id: str
    slot_index: int
    kind: TaskKind
    prompt: str
    generation_mode: GenerationMode
    reference_images: tuple[str, ...]


@dataclass(slots=True)
class QuotaReservation:
    """In-memory accounting of one task's reserved credits."""

    task_id: str
    reserved_count: int
    settled_count: int = 0
    success_count: int = 0

    def record_outcome(self, *, succeeded: bool) -> None:
        if self.settled_count >= self.reserved_count:
            raise ValueError(
                f"Reservation for task {self.task_id} already settled "
                f"{self.settled_count}/{self.reserved_count} slots.",
            )
        self.settled_count += 1
        if succeeded:
            self.success_count += 1

    @property
    def failed_count(self) -> int:
        return self.settled_count - self.success_count

    @property
    def all_settled(self) -> bool:
        return self.settled_count == self.reserved_count


@dataclass(frozen=True, slots=True)
class LedgerReceipt:
    """Result of one ledger operation."""

    task_id: str
    operation: str
    applied: bool
    credited: int = 0
    balance: int | None = None


@dataclass(slots=True)
class GenerationRecordView:
    """Durable per-task record with slot-ordered outputs."""

    record_id: str
    user_id: str
    task_id: str
    kind: str
    status: str
    requested_count: int
    output_image_urls: list[str]
    backends_used: list[str]
    slot_statuses: list[str]
    generation_modes: list[str]
    params: dict[str, Any]
    input_image: str | None
    input_image2: str | None
    created_at: datetime
    updated_at: datetime
    finished_at: datetime | None = None
    persisted_ids: list[str] = field(default_factory=list)
    error_categories: list[str] = field(default_factory=list)

    @property
    def image_count(self) -> int:
        return sum(1 for url in self.output_image_urls if url)


@dataclass(slots=True)
class TaskEventView:
    """Task event entry for audit trail."""

    event_id: int
    task_id: str
    event_type: str
    slot_index: int | None
    status_from: str | None
    status_to: str | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)
