"""Re-locate a task after a restart: reattach, reconstruct read-only, or abandon."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from product_shoot.config import ResumptionSettings
from product_shoot.orchestrator.errors import PersistenceError
from product_shoot.orchestrator.failure_classifier import describe_category
from product_shoot.orchestrator.handles import TaskHandle, TaskHandleStore
from product_shoot.orchestrator.models import (
    TERMINAL_TASK_STATUSES,
    BackendTier,
    ErrorCategory,
    FailureClass,
    GenerationMode,
    GenerationRecordView,
    SlotError,
    SlotStatus,
    SlotView,
    TaskStatus,
    TaskView,
)
from product_shoot.orchestrator.orchestrator import TaskOrchestrator
from product_shoot.orchestrator.repository import GenerationRepository
from product_shoot.orchestrator.task_kinds import canonical_kind, generation_mode_for
from product_shoot.storage.common import utc_now

logger = logging.getLogger(__name__)


class ResumeOutcome(str, Enum):
    """What resuming a handle led to."""

    REATTACHED = "reattached"
    RECONSTRUCTED = "reconstructed"
    IN_FLIGHT = "in_flight"
    ABANDONED = "abandoned"
    NO_HANDLE = "no_handle"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True, slots=True)
class ResumeResult:
    """Outcome plus the best task view available, if any."""

    outcome: ResumeOutcome
    handle: TaskHandle | None = None
    task_view: TaskView | None = None

    @property
    def has_images(self) -> bool:
        return self.task_view is not None and self.task_view.success_count > 0


class TaskResumptionManager:
    """Best-effort reattachment; never reserves quota or dispatches generation."""

    def __init__(
        self,
        *,
        handle_store: TaskHandleStore,
        repository: GenerationRepository,
        orchestrator: TaskOrchestrator | None = None,
        settings: ResumptionSettings | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.handle_store = handle_store
        self.repository = repository
        self.orchestrator = orchestrator
        self.settings = settings or ResumptionSettings()
        self._clock = clock

    def resume(self, handle_key: str) -> ResumeResult:
        handle = self.handle_store.load(handle_key)
        if handle is None:
            return ResumeResult(outcome=ResumeOutcome.NO_HANDLE)

        if self.orchestrator is not None:
            live = self.orchestrator.get_live_task(handle.task_id)
            if live is not None:
                logger.info("Reattached to live task %s.", handle.task_id)
                return ResumeResult(
                    outcome=ResumeOutcome.REATTACHED,
                    handle=handle,
                    task_view=live,
                )

        try:
            record = self.repository.fetch_by_task_id(handle.task_id)
        except PersistenceError as error:
            logger.warning("Cannot check task %s: %s", handle.task_id, error)
            return ResumeResult(outcome=ResumeOutcome.UNAVAILABLE, handle=handle)

        if record is None:
            return self._abandon(handle, task_view=None)

        in_flight = record.status not in {status.value for status in TERMINAL_TASK_STATUSES}
        view = reconstruct_task_view(record, in_flight=in_flight)
        if record.image_count > 0:
            if not in_flight:
                self._clear(handle)
            logger.info(
                "Reconstructed task %s with %s/%s images.",
                handle.task_id,
                record.image_count,
                record.requested_count,
            )
            return ResumeResult(
                outcome=ResumeOutcome.RECONSTRUCTED,
                handle=handle,
                task_view=view,
            )

        if in_flight and self._within_grace(record.created_at):
            return ResumeResult(outcome=ResumeOutcome.IN_FLIGHT, handle=handle, task_view=view)
        return self._abandon(handle, task_view=view)

    def _within_grace(self, created_at: datetime) -> bool:
        grace = timedelta(seconds=self.settings.in_flight_grace_seconds)
        return self._clock() - created_at < grace

    def _abandon(self, handle: TaskHandle, *, task_view: TaskView | None) -> ResumeResult:
        logger.info("Task %s abandoned; clearing handle %s.", handle.task_id, handle.key)
        self._clear(handle)
        return ResumeResult(outcome=ResumeOutcome.ABANDONED, handle=handle, task_view=task_view)

    def _clear(self, handle: TaskHandle) -> None:
        try:
            self.handle_store.clear(handle.key, task_id=handle.task_id)
        except (OSError, ValueError) as error:
            logger.warning("Could not clear task handle %s: %s", handle.key, error)


def reconstruct_task_view(record: GenerationRecordView, *, in_flight: bool) -> TaskView:
    """Read-only view of a durable record; slots without a row are pending or failed."""

    kind = canonical_kind(record.kind)
    count = record.requested_count
    slots: list[SlotView] = []
    for index in range(count):
        mode = _mode(record, index) or generation_mode_for(kind, index, count)
        url = record.output_image_urls[index]
        stored_status = record.slot_statuses[index]
        if stored_status == SlotStatus.COMPLETED.value and url:
            slots.append(
                SlotView(
                    index=index,
                    status=SlotStatus.COMPLETED,
                    image_url=url,
                    backend_used=_backend(record, index),
                    persisted_id=record.persisted_ids[index] or None,
                    generation_mode=mode,
                ),
            )
        elif stored_status == SlotStatus.FAILED.value:
            category = _category(record, index)
            slots.append(
                SlotView(
                    index=index,
                    status=SlotStatus.FAILED,
                    error=SlotError(
                        failure_class=FailureClass.BACKEND_TERMINAL,
                        category=category,
                        message=describe_category(category),
                    ),
                    generation_mode=mode,
                ),
            )
        elif in_flight:
            slots.append(SlotView(index=index, status=SlotStatus.PENDING, generation_mode=mode))
        else:
            slots.append(
                SlotView(
                    index=index,
                    status=SlotStatus.FAILED,
                    error=SlotError(
                        failure_class=FailureClass.PERSISTENCE_FAILURE,
                        category=ErrorCategory.UNKNOWN,
                        message="No result was recorded for this image.",
                    ),
                    generation_mode=mode,
                ),
            )

    status = TaskStatus(record.status)
    failure_class = None
    if status == TaskStatus.FAILED:
        failure_class = FailureClass.BACKEND_TERMINAL
    return TaskView(
        task_id=record.task_id,
        user_id=record.user_id,
        kind=kind,
        status=status,
        requested_slot_count=count,
        slots=tuple(slots),
        created_at=record.created_at,
        finished_at=record.finished_at,
        failure_class=failure_class,
        record_id=record.record_id,
    )


def _mode(record: GenerationRecordView, index: int) -> GenerationMode | None:
    value = record.generation_modes[index] if index < len(record.generation_modes) else ""
    try:
        return GenerationMode(value) if value else None
    except ValueError:
        return None


def _backend(record: GenerationRecordView, index: int) -> BackendTier | None:
    value = record.backends_used[index]
    try:
        return BackendTier(value) if value else None
    except ValueError:
        return None


def _category(record: GenerationRecordView, index: int) -> ErrorCategory:
    value = record.error_categories[index] if index < len(record.error_categories) else ""
    try:
        return ErrorCategory(value) if value else ErrorCategory.UNKNOWN
    except ValueError:
        return ErrorCategory.UNKNOWN
