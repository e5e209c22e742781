"""Task orchestrator: reserve quota, fan a task out to slots, settle once."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Mapping
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, TypeVar
from uuid import uuid4

from product_shoot.config import OrchestratorSettings
from product_shoot.orchestrator.errors import (
    InsufficientQuotaError,
    PersistenceError,
    ReservationSystemUnavailableError,
)
from product_shoot.orchestrator.events import (
    EventBus,
    FirstSuccessLatch,
    TaskEvent,
    TaskEventType,
    TaskObserver,
)
from product_shoot.orchestrator.fallback import FallbackOutcome, ModelFallbackExecutor
from product_shoot.orchestrator.handles import TaskHandle, TaskHandleStore, is_safe_key
from product_shoot.orchestrator.image_store import ImageStore
from product_shoot.orchestrator.ledger import QuotaLedger
from product_shoot.orchestrator.models import (
    BackendTier,
    ErrorCategory,
    FailureClass,
    LedgerReceipt,
    QuotaReservation,
    Slot,
    SlotError,
    SlotStatus,
    SlotView,
    Task,
    TaskInput,
    TaskKind,
    TaskStatus,
    TaskView,
)
from product_shoot.orchestrator.repository import GenerationRepository
from product_shoot.orchestrator.slots import SlotStateMachine
from product_shoot.orchestrator.task_kinds import (
    build_slot_request,
    canonical_kind,
    generation_mode_for,
    profile_for,
    render_prompt,
)
from product_shoot.storage.common import utc_now
from product_shoot.storage.sqlmodel_models import DEFAULT_USER_ID

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(slots=True)
class _LiveTask:
    """In-memory state of one task owned by the orchestrator."""

    task: Task
    machine: SlotStateMachine
    handle_key: str | None = None
    reservation: QuotaReservation | None = None
    latch: FirstSuccessLatch = field(default_factory=FirstSuccessLatch)
    lock: threading.Lock = field(default_factory=threading.Lock)
    done: threading.Event = field(default_factory=threading.Event)
    started: bool = False
    finished_at: float | None = None


class TaskOrchestrator:
    """Owns task and slot state; observers only ever see immutable events."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        ledger: QuotaLedger,
        executor: ModelFallbackExecutor,
        repository: GenerationRepository,
        image_store: ImageStore,
        handle_store: TaskHandleStore | None = None,
        settings: OrchestratorSettings | None = None,
        user_id: str = DEFAULT_USER_ID,
        event_bus: EventBus | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.ledger = ledger
        self.executor = executor
        self.repository = repository
        self.image_store = image_store
        self.handle_store = handle_store
        self.settings = settings or OrchestratorSettings()
        self.user_id = user_id
        self.events = event_bus or EventBus()
        self._sleep = sleep
        self._registry_lock = threading.Lock()
        self._live: dict[str, _LiveTask] = {}
        self._background: ThreadPoolExecutor | None = None

    def create_task(  # noqa: PLR0913
        self,
        kind: str | TaskKind,
        inputs: TaskInput,
        params: Mapping[str, Any] | None = None,
        slot_count: int | None = None,
        task_id: str | None = None,
        user_id: str | None = None,
    ) -> Task:
        """Allocate a task with all slots pending; no side effects."""

        resolved_kind = canonical_kind(kind)
        if params is not None:
            inputs = TaskInput(
                input_image=inputs.input_image,
                input_image2=inputs.input_image2,
                params={**inputs.params, **params},
            )
        if not inputs.input_image:
            raise ValueError("input_image is required.")
        count = slot_count
        if count is None:
            count = profile_for(resolved_kind).default_slot_count
        if count <= 0:
            raise ValueError(f"slot_count must be a positive integer, got {count}.")
        if task_id is not None and not is_safe_key(task_id):
            raise ValueError(f"Invalid task_id: {task_id!r}")

        slots: list[Slot] = []
        for index in range(count):
            mode = generation_mode_for(resolved_kind, index, count)
            slots.append(
                Slot(
                    index=index,
                    generation_mode=mode,
                    prompt=render_prompt(
                        kind=resolved_kind,
                        generation_mode=mode,
                        params=inputs.params,
                    ),
                ),
            )
        return Task(
            task_id=task_id or str(uuid4()),
            user_id=user_id or self.user_id,
            kind=resolved_kind,
            inputs=inputs,
            requested_slot_count=count,
            slots=slots,
            created_at=utc_now(),
        )

    def start(self, task: Task, *, handle_key: str | None = None) -> Future[TaskView]:
        """Run the task in the background; detaching observers never cancels the work."""

        live = self._register(task, handle_key=handle_key)
        with self._registry_lock:
            if self._background is None:
                self._background = ThreadPoolExecutor(thread_name_prefix="task-run")
            background = self._background
        return background.submit(self._run_live, live)

    def run(self, task: Task, *, handle_key: str | None = None) -> TaskView:
        """Reserve, dispatch every slot, settle the ledger once; blocks until terminal."""

        live = self._register(task, handle_key=handle_key)
        return self._run_live(live)

    def get_live_task(self, task_id: str) -> TaskView | None:
        with self._registry_lock:
            live = self._live.get(task_id)
        if live is None:
            return None
        return self._view(live)

    def wait_for(self, task_id: str, timeout: float | None = None) -> TaskView | None:
        """Block until a live task is terminal; None when the task is unknown."""

        with self._registry_lock:
            live = self._live.get(task_id)
        if live is None:
            return None
        live.done.wait(timeout)
        return self._view(live)

    def subscribe(self, observer: TaskObserver, *, task_id: str | None = None) -> None:
        self.events.subscribe(observer, task_id=task_id)

    def unsubscribe(self, observer: TaskObserver) -> None:
        self.events.unsubscribe(observer)

    def retry_pending_persistence(self, task_id: str) -> int:
        """Write completed slots whose result never reached the store; returns slots written."""

        with self._registry_lock:
            live = self._live.get(task_id)
        if live is None:
            raise KeyError(f"Task {task_id} is not live.")
        written = 0
        for index in live.machine.pending_persistence():
            view = live.machine.view(index)
            if view.image_url is None or view.backend_used is None:
                continue
            try:
                persisted_id = self.repository.append_slot_result(
                    task_id=task_id,
                    slot_index=index,
                    image_url=view.image_url,
                    backend=view.backend_used,
                    generation_mode=view.generation_mode,
                )
            except PersistenceError as error:
                logger.warning("Slot %s of task %s still not persisted: %s", index, task_id, error)
                continue
            persisted = live.machine.mark_persisted(index, persisted_id)
            written += 1
            self._publish(live, TaskEventType.SLOT_PERSISTED, slot=persisted)
        self._evict_finished()
        return written

    def shutdown(self, *, wait: bool = True) -> None:
        with self._registry_lock:
            background = self._background
            self._background = None
        if background is not None:
            background.shutdown(wait=wait)

    def _register(self, task: Task, *, handle_key: str | None) -> _LiveTask:
        with self._registry_lock:
            self._evict_finished_locked(time.monotonic())
            live = self._live.get(task.task_id)
            if live is not None:
                if live.task is not task or live.started:
                    raise ValueError(f"Task {task.task_id} was already submitted.")
                return live
            if task.status != TaskStatus.PENDING:
                raise ValueError(f"Task {task.task_id} is {task.status.value}, expected pending.")
            live = _LiveTask(
                task=task,
                machine=SlotStateMachine(task.slots),
                handle_key=handle_key,
            )
            self._live[task.task_id] = live
            return live

    def _evict_finished(self) -> None:
        with self._registry_lock:
            self._evict_finished_locked(time.monotonic())

    def _evict_finished_locked(self, now: float) -> None:
        """Drop terminal tasks past the retention window; pending writes keep a task live."""

        retention = self.settings.finished_task_retention_seconds
        expired = [
            task_id
            for task_id, live in self._live.items()
            if live.finished_at is not None
            and now - live.finished_at >= retention
            and not live.machine.pending_persistence()
        ]
        for task_id in expired:
            del self._live[task_id]
        if expired:
            logger.debug("Evicted %s finished tasks from the live registry", len(expired))

    def _run_live(self, live: _LiveTask) -> TaskView:
        with live.lock:
            if live.started:
                raise ValueError(f"Task {live.task.task_id} is already running.")
            live.started = True
        task = live.task
        try:
            return self._execute(live)
        except Exception as error:  # noqa: BLE001
            logger.exception("Task %s aborted by an unexpected error", task.task_id)
            self._best_effort_full_refund(live)
            self._finish(
                live,
                TaskStatus.FAILED,
                failure_class=FailureClass.BACKEND_TERMINAL,
                error_message=f"{type(error).__name__}: {error}",
            )
            return self._view(live)
        finally:
            live.finished_at = time.monotonic()
            live.done.set()
            self._evict_finished()

    def _execute(self, live: _LiveTask) -> TaskView:
        task = live.task
        count = task.requested_slot_count
        self._save_handle(live)

        try:
            self._ledger_call(
                "reserve",
                lambda: self.ledger.reserve(
                    task.user_id,
                    task.task_id,
                    count,
                    task_type=task.kind.value,
                ),
            )
        except InsufficientQuotaError as error:
            logger.info("Task %s rejected: %s", task.task_id, error)
            self._audit(task, "quota_rejected", details={"requested": count})
            self._finish(
                live,
                TaskStatus.FAILED,
                failure_class=FailureClass.QUOTA_EXHAUSTED,
                error_message=str(error),
            )
            return self._view(live)
        except ReservationSystemUnavailableError as error:
            logger.error("Quota reservation unavailable for task %s: %s", task.task_id, error)
            self._best_effort_full_refund(live)
            self._finish(
                live,
                TaskStatus.FAILED,
                failure_class=FailureClass.RESERVATION_SYSTEM_UNAVAILABLE,
                error_message=str(error),
            )
            return self._view(live)
        live.reservation = QuotaReservation(task_id=task.task_id, reserved_count=count)
        self._audit(task, "quota_reserved", details={"reserved_count": count})

        record_id = self._persist_with_retry(
            "create_or_update_record",
            lambda: self.repository.create_or_update_record(task),
        )
        if record_id is None:
            self._best_effort_full_refund(live)
            self._finish(
                live,
                TaskStatus.FAILED,
                failure_class=FailureClass.PERSISTENCE_FAILURE,
                error_message="Generation store unreachable; task not dispatched.",
            )
            return self._view(live)

        with live.lock:
            task.record_id = record_id
            task.status = TaskStatus.RUNNING
        self._publish(live, TaskEventType.TASK_STARTED, details={"slot_count": count})

        with ThreadPoolExecutor(
            max_workers=count,
            thread_name_prefix=f"slot-{task.task_id[:8]}",
        ) as pool:
            futures = [pool.submit(self._run_slot, live, index) for index in range(count)]
            for future in futures:
                future.result()

        return self._settle(live)

    def _run_slot(self, live: _LiveTask, index: int) -> None:
        task = live.task
        delay = self.settings.stagger_seconds * index
        if delay > 0:
            self._sleep(delay)
        started = live.machine.start(index)
        self._publish(live, TaskEventType.SLOT_STARTED, slot=started)

        try:
            outcome = self.executor.execute(build_slot_request(task, index))
        except Exception as error:  # noqa: BLE001
            logger.exception("Slot %s of task %s crashed", index, task.task_id)
            outcome = FallbackOutcome(
                ok=False,
                failure_class=FailureClass.BACKEND_TERMINAL,
                category=ErrorCategory.UNKNOWN,
                message=f"{type(error).__name__}: {error}",
            )

        if outcome.ok and outcome.image_bytes is not None and outcome.backend_used is not None:
            succeeded = self._complete_slot(
                live,
                index,
                outcome,
                image_bytes=outcome.image_bytes,
                backend=outcome.backend_used,
            )
        else:
            self._fail_slot(
                live,
                index,
                SlotError(
                    failure_class=outcome.failure_class or FailureClass.BACKEND_TERMINAL,
                    category=outcome.category or ErrorCategory.UNKNOWN,
                    message=outcome.message or "generation failed",
                ),
                outcome=outcome,
            )
            succeeded = False

        with live.lock:
            if live.reservation is not None:
                live.reservation.record_outcome(succeeded=succeeded)

    def _complete_slot(
        self,
        live: _LiveTask,
        index: int,
        outcome: FallbackOutcome,
        *,
        image_bytes: bytes,
        backend: BackendTier,
    ) -> bool:
        task = live.task
        try:
            image_url = self.image_store.put(
                task.task_id,
                index,
                image_bytes,
                outcome.mime_type,
            )
        except (OSError, ValueError) as error:
            logger.error(
                "Could not store image for slot %s of task %s: %s",
                index,
                task.task_id,
                error,
            )
            self._fail_slot(
                live,
                index,
                SlotError(
                    failure_class=FailureClass.PERSISTENCE_FAILURE,
                    category=ErrorCategory.UNKNOWN,
                    message=f"image store failed: {error}",
                ),
                outcome=outcome,
            )
            return False

        completed = live.machine.complete(index, image_url=image_url, backend=backend)
        self._publish(live, TaskEventType.SLOT_COMPLETED, slot=completed)
        if live.latch.try_fire():
            self._publish(live, TaskEventType.FIRST_SUCCESS, slot=completed)

        persisted_id = self._persist_with_retry(
            "append_slot_result",
            lambda: self.repository.append_slot_result(
                task_id=task.task_id,
                slot_index=index,
                image_url=image_url,
                backend=backend,
                generation_mode=completed.generation_mode,
            ),
        )
        if persisted_id is None:
            logger.warning(
                "Slot %s of task %s completed but is pending persistence.",
                index,
                task.task_id,
            )
            live.machine.mark_persistence_pending(index)
        else:
            persisted = live.machine.mark_persisted(index, persisted_id)
            self._publish(live, TaskEventType.SLOT_PERSISTED, slot=persisted)
        self._audit(
            task,
            "slot_completed",
            slot_index=index,
            status_from=SlotStatus.GENERATING.value,
            status_to=SlotStatus.COMPLETED.value,
            details={
                "backend": backend.value,
                "persisted_id": persisted_id,
                "legs": _legs_details(outcome),
            },
        )
        return True

    def _fail_slot(
        self,
        live: _LiveTask,
        index: int,
        error: SlotError,
        *,
        outcome: FallbackOutcome,
    ) -> None:
        task = live.task
        failed = live.machine.fail(index, error)
        self._publish(live, TaskEventType.SLOT_FAILED, slot=failed)
        self._persist_with_retry(
            "mark_slot_failed",
            lambda: self.repository.mark_slot_failed(
                task_id=task.task_id,
                slot_index=index,
                category=error.category,
                message=error.message,
                generation_mode=failed.generation_mode,
            ),
        )
        self._audit(
            task,
            "slot_failed",
            slot_index=index,
            status_from=SlotStatus.GENERATING.value,
            status_to=SlotStatus.FAILED.value,
            details={
                "failure_class": error.failure_class.value,
                "category": error.category.value,
                "message": error.message,
                "legs": _legs_details(outcome),
            },
        )

    def _settle(self, live: _LiveTask) -> TaskView:
        """Exactly one of full refund, partial refund or confirm per task."""

        task = live.task
        count = task.requested_slot_count
        success_count = live.machine.success_count()
        failed = count - success_count
        if success_count == 0:
            operation = "full_refund"
            status = TaskStatus.FAILED
        elif failed > 0:
            operation = "partial_refund"
            status = TaskStatus.COMPLETED
        else:
            operation = "confirm"
            status = TaskStatus.COMPLETED

        def call() -> LedgerReceipt:
            if operation == "full_refund":
                return self.ledger.full_refund(task.task_id)
            if operation == "partial_refund":
                return self.ledger.partial_refund(task.task_id, failed)
            return self.ledger.confirm(task.task_id)

        details: dict[str, Any] = {
            "operation": operation,
            "success_count": success_count,
            "requested_count": count,
        }
        try:
            receipt = self._ledger_call(operation, call)
        except ReservationSystemUnavailableError as error:
            logger.error("Quota %s failed for task %s: %s", operation, task.task_id, error)
            details["error"] = str(error)
            self._audit(task, "quota_settlement_failed", details=details)
        else:
            details.update({"applied": receipt.applied, "credited": receipt.credited})
            self._audit(task, "quota_settled", details=details)
            self._publish(live, TaskEventType.QUOTA_SETTLED, details=details)

        failure_class = None
        if status == TaskStatus.FAILED:
            failure_class = _all_failed_class(live.machine.snapshot())
        finalized = self._persist_with_retry(
            "finalize_record",
            lambda: self.repository.finalize_record(
                task_id=task.task_id,
                status=status,
                failure_class=failure_class,
                details={"success_count": success_count, "requested_count": count},
            ),
        )
        if finalized is None:
            logger.warning("Record for task %s left unfinalized.", task.task_id)
        self._finish(live, status, failure_class=failure_class)
        logger.info(
            "Task %s %s with %s/%s images.",
            task.task_id,
            status.value,
            success_count,
            count,
        )
        return self._view(live)

    def _finish(
        self,
        live: _LiveTask,
        status: TaskStatus,
        *,
        failure_class: FailureClass | None = None,
        error_message: str | None = None,
    ) -> None:
        task = live.task
        with live.lock:
            previous = task.status
            task.status = status
            task.failure_class = failure_class
            task.error_message = error_message
            task.finished_at = utc_now()
        self._audit(
            task,
            "task_finished",
            status_from=previous.value,
            status_to=status.value,
            details={
                "failure_class": failure_class.value if failure_class is not None else None,
                "error": error_message,
            },
        )
        self._publish(
            live,
            TaskEventType.TASK_COMPLETED
            if status == TaskStatus.COMPLETED
            else TaskEventType.TASK_FAILED,
            details={"failure_class": failure_class.value if failure_class else None},
        )
        self._clear_handle(live)

    def _best_effort_full_refund(self, live: _LiveTask) -> None:
        task = live.task
        try:
            receipt = self.ledger.full_refund(task.task_id)
        except Exception as error:  # noqa: BLE001
            logger.warning("Best-effort refund for task %s failed: %s", task.task_id, error)
            self._audit(task, "quota_refund_failed", details={"error": str(error)})
            return
        self._audit(
            task,
            "quota_refunded",
            details={"applied": receipt.applied, "credited": receipt.credited},
        )

    def _ledger_call(self, operation: str, call: Callable[[], T]) -> T:
        attempts = max(1, self.settings.ledger_retry_attempts)
        attempt = 1
        while True:
            try:
                return call()
            except ReservationSystemUnavailableError as error:
                if attempt >= attempts:
                    raise
                logger.warning(
                    "Ledger %s attempt %s/%s failed: %s",
                    operation,
                    attempt,
                    attempts,
                    error,
                )
                self._sleep(self.settings.ledger_retry_backoff_seconds * attempt)
                attempt += 1

    def _persist_with_retry(self, action: str, call: Callable[[], T]) -> T | None:
        attempts = max(1, self.settings.persist_retry_attempts)
        for attempt in range(1, attempts + 1):
            try:
                return call()
            except PersistenceError as error:
                logger.warning(
                    "Store %s attempt %s/%s failed: %s",
                    action,
                    attempt,
                    attempts,
                    error,
                )
                if attempt < attempts:
                    self._sleep(self.settings.persist_retry_backoff_seconds * attempt)
        return None

    def _save_handle(self, live: _LiveTask) -> None:
        if self.handle_store is None:
            return
        task = live.task
        key = live.handle_key or task.kind.value
        live.handle_key = key
        try:
            self.handle_store.save(
                TaskHandle.issue(
                    key=key,
                    task_id=task.task_id,
                    kind=task.kind.value,
                    user_id=task.user_id,
                ),
            )
        except (OSError, ValueError) as error:
            logger.warning("Could not save task handle %s: %s", key, error)

    def _clear_handle(self, live: _LiveTask) -> None:
        if self.handle_store is None or live.handle_key is None:
            return
        try:
            self.handle_store.clear(live.handle_key, task_id=live.task.task_id)
        except (OSError, ValueError) as error:
            logger.warning("Could not clear task handle %s: %s", live.handle_key, error)

    def _audit(  # noqa: PLR0913
        self,
        task: Task,
        event_type: str,
        *,
        slot_index: int | None = None,
        status_from: str | None = None,
        status_to: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        try:
            self.repository.add_task_event(
                task_id=task.task_id,
                user_id=task.user_id,
                event_type=event_type,
                slot_index=slot_index,
                status_from=status_from,
                status_to=status_to,
                details=details,
            )
        except PersistenceError as error:
            logger.warning("Audit event %s for task %s lost: %s", event_type, task.task_id, error)

    def _publish(
        self,
        live: _LiveTask,
        event_type: TaskEventType,
        *,
        slot: SlotView | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        with live.lock:
            status = live.task.status
        self.events.publish(
            TaskEvent(
                event_type=event_type,
                task_id=live.task.task_id,
                task_status=status,
                slot=slot,
                details=details or {},
            ),
        )

    def _view(self, live: _LiveTask) -> TaskView:
        slots = live.machine.snapshot()
        with live.lock:
            return live.task.view(slots)


def _all_failed_class(slots: tuple[SlotView, ...]) -> FailureClass:
    classes = {slot.error.failure_class for slot in slots if slot.error is not None}
    if classes == {FailureClass.MALFORMED_RESPONSE}:
        return FailureClass.MALFORMED_RESPONSE
    return FailureClass.BACKEND_TERMINAL


def _legs_details(outcome: FallbackOutcome) -> list[dict[str, Any]]:
    return [
        {
            "tier": leg.tier.value,
            "model": leg.model,
            "ok": leg.ok,
            "duration_ms": leg.duration_ms,
            "category": leg.category.value if leg.category is not None else None,
            "matched_rule": leg.matched_rule,
        }
        for leg in outcome.legs
    ]
