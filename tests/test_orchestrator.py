from __future__ import annotations

import threading
from pathlib import Path

import allure
import pytest

from product_shoot.config import OrchestratorSettings
from product_shoot.orchestrator.backend import BackendRequest, BackendResponse, EchoImageBackend
from product_shoot.orchestrator.backend.echo_backend import solid_png
from product_shoot.orchestrator.errors import PersistenceError, ReservationSystemUnavailableError
from product_shoot.orchestrator.events import QueueObserver, TaskEventType
from product_shoot.orchestrator.image_store import LocalImageStore
from product_shoot.orchestrator.models import (
    BackendTier,
    ErrorCategory,
    FailureClass,
    GenerationMode,
    LedgerReceipt,
    SlotStatus,
    TaskInput,
    TaskKind,
    TaskStatus,
)
from product_shoot.storage.sqlmodel_models import DEFAULT_USER_ID

pytestmark = [
    allure.epic("Generation Orchestrator"),
    allure.feature("Task Lifecycle & Quota Settlement"),
]

_INPUTS = TaskInput(input_image="product.png", params={"gender": "female"})


def _settings(**overrides: float) -> OrchestratorSettings:
    values = {
        "stagger_seconds": 0.0,
        "persist_retry_backoff_seconds": 0.0,
        "ledger_retry_backoff_seconds": 0.0,
        **overrides,
    }
    return OrchestratorSettings(**values)


class _BarrierBackend:
    """Releases every slot at the same instant to race the first-success latch."""

    def __init__(self, parties: int) -> None:
        self.name = "barrier"
        self._barrier = threading.Barrier(parties)

    def generate(self, request: BackendRequest) -> BackendResponse:
        self._barrier.wait(timeout=5)
        return BackendResponse(image_bytes=solid_png(10, 20, 30), model=request.model)


class _UnavailableLedger:
    def __init__(self) -> None:
        self.full_refunds: list[str] = []

    def reserve(
        self,
        user_id: str,
        task_id: str,
        count: int,
        *,
        task_type: str | None = None,
    ) -> LedgerReceipt:
        raise ReservationSystemUnavailableError("quota service down")

    def partial_refund(self, task_id: str, failed_count: int) -> LedgerReceipt:
        raise AssertionError("partial refund must not be called")

    def full_refund(self, task_id: str) -> LedgerReceipt:
        self.full_refunds.append(task_id)
        return LedgerReceipt(task_id=task_id, operation="full_refund", applied=False)

    def confirm(self, task_id: str) -> LedgerReceipt:
        raise AssertionError("confirm must not be called")

    def get_balance(self, user_id: str) -> int:
        return 0


def test_create_task_is_pure_and_uses_kind_profile(make_orchestrator, recording_ledger) -> None:
    orchestrator = make_orchestrator()

    task = orchestrator.create_task("Camera_Model", _INPUTS)

    assert task.kind == TaskKind.MODEL_STUDIO
    assert task.status == TaskStatus.PENDING
    assert task.requested_slot_count == 4
    assert [slot.index for slot in task.slots] == [0, 1, 2, 3]
    assert all(slot.status == SlotStatus.PENDING for slot in task.slots)
    assert [slot.generation_mode for slot in task.slots] == [
        GenerationMode.SIMPLE,
        GenerationMode.SIMPLE,
        GenerationMode.EXTENDED,
        GenerationMode.EXTENDED,
    ]
    assert "gender: female" in task.slots[0].prompt
    assert recording_ledger.calls == []
    assert orchestrator.get_live_task(task.task_id) is None


def test_create_task_rejects_invalid_input(make_orchestrator) -> None:
    orchestrator = make_orchestrator()

    with pytest.raises(ValueError, match="slot_count"):
        orchestrator.create_task(TaskKind.LIFESTYLE, _INPUTS, slot_count=0)
    with pytest.raises(ValueError, match="input_image"):
        orchestrator.create_task(TaskKind.LIFESTYLE, TaskInput(input_image=""))
    with pytest.raises(ValueError, match="Unknown task kind"):
        orchestrator.create_task("hologram", _INPUTS)
    with pytest.raises(ValueError, match="Invalid task_id"):
        orchestrator.create_task(TaskKind.LIFESTYLE, _INPUTS, task_id="../x")


def test_all_slots_succeed_confirms_once(
    make_orchestrator,
    recording_ledger,
    repository,
    handle_store,
) -> None:
    orchestrator = make_orchestrator()
    task = orchestrator.create_task(TaskKind.PRODUCT_STUDIO, _INPUTS)

    view = orchestrator.run(task)

    assert view.status == TaskStatus.COMPLETED
    assert view.success_count == 4
    assert recording_ledger.operations(task.task_id) == ["reserve", "confirm"]
    assert recording_ledger.get_balance(DEFAULT_USER_ID) == 16
    assert recording_ledger.task_types[task.task_id] == "product_studio"
    assert [slot.backend_used for slot in view.slots] == [BackendTier.PRIMARY] * 4
    for slot in view.slots:
        assert slot.image_url is not None
        assert slot.image_url.endswith(f"/{task.task_id}/{slot.index}.png")
        assert slot.persisted_id is not None
        assert slot.persisted_id != task.task_id
        assert not slot.persistence_pending

    record = repository.fetch_by_task_id(task.task_id)
    assert record is not None
    assert record.status == TaskStatus.COMPLETED.value
    assert record.output_image_urls == [slot.image_url for slot in view.slots]
    assert record.persisted_ids == [slot.persisted_id for slot in view.slots]
    assert handle_store.load(TaskKind.PRODUCT_STUDIO.value) is None


def test_partial_failure_refunds_failed_slots_only(
    make_orchestrator,
    recording_ledger,
    repository,
) -> None:
    orchestrator = make_orchestrator(
        primary=EchoImageBackend(name="echo-primary", fail_slots=(0, 2)),
        fallback=EchoImageBackend(name="echo-fallback", fail_slots=(2,)),
    )
    task = orchestrator.create_task(TaskKind.MODEL_STUDIO, _INPUTS)

    view = orchestrator.run(task)

    assert view.status == TaskStatus.COMPLETED
    assert view.success_count == 3
    assert recording_ledger.operations(task.task_id) == ["reserve", "partial_refund"]
    assert ("partial_refund", task.task_id, 1) in recording_ledger.calls
    assert recording_ledger.get_balance(DEFAULT_USER_ID) == 17

    slot_zero, _, slot_two, _ = view.slots
    assert slot_zero.status == SlotStatus.COMPLETED
    assert slot_zero.backend_used == BackendTier.FALLBACK
    assert slot_two.status == SlotStatus.FAILED
    assert slot_two.error is not None
    assert slot_two.error.failure_class == FailureClass.BACKEND_TERMINAL
    assert slot_two.error.category == ErrorCategory.SERVER_ERROR
    assert view.image_urls == [
        slot.image_url for slot in view.slots if slot.status == SlotStatus.COMPLETED
    ]

    record = repository.fetch_by_task_id(task.task_id)
    assert record is not None
    assert record.image_count == 3
    assert record.slot_statuses == ["completed", "completed", "failed", "completed"]
    assert record.output_image_urls[2] == ""
    assert record.error_categories[2] == ErrorCategory.SERVER_ERROR.value


def test_all_slots_failing_fully_refunds(make_orchestrator, recording_ledger) -> None:
    orchestrator = make_orchestrator(
        primary=EchoImageBackend(name="echo-primary", fail_slots=range(4)),
        fallback=EchoImageBackend(name="echo-fallback", fail_slots=range(4)),
    )
    task = orchestrator.create_task(TaskKind.PRO_STUDIO, _INPUTS)

    view = orchestrator.run(task)

    assert view.status == TaskStatus.FAILED
    assert view.failure_class == FailureClass.BACKEND_TERMINAL
    assert view.success_count == 0
    assert recording_ledger.operations(task.task_id) == ["reserve", "full_refund"]
    assert recording_ledger.get_balance(DEFAULT_USER_ID) == 20
    assert all(slot.status == SlotStatus.FAILED for slot in view.slots)


def test_all_slots_without_image_report_malformed_response(make_orchestrator) -> None:
    orchestrator = make_orchestrator(
        primary=EchoImageBackend(name="echo-primary", empty_slots=range(2)),
        fallback=EchoImageBackend(name="echo-fallback", empty_slots=range(2)),
    )
    task = orchestrator.create_task(TaskKind.EDIT, _INPUTS)

    view = orchestrator.run(task)

    assert view.status == TaskStatus.FAILED
    assert view.failure_class == FailureClass.MALFORMED_RESPONSE
    assert {slot.error.category for slot in view.slots if slot.error} == {ErrorCategory.NO_IMAGE}


def test_insufficient_quota_dispatches_nothing(make_orchestrator, recording_ledger) -> None:
    primary = EchoImageBackend(name="echo-primary")
    orchestrator = make_orchestrator(primary=primary)
    task = orchestrator.create_task(TaskKind.LIFESTYLE, _INPUTS, slot_count=25)

    view = orchestrator.run(task)

    assert view.status == TaskStatus.FAILED
    assert view.failure_class == FailureClass.QUOTA_EXHAUSTED
    assert recording_ledger.operations(task.task_id) == ["reserve"]
    assert recording_ledger.get_balance(DEFAULT_USER_ID) == 20
    assert primary.calls == []
    assert all(slot.status == SlotStatus.PENDING for slot in view.slots)


def test_reservation_system_unavailable_fails_with_best_effort_refund(make_orchestrator) -> None:
    ledger = _UnavailableLedger()
    primary = EchoImageBackend(name="echo-primary")
    orchestrator = make_orchestrator(primary=primary, ledger=ledger)
    task = orchestrator.create_task(TaskKind.TRY_ON, _INPUTS)

    view = orchestrator.run(task)

    assert view.status == TaskStatus.FAILED
    assert view.failure_class == FailureClass.RESERVATION_SYSTEM_UNAVAILABLE
    assert ledger.full_refunds == [task.task_id]
    assert primary.calls == []


def test_store_unreachable_before_dispatch_refunds(
    make_orchestrator,
    recording_ledger,
    repository,
    monkeypatch,
) -> None:
    def _unreachable(*_args, **_kwargs):
        raise PersistenceError("disk gone")

    monkeypatch.setattr(repository, "create_or_update_record", _unreachable)
    primary = EchoImageBackend(name="echo-primary")
    orchestrator = make_orchestrator(primary=primary)
    task = orchestrator.create_task(TaskKind.BRAND_STYLE, _INPUTS)

    view = orchestrator.run(task)

    assert view.status == TaskStatus.FAILED
    assert view.failure_class == FailureClass.PERSISTENCE_FAILURE
    assert recording_ledger.operations(task.task_id) == ["reserve", "full_refund"]
    assert recording_ledger.get_balance(DEFAULT_USER_ID) == 20
    assert primary.calls == []


def test_slot_persistence_failure_keeps_image_and_can_be_retried(
    make_orchestrator,
    repository,
    monkeypatch,
) -> None:
    original = repository.append_slot_result

    def _unreachable(**_kwargs):
        raise PersistenceError("locked")

    monkeypatch.setattr(repository, "append_slot_result", _unreachable)
    orchestrator = make_orchestrator()
    task = orchestrator.create_task(TaskKind.GROUP_SHOOT, _INPUTS)

    view = orchestrator.run(task)

    assert view.status == TaskStatus.COMPLETED
    assert view.success_count == 4
    assert all(slot.persistence_pending for slot in view.slots)
    assert all(slot.persisted_id is None for slot in view.slots)

    monkeypatch.setattr(repository, "append_slot_result", original)
    assert orchestrator.retry_pending_persistence(task.task_id) == 4

    refreshed = orchestrator.get_live_task(task.task_id)
    assert refreshed is not None
    assert not any(slot.persistence_pending for slot in refreshed.slots)
    record = repository.fetch_by_task_id(task.task_id)
    assert record is not None
    assert record.image_count == 4


def test_first_success_fires_once_under_concurrent_completion(make_orchestrator) -> None:
    orchestrator = make_orchestrator(primary=_BarrierBackend(parties=4))
    task = orchestrator.create_task(TaskKind.CREATE_MODEL, _INPUTS)
    observer = QueueObserver()
    orchestrator.subscribe(observer, task_id=task.task_id)

    view = orchestrator.run(task)

    events = observer.drain()
    event_types = [event.event_type for event in events]
    assert view.success_count == 4
    assert event_types.count(TaskEventType.FIRST_SUCCESS) == 1
    assert event_types.count(TaskEventType.SLOT_COMPLETED) == 4
    assert event_types.count(TaskEventType.QUOTA_SETTLED) == 1
    assert event_types[0] == TaskEventType.TASK_STARTED
    assert event_types[-1] == TaskEventType.TASK_COMPLETED


def test_failing_observer_does_not_break_the_task(make_orchestrator) -> None:
    orchestrator = make_orchestrator()

    def _broken(_event) -> None:
        raise RuntimeError("observer bug")

    orchestrator.subscribe(_broken)
    task = orchestrator.create_task(TaskKind.REFERENCE_SHOT, _INPUTS)

    view = orchestrator.run(task)

    assert view.status == TaskStatus.COMPLETED


def test_task_cannot_run_twice(make_orchestrator, recording_ledger) -> None:
    orchestrator = make_orchestrator()
    task = orchestrator.create_task(TaskKind.EDIT, _INPUTS)
    orchestrator.run(task)

    with pytest.raises(ValueError, match="already submitted"):
        orchestrator.run(task)
    assert recording_ledger.operations(task.task_id) == ["reserve", "confirm"]


def test_start_runs_in_background_after_observer_detaches(make_orchestrator) -> None:
    orchestrator = make_orchestrator()
    task = orchestrator.create_task(TaskKind.LIFESTYLE, _INPUTS)
    observer = QueueObserver()
    orchestrator.subscribe(observer)
    orchestrator.unsubscribe(observer)

    future = orchestrator.start(task, handle_key="lifestyle-page")
    view = future.result(timeout=10)
    orchestrator.shutdown()

    assert view.status == TaskStatus.COMPLETED
    assert orchestrator.wait_for(task.task_id, timeout=1) == view
    assert observer.drain() == []


def test_audit_trail_records_transitions(make_orchestrator, repository) -> None:
    orchestrator = make_orchestrator(
        primary=EchoImageBackend(name="echo-primary", fail_slots=(1,)),
        fallback=EchoImageBackend(name="echo-fallback", fail_slots=(1,)),
    )
    task = orchestrator.create_task(TaskKind.EDIT, _INPUTS)

    orchestrator.run(task)

    event_types = [event.event_type for event in repository.list_task_events(task.task_id)]
    assert event_types[0] == "quota_reserved"
    assert "record_created" in event_types
    assert "slot_completed" in event_types
    assert "slot_failed" in event_types
    assert event_types.count("quota_settled") == 1
    assert "record_finalized" in event_types
    assert event_types[-1] == "task_finished"


def test_images_are_written_under_task_directory(make_orchestrator, tmp_path: Path) -> None:
    orchestrator = make_orchestrator()
    task = orchestrator.create_task(TaskKind.EDIT, _INPUTS)

    orchestrator.run(task)

    written = sorted(path.name for path in (tmp_path / "images" / task.task_id).iterdir())
    assert written == ["0.png", "1.png"]


def test_local_image_store_rejects_path_like_task_ids(tmp_path: Path) -> None:
    store = LocalImageStore(tmp_path / "images")

    with pytest.raises(ValueError, match="Invalid task id"):
        store.put("../escape", 0, b"png-bytes")
    assert not (tmp_path / "escape").exists()


def test_slots_start_staggered_by_index(make_orchestrator) -> None:
    lock = threading.Lock()
    sleeps: list[tuple[float, SlotStatus]] = []

    def _sleep(seconds: float) -> None:
        view = orchestrator.get_live_task("task-stagger")
        with lock:
            sleeps.append((seconds, view.slots[round(seconds)].status))

    orchestrator = make_orchestrator(settings=_settings(stagger_seconds=1.0), sleep=_sleep)
    task = orchestrator.create_task(TaskKind.PRODUCT_STUDIO, _INPUTS, task_id="task-stagger")

    view = orchestrator.run(task)

    assert view.success_count == 4
    assert sorted(sleeps) == [
        (1.0, SlotStatus.PENDING),
        (2.0, SlotStatus.PENDING),
        (3.0, SlotStatus.PENDING),
    ]


def test_finished_tasks_leave_the_live_registry(make_orchestrator) -> None:
    orchestrator = make_orchestrator(settings=_settings(finished_task_retention_seconds=0.0))
    tasks = [orchestrator.create_task(TaskKind.EDIT, _INPUTS) for _ in range(3)]

    views = [orchestrator.run(task) for task in tasks]

    assert [view.status for view in views] == [TaskStatus.COMPLETED] * 3
    assert [orchestrator.get_live_task(task.task_id) for task in tasks] == [None] * 3
    assert orchestrator.wait_for(tasks[0].task_id, timeout=0) is None
    with pytest.raises(ValueError, match="expected pending"):
        orchestrator.run(tasks[0])


def test_finished_task_stays_live_within_retention_window(make_orchestrator) -> None:
    orchestrator = make_orchestrator(settings=_settings(finished_task_retention_seconds=300.0))
    task = orchestrator.create_task(TaskKind.EDIT, _INPUTS)

    view = orchestrator.run(task)

    assert orchestrator.get_live_task(task.task_id) == view


def test_unpersisted_task_stays_live_until_written(
    make_orchestrator,
    repository,
    monkeypatch,
) -> None:
    original = repository.append_slot_result

    def _unreachable(**_kwargs):
        raise PersistenceError("locked")

    monkeypatch.setattr(repository, "append_slot_result", _unreachable)
    orchestrator = make_orchestrator(settings=_settings(finished_task_retention_seconds=0.0))
    task = orchestrator.create_task(TaskKind.EDIT, _INPUTS)

    orchestrator.run(task)

    assert orchestrator.get_live_task(task.task_id) is not None
    monkeypatch.setattr(repository, "append_slot_result", original)
    assert orchestrator.retry_pending_persistence(task.task_id) == 2
    assert orchestrator.get_live_task(task.task_id) is None
