"""Shared test fixtures."""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

from product_shoot.config import OrchestratorSettings
from product_shoot.orchestrator.backend import EchoImageBackend, ImageBackend
from product_shoot.orchestrator.fallback import ModelFallbackExecutor
from product_shoot.orchestrator.handles import MemoryHandleStore
from product_shoot.orchestrator.image_store import LocalImageStore
from product_shoot.orchestrator.ledger import QuotaLedger, SqliteQuotaLedger
from product_shoot.orchestrator.models import LedgerReceipt
from product_shoot.orchestrator.orchestrator import TaskOrchestrator
from product_shoot.orchestrator.repository import GenerationRepository
from product_shoot.storage.sqlmodel_models import DEFAULT_USER_ID


class RecordingLedger:
    """Delegating ledger that records every call for assertions."""

    def __init__(self, inner: QuotaLedger) -> None:
        self.inner = inner
        self._lock = threading.Lock()
        self.calls: list[tuple[str, str, int | None]] = []
        self.task_types: dict[str, str | None] = {}

    def reserve(
        self,
        user_id: str,
        task_id: str,
        count: int,
        *,
        task_type: str | None = None,
    ) -> LedgerReceipt:
        self._record("reserve", task_id, count)
        with self._lock:
            self.task_types[task_id] = task_type
        return self.inner.reserve(user_id, task_id, count, task_type=task_type)

    def partial_refund(self, task_id: str, failed_count: int) -> LedgerReceipt:
        self._record("partial_refund", task_id, failed_count)
        return self.inner.partial_refund(task_id, failed_count)

    def full_refund(self, task_id: str) -> LedgerReceipt:
        self._record("full_refund", task_id, None)
        return self.inner.full_refund(task_id)

    def confirm(self, task_id: str) -> LedgerReceipt:
        self._record("confirm", task_id, None)
        return self.inner.confirm(task_id)

    def get_balance(self, user_id: str) -> int:
        return self.inner.get_balance(user_id)

    def operations(self, task_id: str) -> list[str]:
        with self._lock:
            return [operation for operation, call_task, _ in self.calls if call_task == task_id]

    def _record(self, operation: str, task_id: str, amount: int | None) -> None:
        with self._lock:
            self.calls.append((operation, task_id, amount))


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "shoot.db"


@pytest.fixture()
def repository(db_path: Path) -> Iterator[GenerationRepository]:
    repository = GenerationRepository(db_path)
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@pytest.fixture()
def sqlite_ledger(db_path: Path, repository: GenerationRepository) -> Iterator[SqliteQuotaLedger]:
    ledger = SqliteQuotaLedger(db_path, initial_balance=0)
    ledger.init_schema()
    ledger.grant(DEFAULT_USER_ID, 20)
    try:
        yield ledger
    finally:
        ledger.close()


@pytest.fixture()
def recording_ledger(sqlite_ledger: SqliteQuotaLedger) -> RecordingLedger:
    return RecordingLedger(sqlite_ledger)


@pytest.fixture()
def handle_store() -> MemoryHandleStore:
    return MemoryHandleStore()


@pytest.fixture()
def make_orchestrator(
    tmp_path: Path,
    repository: GenerationRepository,
    recording_ledger: RecordingLedger,
    handle_store: MemoryHandleStore,
) -> Callable[..., TaskOrchestrator]:
    """Build an orchestrator with echo backends, no stagger and a recording ledger."""

    def _make(
        *,
        primary: ImageBackend | None = None,
        fallback: ImageBackend | None = None,
        ledger: QuotaLedger | None = None,
        settings: OrchestratorSettings | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> TaskOrchestrator:
        executor = ModelFallbackExecutor(
            primary=primary or EchoImageBackend(name="echo-primary"),
            fallback=fallback or EchoImageBackend(name="echo-fallback"),
            primary_model="primary-model",
            fallback_model="fallback-model",
            timeout_seconds=5.0,
        )
        return TaskOrchestrator(
            ledger=ledger or recording_ledger,
            executor=executor,
            repository=repository,
            image_store=LocalImageStore(tmp_path / "images"),
            handle_store=handle_store,
            settings=settings
            or OrchestratorSettings(
                stagger_seconds=0.0,
                persist_retry_backoff_seconds=0.0,
                ledger_retry_backoff_seconds=0.0,
            ),
            sleep=sleep or (lambda _seconds: None),
        )

    return _make
