"""Controllers for shoot CLI commands."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from pathlib import Path

from product_shoot.config import Settings
from product_shoot.orchestrator.backend import EchoImageBackend, GeminiImageBackend, ImageBackend
from product_shoot.orchestrator.fallback import ModelFallbackExecutor
from product_shoot.orchestrator.handles import JsonFileHandleStore
from product_shoot.orchestrator.image_store import LocalImageStore
from product_shoot.orchestrator.ledger import HttpQuotaLedger, QuotaLedger, SqliteQuotaLedger
from product_shoot.orchestrator.models import TaskInput, TaskView
from product_shoot.orchestrator.orchestrator import TaskOrchestrator
from product_shoot.orchestrator.repository import GenerationRepository
from product_shoot.orchestrator.resumption import TaskResumptionManager
from product_shoot.orchestrator.task_kinds import canonical_kind


@dataclass(slots=True)
class ShootRunCommand:
    """CLI input for one generation task."""

    db_path: Path | None
    kind: str
    input_image: str
    input_image2: str | None
    params: tuple[str, ...]
    slots: int | None
    backend: str | None
    handle_key: str | None = None
    fail_slots: tuple[int, ...] = ()
    fail_fallback_slots: tuple[int, ...] = ()


@dataclass(slots=True)
class ShootResumeCommand:
    """CLI input for resuming from a stored handle."""

    db_path: Path | None
    kind: str


@dataclass(slots=True)
class ShootInspectCommand:
    """CLI input for record inspection."""

    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class ShootRecordsCommand:
    """CLI input for record listing."""

    db_path: Path | None
    limit: int


@dataclass(slots=True)
class QuotaShowCommand:
    """CLI input for balance display."""

    db_path: Path | None


@dataclass(slots=True)
class QuotaGrantCommand:
    """CLI input for adding credits."""

    db_path: Path | None
    amount: int


class ShootCliController:
    """Wires settings into the orchestrator and renders results as lines."""

    def run(self, command: ShootRunCommand) -> list[str]:
        settings = _settings(command.db_path)
        if command.backend is not None:
            settings.backend.kind = command.backend.strip().lower()
            settings.validate()
        inputs = TaskInput(
            input_image=command.input_image,
            input_image2=command.input_image2,
            params=parse_params(command.params),
        )
        with ExitStack() as stack:
            repository = stack.enter_context(_repository(settings))
            ledger = stack.enter_context(_ledger(settings))
            primary, fallback = _backends(
                settings,
                stack=stack,
                fail_slots=command.fail_slots,
                fail_fallback_slots=command.fail_fallback_slots,
            )
            orchestrator = TaskOrchestrator(
                ledger=ledger,
                executor=ModelFallbackExecutor.from_settings(
                    settings.backend,
                    primary=primary,
                    fallback=fallback,
                ),
                repository=repository,
                image_store=LocalImageStore(settings.orchestrator.image_dir),
                handle_store=JsonFileHandleStore(settings.resumption.handle_dir),
                settings=settings.orchestrator,
                user_id=settings.user_context.user_id,
            )
            task = orchestrator.create_task(
                command.kind,
                inputs,
                slot_count=command.slots,
            )
            view = orchestrator.run(task, handle_key=command.handle_key)
            orchestrator.shutdown()
        return render_task_lines(view)

    def resume(self, command: ShootResumeCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            manager = TaskResumptionManager(
                handle_store=JsonFileHandleStore(settings.resumption.handle_dir),
                repository=repository,
                settings=settings.resumption,
            )
            result = manager.resume(canonical_kind(command.kind).value)

        lines = [f"Resume: {result.outcome.value}"]
        if result.handle is not None:
            lines.append(f"Handle: {result.handle.key} -> {result.handle.task_id}")
        if result.task_view is not None:
            lines.extend(render_task_lines(result.task_view))
        return lines

    def inspect(self, command: ShootInspectCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            record = repository.fetch_by_task_id(command.task_id)
            events = repository.list_task_events(command.task_id)
        if record is None:
            return [f"Record not found: {command.task_id}"]

        lines = [
            f"Task: {record.task_id}",
            f"Record: {record.record_id}",
            f"Kind: {record.kind}",
            f"Status: {record.status}",
            f"Images: {record.image_count}/{record.requested_count}",
            f"Input: {record.input_image or '-'}",
            f"Input 2: {record.input_image2 or '-'}",
            f"Finished: {record.finished_at.isoformat() if record.finished_at else '-'}",
            f"Events: {len(events)}",
        ]
        for index in range(record.requested_count):
            lines.append(
                f"  slot {index} status={record.slot_statuses[index] or '-'} "
                f"backend={record.backends_used[index] or '-'} "
                f"mode={record.generation_modes[index] or '-'} "
                f"error={record.error_categories[index] or '-'} "
                f"url={record.output_image_urls[index] or '-'}",
            )
        for event in events:
            slot = f" slot={event.slot_index}" if event.slot_index is not None else ""
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type}{slot} "
                f"{event.status_from or '-'} -> {event.status_to or '-'}",
            )
        return lines

    def records(self, command: ShootRecordsCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            records = repository.list_records(limit=command.limit)

        lines = [f"Records: {len(records)}"]
        for record in records:
            lines.append(
                f"  {record.task_id} kind={record.kind} status={record.status} "
                f"images={record.image_count}/{record.requested_count} "
                f"created_at={record.created_at.isoformat()}",
            )
        return lines

    def quota_show(self, command: QuotaShowCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _ledger(settings) as ledger:
            balance = ledger.get_balance(settings.user_context.user_id)
        return [f"Quota: user={settings.user_context.user_id} balance={balance}"]

    def quota_grant(self, command: QuotaGrantCommand) -> list[str]:
        settings = _settings(command.db_path)
        if settings.quota.ledger_url:
            raise ValueError("Credits can only be granted on the local ledger.")
        with _local_ledger(settings) as ledger:
            balance = ledger.grant(settings.user_context.user_id, command.amount)
        return [
            f"Granted {command.amount} credits: "
            f"user={settings.user_context.user_id} balance={balance}",
        ]


def parse_params(values: tuple[str, ...]) -> dict[str, str]:
    """Parse repeated ``key=value`` options."""

    params: dict[str, str] = {}
    for value in values:
        key, separator, item = value.partition("=")
        key = key.strip()
        if not separator or not key:
            raise ValueError(f"Invalid --param {value!r}; expected key=value.")
        params[key] = item.strip()
    return params


def render_task_lines(view: TaskView) -> list[str]:
    lines = [
        "Task: "
        f"task_id={view.task_id} kind={view.kind.value} status={view.status.value} "
        f"images={view.success_count}/{view.requested_slot_count}",
    ]
    if view.failure_class is not None:
        lines.append(f"Failure class: {view.failure_class.value}")
    if view.error_message:
        lines.append(f"Error: {view.error_message}")
    for slot in view.slots:
        if slot.error is not None:
            lines.append(
                f"  slot {slot.index} {slot.status.value} "
                f"category={slot.error.category.value} message={slot.error.message}",
            )
            continue
        backend = slot.backend_used.value if slot.backend_used is not None else "-"
        pending = " persistence_pending" if slot.persistence_pending else ""
        lines.append(
            f"  slot {slot.index} {slot.status.value} backend={backend} "
            f"url={slot.image_url or '-'}{pending}",
        )
    return lines


def _settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


def _backends(
    settings: Settings,
    *,
    stack: ExitStack,
    fail_slots: tuple[int, ...],
    fail_fallback_slots: tuple[int, ...],
) -> tuple[ImageBackend, ImageBackend]:
    backend = settings.backend
    if backend.kind == "gemini":
        primary = GeminiImageBackend(
            base_url=backend.base_url,
            api_key=backend.api_key,
            model=backend.primary_model,
            timeout_seconds=backend.timeout_seconds,
            name="gemini-primary",
        )
        stack.callback(primary.close)
        fallback = GeminiImageBackend(
            base_url=backend.base_url,
            api_key=backend.api_key,
            model=backend.fallback_model,
            timeout_seconds=backend.timeout_seconds,
            name="gemini-fallback",
        )
        stack.callback(fallback.close)
        return primary, fallback
    return (
        EchoImageBackend(name="echo-primary", fail_slots=fail_slots),
        EchoImageBackend(name="echo-fallback", fail_slots=fail_fallback_slots),
    )


@contextmanager
def _repository(settings: Settings) -> Iterator[GenerationRepository]:
    repository = GenerationRepository(
        db_path=settings.db_path,
        user_id=settings.user_context.user_id,
        user_name=settings.user_context.user_name,
        busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@contextmanager
def _ledger(settings: Settings) -> Iterator[QuotaLedger]:
    if not settings.quota.ledger_url:
        with _local_ledger(settings) as local:
            yield local
        return
    remote = HttpQuotaLedger(
        base_url=settings.quota.ledger_url,
        timeout_seconds=settings.quota.request_timeout_seconds,
    )
    try:
        yield remote
    finally:
        remote.close()


@contextmanager
def _local_ledger(settings: Settings) -> Iterator[SqliteQuotaLedger]:
    ledger = SqliteQuotaLedger(
        settings.db_path,
        busy_timeout_ms=settings.sqlite_busy_timeout_ms,
        initial_balance=settings.quota.initial_balance,
        auto_provision=settings.quota.auto_provision,
        user_name=settings.user_context.user_name,
    )
    ledger.init_schema()
    try:
        yield ledger
    finally:
        ledger.close()
