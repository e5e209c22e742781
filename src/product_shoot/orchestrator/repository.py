"""Durable generation records backed by SQLModel + SQLite."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, col, select

from product_shoot.orchestrator.errors import PersistenceError
from product_shoot.orchestrator.models import (
    TERMINAL_TASK_STATUSES,
    BackendTier,
    ErrorCategory,
    FailureClass,
    GenerationMode,
    GenerationRecordView,
    SlotStatus,
    Task,
    TaskEventView,
    TaskStatus,
)
from product_shoot.storage.alembic_runner import upgrade_head
from product_shoot.storage.common import (
    build_sqlite_engine,
    ensure_user,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from product_shoot.storage.sqlmodel_models import (
    DEFAULT_USER_ID,
    GenerationRecord,
    GenerationSlotResult,
    GenerationTaskEvent,
)

logger = logging.getLogger(__name__)


class GenerationRepository:
    """Generation record persistence facade; every store failure raises ``PersistenceError``."""

    def __init__(
        self,
        db_path: Path,
        *,
        user_id: str = DEFAULT_USER_ID,
        user_name: str = "Default User",
        busy_timeout_ms: int = 5_000,
    ) -> None:
        self.db_path = db_path
        self.user_id = user_id
        self.user_name = user_name
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations and ensure actor context exists."""

        upgrade_head(self.db_path)
        with self._session("init_schema") as session:
            ensure_user(session, user_id=self.user_id, display_name=self.user_name)
            session.commit()

    def create_or_update_record(
        self,
        task: Task,
        *,
        status: TaskStatus = TaskStatus.RUNNING,
    ) -> str:
        """Create the task's record, or refresh its status; returns the record id."""

        now = utc_now()
        with self._session("create_or_update_record") as session:
            row = session.exec(
                select(GenerationRecord).where(GenerationRecord.task_id == task.task_id),
            ).one_or_none()
            if row is not None:
                row.status = status.value
                row.updated_at = now
                session.add(row)
                session.commit()
                return row.record_id

            ensure_user(session, user_id=task.user_id, display_name=self.user_name)
            record_id = str(uuid4())
            session.add(
                GenerationRecord(
                    record_id=record_id,
                    user_id=task.user_id,
                    task_id=task.task_id,
                    kind=task.kind.value,
                    status=status.value,
                    requested_count=task.requested_slot_count,
                    input_image=task.inputs.input_image,
                    input_image2=task.inputs.input_image2,
                    params_json=_dump_json(dict(task.inputs.params)),
                    created_at=now,
                    updated_at=now,
                ),
            )
            self._add_event(
                session=session,
                task_id=task.task_id,
                user_id=task.user_id,
                event_type="record_created",
                status_to=status.value,
                details={"record_id": record_id, "requested_count": task.requested_slot_count},
            )
            session.commit()
            return record_id

    def append_slot_result(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        slot_index: int,
        image_url: str,
        backend: BackendTier,
        generation_mode: GenerationMode | None = None,
    ) -> str:
        """Store one completed slot; repeated calls for the same slot return the same id."""

        return self._write_slot_row(
            task_id=task_id,
            slot_index=slot_index,
            status=SlotStatus.COMPLETED,
            image_url=image_url,
            backend=backend.value,
            generation_mode=generation_mode.value if generation_mode is not None else None,
        )

    def mark_slot_failed(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        slot_index: int,
        category: ErrorCategory,
        message: str | None = None,
        generation_mode: GenerationMode | None = None,
    ) -> str:
        """Store one failed slot with a null image url."""

        return self._write_slot_row(
            task_id=task_id,
            slot_index=slot_index,
            status=SlotStatus.FAILED,
            error_category=category.value,
            error_message=message,
            generation_mode=generation_mode.value if generation_mode is not None else None,
        )

    def finalize_record(
        self,
        *,
        task_id: str,
        status: TaskStatus,
        failure_class: FailureClass | None = None,
        details: dict[str, Any] | None = None,
    ) -> bool:
        """Move a record to a terminal status once; returns False when already final."""

        if status not in TERMINAL_TASK_STATUSES:
            raise ValueError(f"Cannot finalize record with non-terminal status {status.value}.")
        now = to_db_datetime(utc_now())
        with self._session("finalize_record") as session:
            row = session.exec(
                select(GenerationRecord).where(GenerationRecord.task_id == task_id),
            ).one_or_none()
            if row is None:
                raise PersistenceError(f"No generation record for task {task_id}.")
            previous = row.status
            result = session.exec(
                sa_update(GenerationRecord)
                .where(
                    col(GenerationRecord.task_id) == task_id,
                    col(GenerationRecord.status).not_in(
                        [terminal.value for terminal in TERMINAL_TASK_STATUSES],
                    ),
                )
                .values(status=status.value, updated_at=now, finished_at=now),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            event_details = dict(details or {})
            if failure_class is not None:
                event_details["failure_class"] = failure_class.value
            self._add_event(
                session=session,
                task_id=task_id,
                user_id=row.user_id,
                event_type="record_finalized",
                status_from=previous,
                status_to=status.value,
                details=event_details,
            )
            session.commit()
            return True

    def fetch_by_task_id(self, task_id: str) -> GenerationRecordView | None:
        with self._session("fetch_by_task_id") as session:
            row = session.exec(
                select(GenerationRecord).where(GenerationRecord.task_id == task_id),
            ).one_or_none()
            if row is None:
                return None
            slot_rows = session.exec(
                select(GenerationSlotResult)
                .where(GenerationSlotResult.record_id == row.record_id)
                .order_by(col(GenerationSlotResult.slot_index).asc()),
            ).all()
            return _to_record_view(row, list(slot_rows))

    def list_records(self, *, limit: int = 20) -> list[GenerationRecordView]:
        """Most recent records of the current user first."""

        with self._session("list_records") as session:
            rows = session.exec(
                select(GenerationRecord)
                .where(GenerationRecord.user_id == self.user_id)
                .order_by(col(GenerationRecord.created_at).desc())
                .limit(limit),
            ).all()
            views: list[GenerationRecordView] = []
            for row in rows:
                slot_rows = session.exec(
                    select(GenerationSlotResult)
                    .where(GenerationSlotResult.record_id == row.record_id)
                    .order_by(col(GenerationSlotResult.slot_index).asc()),
                ).all()
                views.append(_to_record_view(row, list(slot_rows)))
            return views

    def add_task_event(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        event_type: str,
        user_id: str | None = None,
        slot_index: int | None = None,
        status_from: str | None = None,
        status_to: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        with self._session("add_task_event") as session:
            ensure_user(session, user_id=user_id or self.user_id, display_name=self.user_name)
            self._add_event(
                session=session,
                task_id=task_id,
                user_id=user_id or self.user_id,
                event_type=event_type,
                slot_index=slot_index,
                status_from=status_from,
                status_to=status_to,
                details=details or {},
            )
            session.commit()

    def list_task_events(self, task_id: str) -> list[TaskEventView]:
        with self._session("list_task_events") as session:
            rows = session.exec(
                select(GenerationTaskEvent)
                .where(GenerationTaskEvent.task_id == task_id)
                .order_by(
                    col(GenerationTaskEvent.created_at).asc(),
                    col(GenerationTaskEvent.id).asc(),
                ),
            ).all()
        events: list[TaskEventView] = []
        for row in rows:
            details: dict[str, Any] = {}
            if row.details_json:
                parsed = json.loads(row.details_json)
                if isinstance(parsed, dict):
                    details = parsed
            events.append(
                TaskEventView(
                    event_id=row.id or 0,
                    task_id=row.task_id,
                    event_type=row.event_type,
                    slot_index=row.slot_index,
                    status_from=row.status_from,
                    status_to=row.status_to,
                    created_at=to_utc_aware_datetime(row.created_at),
                    details=details,
                ),
            )
        return events

    @contextmanager
    def _session(self, action: str) -> Iterator[Session]:
        try:
            with Session(self.engine) as session:
                yield session
        except SQLAlchemyError as error:
            raise PersistenceError(f"Generation store failed during {action}: {error}") from error

    def _write_slot_row(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        slot_index: int,
        status: SlotStatus,
        image_url: str | None = None,
        backend: str | None = None,
        generation_mode: str | None = None,
        error_category: str | None = None,
        error_message: str | None = None,
    ) -> str:
        with self._session(f"write_slot_{status.value}") as session:
            existing = _find_slot_row(session, task_id=task_id, slot_index=slot_index)
            if existing is not None:
                if existing.status != status.value:
                    raise PersistenceError(
                        f"Slot {slot_index} of task {task_id} already stored as "
                        f"{existing.status}.",
                    )
                return existing.persisted_id

            record = session.exec(
                select(GenerationRecord).where(GenerationRecord.task_id == task_id),
            ).one_or_none()
            if record is None:
                raise PersistenceError(f"No generation record for task {task_id}.")
            if not 0 <= slot_index < record.requested_count:
                raise PersistenceError(
                    f"Slot index {slot_index} out of range for task {task_id} "
                    f"({record.requested_count} slots).",
                )

            persisted_id = str(uuid4())
            session.add(
                GenerationSlotResult(
                    persisted_id=persisted_id,
                    record_id=record.record_id,
                    user_id=record.user_id,
                    task_id=task_id,
                    slot_index=slot_index,
                    status=status.value,
                    image_url=image_url,
                    backend=backend,
                    generation_mode=generation_mode,
                    error_category=error_category,
                    error_message=error_message,
                    created_at=utc_now(),
                ),
            )
            session.exec(
                sa_update(GenerationRecord)
                .where(col(GenerationRecord.record_id) == record.record_id)
                .values(updated_at=to_db_datetime(utc_now())),
            )
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                existing = _find_slot_row(session, task_id=task_id, slot_index=slot_index)
                if existing is None:
                    raise
                logger.info("Slot %s of task %s stored concurrently.", slot_index, task_id)
                return existing.persisted_id
            return persisted_id

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        task_id: str,
        user_id: str,
        event_type: str,
        slot_index: int | None = None,
        status_from: str | None = None,
        status_to: str | None = None,
        details: dict[str, Any],
    ) -> None:
        session.add(
            GenerationTaskEvent(
                task_id=task_id,
                user_id=user_id,
                event_type=event_type,
                slot_index=slot_index,
                status_from=status_from,
                status_to=status_to,
                details_json=_dump_json(details) if details else None,
                created_at=utc_now(),
            ),
        )


def _find_slot_row(
    session: Session,
    *,
    task_id: str,
    slot_index: int,
) -> GenerationSlotResult | None:
    return session.exec(
        select(GenerationSlotResult).where(
            GenerationSlotResult.task_id == task_id,
            GenerationSlotResult.slot_index == slot_index,
        ),
    ).one_or_none()


def _dump_json(payload: dict[str, Any]) -> str:
    return json.dumps(payload, ensure_ascii=False, sort_keys=True, default=str)


def _to_record_view(
    row: GenerationRecord,
    slot_rows: list[GenerationSlotResult],
) -> GenerationRecordView:
    count = row.requested_count
    urls = [""] * count
    backends = [""] * count
    statuses = [""] * count
    modes = [""] * count
    persisted_ids = [""] * count
    error_categories = [""] * count
    for slot_row in slot_rows:
        index = slot_row.slot_index
        if not 0 <= index < count:
            continue
        urls[index] = slot_row.image_url or ""
        backends[index] = slot_row.backend or ""
        statuses[index] = slot_row.status
        modes[index] = slot_row.generation_mode or ""
        persisted_ids[index] = slot_row.persisted_id
        error_categories[index] = slot_row.error_category or ""

    params: dict[str, Any] = {}
    if row.params_json:
        parsed = json.loads(row.params_json)
        if isinstance(parsed, dict):
            params = parsed

    return GenerationRecordView(
        record_id=row.record_id,
        user_id=row.user_id,
        task_id=row.task_id,
        kind=row.kind,
        status=row.status,
        requested_count=count,
        output_image_urls=urls,
        backends_used=backends,
        slot_statuses=statuses,
        generation_modes=modes,
        params=params,
        input_image=row.input_image,
        input_image2=row.input_image2,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        finished_at=(
            to_utc_aware_datetime(row.finished_at) if row.finished_at is not None else None
        ),
        persisted_ids=persisted_ids,
        error_categories=error_categories,
    )
