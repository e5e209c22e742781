"""Quota ledger: reserve credits before dispatch, reconcile once after settlement."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Protocol

import httpx
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, col, select

from product_shoot.orchestrator.errors import (
    InsufficientQuotaError,
    ReservationSystemUnavailableError,
)
from product_shoot.orchestrator.models import LedgerReceipt
from product_shoot.storage.alembic_runner import upgrade_head
from product_shoot.storage.common import (
    build_sqlite_engine,
    ensure_user,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from product_shoot.storage.sqlmodel_models import QuotaAccount, QuotaReservation

logger = logging.getLogger(__name__)


class ReservationState(str, Enum):
    """Lifecycle of one task's reservation; every state after RESERVED is final."""

    RESERVED = "reserved"
    CONFIRMED = "confirmed"
    PARTIALLY_REFUNDED = "partially_refunded"
    REFUNDED = "refunded"


class LedgerOperation(str, Enum):
    RESERVE = "reserve"
    PARTIAL_REFUND = "partial_refund"
    FULL_REFUND = "full_refund"
    CONFIRM = "confirm"


@dataclass(slots=True)
class ReservationView:
    """Stored reservation for inspection."""

    task_id: str
    user_id: str
    reserved_count: int
    refunded_count: int
    state: ReservationState
    created_at: datetime
    released_at: datetime | None
    task_type: str | None = None


class QuotaLedger(Protocol):
    """Idempotent ledger operations keyed by ``task_id``, plus a balance read."""

    def reserve(
        self,
        user_id: str,
        task_id: str,
        count: int,
        *,
        task_type: str | None = None,
    ) -> LedgerReceipt:
        """Debit ``count`` credits once per task or raise ``InsufficientQuotaError``."""

    def partial_refund(self, task_id: str, failed_count: int) -> LedgerReceipt:
        """Credit back ``failed_count`` credits once per task."""

    def full_refund(self, task_id: str) -> LedgerReceipt:
        """Credit back the whole reservation once per task."""

    def confirm(self, task_id: str) -> LedgerReceipt:
        """Close the reservation without money movement and re-read the balance."""

    def get_balance(self, user_id: str) -> int:
        """Current credits of a user."""


class _TaskLocks:
    """One lock per task id so concurrent settlements of one task serialize."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    @contextmanager
    def hold(self, task_id: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(task_id, threading.Lock())
        with lock:
            yield


class SqliteQuotaLedger:
    """Quota accounts and reservations stored in the local SQLite database."""

    def __init__(  # noqa: PLR0913
        self,
        db_path: Path,
        *,
        busy_timeout_ms: int = 5_000,
        initial_balance: int = 0,
        auto_provision: bool = True,
        user_name: str = "Default User",
    ) -> None:
        self.db_path = db_path
        self.initial_balance = initial_balance
        self.auto_provision = auto_provision
        self.user_name = user_name
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)
        self._locks = _TaskLocks()

    def init_schema(self) -> None:
        upgrade_head(self.db_path)

    def close(self) -> None:
        self.engine.dispose()

    def reserve(
        self,
        user_id: str,
        task_id: str,
        count: int,
        *,
        task_type: str | None = None,
    ) -> LedgerReceipt:
        if count <= 0:
            raise ValueError(f"Reservation count must be positive, got {count}.")
        with self._locks.hold(task_id):
            try:
                return self._reserve(
                    user_id=user_id,
                    task_id=task_id,
                    count=count,
                    task_type=task_type,
                )
            except IntegrityError:
                logger.info("Reservation for task %s was created concurrently.", task_id)
                return LedgerReceipt(
                    task_id=task_id,
                    operation=LedgerOperation.RESERVE.value,
                    applied=False,
                    balance=self._balance_or_none(user_id),
                )
            except SQLAlchemyError as error:
                raise ReservationSystemUnavailableError(
                    f"Quota store unavailable while reserving task {task_id}: {error}",
                ) from error

    def partial_refund(self, task_id: str, failed_count: int) -> LedgerReceipt:
        if failed_count < 0:
            raise ValueError(f"failed_count must be >= 0, got {failed_count}.")
        return self._release(
            task_id=task_id,
            operation=LedgerOperation.PARTIAL_REFUND,
            target_state=ReservationState.PARTIALLY_REFUNDED,
            credit=failed_count,
        )

    def full_refund(self, task_id: str) -> LedgerReceipt:
        return self._release(
            task_id=task_id,
            operation=LedgerOperation.FULL_REFUND,
            target_state=ReservationState.REFUNDED,
            credit=None,
        )

    def confirm(self, task_id: str) -> LedgerReceipt:
        return self._release(
            task_id=task_id,
            operation=LedgerOperation.CONFIRM,
            target_state=ReservationState.CONFIRMED,
            credit=0,
        )

    def grant(self, user_id: str, amount: int) -> int:
        """Add credits to a user's account and return the new balance."""

        if amount <= 0:
            raise ValueError(f"Grant amount must be positive, got {amount}.")
        try:
            with Session(self.engine) as session:
                self._ensure_account(session, user_id, provision=True)
                session.exec(
                    sa_update(QuotaAccount)
                    .where(col(QuotaAccount.user_id) == user_id)
                    .values(
                        balance=col(QuotaAccount.balance) + amount,
                        updated_at=to_db_datetime(utc_now()),
                    ),
                )
                session.commit()
                balance = self._read_balance(session, user_id)
        except SQLAlchemyError as error:
            raise ReservationSystemUnavailableError(
                f"Quota store unavailable while granting credits: {error}",
            ) from error
        logger.info("Granted %s credits to %s; balance=%s", amount, user_id, balance)
        return balance

    def get_balance(self, user_id: str) -> int:
        try:
            with Session(self.engine) as session:
                account = self._ensure_account(session, user_id, provision=self.auto_provision)
                session.commit()
                return account.balance if account is not None else 0
        except SQLAlchemyError as error:
            raise ReservationSystemUnavailableError(
                f"Quota store unavailable while reading balance: {error}",
            ) from error

    def get_reservation(self, task_id: str) -> ReservationView | None:
        try:
            with Session(self.engine) as session:
                row = session.exec(
                    select(QuotaReservation).where(QuotaReservation.task_id == task_id),
                ).one_or_none()
        except SQLAlchemyError as error:
            raise ReservationSystemUnavailableError(
                f"Quota store unavailable while reading task {task_id}: {error}",
            ) from error
        if row is None:
            return None
        return ReservationView(
            task_id=row.task_id,
            user_id=row.user_id,
            reserved_count=row.reserved_count,
            refunded_count=row.refunded_count,
            state=ReservationState(row.state),
            created_at=to_utc_aware_datetime(row.created_at),
            released_at=(
                to_utc_aware_datetime(row.released_at) if row.released_at is not None else None
            ),
            task_type=row.task_type,
        )

    def _reserve(
        self,
        *,
        user_id: str,
        task_id: str,
        count: int,
        task_type: str | None,
    ) -> LedgerReceipt:
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            existing = session.exec(
                select(QuotaReservation).where(QuotaReservation.task_id == task_id),
            ).one_or_none()
            if existing is not None:
                logger.info("Task %s already reserved; skipping debit.", task_id)
                return LedgerReceipt(
                    task_id=task_id,
                    operation=LedgerOperation.RESERVE.value,
                    applied=False,
                    balance=self._read_balance(session, existing.user_id),
                )

            account = self._ensure_account(session, user_id, provision=self.auto_provision)
            if account is None:
                session.rollback()
                raise InsufficientQuotaError(
                    f"No quota account for user {user_id}.",
                    requested=count,
                    available=0,
                )
            session.commit()

            result = session.exec(
                sa_update(QuotaAccount)
                .where(
                    col(QuotaAccount.user_id) == user_id,
                    col(QuotaAccount.balance) >= count,
                )
                .values(balance=col(QuotaAccount.balance) - count, updated_at=now),
            )
            if result.rowcount != 1:
                session.rollback()
                available = self._balance_or_none(user_id)
                raise InsufficientQuotaError(
                    f"Insufficient quota: requested {count}, available {available}.",
                    requested=count,
                    available=available,
                )

            session.add(
                QuotaReservation(
                    task_id=task_id,
                    user_id=user_id,
                    reserved_count=count,
                    refunded_count=0,
                    task_type=task_type,
                    state=ReservationState.RESERVED.value,
                    created_at=now,
                ),
            )
            session.commit()
            balance = self._read_balance(session, user_id)
        logger.info("Reserved %s credits for task %s; balance=%s", count, task_id, balance)
        return LedgerReceipt(
            task_id=task_id,
            operation=LedgerOperation.RESERVE.value,
            applied=True,
            balance=balance,
        )

    def _release(
        self,
        *,
        task_id: str,
        operation: LedgerOperation,
        target_state: ReservationState,
        credit: int | None,
    ) -> LedgerReceipt:
        with self._locks.hold(task_id):
            try:
                return self._release_locked(
                    task_id=task_id,
                    operation=operation,
                    target_state=target_state,
                    credit=credit,
                )
            except SQLAlchemyError as error:
                raise ReservationSystemUnavailableError(
                    f"Quota store unavailable during {operation.value} for task {task_id}: "
                    f"{error}",
                ) from error

    def _release_locked(
        self,
        *,
        task_id: str,
        operation: LedgerOperation,
        target_state: ReservationState,
        credit: int | None,
    ) -> LedgerReceipt:
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = session.exec(
                select(QuotaReservation).where(QuotaReservation.task_id == task_id),
            ).one_or_none()
            if row is None:
                logger.warning("%s for unknown task %s ignored.", operation.value, task_id)
                return LedgerReceipt(task_id=task_id, operation=operation.value, applied=False)
            if row.state != ReservationState.RESERVED.value:
                logger.info(
                    "%s for task %s ignored: reservation already %s.",
                    operation.value,
                    task_id,
                    row.state,
                )
                return LedgerReceipt(
                    task_id=task_id,
                    operation=operation.value,
                    applied=False,
                    balance=self._read_balance(session, row.user_id),
                )

            amount = row.reserved_count if credit is None else credit
            if amount > row.reserved_count:
                raise ValueError(
                    f"Cannot refund {amount} credits; task {task_id} reserved "
                    f"{row.reserved_count}.",
                )
            user_id = row.user_id
            result = session.exec(
                sa_update(QuotaReservation)
                .where(
                    col(QuotaReservation.task_id) == task_id,
                    col(QuotaReservation.state) == ReservationState.RESERVED.value,
                )
                .values(state=target_state.value, refunded_count=amount, released_at=now),
            )
            if result.rowcount != 1:
                session.rollback()
                return LedgerReceipt(task_id=task_id, operation=operation.value, applied=False)
            if amount:
                session.exec(
                    sa_update(QuotaAccount)
                    .where(col(QuotaAccount.user_id) == user_id)
                    .values(balance=col(QuotaAccount.balance) + amount, updated_at=now),
                )
            session.commit()
            balance = self._read_balance(session, user_id)
        logger.info(
            "Ledger %s for task %s credited %s; balance=%s",
            operation.value,
            task_id,
            amount,
            balance,
        )
        return LedgerReceipt(
            task_id=task_id,
            operation=operation.value,
            applied=True,
            credited=amount,
            balance=balance,
        )

    def _ensure_account(
        self,
        session: Session,
        user_id: str,
        *,
        provision: bool,
    ) -> QuotaAccount | None:
        account = session.exec(
            select(QuotaAccount).where(QuotaAccount.user_id == user_id),
        ).one_or_none()
        if account is not None or not provision:
            return account
        ensure_user(session, user_id=user_id, display_name=self.user_name)
        account = QuotaAccount(
            user_id=user_id,
            balance=self.initial_balance,
            updated_at=to_db_datetime(utc_now()),
        )
        session.add(account)
        session.flush()
        logger.info("Provisioned quota account for %s with %s credits.", user_id, account.balance)
        return account

    def _read_balance(self, session: Session, user_id: str) -> int:
        account = session.exec(
            select(QuotaAccount).where(QuotaAccount.user_id == user_id),
        ).one_or_none()
        if account is None:
            return 0
        session.refresh(account)
        return account.balance

    def _balance_or_none(self, user_id: str) -> int | None:
        try:
            with Session(self.engine) as session:
                return self._read_balance(session, user_id)
        except SQLAlchemyError:
            logger.warning("Could not read balance for %s", user_id)
            return None


@dataclass(slots=True)
class _RemoteReservation:
    reserved_count: int
    released_by: LedgerOperation | None = None


class HttpQuotaLedger:
    """Client of the accounting service's quota reservation API."""

    def __init__(
        self,
        *,
        base_url: str,
        timeout_seconds: float = 10.0,
        headers: dict[str, str] | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout_seconds, connect=5.0),
            headers=headers,
            transport=transport,
        )
        self._locks = _TaskLocks()
        self._records_guard = threading.Lock()
        self._records: dict[str, _RemoteReservation] = {}

    def close(self) -> None:
        self._client.close()

    def reserve(
        self,
        user_id: str,
        task_id: str,
        count: int,
        *,
        task_type: str | None = None,
    ) -> LedgerReceipt:
        if count <= 0:
            raise ValueError(f"Reservation count must be positive, got {count}.")
        with self._locks.hold(task_id):
            if self._record(task_id) is not None:
                return LedgerReceipt(
                    task_id=task_id,
                    operation=LedgerOperation.RESERVE.value,
                    applied=False,
                )
            response = self._send(
                "POST",
                "/api/quota/reserve",
                task_id=task_id,
                json=_reserve_payload(task_id, count, task_type),
            )
            if _is_insufficient(response):
                raise InsufficientQuotaError(
                    f"Insufficient quota for task {task_id}: {_error_text(response)}",
                    requested=count,
                )
            self._raise_for_status(response, task_id=task_id, operation="reserve")
            with self._records_guard:
                self._records[task_id] = _RemoteReservation(reserved_count=count)
        return LedgerReceipt(
            task_id=task_id,
            operation=LedgerOperation.RESERVE.value,
            applied=True,
            balance=_remaining(response),
        )

    def partial_refund(self, task_id: str, failed_count: int) -> LedgerReceipt:
        if failed_count < 0:
            raise ValueError(f"failed_count must be >= 0, got {failed_count}.")

        def call(record: _RemoteReservation | None) -> httpx.Response:
            payload: dict[str, Any] = {"taskId": task_id, "refundCount": failed_count}
            if record is not None:
                payload["actualImageCount"] = record.reserved_count - failed_count
            return self._send("PUT", "/api/quota/reserve", task_id=task_id, json=payload)

        return self._release(task_id, LedgerOperation.PARTIAL_REFUND, call, credit=failed_count)

    def full_refund(self, task_id: str) -> LedgerReceipt:
        def call(_: _RemoteReservation | None) -> httpx.Response:
            return self._send(
                "DELETE",
                "/api/quota/reserve",
                task_id=task_id,
                params={"taskId": task_id},
            )

        record = self._record(task_id)
        credit = record.reserved_count if record is not None else 0
        return self._release(task_id, LedgerOperation.FULL_REFUND, call, credit=credit)

    def confirm(self, task_id: str) -> LedgerReceipt:
        def call(_: _RemoteReservation | None) -> httpx.Response:
            return self._send("GET", "/api/quota", task_id=task_id)

        return self._release(task_id, LedgerOperation.CONFIRM, call, credit=0)

    def get_balance(self, user_id: str) -> int:
        response = self._send("GET", "/api/quota", task_id=f"balance:{user_id}")
        self._raise_for_status(response, task_id=None, operation="balance")
        return _remaining(response) or 0

    def _release(
        self,
        task_id: str,
        operation: LedgerOperation,
        call: Callable[[_RemoteReservation | None], httpx.Response],
        *,
        credit: int,
    ) -> LedgerReceipt:
        with self._locks.hold(task_id):
            record = self._record(task_id)
            if record is not None and record.released_by is not None:
                return LedgerReceipt(task_id=task_id, operation=operation.value, applied=False)
            response = call(record)
            self._raise_for_status(response, task_id=task_id, operation=operation.value)
            with self._records_guard:
                if record is None:
                    record = _RemoteReservation(reserved_count=credit)
                    self._records[task_id] = record
                record.released_by = operation
        return LedgerReceipt(
            task_id=task_id,
            operation=operation.value,
            applied=True,
            credited=credit,
            balance=_remaining(response),
        )

    def _record(self, task_id: str) -> _RemoteReservation | None:
        with self._records_guard:
            return self._records.get(task_id)

    def _send(self, method: str, path: str, *, task_id: str, **kwargs: Any) -> httpx.Response:
        try:
            return self._client.request(method, path, **kwargs)
        except httpx.HTTPError as error:
            raise ReservationSystemUnavailableError(
                f"Quota service unreachable ({method} {path}) for {task_id}: {error}",
            ) from error

    @staticmethod
    def _raise_for_status(
        response: httpx.Response,
        *,
        task_id: str | None,
        operation: str,
    ) -> None:
        if response.is_success:
            return
        raise ReservationSystemUnavailableError(
            f"Quota service {operation} failed for {task_id}: "
            f"HTTP {response.status_code} {_error_text(response)}",
        )


def _reserve_payload(task_id: str, count: int, task_type: str | None) -> dict[str, Any]:
    payload: dict[str, Any] = {"taskId": task_id, "imageCount": count}
    if task_type:
        payload["taskType"] = task_type
    return payload


def _is_insufficient(response: httpx.Response) -> bool:
    if response.status_code in {402, 403}:
        return True
    if response.status_code == 409:
        return "insufficient" in _error_text(response).lower()
    return False


def _error_text(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(payload, dict) and payload.get("error"):
        return str(payload["error"])
    return response.text[:200]


def _remaining(response: httpx.Response) -> int | None:
    try:
        payload = response.json()
    except ValueError:
        return None
    if not isinstance(payload, dict):
        return None
    value = payload.get("remainingQuota")
    return int(value) if isinstance(value, int | float) else None
