"""SQLModel ORM tables for generation records and quota accounting."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, UniqueConstraint
from sqlmodel import Field, SQLModel

DEFAULT_USER_ID = "default_user"


class AppUser(SQLModel, table=True):
    __tablename__ = "users"  # type: ignore[bad-override]

    user_id: str = Field(primary_key=True, index=True)
    display_name: str = Field(index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class QuotaAccount(SQLModel, table=True):
    __tablename__ = "quota_accounts"  # type: ignore[bad-override]

    user_id: str = Field(
        sa_column=Column(
            ForeignKey("users.user_id", ondelete="CASCADE"),
            primary_key=True,
        ),
    )
    balance: int = Field(default=0)
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class QuotaReservation(SQLModel, table=True):
    __tablename__ = "quota_reservations"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_quota_reservations_scope_state", "user_id", "state"),)

    task_id: str = Field(primary_key=True)
    user_id: str = Field(
        default=DEFAULT_USER_ID,
        sa_column=Column(
            ForeignKey("users.user_id", ondelete="CASCADE"),
            nullable=False,
            server_default=DEFAULT_USER_ID,
            index=True,
        ),
    )
    reserved_count: int
    refunded_count: int = Field(default=0)
    state: str = Field(index=True)
    task_type: str | None = Field(default=None)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    released_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class GenerationRecord(SQLModel, table=True):
    __tablename__ = "generation_records"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("task_id", name="uq_generation_records_task"),
        Index("idx_generation_records_scope_time", "user_id", "created_at"),
    )

    record_id: str = Field(primary_key=True)
    user_id: str = Field(
        default=DEFAULT_USER_ID,
        sa_column=Column(
            ForeignKey("users.user_id", ondelete="CASCADE"),
            nullable=False,
            server_default=DEFAULT_USER_ID,
            index=True,
        ),
    )
    task_id: str = Field(index=True)
    kind: str = Field(index=True)
    status: str = Field(index=True)
    requested_count: int
    input_image: str | None = Field(default=None, sa_column=Column(Text))
    input_image2: str | None = Field(default=None, sa_column=Column(Text))
    params_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class GenerationSlotResult(SQLModel, table=True):
    __tablename__ = "generation_slot_results"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("task_id", "slot_index", name="uq_generation_slot_results_task_slot"),
    )

    persisted_id: str = Field(primary_key=True)
    record_id: str = Field(
        sa_column=Column(
            ForeignKey("generation_records.record_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    user_id: str = Field(
        default=DEFAULT_USER_ID,
        sa_column=Column(
            ForeignKey("users.user_id", ondelete="CASCADE"),
            nullable=False,
            server_default=DEFAULT_USER_ID,
            index=True,
        ),
    )
    task_id: str = Field(index=True)
    slot_index: int
    status: str = Field(index=True)
    image_url: str | None = Field(default=None, sa_column=Column(Text))
    backend: str | None = None
    generation_mode: str | None = None
    error_category: str | None = None
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class GenerationTaskEvent(SQLModel, table=True):
    __tablename__ = "generation_task_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_generation_task_events_task_time", "task_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(index=True)
    user_id: str = Field(
        default=DEFAULT_USER_ID,
        sa_column=Column(
            ForeignKey("users.user_id", ondelete="CASCADE"),
            nullable=False,
            server_default=DEFAULT_USER_ID,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    slot_index: int | None = None
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
