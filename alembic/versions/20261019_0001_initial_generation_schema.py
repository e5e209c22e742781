"""Initial schema: users, quota ledger, generation records and task events."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("display_name", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("user_id"),
    )

    op.create_table(
        "quota_accounts",
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("balance", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["users.user_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("user_id"),
        sa.CheckConstraint("balance >= 0", name="ck_quota_accounts_balance_non_negative"),
    )

    op.create_table(
        "quota_reservations",
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), server_default="default_user", nullable=False),
        sa.Column("reserved_count", sa.Integer(), nullable=False),
        sa.Column("refunded_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("state", sa.String(), nullable=False),
        sa.Column("task_type", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("released_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.user_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("task_id"),
    )
    op.create_index(
        "idx_quota_reservations_scope_state",
        "quota_reservations",
        ["user_id", "state"],
        unique=False,
    )

    op.create_table(
        "generation_records",
        sa.Column("record_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), server_default="default_user", nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("requested_count", sa.Integer(), nullable=False),
        sa.Column("input_image", sa.Text(), nullable=True),
        sa.Column("input_image2", sa.Text(), nullable=True),
        sa.Column("params_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.user_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("record_id"),
        sa.UniqueConstraint("task_id", name="uq_generation_records_task"),
    )
    op.create_index(
        "idx_generation_records_scope_time",
        "generation_records",
        ["user_id", "created_at"],
        unique=False,
    )
    op.create_index(
        "idx_generation_records_status",
        "generation_records",
        ["status"],
        unique=False,
    )

    op.create_table(
        "generation_slot_results",
        sa.Column("persisted_id", sa.String(), nullable=False),
        sa.Column("record_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), server_default="default_user", nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("slot_index", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("image_url", sa.Text(), nullable=True),
        sa.Column("backend", sa.String(), nullable=True),
        sa.Column("generation_mode", sa.String(), nullable=True),
        sa.Column("error_category", sa.String(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(
            ["record_id"],
            ["generation_records.record_id"],
            ondelete="CASCADE",
        ),
        sa.ForeignKeyConstraint(["user_id"], ["users.user_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("persisted_id"),
        sa.UniqueConstraint(
            "task_id",
            "slot_index",
            name="uq_generation_slot_results_task_slot",
        ),
    )
    op.create_index(
        "idx_generation_slot_results_record",
        "generation_slot_results",
        ["record_id"],
        unique=False,
    )

    op.create_table(
        "generation_task_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), server_default="default_user", nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("slot_index", sa.Integer(), nullable=True),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["users.user_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_generation_task_events_task_time",
        "generation_task_events",
        ["task_id", "created_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("idx_generation_task_events_task_time", table_name="generation_task_events")
    op.drop_table("generation_task_events")
    op.drop_index("idx_generation_slot_results_record", table_name="generation_slot_results")
    op.drop_table("generation_slot_results")
    op.drop_index("idx_generation_records_status", table_name="generation_records")
    op.drop_index("idx_generation_records_scope_time", table_name="generation_records")
    op.drop_table("generation_records")
    op.drop_index("idx_quota_reservations_scope_state", table_name="quota_reservations")
    op.drop_table("quota_reservations")
    op.drop_table("quota_accounts")
    op.drop_table("users")
