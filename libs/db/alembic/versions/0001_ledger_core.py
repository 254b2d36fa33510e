# ruff: noqa: I001
"""Ledger core tables: users, devices, transactions, sync log.

Revision ID: 0001_ledger_core
Revises: None
Create Date: 2026-10-19
"""

from __future__ import annotations  # ruff: noqa: I001

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op


# revision identifiers, used by Alembic.
revision: str = "0001_ledger_core"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # ls_users (owned by the authentication subsystem)
    op.create_table(
        "ls_users",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("username", sa.String(length=50), nullable=False, unique=True),
        sa.Column("email", sa.String(length=100), nullable=False, unique=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        "ls_devices",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column(
            "device_name",
            sa.String(length=100),
            nullable=False,
            server_default=sa.text("'Unknown Device'"),
        ),
        sa.Column(
            "device_type", sa.String(length=20), nullable=False, server_default=sa.text("'desktop'")
        ),
        sa.Column("last_seen", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
    )
    op.create_index("ix_ls_devices_user_id", "ls_devices", ["user_id"], unique=False)

    op.create_table(
        "ls_transactions",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("kind", sa.String(length=16), nullable=False),
        sa.Column("amount", sa.Numeric(15, 2), nullable=False),
        sa.Column("category", sa.String(length=50), nullable=False, server_default=sa.text("''")),
        sa.Column("description", sa.Text(), nullable=False, server_default=sa.text("''")),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("device_id", sa.String(length=100), nullable=False, server_default=sa.text("''")),
        sa.Column("deleted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column(
            "sync_status", sa.String(length=32), nullable=False, server_default=sa.text("'synced'")
        ),
        sa.Column("cloud_id", sa.String(), nullable=True),
        sa.Column("conflict_resolution", sa.String(length=16), nullable=True),
        sa.Column("provenance", sa.JSON(), nullable=True),
        sa.CheckConstraint("kind in ('income','expense')", name="ck_ls_tx_kind"),
        sa.CheckConstraint("amount >= 0", name="ck_ls_tx_amount_non_negative"),
        sa.CheckConstraint(
            "sync_status in ('synced','pending','conflict_resolved')",
            name="ck_ls_tx_sync_status",
        ),
    )
    op.create_index(
        "ix_ls_transactions_user_occurred",
        "ls_transactions",
        ["user_id", "occurred_at"],
        unique=False,
    )

    op.create_table(
        "ls_sync_log",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("event", sa.String(length=64), nullable=False),
        sa.Column("username", sa.String(length=50), nullable=True),
        sa.Column("device_id", sa.String(length=100), nullable=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("details", sa.Text(), nullable=True),
    )
    op.create_index("ix_ls_sync_log_timestamp", "ls_sync_log", ["timestamp"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_ls_sync_log_timestamp", table_name="ls_sync_log")
    op.drop_table("ls_sync_log")
    op.drop_index("ix_ls_transactions_user_occurred", table_name="ls_transactions")
    op.drop_table("ls_transactions")
    op.drop_index("ix_ls_devices_user_id", table_name="ls_devices")
    op.drop_table("ls_devices")
    op.drop_table("ls_users")
