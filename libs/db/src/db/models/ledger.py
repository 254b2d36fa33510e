from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


# ---------------------------
# Reference: ls_users
# ---------------------------


class LsUser(Base):
    __tablename__ = "ls_users"

    # Owned by the authentication subsystem; the sync engine only reads rows.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    username: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    email: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


# ---------------------------
# Devices registered per user
# ---------------------------


class LsDevice(Base):
    __tablename__ = "ls_devices"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    # No FK constraint: dangling owners are detected and repaired by the
    # integrity pass rather than rejected at write time.
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    device_name: Mapped[str] = mapped_column(String(100), nullable=False, default="Unknown Device")
    device_type: Mapped[str] = mapped_column(String(20), nullable=False, default="desktop")
    last_seen: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


# ---------------------------
# Core: ls_transactions
# ---------------------------


class LsTransaction(Base):
    __tablename__ = "ls_transactions"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, nullable=False)
    kind: Mapped[str] = mapped_column(String(16), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    category: Mapped[str] = mapped_column(String(50), nullable=False, default="")
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    device_id: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    # Soft delete: rows are retained so deletions propagate to other replicas.
    deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    sync_status: Mapped[str] = mapped_column(String(32), nullable=False, default="synced")
    cloud_id: Mapped[str | None] = mapped_column(String, nullable=True)
    conflict_resolution: Mapped[str | None] = mapped_column(String(16), nullable=True)
    # Losing version(s) from the most recent conflict, kept for audit only.
    provenance: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    __table_args__ = (
        CheckConstraint("kind in ('income','expense')", name="ck_ls_tx_kind"),
        CheckConstraint("amount >= 0", name="ck_ls_tx_amount_non_negative"),
        CheckConstraint(
            "sync_status in ('synced','pending','conflict_resolved')",
            name="ck_ls_tx_sync_status",
        ),
        Index("ix_ls_transactions_user_occurred", "user_id", "occurred_at"),
    )


# ---------------------------
# Observability: ls_sync_log
# ---------------------------


class LsSyncLog(Base):
    __tablename__ = "ls_sync_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event: Mapped[str] = mapped_column(String(64), nullable=False)
    username: Mapped[str | None] = mapped_column(String(50), nullable=True)
    device_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    details: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (Index("ix_ls_sync_log_timestamp", "timestamp"),)


__all__ = [
    "Base",
    "LsDevice",
    "LsSyncLog",
    "LsTransaction",
    "LsUser",
]
