"""Data models for ``ledger_sync``.

Transactions, users, devices, queue items and log entries are pydantic models
so every replica payload (JSON file, SQL row, queue file) goes through the same
validation on the way in. Timestamps are always timezone-aware UTC; naive
values (SQLite hands those back) are interpreted as UTC.
"""

from __future__ import annotations

import time
import uuid
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

_CENT = Decimal("0.01")
CATEGORY_MAX_LENGTH = 50


def utcnow() -> datetime:
    return datetime.now(UTC)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def new_record_id() -> str:
    """Mint a transaction id that is unique across devices."""

    return f"txn_{uuid.uuid4().hex}"


def new_device_id() -> str:
    return f"device_{int(time.time() * 1000)}_{uuid.uuid4().hex[:7]}"


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class TransactionKind(StrEnum):
    INCOME = "income"
    EXPENSE = "expense"


class SyncStatus(StrEnum):
    """Outcome of the most recent reconciliation for a record."""

    SYNCED = "synced"
    PENDING = "pending"
    CONFLICT_RESOLVED = "conflict_resolved"


class ConflictResolution(StrEnum):
    LOCAL_WINS = "local_wins"
    CLOUD_WINS = "cloud_wins"


class QueueOperation(StrEnum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class QueueItemStatus(StrEnum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class SyncState(StrEnum):
    """Orchestrator state machine: idle → syncing → synced | error, plus offline."""

    IDLE = "idle"
    SYNCING = "syncing"
    SYNCED = "synced"
    ERROR = "error"
    OFFLINE = "offline"


# ---------------------------------------------------------------------------
# Ledger records
# ---------------------------------------------------------------------------


class TransactionRecord(BaseModel):
    """A single ledger entry as held by one replica.

    ``sync_status``, ``cloud_id``, ``conflict_resolution`` and the two
    ``original_*_version`` fields are derived by reconciliation. They never
    participate in content comparison (see :meth:`content_key`).
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    kind: TransactionKind
    amount: Decimal
    # Bounded by the ls_transactions.category column.
    category: str = Field(default="", max_length=CATEGORY_MAX_LENGTH)
    description: str = ""
    occurred_at: datetime
    created_at: datetime
    updated_at: datetime
    device_id: str = ""
    deleted: bool = False
    sync_status: SyncStatus = SyncStatus.PENDING
    cloud_id: str | None = None
    conflict_resolution: ConflictResolution | None = None
    # Losing side of the most recent conflict, kept for audit. Nested
    # provenance is stripped before attaching so chains never grow.
    original_cloud_version: TransactionRecord | None = None
    original_local_version: TransactionRecord | None = None

    @field_validator("amount", mode="before")
    @classmethod
    def _coerce_amount(cls, v: Any) -> Decimal:
        if isinstance(v, Decimal):
            d = v
        else:
            try:
                d = Decimal(str(v).strip())
            except (InvalidOperation, ValueError) as e:
                raise ValueError(f"amount is not a decimal: {v!r}") from e
        if not d.is_finite() or d < 0:
            raise ValueError("amount must be a finite, non-negative decimal")
        cents = d.quantize(_CENT)
        if cents != d:
            raise ValueError(f"amount has more than two decimal places: {v!r}")
        return cents

    @field_validator("occurred_at", "created_at", "updated_at")
    @classmethod
    def _normalize_tz(cls, v: datetime) -> datetime:
        return _as_utc(v)

    @property
    def identity(self) -> str:
        """Canonical merge identity: the cloud id when known, else the local id."""

        return self.cloud_id or self.id

    def content_key(self) -> tuple[Any, ...]:
        """Fields that define the record's content, excluding derived sync data."""

        return (
            self.id,
            self.user_id,
            self.kind,
            self.amount,
            self.category,
            self.description,
            self.occurred_at,
            self.created_at,
            self.updated_at,
            self.device_id,
            self.deleted,
        )

    def without_provenance(self) -> TransactionRecord:
        if self.original_cloud_version is None and self.original_local_version is None:
            return self
        return self.model_copy(
            update={"original_cloud_version": None, "original_local_version": None}
        )

    def to_payload(self) -> dict[str, Any]:
        """JSON-ready dict (decimals and datetimes as strings)."""

        return self.model_dump(mode="json")


class UserRecord(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str = Field(min_length=1)
    username: str = Field(min_length=1, max_length=50)
    email: str = ""
    is_active: bool = True


class DeviceRecord(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    device_name: str = "Unknown Device"
    device_type: str = "desktop"
    last_seen: datetime | None = None
    is_active: bool = True

    @field_validator("last_seen")
    @classmethod
    def _normalize_tz(cls, v: datetime | None) -> datetime | None:
        return None if v is None else _as_utc(v)


class LedgerSnapshot(BaseModel):
    """Full persisted state of one replica: the unit of integrity checking."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    users: tuple[UserRecord, ...] = ()
    devices: tuple[DeviceRecord, ...] = ()
    transactions: tuple[TransactionRecord, ...] = ()

    def user_ids(self) -> set[str]:
        return {u.id for u in self.users}

    def transactions_for(self, user_id: str) -> list[TransactionRecord]:
        return [t for t in self.transactions if t.user_id == user_id]

    def replace_transactions_for(
        self, user_id: str, records: list[TransactionRecord]
    ) -> LedgerSnapshot:
        others = [t for t in self.transactions if t.user_id != user_id]
        return self.model_copy(update={"transactions": tuple(others + list(records))})


# ---------------------------------------------------------------------------
# Outbound queue and sync log
# ---------------------------------------------------------------------------


class SyncQueueItem(BaseModel):
    """A mutation intent waiting to be confirmed against the remote replica."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(default_factory=lambda: f"q_{uuid.uuid4().hex}")
    operation: QueueOperation
    target_collection: str = "transactions"
    record_id: str
    user_id: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    retry_count: int = 0
    status: QueueItemStatus = QueueItemStatus.PENDING
    last_error: str | None = None
    next_attempt_at: datetime | None = None

    @field_validator("created_at", "next_attempt_at")
    @classmethod
    def _normalize_tz(cls, v: datetime | None) -> datetime | None:
        return None if v is None else _as_utc(v)

    def dedupe_key(self) -> tuple[str, str, str]:
        return (self.operation.value, self.target_collection, self.record_id)


class SyncLogEntry(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    event: str
    username: str | None = None
    device_id: str | None = None
    timestamp: datetime = Field(default_factory=utcnow)
    details: str | None = None

    @field_validator("timestamp")
    @classmethod
    def _normalize_tz(cls, v: datetime) -> datetime:
        return _as_utc(v)


TransactionRecord.model_rebuild()


__all__ = [
    "ConflictResolution",
    "DeviceRecord",
    "LedgerSnapshot",
    "QueueItemStatus",
    "QueueOperation",
    "SyncLogEntry",
    "SyncQueueItem",
    "SyncState",
    "SyncStatus",
    "TransactionKind",
    "TransactionRecord",
    "UserRecord",
    "new_device_id",
    "new_record_id",
    "utcnow",
]
