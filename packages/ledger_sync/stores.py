"""Record Store backends.

A store holds one replica's :class:`~ledger_sync.models.LedgerSnapshot`.
Backends implement two primitives, ``read_snapshot`` and ``write_snapshot``;
everything else (per-user load/save, upsert, soft delete, device
registration) is expressed on top of them and may be overridden where a
backend can do better (see :class:`SqlRecordStore`).

All methods are synchronous. The orchestrator calls them through
``asyncio.to_thread`` so a slow backend never blocks the event loop.

Error policy
------------
- A missing or corrupt *local* payload is recovered as an empty snapshot and
  logged; it never propagates.
- Writes that persistence rejects raise :class:`StoreWriteFailure`.
- The SQL backend reports database/connection errors as
  :class:`RemoteCallFailure`.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any

from pydantic import ValidationError
from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError

from db.client import session_scope
from db.models.ledger import LsDevice, LsTransaction, LsUser

from .errors import RemoteCallFailure, StoreReadFailure, StoreWriteFailure
from .fileio import read_json, write_json_atomic
from .integrity import verify, verify_and_repair
from .logging_setup import get_logger
from .models import (
    DeviceRecord,
    LedgerSnapshot,
    SyncStatus,
    TransactionRecord,
    UserRecord,
    utcnow,
)

_logger = get_logger("ledger_sync.stores")


def _unique_by_id(records: Iterable[TransactionRecord]) -> list[TransactionRecord]:
    seen: set[str] = set()
    out: list[TransactionRecord] = []
    for r in records:
        if r.id in seen:
            _logger.warning("dropping duplicate transaction id=%s on save", r.id)
            continue
        seen.add(r.id)
        out.append(r)
    return out


class RecordStore(ABC):
    """Persistence for one replica of the ledger."""

    #: Short label used in log lines ("local", "remote", ...).
    name: str = "store"

    def __init__(self) -> None:
        self._lock = threading.RLock()

    # ---- primitives ---------------------------------------------------------

    @abstractmethod
    def read_snapshot(self) -> LedgerSnapshot:
        """Return the full persisted state (empty when nothing is stored)."""

    @abstractmethod
    def write_snapshot(self, snapshot: LedgerSnapshot) -> None:
        """Replace the full persisted state atomically."""

    # ---- lifecycle ----------------------------------------------------------

    def open(self) -> list[str]:
        """Run the integrity pass and persist any repair.

        Returns the human-readable violation descriptions (empty when clean).
        """

        with self._lock:
            snapshot = self.read_snapshot()
            repaired, violations = verify_and_repair(snapshot)
            if not violations:
                return []
            for v in violations:
                _logger.warning("%s integrity: %s", self.name, v.describe())
            self.write_snapshot(repaired)
            _logger.info("%s: removed %d orphaned row(s)", self.name, len(violations))
            return [v.describe() for v in violations]

    # ---- per-user transaction access ----------------------------------------

    def load(self, user_id: str) -> list[TransactionRecord]:
        return self.read_snapshot().transactions_for(user_id)

    def save(self, user_id: str, records: Iterable[TransactionRecord]) -> None:
        """Replace ``user_id``'s transaction set as one snapshot write."""

        records = _unique_by_id(records)
        with self._lock:
            snapshot = self.read_snapshot()
            self.write_snapshot(snapshot.replace_transactions_for(user_id, records))

    def upsert(self, user_id: str, record: TransactionRecord) -> None:
        with self._lock:
            current = [r for r in self.load(user_id) if r.id != record.id]
            self.save(user_id, [*current, record])

    def soft_delete(self, user_id: str, record_id: str, at: datetime | None = None) -> bool:
        """Mark a record deleted. Returns ``False`` when it does not exist."""

        at = at or utcnow()
        with self._lock:
            records = self.load(user_id)
            hit = False
            out: list[TransactionRecord] = []
            for r in records:
                if r.id == record_id or r.cloud_id == record_id:
                    hit = True
                    if not r.deleted:
                        r = r.model_copy(update={"deleted": True, "updated_at": at})
                out.append(r)
            if hit:
                self.save(user_id, out)
            return hit

    def get(self, user_id: str, record_id: str) -> TransactionRecord | None:
        for r in self.load(user_id):
            if r.id == record_id or r.cloud_id == record_id:
                return r
        return None

    # ---- users and devices --------------------------------------------------

    def find_user(self, username: str) -> UserRecord | None:
        for u in self.read_snapshot().users:
            if u.username == username:
                return u
        return None

    def remember_user(self, user: UserRecord) -> None:
        """Cache the session user in this replica so its rows stay referenced."""

        with self._lock:
            snapshot = self.read_snapshot()
            users = [u for u in snapshot.users if u.id != user.id]
            self.write_snapshot(snapshot.model_copy(update={"users": (*users, user)}))

    def devices_for(self, user_id: str) -> list[DeviceRecord]:
        return [d for d in self.read_snapshot().devices if d.user_id == user_id]

    def register_device(self, device: DeviceRecord) -> DeviceRecord:
        """Insert or refresh a device row (``last_seen`` and ``is_active``)."""

        fresh = device.model_copy(update={"last_seen": utcnow(), "is_active": True})
        with self._lock:
            snapshot = self.read_snapshot()
            devices = [
                d
                for d in snapshot.devices
                if not (d.id == device.id and d.user_id == device.user_id)
            ]
            self.write_snapshot(snapshot.model_copy(update={"devices": (*devices, fresh)}))
        return fresh

    def clear_user(self, user_id: str) -> None:
        """Drop every transaction and device owned by ``user_id``."""

        with self._lock:
            snapshot = self.read_snapshot()
            self.write_snapshot(
                snapshot.model_copy(
                    update={
                        "transactions": tuple(
                            t for t in snapshot.transactions if t.user_id != user_id
                        ),
                        "devices": tuple(d for d in snapshot.devices if d.user_id != user_id),
                    }
                )
            )


# ---------------------------------------------------------------------------
# In-process
# ---------------------------------------------------------------------------


class MemoryRecordStore(RecordStore):
    """Snapshot held in memory. Handy for tests and ephemeral sessions."""

    def __init__(self, snapshot: LedgerSnapshot | None = None, *, name: str = "memory") -> None:
        super().__init__()
        self.name = name
        self._snapshot = snapshot or LedgerSnapshot()
        self.write_count = 0

    def read_snapshot(self) -> LedgerSnapshot:
        return self._snapshot

    def write_snapshot(self, snapshot: LedgerSnapshot) -> None:
        self._snapshot = snapshot
        self.write_count += 1


# ---------------------------------------------------------------------------
# Device-local JSON replica
# ---------------------------------------------------------------------------


class JsonFileRecordStore(RecordStore):
    """Snapshot persisted as one JSON document on the local filesystem."""

    def __init__(self, path: Path, *, name: str = "local") -> None:
        super().__init__()
        self.path = Path(path)
        self.name = name

    def _read(self) -> LedgerSnapshot:
        try:
            data = read_json(self.path)
        except (OSError, ValueError) as e:
            raise StoreReadFailure(f"cannot read {self.path}: {e}") from e
        if data is None:
            return LedgerSnapshot()
        try:
            return LedgerSnapshot.model_validate(data)
        except ValidationError as e:
            raise StoreReadFailure(f"invalid snapshot in {self.path}: {e}") from e

    def read_snapshot(self) -> LedgerSnapshot:
        try:
            return self._read()
        except StoreReadFailure as e:
            _logger.warning("%s: %s; starting from an empty replica", self.name, e)
            return LedgerSnapshot()

    def write_snapshot(self, snapshot: LedgerSnapshot) -> None:
        try:
            write_json_atomic(self.path, snapshot.model_dump(mode="json"))
        except OSError as e:
            raise StoreWriteFailure(f"cannot write {self.path}: {e}") from e


# ---------------------------------------------------------------------------
# Shared SQL replica
# ---------------------------------------------------------------------------


def _row_to_record(row: LsTransaction) -> TransactionRecord:
    provenance = row.provenance or {}
    return TransactionRecord.model_validate(
        {
            "id": row.id,
            "user_id": row.user_id,
            "kind": row.kind,
            "amount": row.amount,
            "category": row.category or "",
            "description": row.description or "",
            "occurred_at": row.occurred_at,
            "created_at": row.created_at,
            "updated_at": row.updated_at,
            "device_id": row.device_id or "",
            "deleted": bool(row.deleted),
            "sync_status": row.sync_status or SyncStatus.SYNCED,
            "cloud_id": row.cloud_id,
            "conflict_resolution": row.conflict_resolution,
            "original_cloud_version": provenance.get("original_cloud_version"),
            "original_local_version": provenance.get("original_local_version"),
        }
    )


def _record_to_row(record: TransactionRecord) -> LsTransaction:
    provenance: dict[str, Any] | None = None
    if record.original_cloud_version or record.original_local_version:
        provenance = {
            "original_cloud_version": (
                record.original_cloud_version.to_payload()
                if record.original_cloud_version
                else None
            ),
            "original_local_version": (
                record.original_local_version.to_payload()
                if record.original_local_version
                else None
            ),
        }
    return LsTransaction(
        id=record.id,
        user_id=record.user_id,
        kind=record.kind.value,
        amount=record.amount,
        category=record.category,
        description=record.description,
        occurred_at=record.occurred_at,
        created_at=record.created_at,
        updated_at=record.updated_at,
        device_id=record.device_id,
        deleted=record.deleted,
        sync_status=record.sync_status.value,
        cloud_id=record.cloud_id,
        conflict_resolution=(
            record.conflict_resolution.value if record.conflict_resolution else None
        ),
        provenance=provenance,
    )


def _device_to_row(device: DeviceRecord) -> LsDevice:
    return LsDevice(
        id=device.id,
        user_id=device.user_id,
        device_name=device.device_name,
        device_type=device.device_type,
        last_seen=device.last_seen,
        is_active=device.is_active,
    )


def _device_from_row(row: LsDevice) -> DeviceRecord:
    return DeviceRecord(
        id=row.id,
        user_id=row.user_id,
        device_name=row.device_name,
        device_type=row.device_type,
        last_seen=row.last_seen,
        is_active=bool(row.is_active),
    )


class SqlRecordStore(RecordStore):
    """The shared remote replica, stored in the ``ls_*`` tables.

    Users are owned by the authentication subsystem: this store reads
    ``ls_users`` but never writes it. Snapshot writes replace transactions
    and devices only.
    """

    def __init__(self, database_url: str | None = None, *, name: str = "remote") -> None:
        super().__init__()
        self.database_url = database_url
        self.name = name

    @contextmanager
    def _session(self, action: str) -> Iterator[Any]:
        try:
            with session_scope(database_url=self.database_url) as session:
                yield session
        except SQLAlchemyError as e:
            raise RemoteCallFailure(f"{self.name}: {action} failed: {e}") from e

    def _valid_records(self, rows: Iterable[LsTransaction]) -> list[TransactionRecord]:
        out: list[TransactionRecord] = []
        for row in rows:
            try:
                out.append(_row_to_record(row))
            except ValidationError as e:
                _logger.warning(
                    "%s: skipping invalid transaction row id=%s: %s", self.name, row.id, e
                )
        return out

    def read_snapshot(self) -> LedgerSnapshot:
        with self._session("read snapshot") as s:
            users = [
                UserRecord(id=u.id, username=u.username, email=u.email, is_active=bool(u.is_active))
                for u in s.scalars(select(LsUser))
            ]
            devices = [_device_from_row(d) for d in s.scalars(select(LsDevice))]
            transactions = self._valid_records(s.scalars(select(LsTransaction)))
        return LedgerSnapshot(
            users=tuple(users), devices=tuple(devices), transactions=tuple(transactions)
        )

    def write_snapshot(self, snapshot: LedgerSnapshot) -> None:
        with self._session("write snapshot") as s:
            s.execute(delete(LsTransaction))
            s.execute(delete(LsDevice))
            s.add_all(_record_to_row(r) for r in _unique_by_id(snapshot.transactions))
            s.add_all(_device_to_row(d) for d in snapshot.devices)

    def open(self) -> list[str]:
        """Integrity pass that deletes orphaned rows in place.

        Rows that fail validation but belong to an existing user are left
        untouched; only rows whose owner is missing are removed.
        """

        with self._lock:
            violations = verify(self.read_snapshot())
            if not violations:
                return []
            for v in violations:
                _logger.warning("%s integrity: %s", self.name, v.describe())
            with self._session("repair orphans") as s:
                known = select(LsUser.id)
                s.execute(delete(LsTransaction).where(LsTransaction.user_id.not_in(known)))
                s.execute(delete(LsDevice).where(LsDevice.user_id.not_in(known)))
            _logger.info("%s: removed %d orphaned row(s)", self.name, len(violations))
            return [v.describe() for v in violations]

    def load(self, user_id: str) -> list[TransactionRecord]:
        with self._session("load transactions") as s:
            rows = s.scalars(select(LsTransaction).where(LsTransaction.user_id == user_id))
            return self._valid_records(rows)

    def save(self, user_id: str, records: Iterable[TransactionRecord]) -> None:
        records = _unique_by_id(records)
        with self._session("save transactions") as s:
            s.execute(delete(LsTransaction).where(LsTransaction.user_id == user_id))
            s.flush()
            s.add_all(_record_to_row(r) for r in records)

    def upsert(self, user_id: str, record: TransactionRecord) -> None:
        with self._session("upsert transaction") as s:
            s.merge(_record_to_row(record))

    def find_user(self, username: str) -> UserRecord | None:
        with self._session("find user") as s:
            row = s.scalars(select(LsUser).where(LsUser.username == username)).first()
            if row is None:
                return None
            return UserRecord(
                id=row.id, username=row.username, email=row.email, is_active=bool(row.is_active)
            )

    def remember_user(self, user: UserRecord) -> None:
        # ls_users is written by registration, never by the sync engine.
        return None

    def devices_for(self, user_id: str) -> list[DeviceRecord]:
        with self._session("list devices") as s:
            rows = s.scalars(select(LsDevice).where(LsDevice.user_id == user_id))
            return [_device_from_row(d) for d in rows]

    def register_device(self, device: DeviceRecord) -> DeviceRecord:
        fresh = device.model_copy(update={"last_seen": utcnow(), "is_active": True})
        with self._session("register device") as s:
            s.merge(_device_to_row(fresh))
        return fresh

    def clear_user(self, user_id: str) -> None:
        with self._session("clear user data") as s:
            s.execute(delete(LsTransaction).where(LsTransaction.user_id == user_id))
            s.execute(delete(LsDevice).where(LsDevice.user_id == user_id))


__all__ = [
    "JsonFileRecordStore",
    "MemoryRecordStore",
    "RecordStore",
    "SqlRecordStore",
]
