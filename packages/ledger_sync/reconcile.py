"""Reconciliation of a local and a remote transaction set.

``merge`` is a pure function over the records handed to it. It owns no
state and performs no I/O; the orchestrator persists the result and turns
``MergeResult.pending`` into outbound ``create`` intents.

Rules, in order:

1. Every remote record is emitted, tagged ``synced``, with ``cloud_id`` set
   to its canonical cloud identity.
2. Each local record is matched to an emitted record by ``id``, falling back
   to the ``cloud_id`` cross-reference. Unmatched records are local-only and
   are emitted as-is (``pending`` unless already ``synced``). Matched records
   whose content diverges go through :func:`ledger_sync.conflict.resolve` and
   the result replaces the emitted entry. Identical content leaves the remote
   entry standing.
3. Emitted records still ``pending`` are reported in ``MergeResult.pending``.
4. Output is ordered by ``occurred_at`` descending (``id`` breaks ties).
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any

from .conflict import resolve
from .models import ConflictResolution, SyncStatus, TransactionRecord


@dataclass(frozen=True, slots=True)
class Conflict:
    """A divergence found during merge and how it was settled."""

    identity: str
    local: TransactionRecord
    remote: TransactionRecord
    resolved: TransactionRecord


@dataclass(frozen=True, slots=True)
class MergeResult:
    records: list[TransactionRecord]
    pending: list[TransactionRecord] = field(default_factory=list)
    conflicts: list[Conflict] = field(default_factory=list)


def _keep_tombstone(
    resolved: TransactionRecord, local: TransactionRecord, remote: TransactionRecord
) -> TransactionRecord:
    """Never let a stale live copy undo a newer soft delete."""

    if resolved.deleted:
        return resolved
    loser = local if resolved.conflict_resolution is ConflictResolution.CLOUD_WINS else remote
    if loser.deleted and loser.updated_at > resolved.updated_at:
        return resolved.model_copy(update={"deleted": True, "updated_at": loser.updated_at})
    return resolved


def _claim(slots: dict[str, int], record: TransactionRecord, idx: int) -> None:
    for key in (record.id, record.cloud_id):
        if key:
            slots.setdefault(key, idx)


def _find(slots: dict[str, int], record: TransactionRecord) -> int | None:
    for key in (record.id, record.cloud_id):
        if key and key in slots:
            return slots[key]
    return None


def _order_key(record: TransactionRecord) -> tuple[Any, str]:
    return (record.occurred_at, record.id)


def merge(
    local_records: Iterable[TransactionRecord],
    remote_records: Iterable[TransactionRecord],
) -> MergeResult:
    """Merge two replicas of one user's transactions into a canonical set."""

    merged: list[TransactionRecord] = []
    slots: dict[str, int] = {}
    conflicts: list[Conflict] = []

    for remote in remote_records:
        emitted = remote.model_copy(
            update={"sync_status": SyncStatus.SYNCED, "cloud_id": remote.identity}
        )
        _claim(slots, emitted, len(merged))
        merged.append(emitted)

    for local in local_records:
        idx = _find(slots, local)
        if idx is None:
            if local.sync_status is not SyncStatus.SYNCED:
                local = local.model_copy(update={"sync_status": SyncStatus.PENDING})
            _claim(slots, local, len(merged))
            merged.append(local)
            continue

        current = merged[idx]
        if local.content_key() == current.content_key():
            continue

        resolved = _keep_tombstone(resolve(local, current), local, current)
        merged[idx] = resolved
        _claim(slots, resolved, idx)
        conflicts.append(
            Conflict(identity=current.identity, local=local, remote=current, resolved=resolved)
        )

    merged.sort(key=_order_key, reverse=True)
    pending = [r for r in merged if r.sync_status is SyncStatus.PENDING]
    return MergeResult(records=merged, pending=pending, conflicts=conflicts)


def _fingerprint(records: Iterable[TransactionRecord]) -> list[tuple[Any, ...]]:
    return sorted(
        (r.content_key() + (r.sync_status, r.cloud_id, r.conflict_resolution) for r in records),
        key=repr,
    )


def records_differ(a: Sequence[TransactionRecord], b: Sequence[TransactionRecord]) -> bool:
    """True when two record sets differ in content or derived sync data."""

    if len(a) != len(b):
        return True
    return _fingerprint(a) != _fingerprint(b)


def has_local_changes(
    local_records: Sequence[TransactionRecord], remote_records: Sequence[TransactionRecord]
) -> bool:
    """Cheap check: differing counts or any local record still pending."""

    if len(local_records) != len(remote_records):
        return True
    return any(r.sync_status is SyncStatus.PENDING for r in local_records)


def has_user_changes(
    new_records: Sequence[TransactionRecord], old_records: Sequence[TransactionRecord]
) -> bool:
    """Detect a remote change worth reconciling: count or newest ``created_at`` moved."""

    if len(new_records) != len(old_records):
        return True
    newest_new = max((r.created_at for r in new_records), default=None)
    newest_old = max((r.created_at for r in old_records), default=None)
    return newest_new != newest_old


__all__ = [
    "Conflict",
    "MergeResult",
    "has_local_changes",
    "has_user_changes",
    "merge",
    "records_differ",
]
