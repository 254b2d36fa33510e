"""Referential integrity checks over one replica's snapshot.

A replica that was written by an older client, or edited by hand, can carry
transactions or devices whose owning user no longer exists. These rows are
reported as :class:`~ledger_sync.errors.IntegrityViolation` values and
removed outright (they are not soft-deleted: there is no user left to sync
them to).
"""

from __future__ import annotations

from .errors import IntegrityViolation
from .models import LedgerSnapshot


def verify(snapshot: LedgerSnapshot) -> list[IntegrityViolation]:
    user_ids = snapshot.user_ids()
    violations: list[IntegrityViolation] = []
    for tx in snapshot.transactions:
        if tx.user_id not in user_ids:
            violations.append(IntegrityViolation("transactions", tx.id, tx.user_id))
    for dev in snapshot.devices:
        if dev.user_id not in user_ids:
            violations.append(IntegrityViolation("devices", dev.id, dev.user_id))
    return violations


def repair(snapshot: LedgerSnapshot) -> LedgerSnapshot:
    """Drop every transaction and device that references a missing user."""

    user_ids = snapshot.user_ids()
    return snapshot.model_copy(
        update={
            "transactions": tuple(t for t in snapshot.transactions if t.user_id in user_ids),
            "devices": tuple(d for d in snapshot.devices if d.user_id in user_ids),
        }
    )


def verify_and_repair(
    snapshot: LedgerSnapshot,
) -> tuple[LedgerSnapshot, list[IntegrityViolation]]:
    """Return ``(repaired, violations)``; ``repaired is snapshot`` when clean."""

    violations = verify(snapshot)
    if not violations:
        return snapshot, []
    return repair(snapshot), violations


__all__ = ["repair", "verify", "verify_and_repair"]
