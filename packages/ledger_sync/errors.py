"""Error taxonomy for the sync engine.

Only ``StoreWriteFailure`` and ``RemoteCallFailure`` ever leave a sync cycle,
and the orchestrator turns them into an ``error`` state transition plus a
``sync_error`` log entry. ``StoreReadFailure`` is raised inside store
backends and recovered there by substituting an empty snapshot. Integrity
problems are plain values (:class:`IntegrityViolation`), never raised.
"""

from __future__ import annotations

from dataclasses import dataclass


class LedgerSyncError(Exception):
    """Base class for every error raised by ``ledger_sync``."""


class StoreReadFailure(LedgerSyncError):
    """A persisted snapshot is corrupt or unreadable."""


class StoreWriteFailure(LedgerSyncError):
    """Persistence rejected a snapshot write."""


class RemoteCallFailure(LedgerSyncError):
    """The remote replica is unreachable or rejected a call."""


class DuplicateIdentity(LedgerSyncError):
    """Two independently created records collide on identity."""


class RecordNotFound(LedgerSyncError, LookupError):
    """No transaction with the requested id exists for the user."""


class NotAuthenticated(LedgerSyncError):
    """An operation needs a user session and none is active."""


class InvalidCredentials(LedgerSyncError):
    """Raised by authentication collaborators for a bad username/password."""


@dataclass(frozen=True, slots=True)
class IntegrityViolation:
    """A dangling reference found in one replica's snapshot."""

    table: str
    record_id: str
    missing_user_id: str

    def describe(self) -> str:
        noun = "Transaction" if self.table == "transactions" else "Device"
        return f"{noun} {self.record_id} references missing user {self.missing_user_id}"

    def __str__(self) -> str:
        return self.describe()


__all__ = [
    "DuplicateIdentity",
    "IntegrityViolation",
    "InvalidCredentials",
    "LedgerSyncError",
    "NotAuthenticated",
    "RecordNotFound",
    "RemoteCallFailure",
    "StoreReadFailure",
    "StoreWriteFailure",
]
