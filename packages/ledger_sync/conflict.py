"""Last-writer-wins conflict resolution for two versions of one record.

The comparison key is ``created_at``, not ``updated_at``. A later edit to an
older record therefore loses against a copy whose creation timestamp is
newer, and ties go to the remote copy. This is the established policy of
the ledger and is kept deliberately; switching the key changes which device
wins concurrent edits of a pre-existing record.
"""

from __future__ import annotations

from .models import ConflictResolution, SyncStatus, TransactionRecord


def resolve(local: TransactionRecord, remote: TransactionRecord) -> TransactionRecord:
    """Resolve two divergent versions sharing one logical identity.

    Pure and total: never raises for well-formed records.

    - ``local.created_at > remote.created_at``: the local version wins, tagged
      ``conflict_resolved``/``local_wins``, with the remote version attached
      as ``original_cloud_version``.
    - Otherwise (including equal timestamps): the remote version wins, tagged
      ``synced``/``cloud_wins``, with the local version attached as
      ``original_local_version``.
    """

    if local.created_at > remote.created_at:
        return local.model_copy(
            update={
                "sync_status": SyncStatus.CONFLICT_RESOLVED,
                "conflict_resolution": ConflictResolution.LOCAL_WINS,
                "cloud_id": remote.identity,
                "original_cloud_version": remote.without_provenance(),
                "original_local_version": None,
            }
        )
    return remote.model_copy(
        update={
            "sync_status": SyncStatus.SYNCED,
            "conflict_resolution": ConflictResolution.CLOUD_WINS,
            "cloud_id": remote.identity,
            "original_cloud_version": None,
            "original_local_version": local.without_provenance(),
        }
    )


__all__ = ["resolve"]
