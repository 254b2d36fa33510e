from __future__ import annotations

from ledger_sync.conflict import resolve
from ledger_sync.models import ConflictResolution, SyncStatus

from tests.helpers.fakes import make_record


def test_newer_created_at_on_local_wins_and_keeps_cloud_copy():
    local = make_record("t1", created=10, amount="5.00", sync_status=SyncStatus.PENDING)
    remote = make_record("t1", created=5, amount="7.00")

    out = resolve(local, remote)

    assert out.amount == local.amount
    assert out.sync_status is SyncStatus.CONFLICT_RESOLVED
    assert out.conflict_resolution is ConflictResolution.LOCAL_WINS
    assert out.cloud_id == "t1"
    assert out.original_cloud_version is not None
    assert out.original_cloud_version.amount == remote.amount
    assert out.original_local_version is None


def test_equal_created_at_goes_to_remote():
    local = make_record("t1", created=5, amount="5.00")
    remote = make_record("t1", created=5, amount="7.00")

    out = resolve(local, remote)

    assert out.amount == remote.amount
    assert out.sync_status is SyncStatus.SYNCED
    assert out.conflict_resolution is ConflictResolution.CLOUD_WINS
    assert out.original_local_version is not None
    assert out.original_local_version.amount == local.amount


def test_ordering_key_is_created_at_not_updated_at():
    # The local copy was edited later, but the remote copy was created later:
    # creation time decides.
    local = make_record("t1", created=0, updated=60, description="edited on device")
    remote = make_record("t1", created=1, updated=2, description="cloud copy")

    out = resolve(local, remote)

    assert out.description == "cloud copy"
    assert out.conflict_resolution is ConflictResolution.CLOUD_WINS


def test_provenance_does_not_nest():
    older = make_record("t1", created=0, amount="1.00")
    first = resolve(make_record("t1", created=3, amount="2.00"), older)
    assert first.original_cloud_version is not None

    second = resolve(make_record("t1", created=9, amount="3.00"), first)

    assert second.original_cloud_version is not None
    assert second.original_cloud_version.original_cloud_version is None


def test_resolve_is_deterministic():
    local = make_record("t1", created=10, amount="5.00")
    remote = make_record("t1", created=5, amount="7.00")

    assert resolve(local, remote) == resolve(local, remote)
