from __future__ import annotations

from ledger_sync.models import ConflictResolution, SyncStatus
from ledger_sync.reconcile import has_local_changes, has_user_changes, merge, records_differ

from tests.helpers.fakes import at, make_record


def _content(records):
    return {r.id: r.content_key() for r in records}


# ---- Rules 1-4 -----------------------------------------------------------------


def test_remote_records_are_emitted_synced_with_cloud_id():
    remote = [make_record("r1", sync_status=SyncStatus.PENDING)]

    result = merge([], remote)

    assert len(result.records) == 1
    (r,) = result.records
    assert r.sync_status is SyncStatus.SYNCED
    assert r.cloud_id == "r1"
    assert result.pending == []


def test_local_only_record_is_pending_and_reported():
    new = make_record("n1", sync_status=SyncStatus.PENDING)

    result = merge([new], [])

    assert [r.id for r in result.pending] == ["n1"]
    assert result.records[0].sync_status is SyncStatus.PENDING


def test_local_only_record_already_synced_is_kept_as_is():
    old = make_record("s1", sync_status=SyncStatus.SYNCED)

    result = merge([old], [])

    assert result.records == [old]
    assert result.pending == []


def test_remote_wins_when_created_at_ties():
    local = make_record("t1", created=5, amount="5.00", sync_status=SyncStatus.PENDING)
    remote = make_record("t1", created=5, amount="7.00")

    result = merge([local], [remote])

    (r,) = result.records
    assert str(r.amount) == "7.00"
    assert r.sync_status is SyncStatus.SYNCED
    assert r.conflict_resolution is ConflictResolution.CLOUD_WINS
    assert len(result.conflicts) == 1
    assert result.pending == []


def test_identical_content_keeps_remote_entry_without_conflict():
    local = make_record("t1", sync_status=SyncStatus.PENDING)
    remote = make_record("t1")

    result = merge([local], [remote])

    assert result.conflicts == []
    assert result.records[0].sync_status is SyncStatus.SYNCED
    assert result.records[0].conflict_resolution is None


def test_local_record_bridged_through_cloud_id():
    local = make_record("local-1", cloud_id="c-9", amount="3.00")
    remote = make_record("c-9", amount="3.00")

    result = merge([local], [remote])

    assert len(result.records) == 1
    assert result.records[0].id == "c-9"
    assert result.pending == []


def test_output_is_sorted_by_occurred_at_descending():
    remote = [make_record("a", occurred=1), make_record("b", occurred=30)]
    local = [make_record("c", occurred=10, sync_status=SyncStatus.PENDING)]

    result = merge(local, remote)

    assert [r.id for r in result.records] == ["b", "c", "a"]


# ---- Properties -------------------------------------------------------------


def _sample_pair():
    a = [
        make_record("t1", created=0, amount="1.00"),
        make_record("t2", created=5, sync_status=SyncStatus.PENDING),
    ]
    b = [
        make_record("t1", created=3, amount="2.00"),
        make_record("t3", created=7),
    ]
    return a, b


def test_merge_converges_and_is_idempotent():
    a, b = _sample_pair()
    m = merge(a, b)
    assert [r.id for r in m.pending] == ["t2"]

    m2 = merge(m.records, m.records)

    # Same identities and content; nothing new to enqueue.
    assert _content(m2.records) == _content(m.records)
    assert m2.pending == []
    assert m2.conflicts == []
    assert all(r.sync_status is SyncStatus.SYNCED for r in m2.records)

    # Once statuses have converged the merge is a fixed point.
    assert merge(m2.records, m2.records).records == m2.records


def test_merge_is_commutative_up_to_conflict_tagging():
    a, b = _sample_pair()

    ab = merge(a, b)
    ba = merge(b, a)

    assert _content(ab.records) == _content(ba.records)
    t1_ab = next(r for r in ab.records if r.id == "t1")
    assert t1_ab.conflict_resolution is ConflictResolution.CLOUD_WINS
    t1_ba = next(r for r in ba.records if r.id == "t1")
    assert t1_ba.conflict_resolution is ConflictResolution.LOCAL_WINS


def test_soft_delete_survives_merge_from_either_side():
    deleted = make_record("t1", created=10, updated=20, deleted=True)
    live = make_record("t1", created=2, updated=2)

    for local, remote in ((deleted, live), (live, deleted)):
        (r,) = merge([local], [remote]).records
        assert r.deleted is True


def test_stale_live_copy_never_resurrects_newer_tombstone():
    # The live copy wins on created_at but the deletion happened later.
    tombstone = make_record("t1", created=0, updated=30, deleted=True)
    live = make_record("t1", created=2, updated=2)

    (r,) = merge([tombstone], [live]).records

    assert r.deleted is True
    assert r.updated_at == at(30)


def test_older_tombstone_does_not_override_newer_winner():
    tombstone = make_record("t1", created=0, updated=1, deleted=True)
    live = make_record("t1", created=2, updated=40)

    (r,) = merge([tombstone], [live]).records

    assert r.deleted is False


# ---- Change detection helpers ----------------------------------------------


def test_has_local_changes_on_count_or_pending():
    synced = [make_record("t1")]
    assert has_local_changes(synced, synced) is False
    assert has_local_changes(synced, []) is True
    assert has_local_changes([make_record("t1", sync_status=SyncStatus.PENDING)], synced) is True


def test_records_differ_ignores_order():
    a = [make_record("t1"), make_record("t2")]
    assert records_differ(a, list(reversed(a))) is False
    assert records_differ(a, [a[0], make_record("t2", amount="99.00")]) is True


def test_has_user_changes_on_count_or_newest_created_at():
    old = [make_record("t1", created=0)]
    assert has_user_changes(old, old) is False
    assert has_user_changes(old + [make_record("t2", created=1)], old) is True
    assert has_user_changes([make_record("t9", created=5)], old) is True
