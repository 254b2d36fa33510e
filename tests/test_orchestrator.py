from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from ledger_sync.config import SyncSettings
from ledger_sync.connectivity import ConnectivitySignal
from ledger_sync.errors import NotAuthenticated, RecordNotFound
from ledger_sync.events import ChangeNotification
from ledger_sync.models import (
    ConflictResolution,
    QueueItemStatus,
    QueueOperation,
    SyncState,
    SyncStatus,
    TransactionKind,
    utcnow,
)
from ledger_sync.orchestrator import SyncOrchestrator, TriggerReason
from ledger_sync.stores import RecordStore
from ledger_sync.sync_log import INTEGRITY_REPAIRED, SESSION_STARTED, SYNC_COMPLETED, SYNC_ERROR

from tests.helpers.fakes import (
    ALICE,
    T0,
    FlakyRecordStore,
    GatedRecordStore,
    ReadOnlyRecordStore,
    make_record,
    store_with,
)


def _session(
    local: RecordStore | None = None,
    remote: RecordStore | None = None,
    *,
    online: bool = True,
    interval: float = 0.0,
    **settings: object,
) -> tuple[SyncOrchestrator, ConnectivitySignal]:
    conn = ConnectivitySignal(online=online)
    orch = SyncOrchestrator(
        ALICE,
        local=local if local is not None else store_with([], name="local"),
        remote=remote if remote is not None else store_with([], name="remote"),
        connectivity=conn,
        settings=SyncSettings(sync_interval_seconds=interval, **settings),
        device_id="device_a",
    )
    return orch, conn


def _events(orch: SyncOrchestrator) -> list[str]:
    return [e.event for e in orch.sync_log.entries()]


# ---- Session lifecycle --------------------------------------------------------


def test_start_registers_device_and_starts_idle():
    orch, _ = _session()

    async def scenario():
        await orch.start()
        await orch.end_session()

    asyncio.run(scenario())

    assert orch.state is SyncState.IDLE
    assert [d.id for d in orch.remote.devices_for(ALICE.id)] == ["device_a"]
    assert orch.local.find_user("alice") == ALICE
    assert SESSION_STARTED in _events(orch)


def test_start_offline_defers_remote_work():
    remote = store_with([], name="remote")
    orch, _ = _session(remote=remote, online=False)

    asyncio.run(orch.start())

    assert orch.state is SyncState.OFFLINE
    assert remote.devices_for(ALICE.id) == []


def test_operations_require_a_session():
    orch, _ = _session()

    with pytest.raises(NotAuthenticated):
        asyncio.run(orch.add_transaction(kind="expense", amount="1.00"))
    assert asyncio.run(orch.trigger()) is False


def test_integrity_pass_runs_before_first_reconcile():
    local = store_with(
        [make_record("t1"), make_record("orphan", user_id="ghost")], name="local"
    )
    orch, _ = _session(local=local)

    async def scenario():
        await orch.start()
        await orch.trigger(TriggerReason.FORCED)

    asyncio.run(scenario())

    assert orch.integrity_report == ["Transaction orphan references missing user ghost"]
    assert {t.id for t in local.read_snapshot().transactions} == {"t1"}
    assert INTEGRITY_REPAIRED in _events(orch)
    assert [r.id for r in orch.remote.load(ALICE.id)] == ["t1"]


# ---- Sync cycles ----------------------------------------------------------------


def test_remote_copy_wins_when_created_at_ties():
    local = store_with(
        [make_record("t1", created=5, amount="5.00", sync_status=SyncStatus.PENDING)],
        name="local",
    )
    remote = store_with([make_record("t1", created=5, amount="7.00")], name="remote")
    orch, _ = _session(local=local, remote=remote)
    seen: list[ChangeNotification] = []
    orch.changes.subscribe(seen.append)
    transitions: list[tuple[SyncState, SyncState]] = []
    orch.on_state_change(lambda old, new: transitions.append((old, new)))

    async def scenario():
        await orch.start()
        return await orch.trigger(TriggerReason.FORCED)

    assert asyncio.run(scenario()) is True

    (r,) = local.load(ALICE.id)
    assert str(r.amount) == "7.00"
    assert r.sync_status is SyncStatus.SYNCED
    assert r.conflict_resolution is ConflictResolution.CLOUD_WINS
    assert orch.state is SyncState.SYNCED
    assert orch.last_sync is not None
    assert transitions == [
        (SyncState.IDLE, SyncState.SYNCING),
        (SyncState.SYNCING, SyncState.SYNCED),
    ]
    assert SYNC_COMPLETED in _events(orch)
    assert [n.username for n in seen] == ["alice"]


def test_offline_record_is_queued_once_and_pushed_on_reconnect():
    remote = store_with([], name="remote")
    orch, conn = _session(remote=remote, online=False)

    async def scenario():
        await orch.start()
        record = await orch.add_transaction(kind="expense", amount="4.20", category="Coffee")
        assert orch.state is SyncState.OFFLINE
        assert [i.operation for i in orch.queue.pending_items()] == [QueueOperation.CREATE]

        # A deferred trigger does not enqueue a second intent.
        assert await orch.trigger(TriggerReason.TIMER) is False
        assert len(orch.queue.items()) == 1

        conn.set_online(True)
        await orch.wait_idle()
        await orch.trigger(TriggerReason.FORCED)
        return record

    record = asyncio.run(scenario())

    (pushed,) = remote.load(ALICE.id)
    assert pushed.id == record.id
    assert pushed.sync_status is SyncStatus.SYNCED
    (local_copy,) = orch.local.load(ALICE.id)
    assert local_copy.sync_status is SyncStatus.SYNCED
    items = orch.queue.items()
    assert [(i.operation, i.status) for i in items] == [
        (QueueOperation.CREATE, QueueItemStatus.COMPLETED)
    ]
    assert orch.state is SyncState.SYNCED
    assert orch.cycles_run == 2


def test_concurrent_triggers_run_a_single_cycle():
    remote = GatedRecordStore(name="remote")
    remote.remember_user(ALICE)
    orch, _ = _session(remote=remote)

    async def scenario():
        await orch.start()
        first = asyncio.create_task(orch.trigger(TriggerReason.FORCED))
        while not remote.entered.is_set():
            await asyncio.sleep(0.005)
        dropped = [
            await orch.trigger(TriggerReason.TIMER),
            await orch.trigger(TriggerReason.FOCUS),
        ]
        remote.gate.set()
        return await first, dropped

    ran, dropped = asyncio.run(scenario())

    assert ran is True
    assert dropped == [False, False]
    assert orch.cycles_run == 1
    assert remote.load_calls == 1


def test_mutation_during_cycle_is_not_lost():
    remote = GatedRecordStore(name="remote")
    remote.remember_user(ALICE)
    orch, _ = _session(remote=remote)

    async def scenario():
        await orch.start()
        cycle = asyncio.create_task(orch.trigger(TriggerReason.FORCED))
        while not remote.entered.is_set():
            await asyncio.sleep(0.005)
        add = asyncio.create_task(orch.add_transaction(kind="income", amount="100"))
        await asyncio.sleep(0.02)
        remote.gate.set()
        await cycle
        return await add

    record = asyncio.run(scenario())

    assert [r.id for r in orch.local.load(ALICE.id)] == [record.id]
    assert [r.id for r in remote.read_snapshot().transactions] == [record.id]


def test_export_snapshot_waits_for_in_flight_cycle():
    remote = GatedRecordStore(
        store_with([make_record("r1")]).read_snapshot(), name="remote"
    )
    orch, _ = _session(remote=remote)

    async def scenario():
        await orch.start()
        cycle = asyncio.create_task(orch.trigger(TriggerReason.FORCED))
        while not remote.entered.is_set():
            await asyncio.sleep(0.005)
        export = asyncio.create_task(orch.export_snapshot())
        await asyncio.sleep(0.02)
        assert not export.done()
        remote.gate.set()
        await cycle
        return await export

    snapshot = asyncio.run(scenario())

    assert [t.id for t in snapshot.transactions] == ["r1"]
    assert [u.id for u in snapshot.users] == [ALICE.id]


def test_remote_failure_moves_to_error_without_rollback():
    pending = make_record("t1", sync_status=SyncStatus.PENDING)
    local = store_with([pending], name="local")
    remote = FlakyRecordStore(store_with([]).read_snapshot(), name="remote")
    remote.down = True
    orch, _ = _session(local=local, remote=remote)

    async def scenario():
        await orch.start()
        await orch.trigger(TriggerReason.FORCED)
        assert orch.state is SyncState.ERROR
        remote.down = False
        await orch.trigger(TriggerReason.FORCED)

    asyncio.run(scenario())

    errors = [e for e in orch.sync_log.entries() if e.event == SYNC_ERROR]
    assert len(errors) == 1
    assert "connection refused" in (errors[0].details or "")
    assert orch.state is SyncState.SYNCED
    assert orch.last_error is None
    assert [r.id for r in remote.load(ALICE.id)] == ["t1"]


def test_local_write_failure_is_reported_as_error():
    local = ReadOnlyRecordStore(
        store_with([make_record("t1", sync_status=SyncStatus.PENDING)]).read_snapshot(),
        name="local",
    )
    # The merge brings in r1, so the local replica must be rewritten.
    orch, _ = _session(local=local, remote=store_with([make_record("r1")], name="remote"))

    async def scenario():
        await orch.start()
        await orch.trigger(TriggerReason.FORCED)

    asyncio.run(scenario())

    assert orch.state is SyncState.ERROR
    assert "disk full" in (orch.last_error or "")


# ---- Triggers -----------------------------------------------------------------


def test_connectivity_edges_drive_state_and_cycles():
    orch, conn = _session()

    async def scenario():
        await orch.start()
        conn.set_online(False)
        assert orch.state is SyncState.OFFLINE
        conn.focus()  # ignored while offline
        await orch.wait_idle()
        assert orch.cycles_run == 0

        conn.set_online(True)
        await orch.wait_idle()
        assert orch.cycles_run == 1

        conn.set_visible(False)
        conn.set_visible(True)
        await orch.wait_idle()
        conn.focus()
        await orch.wait_idle()

    asyncio.run(scenario())

    # Visibility regained and focus each trigger a cycle.
    assert orch.cycles_run == 3
    assert orch.state is SyncState.SYNCED


def test_remote_change_notification_schedules_cycle():
    orch, _ = _session()
    before = [make_record("t1", created=0)]
    after = before + [make_record("t2", created=3)]

    async def scenario():
        await orch.start()
        unchanged = orch.notify_remote_snapshot(before, list(before))
        changed = orch.notify_remote_snapshot(before, after)
        await orch.wait_idle()
        return unchanged, changed

    unchanged, changed = asyncio.run(scenario())

    assert unchanged is False
    assert changed is True
    assert orch.cycles_run == 1


def test_timer_fires_only_while_visible():
    async def run(visible: bool) -> int:
        orch, conn = _session(interval=0.01)
        conn.set_visible(visible)
        await orch.start()
        await asyncio.sleep(0.1)
        await orch.end_session()
        return orch.cycles_run

    assert asyncio.run(run(True)) >= 1
    assert asyncio.run(run(False)) == 0


def test_end_session_resets_to_idle_and_stops_listening():
    orch, conn = _session()

    async def scenario():
        await orch.start()
        await orch.trigger(TriggerReason.FORCED)
        await orch.end_session()
        conn.set_online(False)
        conn.set_online(True)
        await orch.wait_idle()

    asyncio.run(scenario())

    assert orch.state is SyncState.IDLE
    assert orch.cycles_run == 1


# ---- Mutations and queries ----------------------------------------------------


def test_update_and_delete_propagate_to_remote():
    remote = store_with([], name="remote")
    orch, _ = _session(remote=remote)

    async def scenario():
        await orch.start()
        rec = await orch.add_transaction(kind="expense", amount="10.00", category="Food")
        await orch.update_transaction(rec.id, amount="42.50", description="dinner")
        await orch.delete_transaction(rec.id)
        with pytest.raises(RecordNotFound):
            await orch.update_transaction(rec.id, amount="1.00")
        with pytest.raises(RecordNotFound):
            await orch.delete_transaction("txn_missing")
        with pytest.raises(ValueError):
            await orch.update_transaction(rec.id, user_id="someone-else")
        visible = await orch.list_transactions()
        everything = await orch.list_transactions(include_deleted=True)
        return rec, visible, everything

    rec, visible, everything = asyncio.run(scenario())

    (stored,) = remote.load(ALICE.id)
    assert stored.id == rec.id
    assert str(stored.amount) == "42.50"
    assert stored.description == "dinner"
    assert stored.deleted is True
    assert visible == []
    assert [r.id for r in everything] == [rec.id]
    ops = [i.operation for i in orch.queue.items()]
    assert ops == [QueueOperation.CREATE, QueueOperation.UPDATE, QueueOperation.DELETE]


def test_list_transactions_filters_and_orders():
    orch, _ = _session(online=False)

    async def scenario():
        await orch.start()
        for i, (kind, cat) in enumerate(
            [("expense", "Food"), ("income", "Salary"), ("expense", "Food"), ("expense", "Rent")]
        ):
            await orch.add_transaction(
                kind=kind, amount=str(i + 1), category=cat, occurred_at=T0 + timedelta(days=i)
            )
        return (
            await orch.list_transactions(),
            await orch.list_transactions(kind=TransactionKind.EXPENSE, category="Food"),
            await orch.list_transactions(start=T0 + timedelta(days=1), end=T0 + timedelta(days=2)),
            await orch.list_transactions(limit=2),
        )

    everything, food, window, top2 = asyncio.run(scenario())

    assert [str(r.amount) for r in everything] == ["4.00", "3.00", "2.00", "1.00"]
    assert [str(r.amount) for r in food] == ["3.00", "1.00"]
    assert [str(r.amount) for r in window] == ["3.00", "2.00"]
    assert [str(r.amount) for r in top2] == ["4.00", "3.00"]


def test_stats_and_force_sync():
    orch, _ = _session()

    async def scenario():
        await orch.start()
        await orch.add_transaction(kind="expense", amount="3.00")
        return await orch.force_sync()

    stats = asyncio.run(scenario())

    assert stats.username == "alice"
    assert stats.device_id == "device_a"
    assert stats.state is SyncState.SYNCED
    assert stats.online is True
    assert [d.id for d in stats.devices] == ["device_a"]
    events = [e.event for e in stats.recent_logs]
    assert events[0] == SESSION_STARTED
    assert events.count(SYNC_COMPLETED) == 2
    assert stats.queue == {"pending": 0, "completed": 1, "failed": 0}


def test_clear_user_data_empties_both_replicas():
    remote = store_with([make_record("r1")], name="remote")
    orch, _ = _session(remote=remote)

    async def scenario():
        await orch.start()
        await orch.trigger(TriggerReason.FORCED)
        await orch.add_transaction(kind="expense", amount="1.00")
        await orch.clear_user_data()

    asyncio.run(scenario())

    assert remote.load(ALICE.id) == []
    assert orch.local.load(ALICE.id) == []
    assert remote.devices_for(ALICE.id) == []
    assert orch.queue.items() == []


def test_queued_edit_does_not_revive_newer_remote_deletion():
    local = store_with([make_record("t1", amount="5.00")], name="local")
    remote = store_with([make_record("t1", amount="5.00")], name="remote")
    orch, conn = _session(local=local, remote=remote, online=False)

    async def scenario():
        await orch.start()
        await orch.update_transaction("t1", amount="9.99")
        assert [i.operation for i in orch.queue.pending_items()] == [QueueOperation.UPDATE]

        # Another device deletes the record after this device's offline edit.
        remote.soft_delete(ALICE.id, "t1", utcnow() + timedelta(hours=1))
        conn.set_online(True)
        await orch.wait_idle()

    asyncio.run(scenario())

    (remote_copy,) = remote.load(ALICE.id)
    assert remote_copy.deleted is True
    assert str(remote_copy.amount) == "5.00"
    (local_copy,) = local.load(ALICE.id)
    assert local_copy.deleted is True
    assert orch.queue.pending_items() == []
    assert orch.state is SyncState.SYNCED


def test_completed_queue_items_are_trimmed_after_each_drain():
    orch, _ = _session(queue_completed_keep=3)

    async def scenario():
        await orch.start()
        for n in range(6):
            await orch.add_transaction(kind="expense", amount=f"{n}.00")

    asyncio.run(scenario())

    assert orch.queue.counts() == {"pending": 0, "completed": 3, "failed": 0}
    assert len(orch.remote.load(ALICE.id)) == 6
