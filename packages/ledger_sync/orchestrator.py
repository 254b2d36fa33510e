"""Per-session sync orchestration.

One :class:`SyncOrchestrator` exists per authenticated user session on a
device. It owns the outbound queue and runs reconciliation cycles between a
device-local replica and the shared remote replica.

State machine::

    idle ──trigger──▶ syncing ──▶ synced
                         └──────▶ error
    any ──became_offline──▶ offline ──became_online──▶ idle (+ cycle)

Concurrency rules:

- ``sync_in_progress`` is set before the first suspension point of a cycle;
  any trigger that arrives while it is set is dropped, not queued.
- A write lock serializes cycles, local mutations and ``export_snapshot`` so
  every store write is a whole-snapshot replace and no mutation made during
  a cycle is overwritten by that cycle's merge result.
- Store calls run in worker threads (``asyncio.to_thread``).
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Coroutine, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from enum import StrEnum
from typing import Any, TypeAlias

from .config import SyncSettings
from .connectivity import ConnectivityEvent, ConnectivitySignal
from .errors import DuplicateIdentity, LedgerSyncError, NotAuthenticated, RecordNotFound
from .events import ChangeBus, ChangeNotification
from .logging_setup import get_logger
from .models import (
    DeviceRecord,
    LedgerSnapshot,
    QueueOperation,
    SyncLogEntry,
    SyncQueueItem,
    SyncState,
    SyncStatus,
    TransactionKind,
    TransactionRecord,
    UserRecord,
    new_device_id,
    new_record_id,
    utcnow,
)
from .queue import MemoryQueueStorage, QueueStorage, SyncQueue
from .reconcile import has_local_changes, has_user_changes, merge, records_differ
from .stores import RecordStore
from .sync_log import (
    INTEGRITY_REPAIRED,
    SESSION_STARTED,
    SYNC_COMPLETED,
    SYNC_ERROR,
    USER_DATA_CLEARED,
    MemorySyncLog,
    SyncLog,
)

_logger = get_logger("ledger_sync.orchestrator")

_EDITABLE_FIELDS = frozenset({"kind", "amount", "category", "description", "occurred_at"})


class TriggerReason(StrEnum):
    TIMER = "timer"
    FOCUS = "focus"
    VISIBILITY = "visibility"
    FORCED = "forced"
    MUTATION = "mutation"
    REMOTE_CHANGE = "remote_change"
    RECONNECT = "reconnect"


@dataclass(frozen=True, slots=True)
class SyncStats:
    username: str
    device_id: str
    state: SyncState
    online: bool
    sync_in_progress: bool
    last_sync: datetime | None
    last_error: str | None
    devices: list[DeviceRecord] = field(default_factory=list)
    recent_logs: list[SyncLogEntry] = field(default_factory=list)
    queue: dict[str, int] = field(default_factory=dict)


StateListener: TypeAlias = Callable[[SyncState, SyncState], None]


class SyncOrchestrator:
    """Drive reconciliation for one user on one device.

    Parameters
    ----------
    user:
        The authenticated session user (see :class:`ledger_sync.ports.Authenticator`).
    local / remote:
        Device-local and shared replicas.
    queue_storage:
        Durable home of outbound intents; in-memory when omitted.
    sync_log:
        Event sink; in-memory when omitted.
    connectivity:
        Online/visibility signal. Defaults to an always-online signal.
    changes:
        Observer registry notified after each successful cycle.
    """

    def __init__(
        self,
        user: UserRecord,
        *,
        local: RecordStore,
        remote: RecordStore,
        queue_storage: QueueStorage | None = None,
        sync_log: SyncLog | None = None,
        connectivity: ConnectivitySignal | None = None,
        changes: ChangeBus | None = None,
        settings: SyncSettings | None = None,
        device_id: str | None = None,
        device_name: str = "Unknown Device",
        device_type: str = "desktop",
    ) -> None:
        self.user = user
        self.local = local
        self.remote = remote
        self.settings = settings or SyncSettings()
        self.sync_log = sync_log or MemorySyncLog(
            capacity=self.settings.log_capacity, keep=self.settings.log_keep
        )
        self.connectivity = connectivity or ConnectivitySignal()
        self.changes = changes or ChangeBus()
        self.device_id = device_id or new_device_id()
        self.device_name = device_name
        self.device_type = device_type

        self.queue = SyncQueue(
            queue_storage or MemoryQueueStorage(),
            self._apply_item,
            is_online=lambda: self.connectivity.online,
            max_retries=self.settings.max_retries,
            backoff_base=self.settings.retry_backoff_base,
            backoff_max=self.settings.retry_backoff_max,
            completed_keep=self.settings.queue_completed_keep,
        )

        self.state = SyncState.IDLE
        self.sync_in_progress = False
        self.last_sync: datetime | None = None
        self.last_error: str | None = None
        self.cycles_run = 0
        self.integrity_report: list[str] = []

        self._lock = asyncio.Lock()
        self._started = False
        self._remote_ready = False
        self._deferred = False
        self._loop: asyncio.AbstractEventLoop | None = None
        self._timer: asyncio.Task[None] | None = None
        self._tasks: set[asyncio.Task[Any]] = set()
        self._unsubscribe: Callable[[], None] | None = None
        self._state_listeners: list[StateListener] = []

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def started(self) -> bool:
        return self._started

    def on_state_change(self, listener: StateListener) -> None:
        self._state_listeners.append(listener)

    def _set_state(self, new: SyncState) -> None:
        old = self.state
        if old is new:
            return
        self.state = new
        _logger.debug("sync state %s -> %s", old.value, new.value)
        for listener in list(self._state_listeners):
            try:
                listener(old, new)
            except Exception:
                _logger.exception("state listener failed")

    def _require_session(self) -> None:
        if not self._started:
            raise NotAuthenticated("no active sync session; call start() first")

    async def _log_event(self, event: str, details: str | None = None) -> None:
        await asyncio.to_thread(
            self.sync_log.record,
            event,
            username=self.user.username,
            device_id=self.device_id,
            details=details,
        )

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Open both replicas and begin listening for triggers."""

        if self._started:
            return
        self._loop = asyncio.get_running_loop()

        await asyncio.to_thread(self.local.remember_user, self.user)
        violations = await asyncio.to_thread(self.local.open)
        self.integrity_report = list(violations)
        if violations:
            await self._log_event(INTEGRITY_REPAIRED, f"local: {len(violations)} orphan(s)")

        if self.connectivity.online:
            try:
                await self._prepare_remote()
            except LedgerSyncError as e:
                _logger.warning("remote replica unavailable at session start: %s", e)
                self.last_error = str(e)

        pruned = await asyncio.to_thread(
            self.sync_log.prune, timedelta(days=self.settings.log_retention_days)
        )
        if pruned:
            _logger.info("pruned %d old sync log entries", pruned)

        self._unsubscribe = self.connectivity.subscribe(self._on_connectivity)
        self._started = True
        self._set_state(SyncState.IDLE if self.connectivity.online else SyncState.OFFLINE)
        await self._log_event(SESSION_STARTED)
        _logger.info(
            "sync session started for %s on %s", self.user.username, self.device_id
        )

        if self.settings.sync_interval_seconds > 0:
            self._timer = asyncio.create_task(self._timer_loop())

    async def _prepare_remote(self) -> None:
        """Integrity pass on the remote replica and device registration."""

        violations = await asyncio.to_thread(self.remote.open)
        if violations:
            self.integrity_report.extend(violations)
            await self._log_event(INTEGRITY_REPAIRED, f"remote: {len(violations)} orphan(s)")
        await asyncio.to_thread(
            self.remote.register_device,
            DeviceRecord(
                id=self.device_id,
                user_id=self.user.id,
                device_name=self.device_name,
                device_type=self.device_type,
            ),
        )
        self._remote_ready = True

    async def end_session(self) -> None:
        """Stop timers and listeners, wait for scheduled work, reset to idle."""

        if self._timer is not None:
            self._timer.cancel()
            try:
                await self._timer
            except asyncio.CancelledError:
                pass
            self._timer = None
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        await self.wait_idle()
        self._started = False
        self._deferred = False
        self._set_state(SyncState.IDLE)
        _logger.info("sync session ended for %s", self.user.username)

    async def wait_idle(self) -> None:
        """Wait until every trigger scheduled from a callback has finished."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _timer_loop(self) -> None:
        # Cycles run as tracked tasks so cancelling the timer never interrupts one.
        interval = self.settings.sync_interval_seconds
        while True:
            await asyncio.sleep(interval)
            if self.connectivity.visible and not self.sync_in_progress:
                self._spawn(self.trigger(TriggerReason.TIMER))

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            coro.close()
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            task = loop.create_task(coro)
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        else:
            asyncio.run_coroutine_threadsafe(coro, loop)

    def _on_connectivity(self, event: ConnectivityEvent) -> None:
        if event is ConnectivityEvent.BECAME_OFFLINE:
            if not self.sync_in_progress:
                self._set_state(SyncState.OFFLINE)
            return
        if event is ConnectivityEvent.VISIBILITY_LOST:
            return
        if event is ConnectivityEvent.BECAME_ONLINE:
            if self.state is SyncState.OFFLINE:
                self._set_state(SyncState.IDLE)
            if self._deferred:
                _logger.info("back online; running deferred sync")
            reason = TriggerReason.RECONNECT
        elif event is ConnectivityEvent.FOCUS_GAINED:
            reason = TriggerReason.FOCUS
        else:
            reason = TriggerReason.VISIBILITY
        self._spawn(self.trigger(reason))

    def notify_remote_snapshot(
        self,
        previous: Sequence[TransactionRecord],
        current: Sequence[TransactionRecord],
    ) -> bool:
        """Schedule a cycle if another device changed this user's remote set."""

        if not self._started or self.sync_in_progress:
            return False
        if not has_user_changes(current, previous):
            return False
        _logger.info("detected remote changes for %s", self.user.username)
        self._spawn(self.trigger(TriggerReason.REMOTE_CHANGE))
        return True

    async def trigger(self, reason: TriggerReason = TriggerReason.FORCED) -> bool:
        """Run one sync cycle unless offline or already syncing.

        Returns ``True`` when a cycle ran (successfully or not).
        """

        if not self._started:
            return False
        if not self.connectivity.online:
            self._deferred = True
            self._set_state(SyncState.OFFLINE)
            _logger.debug("sync deferred (%s): offline", reason.value)
            return False
        if self.sync_in_progress:
            _logger.debug("sync dropped (%s): cycle already running", reason.value)
            return False

        self.sync_in_progress = True
        try:
            async with self._lock:
                self._deferred = False
                await self._run_cycle(reason)
        finally:
            self.sync_in_progress = False
        if not self.connectivity.online:
            self._set_state(SyncState.OFFLINE)
        return True

    async def _run_cycle(self, reason: TriggerReason) -> None:
        self._set_state(SyncState.SYNCING)
        self.cycles_run += 1
        uid = self.user.id
        try:
            if not self._remote_ready:
                await self._prepare_remote()

            # Confirm queued intents first so the remote read reflects them.
            await self.queue.drain()

            local_records = await asyncio.to_thread(self.local.load, uid)
            remote_records = await asyncio.to_thread(self.remote.load, uid)
            result = merge(local_records, remote_records)

            if records_differ(result.records, local_records):
                await asyncio.to_thread(self.local.save, uid, result.records)
            if has_local_changes(local_records, remote_records) or records_differ(
                result.records, remote_records
            ):
                await asyncio.to_thread(self.remote.save, uid, result.records)

            for record in result.pending:
                await self.queue.enqueue(
                    QueueOperation.CREATE, record.id, record.to_payload(), user_id=uid
                )
        except Exception as e:
            if not isinstance(e, LedgerSyncError):
                _logger.exception("unexpected failure during sync cycle")
            self.last_error = str(e) or e.__class__.__name__
            self._set_state(SyncState.ERROR)
            _logger.warning("sync (%s) failed for %s: %s", reason.value, self.user.username, e)
            await self._log_event(SYNC_ERROR, self.last_error)
            return

        self.last_sync = utcnow()
        self.last_error = None
        self._set_state(SyncState.SYNCED)
        details = (
            f"{reason.value}: {len(result.records)} record(s), "
            f"{len(result.conflicts)} conflict(s), {len(result.pending)} pending"
        )
        await self._log_event(SYNC_COMPLETED, details)
        _logger.info("sync completed for %s (%s)", self.user.username, details)
        self.changes.publish(
            ChangeNotification(username=self.user.username, timestamp=self.last_sync)
        )

    async def _apply_item(self, item: SyncQueueItem) -> None:
        """Confirm one queued intent against the remote replica."""

        uid = item.user_id or self.user.id
        if item.operation is QueueOperation.DELETE:
            raw_at = item.payload.get("updated_at")
            at = datetime.fromisoformat(raw_at) if raw_at else utcnow()
            await asyncio.to_thread(self.remote.soft_delete, uid, item.record_id, at)
            return

        record = TransactionRecord.model_validate(item.payload)
        existing = await asyncio.to_thread(self.remote.get, uid, record.id)
        if existing is not None:
            if item.operation is QueueOperation.CREATE:
                return
            if existing.deleted and existing.updated_at >= record.updated_at:
                # A newer remote deletion wins; the next merge pulls it down.
                _logger.info(
                    "queued %s for %s superseded by remote deletion",
                    item.operation.value,
                    record.id,
                )
                return
        await asyncio.to_thread(self.remote.upsert, uid, record)

    async def force_sync(self) -> SyncStats:
        self._require_session()
        _logger.info("force sync requested by %s", self.user.username)
        await self.trigger(TriggerReason.FORCED)
        return await self.stats()

    # ------------------------------------------------------------------
    # Local mutations
    # ------------------------------------------------------------------

    async def add_transaction(
        self,
        *,
        kind: TransactionKind | str,
        amount: Decimal | str | int | float,
        category: str = "",
        description: str = "",
        occurred_at: datetime | None = None,
    ) -> TransactionRecord:
        self._require_session()
        now = utcnow()
        record = TransactionRecord(
            id=new_record_id(),
            user_id=self.user.id,
            kind=kind,
            amount=amount,
            category=category,
            description=description,
            occurred_at=occurred_at or now,
            created_at=now,
            updated_at=now,
            device_id=self.device_id,
            sync_status=SyncStatus.PENDING,
        )
        async with self._lock:
            if await asyncio.to_thread(self.local.get, self.user.id, record.id) is not None:
                raise DuplicateIdentity(record.id)
            await asyncio.to_thread(self.local.upsert, self.user.id, record)
            await self.queue.enqueue(
                QueueOperation.CREATE, record.id, record.to_payload(), user_id=self.user.id
            )
        await self.trigger(TriggerReason.MUTATION)
        return record

    async def update_transaction(self, record_id: str, **changes: Any) -> TransactionRecord:
        """Edit ``kind``, ``amount``, ``category``, ``description`` or ``occurred_at``."""

        self._require_session()
        unknown = set(changes) - _EDITABLE_FIELDS
        if unknown:
            raise ValueError(f"fields cannot be edited: {', '.join(sorted(unknown))}")
        async with self._lock:
            current = await asyncio.to_thread(self.local.get, self.user.id, record_id)
            if current is None or current.deleted:
                raise RecordNotFound(record_id)
            data = current.model_dump()
            data.update(changes)
            data.update(
                updated_at=utcnow(), device_id=self.device_id, sync_status=SyncStatus.PENDING
            )
            updated = TransactionRecord.model_validate(data)
            await asyncio.to_thread(self.local.upsert, self.user.id, updated)
            await self.queue.enqueue(
                QueueOperation.UPDATE, updated.id, updated.to_payload(), user_id=self.user.id
            )
        await self.trigger(TriggerReason.MUTATION)
        return updated

    async def delete_transaction(self, record_id: str) -> None:
        """Soft-delete a record locally and queue the deletion for the remote."""

        self._require_session()
        at = utcnow()
        async with self._lock:
            found = await asyncio.to_thread(self.local.soft_delete, self.user.id, record_id, at)
            if not found:
                raise RecordNotFound(record_id)
            await self.queue.enqueue(
                QueueOperation.DELETE,
                record_id,
                {"updated_at": at.isoformat()},
                user_id=self.user.id,
            )
        await self.trigger(TriggerReason.MUTATION)

    async def clear_user_data(self) -> None:
        """Remove the user's transactions, devices and queued intents everywhere."""

        self._require_session()
        async with self._lock:
            if self.connectivity.online:
                await asyncio.to_thread(self.remote.clear_user, self.user.id)
            await asyncio.to_thread(self.local.clear_user, self.user.id)
            self.queue.clear(self.user.id)
            await self._log_event(USER_DATA_CLEARED)
        _logger.info("cleared data for %s", self.user.username)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def list_transactions(
        self,
        *,
        kind: TransactionKind | str | None = None,
        category: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int | None = None,
        include_deleted: bool = False,
    ) -> list[TransactionRecord]:
        """Local transactions, newest ``occurred_at`` first."""

        self._require_session()
        records = await asyncio.to_thread(self.local.load, self.user.id)
        kind = TransactionKind(kind) if kind is not None else None
        out = [
            r
            for r in records
            if (include_deleted or not r.deleted)
            and (kind is None or r.kind is kind)
            and (category is None or r.category == category)
            and (start is None or r.occurred_at >= start)
            and (end is None or r.occurred_at <= end)
        ]
        out.sort(key=lambda r: (r.occurred_at, r.id), reverse=True)
        return out[:limit] if limit is not None else out

    async def export_snapshot(self) -> LedgerSnapshot:
        """The user's local replica contents; never taken mid-cycle."""

        self._require_session()
        async with self._lock:
            snapshot = await asyncio.to_thread(self.local.read_snapshot)
        return LedgerSnapshot(
            users=tuple(u for u in snapshot.users if u.id == self.user.id),
            devices=tuple(d for d in snapshot.devices if d.user_id == self.user.id),
            transactions=tuple(snapshot.transactions_for(self.user.id)),
        )

    async def stats(self) -> SyncStats:
        devices: list[DeviceRecord] = []
        if self.connectivity.online:
            try:
                devices = await asyncio.to_thread(self.remote.devices_for, self.user.id)
            except LedgerSyncError as e:
                _logger.warning("cannot list devices: %s", e)
        recent = await asyncio.to_thread(
            self.sync_log.entries,
            username=self.user.username,
            since=utcnow() - timedelta(hours=24),
        )
        return SyncStats(
            username=self.user.username,
            device_id=self.device_id,
            state=self.state,
            online=self.connectivity.online,
            sync_in_progress=self.sync_in_progress,
            last_sync=self.last_sync,
            last_error=self.last_error,
            devices=devices,
            recent_logs=recent,
            queue=self.queue.counts(),
        )


__all__ = ["SyncOrchestrator", "SyncStats", "TriggerReason"]
