"""Outbound sync queue.

Mutations made on this device are recorded as :class:`SyncQueueItem` intents
and confirmed against the remote replica by :meth:`SyncQueue.drain`. Each
failed attempt bumps ``retry_count``; once it exceeds ``max_retries`` the
item is parked as ``failed`` and no longer retried automatically. Failed
items are kept for inspection and can be re-queued by an operator with
:meth:`SyncQueue.retry_failed`.

Drains are not re-entrant. An ``enqueue`` issued while a drain is running
only appends; the running drain (or the next one) picks the item up.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, TypeAlias

from pydantic import TypeAdapter, ValidationError

from .config import DEFAULT_MAX_RETRIES, DEFAULT_QUEUE_COMPLETED_KEEP
from .errors import StoreWriteFailure
from .fileio import read_json, write_json_atomic
from .logging_setup import get_logger
from .models import QueueItemStatus, QueueOperation, SyncQueueItem, utcnow

_logger = get_logger("ledger_sync.queue")

ApplyFn: TypeAlias = Callable[[SyncQueueItem], Awaitable[None]]

_ITEMS = TypeAdapter(list[SyncQueueItem])


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------


class QueueStorage(ABC):
    @abstractmethod
    def load(self) -> list[SyncQueueItem]: ...

    @abstractmethod
    def save(self, items: list[SyncQueueItem]) -> None: ...


class MemoryQueueStorage(QueueStorage):
    def __init__(self, items: list[SyncQueueItem] | None = None) -> None:
        self._items = [i.model_copy() for i in items or []]

    def load(self) -> list[SyncQueueItem]:
        return [i.model_copy() for i in self._items]

    def save(self, items: list[SyncQueueItem]) -> None:
        self._items = [i.model_copy() for i in items]


class JsonQueueStorage(QueueStorage):
    """Queue persisted as a JSON array so intents survive restarts."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def load(self) -> list[SyncQueueItem]:
        try:
            data = read_json(self.path)
            return [] if data is None else _ITEMS.validate_python(data)
        except (OSError, ValueError, ValidationError) as e:
            _logger.warning("queue file %s unreadable (%s); starting empty", self.path, e)
            return []

    def save(self, items: list[SyncQueueItem]) -> None:
        try:
            write_json_atomic(self.path, _ITEMS.dump_python(items, mode="json"))
        except OSError as e:
            raise StoreWriteFailure(f"cannot write queue {self.path}: {e}") from e


# ---------------------------------------------------------------------------
# Queue
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class DrainReport:
    attempted: int = 0
    completed: int = 0
    retried: int = 0
    failed: int = 0


class SyncQueue:
    """Durable FIFO of mutation intents with a bounded retry policy.

    Parameters
    ----------
    storage:
        Where items are persisted after every change.
    apply:
        Coroutine that confirms one item against the remote replica. Any
        exception counts as a failed attempt.
    is_online:
        Connectivity check. ``enqueue`` drains immediately only when it
        returns ``True``, and a drain stops early once it turns ``False``.
    max_retries:
        Retry ceiling; an item is ``failed`` once ``retry_count`` exceeds it.
    backoff_base / backoff_max:
        Delay before a failed item is due again:
        ``min(backoff_max, backoff_base * 2 ** (retry_count - 1))`` seconds.
        A base of ``0`` makes every item due on every drain.
    completed_keep:
        Completed items retained for inspection; older ones are purged at the
        end of each drain.
    """

    def __init__(
        self,
        storage: QueueStorage,
        apply: ApplyFn,
        *,
        is_online: Callable[[], bool] = lambda: True,
        max_retries: int = DEFAULT_MAX_RETRIES,
        backoff_base: float = 0.0,
        backoff_max: float = 300.0,
        clock: Callable[[], datetime] = utcnow,
        completed_keep: int = DEFAULT_QUEUE_COMPLETED_KEEP,
    ) -> None:
        self._storage = storage
        self._apply = apply
        self._is_online = is_online
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self._clock = clock
        self.completed_keep = completed_keep
        self._items: list[SyncQueueItem] = storage.load()
        self._draining = False

    @property
    def draining(self) -> bool:
        return self._draining

    def _persist(self) -> None:
        self._storage.save(self._items)

    # ---- inspection ---------------------------------------------------------

    def items(self) -> list[SyncQueueItem]:
        return [i.model_copy() for i in self._items]

    def pending_items(self) -> list[SyncQueueItem]:
        return [i.model_copy() for i in self._items if i.status is QueueItemStatus.PENDING]

    def failed_items(self) -> list[SyncQueueItem]:
        return [i.model_copy() for i in self._items if i.status is QueueItemStatus.FAILED]

    def counts(self) -> dict[str, int]:
        out = {s.value: 0 for s in QueueItemStatus}
        for i in self._items:
            out[i.status.value] += 1
        return out

    def has_pending(
        self, operation: QueueOperation, record_id: str, collection: str = "transactions"
    ) -> bool:
        key = (operation.value, collection, record_id)
        return any(
            i.status is QueueItemStatus.PENDING and i.dedupe_key() == key for i in self._items
        )

    # ---- mutation -----------------------------------------------------------

    async def enqueue(
        self,
        operation: QueueOperation,
        record_id: str,
        payload: Mapping[str, Any] | None = None,
        *,
        collection: str = "transactions",
        user_id: str | None = None,
    ) -> SyncQueueItem:
        """Append a pending intent and drain right away when online.

        A pending item for the same operation, collection and record is
        reused (its payload refreshed) instead of appending a duplicate.
        """

        key = (operation.value, collection, record_id)
        item = next(
            (
                i
                for i in self._items
                if i.status is QueueItemStatus.PENDING and i.dedupe_key() == key
            ),
            None,
        )
        if item is None:
            item = SyncQueueItem(
                operation=operation,
                target_collection=collection,
                record_id=record_id,
                user_id=user_id,
                payload=dict(payload or {}),
                created_at=self._clock(),
            )
            self._items.append(item)
            _logger.debug("queued %s %s/%s", operation.value, collection, record_id)
        else:
            item.payload = dict(payload or item.payload)
            _logger.debug("coalesced %s %s/%s", operation.value, collection, record_id)
        self._persist()

        if self._is_online() and not self._draining:
            await self.drain()
        return item.model_copy()

    def _due(self, item: SyncQueueItem, now: datetime) -> bool:
        if item.status is not QueueItemStatus.PENDING:
            return False
        return item.next_attempt_at is None or item.next_attempt_at <= now

    def _backoff(self, retry_count: int) -> timedelta | None:
        if self.backoff_base <= 0:
            return None
        seconds = min(self.backoff_max, self.backoff_base * 2 ** max(0, retry_count - 1))
        return timedelta(seconds=seconds)

    async def drain(self) -> DrainReport:
        """Attempt every due pending item once, in FIFO order."""

        if self._draining:
            return DrainReport()
        self._draining = True
        attempted = completed = retried = failed = 0
        try:
            now = self._clock()
            for item in [i for i in self._items if self._due(i, now)]:
                if not self._is_online():
                    break
                attempted += 1
                try:
                    await self._apply(item)
                except Exception as e:  # any failure counts as one attempt
                    item.retry_count += 1
                    item.last_error = str(e) or e.__class__.__name__
                    if item.retry_count > self.max_retries:
                        item.status = QueueItemStatus.FAILED
                        item.next_attempt_at = None
                        failed += 1
                        _logger.warning(
                            "queue item %s (%s %s) failed after %d attempts: %s",
                            item.id,
                            item.operation.value,
                            item.record_id,
                            item.retry_count,
                            item.last_error,
                        )
                    else:
                        delay = self._backoff(item.retry_count)
                        item.next_attempt_at = None if delay is None else now + delay
                        retried += 1
                        _logger.info(
                            "queue item %s attempt %d failed: %s",
                            item.id,
                            item.retry_count,
                            item.last_error,
                        )
                else:
                    item.status = QueueItemStatus.COMPLETED
                    item.last_error = None
                    item.next_attempt_at = None
                    completed += 1
                self._persist()
            self.purge_completed(keep=self.completed_keep)
        finally:
            self._draining = False
        return DrainReport(attempted, completed, retried, failed)

    def retry_failed(self, item_id: str | None = None) -> int:
        """Move failed items (or the one with ``item_id``) back to pending."""

        moved = 0
        for item in self._items:
            if item.status is not QueueItemStatus.FAILED:
                continue
            if item_id is not None and item.id != item_id:
                continue
            item.status = QueueItemStatus.PENDING
            item.retry_count = 0
            item.last_error = None
            item.next_attempt_at = None
            moved += 1
        if moved:
            self._persist()
        return moved

    def purge_completed(self, keep: int = 0) -> int:
        """Drop completed items, oldest first, leaving at most ``keep`` of them."""

        done = [i for i in self._items if i.status is QueueItemStatus.COMPLETED]
        stale = {i.id for i in done[: max(0, len(done) - keep)]}
        if not stale:
            return 0
        self._items = [i for i in self._items if i.id not in stale]
        removed = len(stale)
        if removed:
            self._persist()
        return removed

    def clear(self, user_id: str | None = None) -> None:
        """Forget every item (or every item queued for ``user_id``)."""

        if user_id is None:
            self._items = []
        else:
            self._items = [i for i in self._items if i.user_id != user_id]
        self._persist()


__all__ = [
    "ApplyFn",
    "DrainReport",
    "JsonQueueStorage",
    "MemoryQueueStorage",
    "QueueStorage",
    "SyncQueue",
]
