"""Append-only, bounded sync event log.

Write-only from the engine's point of view: reconciliation never reads it.
A sink that fails to record an event logs the failure and carries on; the
log must never take a sync cycle down with it.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timedelta

from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError

from db.client import session_scope
from db.models.ledger import LsSyncLog

from .config import DEFAULT_LOG_CAPACITY, DEFAULT_LOG_KEEP
from .logging_setup import get_logger
from .models import SyncLogEntry, utcnow

_logger = get_logger("ledger_sync.sync_log")

SYNC_COMPLETED = "sync_completed"
SYNC_ERROR = "sync_error"
SESSION_STARTED = "session_started"
INTEGRITY_REPAIRED = "integrity_repaired"
USER_DATA_CLEARED = "user_data_cleared"


class SyncLog(ABC):
    """Ring-bounded event sink.

    Once more than ``capacity`` entries are stored the oldest are dropped so
    that only the newest ``keep`` remain.
    """

    def __init__(
        self, *, capacity: int = DEFAULT_LOG_CAPACITY, keep: int = DEFAULT_LOG_KEEP
    ) -> None:
        self.capacity = capacity
        self.keep = min(keep, capacity)

    @abstractmethod
    def _append(self, entry: SyncLogEntry) -> None: ...

    @abstractmethod
    def _trim(self) -> None: ...

    @abstractmethod
    def entries(
        self, *, username: str | None = None, since: datetime | None = None
    ) -> list[SyncLogEntry]:
        """Entries oldest first, optionally filtered."""

    @abstractmethod
    def prune(self, older_than: timedelta) -> int:
        """Delete entries older than ``now - older_than``; return the count."""

    def record(
        self,
        event: str,
        *,
        username: str | None = None,
        device_id: str | None = None,
        details: str | None = None,
    ) -> SyncLogEntry | None:
        entry = SyncLogEntry(event=event, username=username, device_id=device_id, details=details)
        try:
            self._append(entry)
            self._trim()
        except Exception:
            _logger.exception("failed to record sync log event %s", event)
            return None
        return entry


class MemorySyncLog(SyncLog):
    def __init__(
        self, *, capacity: int = DEFAULT_LOG_CAPACITY, keep: int = DEFAULT_LOG_KEEP
    ) -> None:
        super().__init__(capacity=capacity, keep=keep)
        self._entries: list[SyncLogEntry] = []

    def _append(self, entry: SyncLogEntry) -> None:
        self._entries.append(entry)

    def _trim(self) -> None:
        if len(self._entries) > self.capacity:
            self._entries = self._entries[-self.keep :]

    def entries(
        self, *, username: str | None = None, since: datetime | None = None
    ) -> list[SyncLogEntry]:
        return [
            e
            for e in self._entries
            if (username is None or e.username == username)
            and (since is None or e.timestamp > since)
        ]

    def prune(self, older_than: timedelta) -> int:
        cutoff = utcnow() - older_than
        before = len(self._entries)
        self._entries = [e for e in self._entries if e.timestamp > cutoff]
        return before - len(self._entries)


class SqlSyncLog(SyncLog):
    """Log kept in ``ls_sync_log`` next to the shared replica."""

    def __init__(
        self,
        database_url: str | None = None,
        *,
        capacity: int = DEFAULT_LOG_CAPACITY,
        keep: int = DEFAULT_LOG_KEEP,
    ) -> None:
        super().__init__(capacity=capacity, keep=keep)
        self.database_url = database_url

    def _append(self, entry: SyncLogEntry) -> None:
        with session_scope(database_url=self.database_url) as s:
            s.add(
                LsSyncLog(
                    event=entry.event,
                    username=entry.username,
                    device_id=entry.device_id,
                    timestamp=entry.timestamp,
                    details=entry.details,
                )
            )

    def _trim(self) -> None:
        with session_scope(database_url=self.database_url) as s:
            total = s.scalar(select(func.count()).select_from(LsSyncLog)) or 0
            if total <= self.capacity:
                return
            # Newest ``keep`` ids survive; ids are monotonically assigned.
            threshold = s.scalar(
                select(LsSyncLog.id).order_by(LsSyncLog.id.desc()).offset(self.keep - 1).limit(1)
            )
            if threshold is not None:
                s.execute(delete(LsSyncLog).where(LsSyncLog.id < threshold))

    def entries(
        self, *, username: str | None = None, since: datetime | None = None
    ) -> list[SyncLogEntry]:
        stmt = select(LsSyncLog).order_by(LsSyncLog.id)
        if username is not None:
            stmt = stmt.where(LsSyncLog.username == username)
        if since is not None:
            stmt = stmt.where(LsSyncLog.timestamp > since)
        try:
            with session_scope(database_url=self.database_url) as s:
                return [
                    SyncLogEntry(
                        event=row.event,
                        username=row.username,
                        device_id=row.device_id,
                        timestamp=row.timestamp,
                        details=row.details,
                    )
                    for row in s.scalars(stmt)
                ]
        except SQLAlchemyError:
            _logger.exception("failed to read sync log")
            return []

    def prune(self, older_than: timedelta) -> int:
        cutoff = utcnow() - older_than
        try:
            with session_scope(database_url=self.database_url) as s:
                result = s.execute(delete(LsSyncLog).where(LsSyncLog.timestamp < cutoff))
                return int(result.rowcount or 0)
        except SQLAlchemyError:
            _logger.exception("failed to prune sync log")
            return 0


__all__ = [
    "INTEGRITY_REPAIRED",
    "MemorySyncLog",
    "SESSION_STARTED",
    "SYNC_COMPLETED",
    "SYNC_ERROR",
    "SqlSyncLog",
    "SyncLog",
    "USER_DATA_CLEARED",
]
