"""Public interface for the ``ledger_sync`` package.

This module re-exports the engine's entry points and public models/types as
the stable import surface. There is no runtime logic here, only symbol
re-exports.
"""

from .config import SyncSettings
from .conflict import resolve
from .connectivity import ConnectivityEvent, ConnectivitySignal
from .errors import (
    DuplicateIdentity,
    IntegrityViolation,
    InvalidCredentials,
    LedgerSyncError,
    NotAuthenticated,
    RecordNotFound,
    RemoteCallFailure,
    StoreReadFailure,
    StoreWriteFailure,
)
from .events import ChangeBus, ChangeNotification
from .integrity import repair, verify, verify_and_repair
from .models import (
    ConflictResolution,
    DeviceRecord,
    LedgerSnapshot,
    QueueItemStatus,
    QueueOperation,
    SyncLogEntry,
    SyncQueueItem,
    SyncState,
    SyncStatus,
    TransactionKind,
    TransactionRecord,
    UserRecord,
)
from .orchestrator import SyncOrchestrator, SyncStats, TriggerReason
from .ports import Authenticator, StoreUserAuthenticator
from .queue import JsonQueueStorage, MemoryQueueStorage, SyncQueue
from .reconcile import MergeResult, has_local_changes, has_user_changes, merge
from .stores import JsonFileRecordStore, MemoryRecordStore, RecordStore, SqlRecordStore
from .sync_log import MemorySyncLog, SqlSyncLog, SyncLog

__all__ = [
    # Engine
    "SyncOrchestrator",
    "SyncStats",
    "TriggerReason",
    "SyncSettings",
    "merge",
    "MergeResult",
    "has_local_changes",
    "has_user_changes",
    "resolve",
    "verify",
    "repair",
    "verify_and_repair",
    # Collaborators
    "Authenticator",
    "StoreUserAuthenticator",
    "ChangeBus",
    "ChangeNotification",
    "ConnectivityEvent",
    "ConnectivitySignal",
    "RecordStore",
    "MemoryRecordStore",
    "JsonFileRecordStore",
    "SqlRecordStore",
    "SyncQueue",
    "MemoryQueueStorage",
    "JsonQueueStorage",
    "SyncLog",
    "MemorySyncLog",
    "SqlSyncLog",
    # Models / types
    "TransactionRecord",
    "TransactionKind",
    "UserRecord",
    "DeviceRecord",
    "LedgerSnapshot",
    "SyncQueueItem",
    "SyncLogEntry",
    "SyncState",
    "SyncStatus",
    "ConflictResolution",
    "QueueOperation",
    "QueueItemStatus",
    # Errors
    "LedgerSyncError",
    "StoreReadFailure",
    "StoreWriteFailure",
    "RemoteCallFailure",
    "DuplicateIdentity",
    "RecordNotFound",
    "NotAuthenticated",
    "InvalidCredentials",
    "IntegrityViolation",
]
