"""Runtime settings resolved from the environment.

Every knob is read from a ``LEDGER_SYNC_*`` environment variable (the CLI
loads a local ``.env`` first). Unparseable or out-of-range values fall back to
the defaults rather than failing startup.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

# Queue items are marked failed once retry_count exceeds this ceiling.
DEFAULT_MAX_RETRIES: int = 3
DEFAULT_SYNC_INTERVAL_SECONDS: float = 3.0
DEFAULT_LOG_CAPACITY: int = 1000
DEFAULT_LOG_KEEP: int = 500
DEFAULT_LOG_RETENTION_DAYS: int = 7
# Completed queue items kept for inspection; older ones are purged after a drain.
DEFAULT_QUEUE_COMPLETED_KEEP: int = 100


def _env_int(env: Mapping[str, str], name: str, default: int, *, minimum: int = 0) -> int:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw.strip())
    except ValueError:
        return default
    return value if value >= minimum else default


def _env_float(
    env: Mapping[str, str], name: str, default: float, *, minimum: float = 0.0
) -> float:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw.strip())
    except ValueError:
        return default
    return value if value >= minimum else default


def _default_data_dir() -> Path:
    return (Path.cwd() / ".ledger_sync").resolve()


@dataclass(frozen=True, slots=True)
class SyncSettings:
    """Tunables for one sync session.

    Attributes
    ----------
    sync_interval_seconds:
        Period of the timer trigger. ``0`` disables the timer.
    max_retries:
        Retry ceiling for outbound queue items.
    retry_backoff_base:
        Base delay (seconds) for exponential backoff between drain attempts of
        a failing item. ``0`` retries on every drain.
    retry_backoff_max:
        Upper bound for a single backoff delay.
    log_capacity / log_keep:
        When the sync log grows past ``log_capacity`` entries it is trimmed to
        the newest ``log_keep``.
    log_retention_days:
        Entries older than this are pruned when a session starts.
    queue_completed_keep:
        Number of completed queue items retained after each drain.
    """

    database_url: str | None = None
    data_dir: Path = field(default_factory=_default_data_dir)
    sync_interval_seconds: float = DEFAULT_SYNC_INTERVAL_SECONDS
    max_retries: int = DEFAULT_MAX_RETRIES
    retry_backoff_base: float = 0.0
    retry_backoff_max: float = 300.0
    log_capacity: int = DEFAULT_LOG_CAPACITY
    log_keep: int = DEFAULT_LOG_KEEP
    log_retention_days: int = DEFAULT_LOG_RETENTION_DAYS
    queue_completed_keep: int = DEFAULT_QUEUE_COMPLETED_KEEP

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> SyncSettings:
        env = os.environ if env is None else env

        data_dir_raw = env.get("LEDGER_SYNC_DATA_DIR")
        data_dir = (
            Path(data_dir_raw).expanduser().resolve()
            if data_dir_raw and data_dir_raw.strip()
            else _default_data_dir()
        )

        log_capacity = _env_int(env, "LEDGER_SYNC_LOG_CAPACITY", DEFAULT_LOG_CAPACITY, minimum=1)
        log_keep = _env_int(env, "LEDGER_SYNC_LOG_KEEP", DEFAULT_LOG_KEEP, minimum=1)
        # Trimming to more than the ceiling would never shrink the log.
        log_keep = min(log_keep, log_capacity)

        return cls(
            database_url=(env.get("DATABASE_URL") or None),
            data_dir=data_dir,
            sync_interval_seconds=_env_float(
                env, "LEDGER_SYNC_INTERVAL_SECONDS", DEFAULT_SYNC_INTERVAL_SECONDS
            ),
            max_retries=_env_int(env, "LEDGER_SYNC_MAX_RETRIES", DEFAULT_MAX_RETRIES),
            retry_backoff_base=_env_float(env, "LEDGER_SYNC_RETRY_BACKOFF_BASE", 0.0),
            retry_backoff_max=_env_float(env, "LEDGER_SYNC_RETRY_BACKOFF_MAX", 300.0),
            log_capacity=log_capacity,
            log_keep=log_keep,
            log_retention_days=_env_int(
                env, "LEDGER_SYNC_LOG_RETENTION_DAYS", DEFAULT_LOG_RETENTION_DAYS, minimum=1
            ),
            queue_completed_keep=_env_int(
                env, "LEDGER_SYNC_QUEUE_COMPLETED_KEEP", DEFAULT_QUEUE_COMPLETED_KEEP
            ),
        )

    @property
    def local_replica_path(self) -> Path:
        return self.data_dir / "replica.json"

    @property
    def queue_path(self) -> Path:
        return self.data_dir / "outbound_queue.json"

    @property
    def device_id_path(self) -> Path:
        return self.data_dir / "device_id"


__all__ = [
    "DEFAULT_LOG_CAPACITY",
    "DEFAULT_LOG_KEEP",
    "DEFAULT_LOG_RETENTION_DAYS",
    "DEFAULT_MAX_RETRIES",
    "DEFAULT_QUEUE_COMPLETED_KEEP",
    "DEFAULT_SYNC_INTERVAL_SECONDS",
    "SyncSettings",
]
