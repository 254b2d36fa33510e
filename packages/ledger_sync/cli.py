# ruff: noqa: I001
"""Typer console interface for ``ledger_sync``.

Every command loads a local ``.env`` (without overriding variables that are
already set), configures package logging once, then opens a short-lived sync
session: the device-local replica and outbound queue live under
``LEDGER_SYNC_DATA_DIR`` and the shared replica is the database named by
``DATABASE_URL``. Users are looked up by username on the shared replica;
registering them is outside this tool.
"""

from __future__ import annotations

import asyncio
import dataclasses
from collections.abc import Awaitable, Callable
from datetime import datetime
from pathlib import Path
from typing import TypeVar

import typer
from dotenv import load_dotenv
from typer.models import OptionInfo

from .config import SyncSettings
from .connectivity import ConnectivitySignal
from .errors import LedgerSyncError
from .logging_setup import configure_logging
from .models import TransactionKind, new_device_id
from .orchestrator import SyncOrchestrator

T = TypeVar("T")


# ---- Module-level option objects (ruff B008: no calls in parameter defaults) -

USER_OPTION: OptionInfo = typer.Option(..., "--user", "-u", help="Username of the ledger owner.")
DATABASE_URL_OPTION: OptionInfo = typer.Option(
    None, "--database-url", help="Override DATABASE_URL (falls back to env var)."
)
DATA_DIR_OPTION: OptionInfo = typer.Option(
    None,
    "--data-dir",
    help="Directory for the device-local replica (falls back to LEDGER_SYNC_DATA_DIR).",
    file_okay=False,
    dir_okay=True,
)
OFFLINE_OPTION: OptionInfo = typer.Option(
    False, "--offline", help="Work against the local replica only; changes stay queued."
)


# ---- Helpers -----------------------------------------------------------------


def _settings(database_url: str | None, data_dir: Path | None) -> SyncSettings:
    settings = SyncSettings.from_env()
    overrides: dict[str, object] = {"sync_interval_seconds": 0.0}
    if database_url:
        overrides["database_url"] = database_url
    if data_dir is not None:
        overrides["data_dir"] = data_dir.expanduser().resolve()
    settings = dataclasses.replace(settings, **overrides)
    if not settings.database_url:
        raise LedgerSyncError("DATABASE_URL is not set (use --database-url or .env)")
    return settings


def _device_id(settings: SyncSettings) -> str:
    """Stable per-data-dir device id, minted on first use."""

    path = settings.device_id_path
    try:
        existing = path.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        existing = ""
    if existing:
        return existing
    device_id = new_device_id()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(device_id + "\n", encoding="utf-8")
    return device_id


def _build_session(
    username: str, settings: SyncSettings, *, online: bool = True
) -> SyncOrchestrator:
    # Deferred imports keep ``--help`` fast
    from .ports import StoreUserAuthenticator
    from .queue import JsonQueueStorage
    from .stores import JsonFileRecordStore, SqlRecordStore
    from .sync_log import SqlSyncLog

    remote = SqlRecordStore(settings.database_url)
    user = StoreUserAuthenticator(remote).authenticate(username)
    return SyncOrchestrator(
        user,
        local=JsonFileRecordStore(settings.local_replica_path),
        remote=remote,
        queue_storage=JsonQueueStorage(settings.queue_path),
        sync_log=SqlSyncLog(
            settings.database_url, capacity=settings.log_capacity, keep=settings.log_keep
        ),
        connectivity=ConnectivitySignal(online=online),
        settings=settings,
        device_id=_device_id(settings),
        device_name="ledger-sync CLI",
        device_type="cli",
    )


def _run_session(
    username: str,
    database_url: str | None,
    data_dir: Path | None,
    body: Callable[[SyncOrchestrator], Awaitable[T]],
    *,
    online: bool = True,
) -> T:
    """Open a session, run ``body`` against it and always end the session."""

    async def _main() -> T:
        settings = _settings(database_url, data_dir)
        orch = _build_session(username, settings, online=online)
        await orch.start()
        try:
            return await body(orch)
        finally:
            await orch.end_session()

    try:
        return asyncio.run(_main())
    except LedgerSyncError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from e
    except ValueError as e:
        typer.echo(f"Error: invalid input: {e}", err=True)
        raise typer.Exit(2) from e


def _fmt_dt(value: datetime | None) -> str:
    return value.strftime("%Y-%m-%d %H:%M") if value else "-"


# ---- Typer-based console interface -------------------------------------------


app = typer.Typer(
    no_args_is_help=True,
    add_completion=False,
    help=(
        "Offline-first ledger sync. Keeps a device-local replica reconciled with "
        "the shared database. Loads DATABASE_URL from a local .env before running."
    ),
)

queue_app = typer.Typer(no_args_is_help=True, help="Inspect and re-queue outbound intents.")
app.add_typer(queue_app, name="queue")


@app.callback()
def _root(
    log_level: str | None = typer.Option(
        None, "--log-level", help="Logging level (falls back to LEDGER_SYNC_LOG_LEVEL)."
    ),
) -> None:
    """Load ``.env`` from the working directory and set up logging."""

    load_dotenv(dotenv_path=Path.cwd() / ".env", override=False)
    configure_logging(log_level)


@app.command("init-db")
def init_db_cmd(database_url: str | None = DATABASE_URL_OPTION) -> None:
    """Create the ledger tables if they do not exist (use Alembic in production)."""

    from db import Base
    from db.client import get_engine

    try:
        settings = _settings(database_url, None)
    except LedgerSyncError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from e
    Base.metadata.create_all(bind=get_engine(database_url=settings.database_url))
    typer.echo("Ledger tables ready.")


@app.command("add")
def add_cmd(
    user: str = USER_OPTION,
    kind: TransactionKind = typer.Option(..., "--kind", help="income or expense"),
    amount: str = typer.Option(..., "--amount", help="Non-negative amount, e.g. 12.50"),
    category: str = typer.Option("", "--category"),
    description: str = typer.Option("", "--description"),
    occurred_at: datetime | None = typer.Option(
        None, "--date", help="When it happened (defaults to now)."
    ),
    database_url: str | None = DATABASE_URL_OPTION,
    data_dir: Path | None = DATA_DIR_OPTION,
    offline: bool = OFFLINE_OPTION,
) -> None:
    """Record a transaction on this device and sync it."""

    async def body(orch: SyncOrchestrator) -> str:
        record = await orch.add_transaction(
            kind=kind,
            amount=amount,
            category=category,
            description=description,
            occurred_at=occurred_at,
        )
        return record.id

    record_id = _run_session(user, database_url, data_dir, body, online=not offline)
    typer.echo(record_id)


@app.command("delete")
def delete_cmd(
    user: str = USER_OPTION,
    record_id: str = typer.Argument(..., help="Transaction id to soft-delete."),
    database_url: str | None = DATABASE_URL_OPTION,
    data_dir: Path | None = DATA_DIR_OPTION,
    offline: bool = OFFLINE_OPTION,
) -> None:
    """Soft-delete a transaction (the deletion propagates on sync)."""

    async def body(orch: SyncOrchestrator) -> None:
        await orch.delete_transaction(record_id)

    _run_session(user, database_url, data_dir, body, online=not offline)
    typer.echo(f"Deleted {record_id}")


@app.command("list")
def list_cmd(
    user: str = USER_OPTION,
    kind: TransactionKind | None = typer.Option(None, "--kind"),
    category: str | None = typer.Option(None, "--category"),
    since: datetime | None = typer.Option(None, "--since"),
    until: datetime | None = typer.Option(None, "--until"),
    limit: int | None = typer.Option(None, "--limit", min=1),
    include_deleted: bool = typer.Option(False, "--include-deleted"),
    database_url: str | None = DATABASE_URL_OPTION,
    data_dir: Path | None = DATA_DIR_OPTION,
) -> None:
    """List transactions from the device-local replica, newest first."""

    async def body(orch: SyncOrchestrator):
        return await orch.list_transactions(
            kind=kind,
            category=category,
            start=since,
            end=until,
            limit=limit,
            include_deleted=include_deleted,
        )

    # Listing never needs the network.
    records = _run_session(user, database_url, data_dir, body, online=False)
    if not records:
        typer.echo("No transactions.")
        return
    for r in records:
        flag = " (deleted)" if r.deleted else ""
        typer.echo(
            f"{r.id}\t{_fmt_dt(r.occurred_at)}\t{r.kind.value}\t{r.amount}\t"
            f"{r.category}\t{r.description}\t{r.sync_status.value}{flag}"
        )


@app.command("sync")
def sync_cmd(
    user: str = USER_OPTION,
    database_url: str | None = DATABASE_URL_OPTION,
    data_dir: Path | None = DATA_DIR_OPTION,
) -> None:
    """Run one reconciliation cycle now."""

    stats = _run_session(user, database_url, data_dir, lambda orch: orch.force_sync())
    typer.echo(f"State: {stats.state.value}")
    if stats.last_error:
        typer.echo(f"Error: {stats.last_error}", err=True)
        raise typer.Exit(1)


@app.command("status")
def status_cmd(
    user: str = USER_OPTION,
    database_url: str | None = DATABASE_URL_OPTION,
    data_dir: Path | None = DATA_DIR_OPTION,
) -> None:
    """Show device, queue and recent sync log information."""

    stats = _run_session(user, database_url, data_dir, lambda orch: orch.stats())
    typer.echo(f"User: {stats.username}")
    typer.echo(f"Device: {stats.device_id}")
    typer.echo(f"State: {stats.state.value}")
    typer.echo(
        "Queue: " + ", ".join(f"{k}={v}" for k, v in sorted(stats.queue.items()))
    )
    typer.echo(f"Devices: {len(stats.devices)}")
    for d in stats.devices:
        typer.echo(f"  {d.id}\t{d.device_name}\t{d.device_type}\t{_fmt_dt(d.last_seen)}")
    typer.echo(f"Recent events (24h): {len(stats.recent_logs)}")
    for e in stats.recent_logs[-10:]:
        typer.echo(f"  {_fmt_dt(e.timestamp)}\t{e.event}\t{e.details or ''}")


@app.command("verify")
def verify_cmd(
    database_url: str | None = DATABASE_URL_OPTION,
    data_dir: Path | None = DATA_DIR_OPTION,
    repair: bool = typer.Option(
        False, "--repair", help="Remove orphaned rows instead of only reporting."
    ),
) -> None:
    """Check both replicas for rows that reference missing users."""

    from .integrity import verify
    from .stores import JsonFileRecordStore, SqlRecordStore

    try:
        settings = _settings(database_url, data_dir)
        stores = [
            JsonFileRecordStore(settings.local_replica_path),
            SqlRecordStore(settings.database_url),
        ]
        total = 0
        for store in stores:
            if repair:
                problems = store.open()
            else:
                problems = [v.describe() for v in verify(store.read_snapshot())]
            total += len(problems)
            for p in problems:
                typer.echo(f"{store.name}: {p}")
    except LedgerSyncError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from e

    if total == 0:
        typer.echo("No integrity problems found.")
    elif repair:
        typer.echo(f"Repaired {total} problem(s).")
    else:
        raise typer.Exit(1)


@queue_app.command("list")
def queue_list_cmd(
    data_dir: Path | None = DATA_DIR_OPTION,
    failed_only: bool = typer.Option(False, "--failed", help="Only failed items."),
) -> None:
    """Show outbound intents stored on this device."""

    from .queue import JsonQueueStorage

    settings = SyncSettings.from_env()
    if data_dir is not None:
        settings = dataclasses.replace(settings, data_dir=data_dir.expanduser().resolve())
    items = JsonQueueStorage(settings.queue_path).load()
    if failed_only:
        items = [i for i in items if i.status.value == "failed"]
    if not items:
        typer.echo("Queue is empty.")
        return
    for i in items:
        typer.echo(
            f"{i.id}\t{i.operation.value}\t{i.record_id}\t{i.status.value}\t"
            f"retries={i.retry_count}\t{i.last_error or ''}"
        )


@queue_app.command("retry")
def queue_retry_cmd(
    user: str = USER_OPTION,
    item_id: str | None = typer.Argument(
        None, help="Item to re-queue (all failed items when omitted)."
    ),
    database_url: str | None = DATABASE_URL_OPTION,
    data_dir: Path | None = DATA_DIR_OPTION,
) -> None:
    """Move failed intents back to pending and drain them."""

    async def body(orch: SyncOrchestrator) -> int:
        moved = orch.queue.retry_failed(item_id)
        if moved:
            await orch.queue.drain()
        return moved

    moved = _run_session(user, database_url, data_dir, body)
    typer.echo(f"Re-queued {moved} item(s).")


if __name__ == "__main__":  # pragma: no cover - exercised via console script
    app()
