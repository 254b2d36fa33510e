from __future__ import annotations

from datetime import timedelta
from pathlib import Path

import pytest
from sqlalchemy.exc import OperationalError

from db.client import session_scope
from db.models.ledger import LsSyncLog

from ledger_sync.models import utcnow
from ledger_sync.sync_log import SYNC_COMPLETED, MemorySyncLog, SqlSyncLog

from tests.helpers.db import bootstrap_sqlite_db


@pytest.fixture(params=["memory", "sql"])
def make_log(request: pytest.FixtureRequest, tmp_path: Path):
    if request.param == "memory":
        return lambda **kw: MemorySyncLog(**kw)
    url = bootstrap_sqlite_db(tmp_path / "log.sqlite")
    return lambda **kw: SqlSyncLog(url, **kw)


def test_log_is_trimmed_to_newest_entries_past_capacity(make_log):
    log = make_log(capacity=10, keep=5)

    for i in range(10):
        log.record(SYNC_COMPLETED, username="alice", details=str(i))
    assert len(log.entries()) == 10

    log.record(SYNC_COMPLETED, username="alice", details="10")

    assert [e.details for e in log.entries()] == ["6", "7", "8", "9", "10"]


def test_entries_filter_by_username_and_time(make_log):
    log = make_log()
    log.record(SYNC_COMPLETED, username="alice")
    log.record(SYNC_COMPLETED, username="bob")

    assert [e.username for e in log.entries(username="alice")] == ["alice"]
    assert log.entries(since=utcnow() + timedelta(minutes=1)) == []


def test_prune_removes_old_entries():
    log = MemorySyncLog()
    log.record(SYNC_COMPLETED, username="alice")
    old = log.entries()[0].model_copy(update={"timestamp": utcnow() - timedelta(days=8)})
    log._entries.insert(0, old)

    assert log.prune(timedelta(days=7)) == 1
    assert len(log.entries()) == 1


def test_sql_prune_removes_old_entries(tmp_path: Path):
    url = bootstrap_sqlite_db(tmp_path / "log.sqlite")
    log = SqlSyncLog(url)
    log.record(SYNC_COMPLETED, username="alice")
    with session_scope(database_url=url) as s:
        s.add(LsSyncLog(event="old", username="alice", timestamp=utcnow() - timedelta(days=9)))

    assert log.prune(timedelta(days=7)) == 1
    assert [e.event for e in log.entries()] == [SYNC_COMPLETED]


def test_sink_failure_is_swallowed(monkeypatch: pytest.MonkeyPatch):
    log = MemorySyncLog()

    def boom(entry):
        raise OperationalError("INSERT", {}, Exception("database is locked"))

    monkeypatch.setattr(log, "_append", boom)

    assert log.record(SYNC_COMPLETED, username="alice") is None
