"""Pytest configuration for test isolation.

The sync engine keeps its device-local replica, outbound queue and device id
under ``LEDGER_SYNC_DATA_DIR`` (default ``./.ledger_sync``). Tests that share
one working tree would otherwise read each other's replicas, so every test
gets its own data directory. Cached SQLAlchemy engines are disposed after
each test so per-test SQLite files can be removed.
"""

from __future__ import annotations

import os
from collections.abc import Iterator
from pathlib import Path

import pytest

from db.client import dispose_engines


@pytest.fixture(autouse=True)
def _isolate_data_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Force a per-test data dir and a clean set of ``LEDGER_SYNC_*`` knobs."""

    for name in list(os.environ):
        if name.startswith("LEDGER_SYNC_"):
            monkeypatch.delenv(name, raising=False)
    data_dir = tmp_path / "ledger_sync"
    data_dir.mkdir(parents=True, exist_ok=True)
    monkeypatch.setenv("LEDGER_SYNC_DATA_DIR", os.fspath(data_dir))
    yield
    dispose_engines()
