# tests/conftest.py

from __future__ import annotations

from pathlib import Path

import pytest

from taskly_sync.config import SyncSettings
from taskly_sync.services import ReplicationEngine, TaskStore

from .fakes import DB_NAME, FakeCouchServer, RecordingSink


@pytest.fixture()
def store(tmp_path: Path):
    s = TaskStore(tmp_path / "tasks.sqlite3")
    yield s
    s.close()


@pytest.fixture()
def server() -> FakeCouchServer:
    return FakeCouchServer()


@pytest.fixture()
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture()
def settings() -> SyncSettings:
    return SyncSettings(
        sync_mode="selfhosted",
        sync_url="couch.test",
        sync_username="admin",
        sync_password="secret",
        sync_db_name=DB_NAME,
    )


@pytest.fixture()
def engine(store: TaskStore, sink: RecordingSink, server: FakeCouchServer):
    """
    Engine wired to the in-memory CouchDB with a tiny interval.

    The loop is always stopped at teardown so no thread outlives the test.
    """
    e = ReplicationEngine(store, sink, session=server, interval_seconds=0.01, timeout=1.0)
    yield e
    e.stop()
    e.wait(2.0)
