# tests/test_couchdb_client.py

from __future__ import annotations

import pytest
from requests.auth import HTTPBasicAuth

from taskly_sync.clients import (
    CouchDBAPIError,
    CouchDBClient,
    CouchDBConflictError,
    CouchDBConnectionError,
    document_timestamp,
)
from taskly_sync.config import SyncSettings

from .fakes import DB_NAME, FakeCouchServer, FakeResponse


@pytest.fixture()
def client(settings: SyncSettings, server: FakeCouchServer) -> CouchDBClient:
    return CouchDBClient(settings, session=server, timeout=1.0)


def test_urls_are_normalized(server: FakeCouchServer) -> None:
    settings = SyncSettings(sync_mode="cloud", sync_url="couch.example.com:5984/", sync_db_name="my_tasks")
    client = CouchDBClient(settings, session=server)

    assert client.base_url == "http://couch.example.com:5984"
    assert client.db_url == "http://couch.example.com:5984/my_tasks"


def test_session_setup(client: CouchDBClient, server: FakeCouchServer) -> None:
    assert isinstance(server.auth, HTTPBasicAuth)
    assert server.auth.username == "admin"
    assert server.headers["Accept"] == "application/json"
    assert server.headers["User-Agent"].startswith("taskly-sync/")


def test_no_auth_without_password(server: FakeCouchServer) -> None:
    CouchDBClient(SyncSettings(sync_mode="selfhosted", sync_username="admin"), session=server)
    assert server.auth is None


def test_server_info(client: CouchDBClient) -> None:
    assert client.server_info()["couchdb"] == "Welcome"


def test_ensure_database_is_idempotent(client: CouchDBClient, server: FakeCouchServer) -> None:
    assert client.ensure_database() is True
    assert client.ensure_database() is False
    assert len(server.calls_to("PUT", f"/{DB_NAME}")) == 2


def test_ensure_database_surfaces_auth_failure(client: CouchDBClient, server: FakeCouchServer) -> None:
    server.db_create_status = 401

    with pytest.raises(CouchDBAPIError) as excinfo:
        client.ensure_database()
    assert excinfo.value.status_code == 401


def test_get_document(client: CouchDBClient, server: FakeCouchServer) -> None:
    client.ensure_database()
    assert client.get_document("nope") is None

    rev = server.seed(DB_NAME, {"_id": "t1", "title": "hello", "updatedAt": 10})
    doc = client.get_document("t1")
    assert doc["title"] == "hello"
    assert doc["_rev"] == rev


def test_get_deleted_document_returns_tombstone(client: CouchDBClient, server: FakeCouchServer) -> None:
    server.seed(DB_NAME, {"_id": "t1", "title": "hello", "updatedAt": 10})
    server.seed(DB_NAME, {"_id": "t1", "title": "hello", "updatedAt": 20, "_deleted": True})

    doc = client.get_document("t1")

    assert doc["_deleted"] is True
    assert doc["updatedAt"] == 20
    assert server.calls[-1].params == {"open_revs": "all"}


def test_put_document_and_conflict(client: CouchDBClient, server: FakeCouchServer) -> None:
    client.ensure_database()
    result = client.put_document({"_id": "t1", "title": "first", "updatedAt": 1})
    assert result["ok"] is True

    with pytest.raises(CouchDBConflictError) as excinfo:
        client.put_document({"_id": "t1", "_rev": "1-stale", "title": "second", "updatedAt": 2})
    assert excinfo.value.status_code == 409
    assert server.doc(DB_NAME, "t1")["title"] == "first"


def test_document_ids_are_escaped(client: CouchDBClient, server: FakeCouchServer) -> None:
    client.ensure_database()
    client.put_document({"_id": "a/b", "title": "slash", "updatedAt": 1})

    assert server.calls[-1].url.endswith(f"/{DB_NAME}/a%2Fb")
    assert server.doc(DB_NAME, "a/b")["title"] == "slash"


def test_server_error_keeps_status(client: CouchDBClient, server: FakeCouchServer) -> None:
    client.ensure_database()
    server.put_status_overrides["t1"] = 500

    with pytest.raises(CouchDBAPIError) as excinfo:
        client.put_document({"_id": "t1", "title": "x", "updatedAt": 1})
    assert excinfo.value.status_code == 500
    assert not isinstance(excinfo.value, CouchDBConflictError)


def test_offline_server(client: CouchDBClient, server: FakeCouchServer) -> None:
    server.offline = True

    with pytest.raises(CouchDBConnectionError) as excinfo:
        client.ensure_database()
    assert isinstance(excinfo.value, CouchDBAPIError)
    assert excinfo.value.status_code is None


def test_changes_feed(client: CouchDBClient, server: FakeCouchServer) -> None:
    server.seed(DB_NAME, {"_id": "a", "title": "a", "updatedAt": 1})
    server.seed(DB_NAME, {"_id": "b", "title": "b", "updatedAt": 2})

    feed = client.changes("1")

    assert [entry["id"] for entry in feed["results"]] == ["b"]
    assert feed["last_seq"] == server.last_seq()
    assert server.calls[-1].params == {"include_docs": "true", "since": "1"}


def test_changes_rejects_unexpected_payload(
    client: CouchDBClient,
    server: FakeCouchServer,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    server.seed(DB_NAME, {"_id": "a", "title": "a", "updatedAt": 1})
    monkeypatch.setattr(server, "_changes", lambda db, since: FakeResponse(200, {"results": []}))

    with pytest.raises(CouchDBAPIError):
        client.changes("0")


@pytest.mark.parametrize(
    ("doc", "expected"),
    [
        ({"updatedAt": 1700000000000}, 1700000000000),
        ({"updatedAt": 1.7e12}, 1700000000000),
        ({"updatedAt": "1700000000000"}, None),
        ({"updatedAt": True}, None),
        ({"updatedAt": float("nan")}, None),
        ({}, None),
    ],
)
def test_document_timestamp(doc: dict, expected) -> None:
    assert document_timestamp(doc) == expected


def test_tombstone_lookup_tolerates_mixed_timestamps(
    client: CouchDBClient,
    server: FakeCouchServer,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    server.seed(DB_NAME, {"_id": "t1", "_deleted": True})
    leaves = [
        {"ok": {"_id": "t1", "_deleted": True, "updatedAt": "later"}},
        {"ok": {"_id": "t1", "_deleted": True, "updatedAt": 30.0}},
        {"ok": {"_id": "t1", "_deleted": True}},
    ]
    original = server._get

    def get_with_conflicting_leaves(db, doc_id, params):
        if params.get("open_revs") == "all":
            return FakeResponse(200, leaves)
        return original(db, doc_id, params)

    monkeypatch.setattr(server, "_get", get_with_conflicting_leaves)

    assert client.get_document("t1")["updatedAt"] == 30.0
