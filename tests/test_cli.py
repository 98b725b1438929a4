# tests/test_cli.py

from __future__ import annotations

import json
from pathlib import Path

import pytest
from typer.testing import CliRunner

from taskly_sync.cli import app

runner = CliRunner()


@pytest.fixture()
def config_path(tmp_path: Path) -> Path:
    path = tmp_path / "config.yaml"
    path.write_text(f"database: {tmp_path / 'data' / 'tasks.sqlite3'}\n", encoding="utf-8")
    return path


def invoke(config_path: Path, *args: str):
    return runner.invoke(app, [*args, "--config", str(config_path)])


def test_add_list_and_toggle(config_path: Path) -> None:
    added = invoke(config_path, "add", "Buy milk", "--due", "20 Oct 2026")
    assert added.exit_code == 0, added.output
    task = json.loads(added.stdout)
    assert task["title"] == "Buy milk"
    assert task["dueDate"] == "2026-10-20"

    toggled = invoke(config_path, "toggle", task["id"])
    assert json.loads(toggled.stdout)["completed"] is True

    listed = json.loads(invoke(config_path, "list").stdout)
    assert [t["id"] for t in listed] == [task["id"]]


def test_edit_and_delete(config_path: Path) -> None:
    task = json.loads(invoke(config_path, "add", "draft").stdout)

    edited = json.loads(invoke(config_path, "edit", task["id"], "--title", "final").stdout)
    assert edited["title"] == "final"
    assert edited["rev"].startswith("2-")

    assert invoke(config_path, "delete", task["id"]).exit_code == 0
    assert json.loads(invoke(config_path, "list").stdout) == []
    everything = json.loads(invoke(config_path, "list", "--all").stdout)
    assert everything[0]["deleted"] is True


def test_move_and_swap(config_path: Path) -> None:
    first = json.loads(invoke(config_path, "add", "first").stdout)
    second = json.loads(invoke(config_path, "add", "second").stdout)

    assert invoke(config_path, "move", second["id"], "up").exit_code == 0
    assert [t["id"] for t in json.loads(invoke(config_path, "list").stdout)] == [second["id"], first["id"]]

    swapped = json.loads(invoke(config_path, "swap", second["id"], first["id"]).stdout)
    assert [t["id"] for t in swapped] == [first["id"], second["id"]]

    assert invoke(config_path, "move", first["id"], "sideways").exit_code == 1


def test_unknown_task(config_path: Path) -> None:
    assert invoke(config_path, "toggle", "missing").exit_code == 1
    assert invoke(config_path, "edit", "missing", "--title", "x").exit_code == 1


def test_status_in_local_mode(config_path: Path) -> None:
    invoke(config_path, "add", "one")

    status = json.loads(invoke(config_path, "status").stdout)

    assert status["syncMode"] == "local"
    assert status["syncUrl"] is None
    assert status["tasks"] == 1
    assert status["lastSeq"] is None


def test_sync_once_requires_remote(config_path: Path) -> None:
    result = invoke(config_path, "sync-once")
    assert result.exit_code == 1


def test_broken_config_exits_with_code_2(tmp_path: Path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text("sync:\n  syncMode: p2p\n", encoding="utf-8")

    assert invoke(path, "list").exit_code == 2
