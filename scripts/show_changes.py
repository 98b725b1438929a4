"""Утилита для просмотра ленты изменений CouchDB и локальных изменений."""
from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Iterable, Tuple

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from taskly_sync.clients import CouchDBClient
from taskly_sync.config import AppConfig
from taskly_sync.services import TaskMapper, TaskStore


def _format_table(title: str, rows: Iterable[Tuple[str, str, str]]) -> str:
    rows = list(rows)
    if not rows:
        return f"{title}: нет данных"
    id_width = max(len(r[0]) for r in rows)
    ts_width = max(len(r[1]) for r in rows)
    header = (
        f"{title}:\n"
        f"  {'ID'.ljust(id_width)}  |  {'updatedAt'.ljust(ts_width)}  |  Title\n"
        f"  {'-' * id_width}--+-{'-' * ts_width}--+------"
    )
    body = "\n".join(f"  {task_id.ljust(id_width)}  |  {ts.ljust(ts_width)}  |  {name}" for task_id, ts, name in rows)
    return f"{header}\n{body}"


def collect_remote_changes(client: CouchDBClient, since: str) -> list[Tuple[str, str, str]]:
    mapper = TaskMapper()
    feed = client.changes(since)
    rows = []
    for entry in feed.get("results") or []:
        task = mapper.map_change(entry)
        if task is None:
            continue
        mark = " (удалена)" if task.deleted else ""
        stamp = str(task.updated_at) if task.updated_at is not None else "-"
        rows.append((task.id, stamp, f"{task.title}{mark}"))
    return rows


def collect_local_changes(store: TaskStore, since_ms: int) -> list[Tuple[str, str, str]]:
    rows = []
    for task in store.changes_since(since_ms):
        mark = " (удалена)" if task.deleted else ""
        rows.append((task.id, str(task.updated_at), f"{task.title}{mark}"))
    return rows


def main() -> None:
    parser = argparse.ArgumentParser(description="Выводит изменения задач на сервере и/или в локальной базе")
    parser.add_argument(
        "--config",
        type=Path,
        default=Path("config.yaml"),
        help="Путь к YAML конфигурации",
    )
    parser.add_argument(
        "--source",
        choices=["remote", "local", "both"],
        default="both",
        help="Какие изменения вывести",
    )
    parser.add_argument(
        "--since",
        default=None,
        help="Позиция ленты _changes (по умолчанию сохранённый курсор или 0)",
    )
    parser.add_argument(
        "--since-ms",
        type=int,
        default=0,
        help="Отметка updatedAt, после которой показывать локальные изменения",
    )
    args = parser.parse_args()

    config = AppConfig.load(args.config)
    store = TaskStore(config.database)

    outputs: list[str] = []
    try:
        if args.source in ("remote", "both"):
            if not config.sync.is_sync_enabled:
                outputs.append("Remote changes: режим local, сервер не настроен")
            else:
                cursor = store.get_cursor()
                since = args.since or (cursor.last_seq if cursor else "0")
                client = CouchDBClient(config.sync, timeout=config.request_timeout_seconds)
                outputs.append(_format_table(f"Remote changes since {since}", collect_remote_changes(client, since)))

        if args.source in ("local", "both"):
            outputs.append(_format_table("Local changes", collect_local_changes(store, args.since_ms)))
    finally:
        store.close()

    print("\n\n".join(outputs))


if __name__ == "__main__":
    main()
