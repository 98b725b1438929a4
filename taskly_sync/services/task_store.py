"""Локальное хранилище задач на SQLite."""
from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import closing, contextmanager
from dataclasses import replace
from pathlib import Path
from typing import Iterable, Iterator, List, Optional, Tuple

from taskly_sync.models import (
    ReplicationCursor,
    Task,
    make_revision,
    new_task_id,
    next_revision,
    now_ms,
)
from taskly_sync.services.notifications import NotificationSink

LOGGER = logging.getLogger(__name__)

INITIAL_SEQ = "0"
DIRECTIONS = ("up", "down")

_TASK_COLUMNS = "id, rev, title, description, completed, due_date, updated_at, task_order, deleted"


class LocalStoreError(RuntimeError):
    """Сбой локальной базы; передаётся вызывающему без повторов."""


class TaskNotFoundError(LocalStoreError):
    """Задача с указанным идентификатором отсутствует."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Задача {task_id} не найдена")
        self.task_id = task_id


def _next_timestamp(*previous: int) -> int:
    """Текущее время, но не меньше предыдущих отметок строки плюс 1 мс."""
    return max([now_ms(), *(value + 1 for value in previous)])


class TaskStore:
    """Обёртка над SQLite: задачи, их порядок, надгробия и курсор репликации.

    Все запросы идут через одно соединение под одной блокировкой, поэтому
    хранилище можно делить между потоком интерфейса и потоком синхронизации.
    """

    def __init__(self, path: Path | str, notifier: Optional[NotificationSink] = None) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()
        self._notifier = notifier
        try:
            self._conn = sqlite3.connect(self._path, check_same_thread=False)
        except sqlite3.Error as exc:
            raise LocalStoreError(f"Не удалось открыть базу {self._path}: {exc}") from exc
        self._conn.row_factory = sqlite3.Row
        self._init_schema()
        LOGGER.debug("Хранилище задач открыто: %s", self._path)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # region schema
    def _init_schema(self) -> None:
        with self._lock, closing(self._conn.cursor()) as cursor:
            try:
                cursor.executescript(
                    """
                    CREATE TABLE IF NOT EXISTS tasks (
                        id TEXT PRIMARY KEY,
                        rev TEXT,
                        title TEXT NOT NULL,
                        description TEXT,
                        completed INTEGER NOT NULL DEFAULT 0,
                        due_date TEXT,
                        updated_at INTEGER NOT NULL,
                        task_order INTEGER NOT NULL,
                        deleted INTEGER NOT NULL DEFAULT 0
                    );

                    CREATE TABLE IF NOT EXISTS sync_state (
                        id INTEGER PRIMARY KEY CHECK (id = 1),
                        last_seq TEXT,
                        last_synced_at INTEGER
                    );

                    CREATE INDEX IF NOT EXISTS idx_tasks_updated_at ON tasks(updated_at);
                    CREATE INDEX IF NOT EXISTS idx_tasks_deleted ON tasks(deleted);
                    """
                )
                self._conn.commit()
            except sqlite3.Error as exc:
                raise LocalStoreError(f"Не удалось создать схему в {self._path}: {exc}") from exc

    # endregion

    # region helpers
    @contextmanager
    def _transaction(self, action: str) -> Iterator[sqlite3.Connection]:
        """Блокировка + транзакция; ошибки SQLite превращаются в LocalStoreError."""
        with self._lock:
            try:
                with self._conn:
                    yield self._conn
            except sqlite3.Error as exc:
                raise LocalStoreError(f"Ошибка SQLite ({action}): {exc}") from exc

    def _notify(self) -> None:
        if self._notifier is not None:
            self._notifier.data_changed()

    @staticmethod
    def _row_to_task(row: sqlite3.Row) -> Task:
        return Task(
            id=row["id"],
            revision=row["rev"],
            title=row["title"],
            description=row["description"],
            completed=bool(row["completed"]),
            due_date=row["due_date"],
            updated_at=int(row["updated_at"]),
            order=int(row["task_order"]),
            deleted=bool(row["deleted"]),
        )

    @staticmethod
    def _task_params(task: Task) -> Tuple:
        return (
            task.id,
            task.revision,
            task.title,
            task.description,
            int(task.completed),
            task.due_date,
            int(task.updated_at),
            int(task.order),
            int(task.deleted),
        )

    def _fetch(self, conn: sqlite3.Connection, task_id: str) -> Optional[Task]:
        row = conn.execute(f"SELECT {_TASK_COLUMNS} FROM tasks WHERE id = ?", (task_id,)).fetchone()
        return self._row_to_task(row) if row else None

    def _write_update(self, conn: sqlite3.Connection, task: Task, stored: Task) -> Task:
        updated = replace(
            task,
            revision=next_revision(stored.revision),
            updated_at=_next_timestamp(stored.updated_at),
        )
        conn.execute(
            """
            UPDATE tasks SET
                rev = ?, title = ?, description = ?, completed = ?, due_date = ?,
                updated_at = ?, task_order = ?, deleted = ?
            WHERE id = ?
            """,
            (*self._task_params(updated)[1:], updated.id),
        )
        return updated

    def _ordered_rows(self, conn: sqlite3.Connection) -> List[sqlite3.Row]:
        return conn.execute(
            "SELECT id, task_order, updated_at FROM tasks WHERE deleted = 0 ORDER BY task_order ASC, id ASC"
        ).fetchall()

    @staticmethod
    def _position(rows: List[sqlite3.Row], task_id: str) -> int:
        for index, row in enumerate(rows):
            if row["id"] == task_id:
                return index
        raise TaskNotFoundError(task_id)

    @staticmethod
    def _swap_orders(conn: sqlite3.Connection, first: sqlite3.Row, second: sqlite3.Row) -> None:
        stamp = _next_timestamp(first["updated_at"], second["updated_at"])
        conn.execute(
            "UPDATE tasks SET task_order = ?, updated_at = ? WHERE id = ?",
            (second["task_order"], stamp, first["id"]),
        )
        conn.execute(
            "UPDATE tasks SET task_order = ?, updated_at = ? WHERE id = ?",
            (first["task_order"], stamp, second["id"]),
        )

    def _upsert(self, conn: sqlite3.Connection, task: Task) -> bool:
        cursor = conn.execute(
            f"""
            INSERT INTO tasks ({_TASK_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                rev = excluded.rev,
                title = excluded.title,
                description = excluded.description,
                completed = excluded.completed,
                due_date = excluded.due_date,
                updated_at = excluded.updated_at,
                task_order = excluded.task_order,
                deleted = excluded.deleted
            WHERE excluded.updated_at > tasks.updated_at
            """,
            self._task_params(task),
        )
        return cursor.rowcount == 1

    @staticmethod
    def _apply_bare_tombstone(conn: sqlite3.Connection, task: Task) -> bool:
        """Удаление без отметки времени: помечает живую строку, updated_at = сохранённое + 1."""
        cursor = conn.execute(
            "UPDATE tasks SET deleted = 1, rev = COALESCE(?, rev), updated_at = updated_at + 1 "
            "WHERE id = ? AND deleted = 0",
            (task.revision, task.id),
        )
        return cursor.rowcount == 1

    def _apply_remote(self, conn: sqlite3.Connection, task: Task) -> bool:
        if task.updated_at is None:
            return self._apply_bare_tombstone(conn, task)
        return self._upsert(conn, task)

    @staticmethod
    def _write_cursor(conn: sqlite3.Connection, token: str) -> None:
        conn.execute(
            "INSERT INTO sync_state (id, last_seq, last_synced_at) VALUES (1, ?, ?)\n"
            "ON CONFLICT(id) DO UPDATE SET last_seq = excluded.last_seq, last_synced_at = excluded.last_synced_at",
            (token, now_ms()),
        )

    # endregion

    # region tasks
    def count_tasks(self, *, include_deleted: bool = False) -> int:
        sql = "SELECT COUNT(*) FROM tasks" if include_deleted else "SELECT COUNT(*) FROM tasks WHERE deleted = 0"
        with self._transaction("count") as conn:
            (total,) = conn.execute(sql).fetchone()
        return int(total)

    def create_task(
        self,
        title: str,
        description: Optional[str] = None,
        due_date: Optional[str] = None,
    ) -> Task:
        title = title.strip()
        if not title:
            raise ValueError("Название задачи не может быть пустым")
        with self._transaction("create") as conn:
            (max_order,) = conn.execute(
                "SELECT COALESCE(MAX(task_order), 0) FROM tasks WHERE deleted = 0"
            ).fetchone()
            task = Task(
                id=new_task_id(),
                revision=make_revision(1),
                title=title,
                description=description,
                completed=False,
                due_date=due_date,
                updated_at=now_ms(),
                order=int(max_order) + 1,
            )
            conn.execute(
                f"INSERT INTO tasks ({_TASK_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                self._task_params(task),
            )
        LOGGER.debug("Создана задача %s (order=%s)", task.id, task.order)
        self._notify()
        return task

    def get_task(self, task_id: str) -> Optional[Task]:
        with self._transaction("get") as conn:
            return self._fetch(conn, task_id)

    def list_tasks(self, *, include_deleted: bool = False) -> List[Task]:
        """Задачи по возрастанию ``order``; надгробия только по запросу."""
        where = "" if include_deleted else "WHERE deleted = 0"
        with self._transaction("list") as conn:
            rows = conn.execute(
                f"SELECT {_TASK_COLUMNS} FROM tasks {where} ORDER BY task_order ASC, id ASC"
            ).fetchall()
        return [self._row_to_task(row) for row in rows]

    def update_task(self, task: Task) -> Task:
        """Сохраняет поля задачи как есть, увеличивая счётчик ревизии на 1."""
        with self._transaction("update") as conn:
            stored = self._fetch(conn, task.id)
            if stored is None:
                raise TaskNotFoundError(task.id)
            updated = self._write_update(conn, task, stored)
        LOGGER.debug("Обновлена задача %s → %s", updated.id, updated.revision)
        self._notify()
        return updated

    def soft_delete(self, task_id: str) -> None:
        with self._transaction("soft delete") as conn:
            stored = self._fetch(conn, task_id)
            if stored is None:
                raise TaskNotFoundError(task_id)
            conn.execute(
                "UPDATE tasks SET deleted = 1, updated_at = ? WHERE id = ?",
                (_next_timestamp(stored.updated_at), task_id),
            )
        LOGGER.debug("Задача %s помечена удалённой", task_id)
        self._notify()

    def toggle_completion(self, task_id: str) -> Task:
        """Переключает ``completed`` одной транзакцией чтения-записи."""
        with self._transaction("toggle") as conn:
            stored = self._fetch(conn, task_id)
            if stored is None:
                raise TaskNotFoundError(task_id)
            updated = self._write_update(conn, replace(stored, completed=not stored.completed), stored)
        self._notify()
        return updated

    def reorder_relative(self, task_id: str, direction: str) -> bool:
        """Меняет задачу местами с соседом сверху/снизу. False, если двигать некуда."""
        if direction not in DIRECTIONS:
            raise ValueError(f"Направление должно быть up или down, получено {direction!r}")
        with self._transaction("reorder") as conn:
            rows = self._ordered_rows(conn)
            index = self._position(rows, task_id)
            target = index - 1 if direction == "up" else index + 1
            if target < 0 or target >= len(rows):
                return False
            self._swap_orders(conn, rows[index], rows[target])
        self._notify()
        return True

    def reorder_to_position(self, task_id: str, target_id: str) -> bool:
        """Точный обмен значениями ``order`` двух задач (не сдвиг со вставкой)."""
        with self._transaction("move") as conn:
            rows = self._ordered_rows(conn)
            index = self._position(rows, task_id)
            target = self._position(rows, target_id)
            if index == target:
                return False
            self._swap_orders(conn, rows[index], rows[target])
        self._notify()
        return True

    # endregion

    # region replication
    def changes_since(self, timestamp: int) -> List[Task]:
        """Все строки, включая надгробия, с ``updated_at > timestamp`` по возрастанию времени."""
        with self._transaction("changes") as conn:
            rows = conn.execute(
                f"SELECT {_TASK_COLUMNS} FROM tasks WHERE updated_at > ? ORDER BY updated_at ASC, id ASC",
                (int(timestamp),),
            ).fetchall()
        return [self._row_to_task(row) for row in rows]

    def upsert_from_remote(self, task: Task) -> bool:
        """Last-write-wins: запись применяется, только если удалённая отметка строго новее."""
        with self._transaction("upsert") as conn:
            return self._apply_remote(conn, task)

    def apply_remote_changes(self, tasks: Iterable[Task], last_seq: str) -> int:
        """Применяет пачку удалённых изменений и курсор одной транзакцией."""
        applied = 0
        with self._transaction("apply changes") as conn:
            for task in tasks:
                if self._apply_remote(conn, task):
                    applied += 1
            self._write_cursor(conn, last_seq)
        return applied

    def get_cursor(self) -> Optional[ReplicationCursor]:
        with self._transaction("get cursor") as conn:
            row = conn.execute("SELECT last_seq, last_synced_at FROM sync_state WHERE id = 1").fetchone()
        if not row or row["last_seq"] is None:
            return None
        return ReplicationCursor(last_seq=row["last_seq"], last_synced_at=row["last_synced_at"])

    def set_cursor(self, token: str) -> None:
        with self._transaction("set cursor") as conn:
            self._write_cursor(conn, token)

    # endregion


__all__ = ["TaskStore", "LocalStoreError", "TaskNotFoundError", "INITIAL_SEQ", "DIRECTIONS"]
