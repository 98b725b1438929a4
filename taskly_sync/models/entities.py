"""Определения доменных сущностей."""
from __future__ import annotations

import os
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional


def now_ms() -> int:
    """Текущее время в миллисекундах с начала эпохи."""
    return int(time.time() * 1000)


def new_task_id() -> str:
    """Идентификатор в раскладке UUIDv7: сортируется по времени создания."""
    value = (now_ms() & 0xFFFFFFFFFFFF) << 80
    value |= int.from_bytes(os.urandom(10), "big") & ((1 << 80) - 1)
    value &= ~(0xF << 76)
    value |= 0x7 << 76
    value &= ~(0x3 << 62)
    value |= 0x2 << 62
    return str(uuid.UUID(int=value))


def revision_counter(revision: Optional[str]) -> int:
    """Числовой префикс ревизии вида ``"<counter>-<random>"``; 0, если разобрать нельзя."""
    if not revision:
        return 0
    head = revision.split("-", 1)[0]
    try:
        return int(head)
    except ValueError:
        return 0


def make_revision(counter: int) -> str:
    return f"{counter}-{uuid.uuid4().hex}"


def next_revision(revision: Optional[str]) -> str:
    return make_revision(revision_counter(revision) + 1)


@dataclass(slots=True)
class Task:
    """Задача локального хранилища."""

    id: str
    revision: Optional[str]
    title: str
    description: Optional[str] = None
    completed: bool = False
    due_date: Optional[str] = None
    # None только у удалённого надгробия без отметки времени
    updated_at: Optional[int] = 0
    order: int = 0
    deleted: bool = False

    def as_payload(self) -> Dict[str, object]:
        """Представление для вывода в CLI и событий интерфейса."""
        return {
            "id": self.id,
            "rev": self.revision,
            "title": self.title,
            "description": self.description,
            "completed": self.completed,
            "dueDate": self.due_date,
            "updatedAt": self.updated_at,
            "order": self.order,
            "deleted": self.deleted,
        }


@dataclass(slots=True)
class ReplicationCursor:
    """Позиция чтения ленты изменений удалённой базы."""

    last_seq: str
    last_synced_at: Optional[int] = None


class SyncStatus(str, Enum):
    DISABLED = "disabled"
    CONNECTING = "connecting"
    SYNCING = "syncing"
    PAUSED = "paused"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class SyncState:
    """Снимок состояния синхронизации."""

    status: SyncStatus = SyncStatus.DISABLED
    last_synced: Optional[int] = None
    error: Optional[str] = None
    sync_mode: Optional[str] = "local"

    def as_payload(self) -> Dict[str, object]:
        return {
            "status": self.status.value,
            "lastSynced": self.last_synced,
            "error": self.error,
            "syncMode": self.sync_mode,
        }


__all__ = [
    "ReplicationCursor",
    "SyncState",
    "SyncStatus",
    "Task",
    "make_revision",
    "new_task_id",
    "next_revision",
    "now_ms",
    "revision_counter",
]
