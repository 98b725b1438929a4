"""Доменные модели хранилища и синхронизации."""

from .entities import (
    ReplicationCursor,
    SyncState,
    SyncStatus,
    Task,
    make_revision,
    new_task_id,
    next_revision,
    now_ms,
    revision_counter,
)

__all__ = [
    "Task",
    "ReplicationCursor",
    "SyncState",
    "SyncStatus",
    "make_revision",
    "new_task_id",
    "next_revision",
    "now_ms",
    "revision_counter",
]
