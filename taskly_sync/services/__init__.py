"""Сервисный слой приложения."""

from .notifications import (
    CallbackNotificationSink,
    FanOutNotificationSink,
    LoggingNotificationSink,
    NotificationSink,
    NullNotificationSink,
)
from .replication import (
    CycleError,
    InvalidTransitionError,
    RemoteConnectionError,
    ReplicationEngine,
    ReplicationStats,
    SyncEvent,
    SyncStateMachine,
)
from .task_mapper import TaskMapper, TaskMappingError, normalize_due_date
from .task_store import LocalStoreError, TaskNotFoundError, TaskStore

__all__ = [
    "CallbackNotificationSink",
    "CycleError",
    "FanOutNotificationSink",
    "InvalidTransitionError",
    "LocalStoreError",
    "LoggingNotificationSink",
    "NotificationSink",
    "NullNotificationSink",
    "RemoteConnectionError",
    "ReplicationEngine",
    "ReplicationStats",
    "SyncEvent",
    "SyncStateMachine",
    "TaskMapper",
    "TaskMappingError",
    "TaskNotFoundError",
    "TaskStore",
    "normalize_due_date",
]
