"""Фоновая репликация задач с CouchDB: push локальных изменений, pull ленты _changes."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Tuple

import requests
from tqdm import tqdm

from taskly_sync.clients import (
    CouchDBAPIError,
    CouchDBClient,
    CouchDBConflictError,
    CouchDBConnectionError,
    document_timestamp,
)
from taskly_sync.config import ConfigError, SyncSettings
from taskly_sync.models import SyncState, SyncStatus, Task, now_ms
from taskly_sync.services.notifications import NotificationSink, NullNotificationSink
from taskly_sync.services.task_mapper import TaskMapper, TaskMappingError
from taskly_sync.services.task_store import INITIAL_SEQ, LocalStoreError, TaskStore

LOGGER = logging.getLogger(__name__)

DEFAULT_INTERVAL_SECONDS = 5.0


class InvalidTransitionError(RuntimeError):
    """Переход, которого нет в таблице состояний."""


class RemoteConnectionError(RuntimeError):
    """Удалённая база недоступна на этапе подключения."""


class CycleError(RuntimeError):
    """Сбой push или pull внутри цикла синхронизации."""


class SyncEvent(str, Enum):
    DISABLE = "disable"
    CONNECT = "connect"
    CONNECT_FAILED = "connect_failed"
    CYCLE_STARTED = "cycle_started"
    CYCLE_SUCCEEDED = "cycle_succeeded"
    CYCLE_FAILED = "cycle_failed"
    STOP = "stop"


_ANY: FrozenSet[SyncStatus] = frozenset(SyncStatus)

TRANSITIONS: Dict[SyncEvent, Tuple[FrozenSet[SyncStatus], SyncStatus]] = {
    SyncEvent.DISABLE: (_ANY, SyncStatus.DISABLED),
    SyncEvent.CONNECT: (
        frozenset({SyncStatus.DISABLED, SyncStatus.PAUSED, SyncStatus.ERROR}),
        SyncStatus.CONNECTING,
    ),
    SyncEvent.CONNECT_FAILED: (frozenset({SyncStatus.CONNECTING}), SyncStatus.ERROR),
    SyncEvent.CYCLE_STARTED: (
        frozenset({SyncStatus.CONNECTING, SyncStatus.PAUSED, SyncStatus.ERROR}),
        SyncStatus.SYNCING,
    ),
    SyncEvent.CYCLE_SUCCEEDED: (frozenset({SyncStatus.SYNCING}), SyncStatus.PAUSED),
    SyncEvent.CYCLE_FAILED: (frozenset({SyncStatus.SYNCING}), SyncStatus.ERROR),
    SyncEvent.STOP: (_ANY, SyncStatus.PAUSED),
}


class CancellationToken:
    """Флаг отмены одной сессии. Проверяется только в безопасных точках цикла."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        """Пауза между циклами; True, если сессию отменили раньше."""
        return self._event.wait(timeout)


class SyncStateMachine:
    """Снимок состояния и текущая сессия под одной блокировкой.

    Любое изменение идёт через :meth:`transition` по таблице ``TRANSITIONS``;
    новый снимок передаётся получателю событий до снятия блокировки.
    Переходы от отменённой сессии отбрасываются.
    """

    def __init__(self, sink: Optional[NotificationSink] = None) -> None:
        self._lock = threading.RLock()
        self._state = SyncState()
        self._session: Optional[CancellationToken] = None
        self._sink = sink or NullNotificationSink()

    @property
    def state(self) -> SyncState:
        with self._lock:
            return self._state

    @property
    def running(self) -> bool:
        with self._lock:
            return self._session is not None and not self._session.cancelled

    def transition(
        self,
        event: SyncEvent,
        *,
        token: Optional[CancellationToken] = None,
        sync_mode: Optional[str] = None,
        error: Optional[str] = None,
    ) -> Optional[SyncState]:
        with self._lock:
            if token is not None and (token is not self._session or token.cancelled):
                LOGGER.debug("Переход %s от завершённой сессии пропущен", event.value)
                return None
            allowed, target = TRANSITIONS[event]
            current = self._state
            if current.status not in allowed:
                raise InvalidTransitionError(f"Переход {event.value} недопустим из состояния {current.status.value}")
            last_synced = now_ms() if event is SyncEvent.CYCLE_SUCCEEDED else current.last_synced
            new_state = SyncState(
                status=target,
                last_synced=last_synced,
                error=error if target is SyncStatus.ERROR else None,
                sync_mode=sync_mode if sync_mode is not None else current.sync_mode,
            )
            self._state = new_state
            try:
                self._sink.state_changed(new_state)
            except Exception:
                LOGGER.exception("Получатель событий не обработал состояние %s", target.value)
            return new_state

    def begin_session(self) -> Optional[CancellationToken]:
        """Новая сессия или None, если предыдущая ещё активна."""
        with self._lock:
            if self.running:
                return None
            self._session = CancellationToken()
            return self._session

    def end_session(self, token: CancellationToken) -> None:
        with self._lock:
            if self._session is token:
                self._session = None

    def _cancel_session(self) -> None:
        if self._session is not None:
            self._session.cancel()
            self._session = None

    def stop(self) -> SyncState:
        with self._lock:
            self._cancel_session()
            return self.transition(SyncEvent.STOP)

    def disable(self, sync_mode: str) -> SyncState:
        with self._lock:
            self._cancel_session()
            return self.transition(SyncEvent.DISABLE, sync_mode=sync_mode)


@dataclass
class ReplicationStats:
    pushed: int = 0
    up_to_date: int = 0
    conflicts: int = 0
    push_failures: int = 0
    pulled: int = 0
    applied: int = 0
    skipped: int = 0


class ReplicationEngine:
    """Фоновый цикл push → pull с разрешением конфликтов по last-write-wins."""

    def __init__(
        self,
        store: TaskStore,
        sink: Optional[NotificationSink] = None,
        *,
        session: Optional[requests.Session] = None,
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
        timeout: float = 30.0,
        mapper: Optional[TaskMapper] = None,
        show_progress: bool = False,
    ) -> None:
        self._store = store
        self._sink = sink or NullNotificationSink()
        self._session = session
        self._interval = interval_seconds
        self._timeout = timeout
        self._mapper = mapper or TaskMapper()
        self._show_progress = show_progress
        self._machine = SyncStateMachine(self._sink)
        self._thread: Optional[threading.Thread] = None

    # region public API
    @property
    def state(self) -> SyncState:
        return self._machine.state

    @property
    def is_running(self) -> bool:
        return self._machine.running

    def start(self, settings: SyncSettings) -> bool:
        """Запускает фоновый цикл. False, если синхронизация выключена или уже идёт."""
        if not settings.is_sync_enabled:
            LOGGER.info("Режим %s: синхронизация отключена", settings.sync_mode)
            self._machine.disable(settings.sync_mode)
            return False
        settings.require_url()
        token = self._machine.begin_session()
        if token is None:
            LOGGER.debug("Синхронизация уже запущена, повторный старт пропущен")
            return False
        client = self._make_client(settings)
        thread = threading.Thread(
            target=self._run,
            args=(token, client, settings.sync_mode),
            name="taskly-replication",
            daemon=True,
        )
        self._thread = thread
        thread.start()
        LOGGER.info("Синхронизация с %s запущена", client.db_url)
        return True

    def stop(self) -> None:
        """Кооперативная остановка: текущий HTTP-запрос доработает до конца."""
        self._machine.stop()
        LOGGER.info("Синхронизация остановлена")

    def restart(self, settings: SyncSettings) -> bool:
        self.stop()
        return self.start(settings)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Ждёт завершения фонового потока. True, если поток завершился."""
        thread = self._thread
        if thread is None:
            return True
        thread.join(timeout)
        return not thread.is_alive()

    def sync_once(self, settings: SyncSettings) -> ReplicationStats:
        """Один синхронный цикл без фонового потока и без смены состояния."""
        if not settings.is_sync_enabled:
            raise ConfigError("Синхронизация выключена: syncMode = local")
        settings.require_url()
        client = self._make_client(settings)
        self._connect(client)
        stats = self._cycle(client, token=None)
        self._notify_data()
        return stats

    # endregion

    # region loop
    def _make_client(self, settings: SyncSettings) -> CouchDBClient:
        return CouchDBClient(settings, session=self._session, timeout=self._timeout)

    def _notify_data(self) -> None:
        try:
            self._sink.data_changed()
        except Exception:
            LOGGER.exception("Получатель событий не обработал изменение данных")

    def _run(self, token: CancellationToken, client: CouchDBClient, sync_mode: str) -> None:
        machine = self._machine
        try:
            machine.transition(SyncEvent.CONNECT, token=token, sync_mode=sync_mode)
            try:
                self._connect(client)
            except RemoteConnectionError as exc:
                LOGGER.error("%s", exc)
                machine.transition(SyncEvent.CONNECT_FAILED, token=token, error=str(exc))
                return
            except Exception as exc:
                LOGGER.exception("Непредвиденная ошибка подключения к %s", client.db_url)
                machine.transition(SyncEvent.CONNECT_FAILED, token=token, error=f"{type(exc).__name__}: {exc}")
                return

            while not token.cancelled:
                self._run_cycle(client, token)
                if token.wait(self._interval):
                    break
        finally:
            machine.end_session(token)
            LOGGER.debug("Фоновый цикл синхронизации завершён")

    def _run_cycle(self, client: CouchDBClient, token: CancellationToken) -> None:
        """Один цикл фоновой сессии; любая ошибка переводит состояние в error, цикл продолжается."""
        machine = self._machine
        machine.transition(SyncEvent.CYCLE_STARTED, token=token)
        try:
            stats = self._cycle(client, token)
        except CycleError as exc:
            LOGGER.exception("Ошибка цикла синхронизации")
            machine.transition(SyncEvent.CYCLE_FAILED, token=token, error=str(exc))
            return
        except Exception as exc:
            LOGGER.exception("Непредвиденная ошибка цикла синхронизации")
            machine.transition(SyncEvent.CYCLE_FAILED, token=token, error=f"{type(exc).__name__}: {exc}")
            return
        if stats is not None:
            machine.transition(SyncEvent.CYCLE_SUCCEEDED, token=token)
            self._notify_data()

    def _connect(self, client: CouchDBClient) -> None:
        try:
            created = client.ensure_database()
        except CouchDBAPIError as exc:
            raise RemoteConnectionError(f"Не удалось подключиться к {client.db_url}: {exc}") from exc
        if created:
            LOGGER.info("Создана удалённая база %s", client.db_name)

    def _cycle(self, client: CouchDBClient, token: Optional[CancellationToken]) -> Optional[ReplicationStats]:
        """push, затем pull. None, если сессию отменили между фазами."""
        stats = ReplicationStats()
        try:
            self._push(client, stats)
            if token is not None and token.cancelled:
                return None
            self._pull(client, stats)
        except (CouchDBAPIError, LocalStoreError, TaskMappingError, ValueError) as exc:
            raise CycleError(str(exc)) from exc
        LOGGER.info(
            "Цикл завершён: отправлено %s, конфликтов %s, ошибок %s, получено %s, применено %s",
            stats.pushed,
            stats.conflicts,
            stats.push_failures,
            stats.pulled,
            stats.applied,
        )
        return stats

    # endregion

    # region phases
    def _push(self, client: CouchDBClient, stats: ReplicationStats) -> None:
        tasks = self._store.list_tasks(include_deleted=True)
        for task in tqdm(tasks, desc="push", disable=not self._show_progress, leave=False):
            try:
                self._push_task(client, task, stats)
            except CouchDBConflictError:
                # Разрешится при следующем pull по last-write-wins.
                LOGGER.warning("Конфликт ревизий для задачи %s", task.id)
                stats.conflicts += 1
            except CouchDBConnectionError:
                raise
            except CouchDBAPIError as exc:
                LOGGER.error("Не удалось отправить задачу %s: %s", task.id, exc)
                stats.push_failures += 1

    def _push_task(self, client: CouchDBClient, task: Task, stats: ReplicationStats) -> None:
        remote = client.get_document(task.id)
        rev = None
        if remote is not None:
            remote_updated = document_timestamp(remote)
            remote_deleted = bool(remote.get("_deleted"))
            if remote_updated is not None and remote_updated >= task.updated_at:
                # Удалённая версия не старше локальной: её принесёт pull.
                stats.up_to_date += 1
                return
            if remote_deleted and remote_updated is None:
                # Надгробие без отметки времени считается новее любой локальной правки.
                stats.up_to_date += 1
                return
            # Удалённый документ пересоздаётся без _rev.
            if not remote_deleted:
                rev = remote.get("_rev")
        client.put_document(self._mapper.to_document(task, rev=rev))
        LOGGER.debug("Задача %s отправлена (base rev %s)", task.id, rev)
        stats.pushed += 1

    def _pull(self, client: CouchDBClient, stats: ReplicationStats) -> None:
        cursor = self._store.get_cursor()
        since = cursor.last_seq if cursor else INITIAL_SEQ
        feed = client.changes(since)
        tasks: List[Task] = []
        for entry in feed.get("results") or []:
            task = self._mapper.map_change(entry)
            if task is None:
                stats.skipped += 1
                continue
            tasks.append(task)
        stats.pulled = len(tasks)
        stats.applied = self._store.apply_remote_changes(tasks, str(feed["last_seq"]))
        LOGGER.debug("Лента изменений с %s: %s записей, курсор → %s", since, len(tasks), feed["last_seq"])

    # endregion


__all__ = [
    "CancellationToken",
    "CycleError",
    "InvalidTransitionError",
    "RemoteConnectionError",
    "ReplicationEngine",
    "ReplicationStats",
    "SyncEvent",
    "SyncStateMachine",
    "TRANSITIONS",
]
