"""Получатели событий об изменении состояния и данных."""
from __future__ import annotations

import logging
from typing import Callable, List, Optional, Protocol

from taskly_sync.models import SyncState

LOGGER = logging.getLogger(__name__)


class NotificationSink(Protocol):
    """Наблюдатель, которому движок и хранилище сообщают об изменениях.

    Вызовы синхронные: ``state_changed`` приходит под блокировкой состояния,
    поэтому реализация не должна обращаться обратно к движку.
    """

    def state_changed(self, state: SyncState) -> None: ...

    def data_changed(self) -> None: ...


class NullNotificationSink:
    def state_changed(self, state: SyncState) -> None:
        return None

    def data_changed(self) -> None:
        return None


class LoggingNotificationSink:
    """Пишет переходы состояний в лог."""

    def state_changed(self, state: SyncState) -> None:
        if state.error:
            LOGGER.info("Синхронизация: %s (%s)", state.status.value, state.error)
        else:
            LOGGER.info("Синхронизация: %s", state.status.value)

    def data_changed(self) -> None:
        LOGGER.debug("Данные задач изменились")


class CallbackNotificationSink:
    """Адаптер для интерфейсов, подписывающихся функциями."""

    def __init__(
        self,
        on_state: Optional[Callable[[SyncState], None]] = None,
        on_data: Optional[Callable[[], None]] = None,
    ) -> None:
        self._on_state = on_state
        self._on_data = on_data

    def state_changed(self, state: SyncState) -> None:
        if self._on_state:
            self._on_state(state)

    def data_changed(self) -> None:
        if self._on_data:
            self._on_data()


class FanOutNotificationSink:
    """Рассылает события нескольким получателям по очереди."""

    def __init__(self, sinks: List[NotificationSink]) -> None:
        self._sinks = list(sinks)

    def state_changed(self, state: SyncState) -> None:
        for sink in self._sinks:
            sink.state_changed(state)

    def data_changed(self) -> None:
        for sink in self._sinks:
            sink.data_changed()


__all__ = [
    "CallbackNotificationSink",
    "FanOutNotificationSink",
    "LoggingNotificationSink",
    "NotificationSink",
    "NullNotificationSink",
]
