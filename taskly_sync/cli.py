"""CLI-интерфейс для работы с задачами и синхронизацией."""
from __future__ import annotations

import json
import logging
from dataclasses import asdict
from pathlib import Path
from typing import Optional

import typer
from dateutil import parser

from taskly_sync.clients import CouchDBAPIError, CouchDBClient
from taskly_sync.config import AppConfig, ConfigError
from taskly_sync.models import SyncState
from taskly_sync.services import (
    CallbackNotificationSink,
    CycleError,
    FanOutNotificationSink,
    LocalStoreError,
    LoggingNotificationSink,
    NotificationSink,
    RemoteConnectionError,
    ReplicationEngine,
    TaskStore,
    normalize_due_date,
)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

app = typer.Typer(help="Локальные задачи с синхронизацией через CouchDB")

ConfigOption = typer.Option(Path("config.yaml"), "--config", "-c", help="Путь к YAML конфигурации")
VerboseOption = typer.Option(0, "--verbose", "-v", count=True, help="Уровень логирования")


def configure_logging(verbosity: int) -> None:
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG
    logging.basicConfig(level=level, format=LOG_FORMAT)


def load_config(config_path: Path) -> AppConfig:
    try:
        config = AppConfig.load(config_path)
    except ConfigError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=2) from exc
    config.ensure_runtime_dirs()
    return config


def open_store(config: AppConfig, notifier: Optional[NotificationSink] = None) -> TaskStore:
    try:
        return TaskStore(config.database, notifier=notifier)
    except LocalStoreError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=1) from exc


def build_engine(config: AppConfig, store: TaskStore, sink: NotificationSink, *, progress: bool = False) -> ReplicationEngine:
    return ReplicationEngine(
        store,
        sink,
        interval_seconds=config.sync_interval_seconds,
        timeout=config.request_timeout_seconds,
        show_progress=progress,
    )


def echo_json(payload: object) -> None:
    typer.echo(json.dumps(payload, indent=2, ensure_ascii=False))


def parse_due(value: Optional[str]) -> Optional[str]:
    try:
        return normalize_due_date(value)
    except ValueError as exc:
        raise typer.BadParameter(str(exc), param_hint="--due") from exc


@app.command("add")
def add(
    title: str = typer.Argument(..., help="Название задачи"),
    description: Optional[str] = typer.Option(None, "--description", "-d"),
    due: Optional[str] = typer.Option(None, "--due", help="Срок, например 2026-10-20"),
    config_path: Path = ConfigOption,
    verbosity: int = VerboseOption,
) -> None:
    """Создаёт задачу в конце списка."""
    configure_logging(verbosity)
    store = open_store(load_config(config_path))
    try:
        task = store.create_task(title, description=description, due_date=parse_due(due))
        echo_json(task.as_payload())
    finally:
        store.close()


@app.command("list")
def list_tasks(
    show_all: bool = typer.Option(False, "--all", help="Показывать и удалённые задачи"),
    config_path: Path = ConfigOption,
    verbosity: int = VerboseOption,
) -> None:
    """Выводит задачи в порядке сортировки."""
    configure_logging(verbosity)
    store = open_store(load_config(config_path))
    try:
        echo_json([task.as_payload() for task in store.list_tasks(include_deleted=show_all)])
    finally:
        store.close()


@app.command("edit")
def edit(
    task_id: str = typer.Argument(...),
    title: Optional[str] = typer.Option(None, "--title"),
    description: Optional[str] = typer.Option(None, "--description", "-d"),
    due: Optional[str] = typer.Option(None, "--due"),
    config_path: Path = ConfigOption,
    verbosity: int = VerboseOption,
) -> None:
    """Меняет поля задачи; ревизия увеличивается на 1."""
    configure_logging(verbosity)
    store = open_store(load_config(config_path))
    try:
        task = store.get_task(task_id)
        if task is None or task.deleted:
            typer.echo(f"Задача {task_id} не найдена", err=True)
            raise typer.Exit(code=1)
        if title is not None:
            task.title = title
        if description is not None:
            task.description = description
        if due is not None:
            task.due_date = parse_due(due)
        echo_json(store.update_task(task).as_payload())
    finally:
        store.close()


@app.command("toggle")
def toggle(
    task_id: str = typer.Argument(...),
    config_path: Path = ConfigOption,
    verbosity: int = VerboseOption,
) -> None:
    """Отмечает задачу выполненной или снимает отметку."""
    configure_logging(verbosity)
    store = open_store(load_config(config_path))
    try:
        echo_json(store.toggle_completion(task_id).as_payload())
    except LocalStoreError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=1) from exc
    finally:
        store.close()


@app.command("delete")
def delete(
    task_id: str = typer.Argument(...),
    config_path: Path = ConfigOption,
    verbosity: int = VerboseOption,
) -> None:
    """Помечает задачу удалённой (надгробие остаётся для синхронизации)."""
    configure_logging(verbosity)
    store = open_store(load_config(config_path))
    try:
        store.soft_delete(task_id)
        typer.echo(f"Задача {task_id} удалена")
    except LocalStoreError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=1) from exc
    finally:
        store.close()


@app.command("move")
def move(
    task_id: str = typer.Argument(...),
    direction: str = typer.Argument(..., help="up или down"),
    config_path: Path = ConfigOption,
    verbosity: int = VerboseOption,
) -> None:
    """Сдвигает задачу на одну позицию вверх или вниз."""
    configure_logging(verbosity)
    store = open_store(load_config(config_path))
    try:
        moved = store.reorder_relative(task_id, direction)
        typer.echo("Перемещено" if moved else "Задача уже на краю списка")
    except (LocalStoreError, ValueError) as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=1) from exc
    finally:
        store.close()


@app.command("swap")
def swap(
    task_id: str = typer.Argument(...),
    target_id: str = typer.Argument(...),
    config_path: Path = ConfigOption,
    verbosity: int = VerboseOption,
) -> None:
    """Меняет местами две задачи."""
    configure_logging(verbosity)
    store = open_store(load_config(config_path))
    try:
        store.reorder_to_position(task_id, target_id)
        echo_json([task.as_payload() for task in store.list_tasks()])
    except LocalStoreError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=1) from exc
    finally:
        store.close()


@app.command("changes")
def changes(
    since: Optional[str] = typer.Option(None, help="ISO-время, с которого показывать изменения"),
    config_path: Path = ConfigOption,
    verbosity: int = VerboseOption,
) -> None:
    """Локальные изменения (включая удаления) после указанного момента."""
    configure_logging(verbosity)
    store = open_store(load_config(config_path))
    try:
        since_ms = int(parser.isoparse(since).timestamp() * 1000) if since else 0
        echo_json([task.as_payload() for task in store.changes_since(since_ms)])
    finally:
        store.close()


@app.command("status")
def status(
    config_path: Path = ConfigOption,
    verbosity: int = VerboseOption,
) -> None:
    """Показывает режим синхронизации и курсор ленты изменений."""
    configure_logging(verbosity)
    config = load_config(config_path)
    store = open_store(config)
    try:
        cursor = store.get_cursor()
        echo_json(
            {
                "syncMode": config.sync.sync_mode,
                "syncUrl": config.sync.base_url if config.sync.is_sync_enabled else None,
                "tasks": store.count_tasks(),
                "tombstones": store.count_tasks(include_deleted=True) - store.count_tasks(),
                "lastSeq": cursor.last_seq if cursor else None,
                "lastSyncedAt": cursor.last_synced_at if cursor else None,
            }
        )
    finally:
        store.close()


@app.command("sync-once")
def sync_once(
    config_path: Path = ConfigOption,
    verbosity: int = VerboseOption,
) -> None:
    """Один цикл push + pull."""
    configure_logging(verbosity)
    config = load_config(config_path)
    store = open_store(config)
    engine = build_engine(config, store, LoggingNotificationSink(), progress=True)
    try:
        stats = engine.sync_once(config.sync)
        echo_json(asdict(stats))
    except (ConfigError, RemoteConnectionError, CycleError) as exc:
        typer.echo(f"Синхронизация не удалась: {exc}", err=True)
        raise typer.Exit(code=1) from exc
    finally:
        store.close()


@app.command("sync")
def sync(
    config_path: Path = ConfigOption,
    verbosity: int = VerboseOption,
) -> None:
    """Фоновая синхронизация до Ctrl+C."""
    configure_logging(max(verbosity, 1))
    config = load_config(config_path)

    def print_state(state: SyncState) -> None:
        typer.echo(json.dumps(state.as_payload(), ensure_ascii=False))

    sink = FanOutNotificationSink([LoggingNotificationSink(), CallbackNotificationSink(on_state=print_state)])
    store = open_store(config, notifier=sink)
    engine = build_engine(config, store, sink)
    try:
        if not engine.start(config.sync):
            return
        try:
            while not engine.wait(1.0):
                pass
        except KeyboardInterrupt:
            typer.echo("Остановка…")
        engine.stop()
        engine.wait(config.request_timeout_seconds)
    except ConfigError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=2) from exc
    finally:
        store.close()


@app.command("verify")
def verify(
    config_path: Path = ConfigOption,
    verbosity: int = VerboseOption,
) -> None:
    """Проверяет соединение с CouchDB и наличие базы."""
    configure_logging(verbosity)
    config = load_config(config_path)
    if not config.sync.is_sync_enabled:
        typer.echo("Режим local: проверять нечего")
        return
    client = CouchDBClient(config.sync, timeout=config.request_timeout_seconds)
    try:
        info = client.server_info()
        created = client.ensure_database()
    except CouchDBAPIError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=1) from exc
    state = "создана" if created else "существует"
    typer.echo(f"Соединение успешно: CouchDB {info.get('version', '?')}, база {client.db_name} {state}")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
