"""Загрузка и валидация конфигурации приложения."""
from __future__ import annotations

import re
from pathlib import Path
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

SyncMode = Literal["local", "selfhosted", "cloud"]

# Правило имён баз CouchDB
_DB_NAME_RE = re.compile(r"^[a-z][a-z0-9_$()+/-]*$")


class ConfigError(ValueError):
    """Некорректная или неполная конфигурация."""


def normalize_url(url: str) -> str:
    """Добавляет схему http:// при её отсутствии и убирает завершающий слэш."""
    url = url.strip()
    if not url.startswith(("http://", "https://")):
        url = f"http://{url}"
    return url.rstrip("/")


class SyncSettings(BaseModel):
    """Параметры подключения к удалённой базе CouchDB."""

    model_config = ConfigDict(populate_by_name=True)

    sync_mode: SyncMode = Field("local", alias="syncMode", description="local, selfhosted или cloud")
    sync_url: str = Field("localhost:5984", alias="syncUrl", description="Адрес сервера CouchDB")
    sync_username: str = Field("", alias="syncUsername", description="Логин для Basic Auth")
    sync_password: str = Field("", alias="syncPassword", description="Пароль для Basic Auth")
    sync_db_name: str = Field("tasks_db", alias="syncDbName", description="Имя удалённой базы")

    @field_validator("sync_db_name")
    @classmethod
    def _check_db_name(cls, value: str) -> str:
        if not _DB_NAME_RE.match(value):
            raise ValueError(f"Недопустимое имя базы CouchDB: {value!r}")
        return value

    @property
    def is_sync_enabled(self) -> bool:
        return self.sync_mode != "local"

    @property
    def base_url(self) -> str:
        return normalize_url(self.sync_url)

    @property
    def credentials(self) -> Optional[tuple[str, str]]:
        """Пара логин/пароль, если заданы оба значения."""
        if self.sync_username and self.sync_password:
            return self.sync_username, self.sync_password
        return None

    def require_url(self) -> None:
        if not self.sync_url.strip():
            raise ConfigError("Не задан адрес сервера синхронизации (syncUrl)")


class AppConfig(BaseModel):
    """Корневая конфигурация приложения."""

    database: Path = Field(Path(".taskly/tasks.sqlite3"), description="Путь к локальной SQLite-базе задач")
    sync: SyncSettings = Field(default_factory=SyncSettings)
    sync_interval_seconds: float = Field(5.0, gt=0, description="Пауза между циклами синхронизации")
    request_timeout_seconds: float = Field(30.0, gt=0, description="Таймаут HTTP-запросов")

    @field_validator("database", mode="before")
    @classmethod
    def _database_path(cls, value: Path | str) -> Path:
        return Path(value).expanduser()

    @classmethod
    def load(cls, path: Path | str) -> "AppConfig":
        """Загружает конфигурацию из YAML-файла; без файла берутся значения по умолчанию."""
        path = Path(path)
        if not path.exists():
            return cls()
        try:
            raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"Не удалось разобрать YAML {path}: {exc}") from exc
        try:
            return cls.model_validate(raw)
        except ValidationError as exc:
            raise ConfigError(f"Конфигурация {path} некорректна: {exc}") from exc

    def ensure_runtime_dirs(self) -> None:
        """Создаёт каталог для локальной базы."""
        self.database.parent.mkdir(parents=True, exist_ok=True)


__all__ = ["AppConfig", "ConfigError", "SyncMode", "SyncSettings", "normalize_url"]
