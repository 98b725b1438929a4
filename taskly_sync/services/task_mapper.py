"""Маппинг задач между локальной моделью и документами CouchDB."""
from __future__ import annotations

from typing import Dict, Optional

from dateutil import parser

from taskly_sync.models import Task


class TaskMappingError(ValueError):
    """Документ из ленты изменений не удаётся превратить в задачу."""


def normalize_due_date(value: Optional[str]) -> Optional[str]:
    """Приводит пользовательскую дату к виду ``YYYY-MM-DD``."""
    if value is None or not value.strip():
        return None
    try:
        parsed = parser.parse(value)
    except (ValueError, OverflowError) as exc:
        raise ValueError(f"Не удалось разобрать дату {value!r}") from exc
    return parsed.date().isoformat()


class TaskMapper:
    """Конвертация данных между CouchDB API и внутренними моделями."""

    @staticmethod
    def is_system_document(doc_id: str) -> bool:
        """Служебные документы CouchDB (``_design/…``, ``_local/…``) не являются задачами."""
        return doc_id.startswith("_")

    def to_document(self, task: Task, *, rev: Optional[str] = None) -> Dict[str, object]:
        """Документ для ``PUT /{db}/{id}``; ``rev`` — текущая ревизия на сервере."""
        doc: Dict[str, object] = {"_id": task.id}
        if rev:
            doc["_rev"] = rev
        doc["title"] = task.title
        if task.description is not None:
            doc["description"] = task.description
        doc["completed"] = task.completed
        if task.due_date is not None:
            doc["dueDate"] = task.due_date
        doc["updatedAt"] = task.updated_at
        doc["order"] = task.order
        if task.deleted:
            doc["_deleted"] = True
        return doc

    def map_change(self, entry: Dict) -> Optional[Task]:
        """Запись ленты ``_changes`` → задача; None для записей без документа и служебных.

        Надгробие без ``updatedAt`` (обычный DELETE в CouchDB) возвращается
        как удалённая задача с ``updated_at = None``: хранилище применяет его
        только к существующей строке.
        """
        if not isinstance(entry, dict):
            raise TaskMappingError(f"Запись ленты изменений не является объектом: {entry!r}")
        doc = entry.get("doc")
        if not doc:
            return None
        if not isinstance(doc, dict):
            raise TaskMappingError(f"Документ записи {entry.get('id')!r} не является объектом: {doc!r}")
        doc_id = str(doc.get("_id") or entry.get("id") or "")
        if not doc_id or self.is_system_document(doc_id):
            return None
        deleted = bool(entry.get("deleted")) or bool(doc.get("_deleted"))
        updated_at = doc.get("updatedAt")
        if updated_at is None:
            if deleted:
                return Task(id=doc_id, revision=doc.get("_rev"), title="", updated_at=None, deleted=True)
            raise TaskMappingError(f"В документе {doc_id} нет updatedAt")
        title = doc.get("title")
        if title is None and not deleted:
            raise TaskMappingError(f"В документе {doc_id} нет title")
        try:
            return Task(
                id=doc_id,
                revision=doc.get("_rev"),
                title=str(title or ""),
                description=doc.get("description"),
                completed=bool(doc.get("completed", False)),
                due_date=doc.get("dueDate"),
                updated_at=int(updated_at),
                order=int(doc.get("order") or 0),
                deleted=deleted,
            )
        except (TypeError, ValueError) as exc:
            raise TaskMappingError(f"Некорректный документ {doc_id}: {exc}") from exc


__all__ = ["TaskMapper", "TaskMappingError", "normalize_due_date"]
