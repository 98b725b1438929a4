"""HTTP-клиент для CouchDB-совместимого хранилища документов."""
from __future__ import annotations

import math
import numbers
from typing import Dict, Iterable, List, Optional
from urllib.parse import quote

import requests
from requests.auth import HTTPBasicAuth

from taskly_sync.config import SyncSettings


class CouchDBAPIError(RuntimeError):
    """Ошибка CouchDB API."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class CouchDBConnectionError(CouchDBAPIError):
    """Сервер недоступен: запрос не дошёл или не получил ответа."""


class CouchDBConflictError(CouchDBAPIError):
    """Документ изменён на сервере: передана устаревшая ревизия (409)."""


def document_timestamp(doc: Dict) -> Optional[int]:
    """``updatedAt`` документа как целое; None, если поле отсутствует или не является числом."""
    value = doc.get("updatedAt")
    if isinstance(value, bool) or not isinstance(value, numbers.Real) or not math.isfinite(value):
        return None
    return int(value)


class CouchDBClient:
    """Минимальный клиент CouchDB для одной базы."""

    def __init__(
        self,
        settings: SyncSettings,
        session: Optional[requests.Session] = None,
        *,
        timeout: float = 30.0,
    ) -> None:
        self._settings = settings
        self._timeout = timeout
        self._session = session or requests.Session()
        credentials = settings.credentials
        if credentials:
            self._session.auth = HTTPBasicAuth(*credentials)
        self._session.headers.update(
            {
                "User-Agent": "taskly-sync/0.1",
                "Accept": "application/json",
            }
        )

    @property
    def base_url(self) -> str:
        return self._settings.base_url

    @property
    def db_name(self) -> str:
        return self._settings.sync_db_name

    @property
    def db_url(self) -> str:
        return f"{self.base_url}/{self.db_name}"

    # region low-level helpers
    def _request(
        self,
        method: str,
        url: str,
        *,
        allowed: Iterable[int] = (),
        **kwargs,
    ) -> requests.Response:
        try:
            response = self._session.request(method, url, timeout=self._timeout, **kwargs)
        except requests.RequestException as exc:
            raise CouchDBConnectionError(f"Нет соединения с CouchDB при запросе {method} {url}: {exc}") from exc
        if response.status_code in allowed:
            return response
        if response.status_code == 409:
            raise CouchDBConflictError(
                f"Конфликт ревизий при запросе {method} {url}: {response.text}",
                status_code=409,
            )
        if response.status_code >= 400:
            raise CouchDBAPIError(
                f"Ошибка CouchDB {response.status_code} при запросе {method} {url}: {response.text}",
                status_code=response.status_code,
            )
        return response

    def _doc_url(self, doc_id: str) -> str:
        return f"{self.db_url}/{quote(doc_id, safe='')}"

    # endregion

    def server_info(self) -> Dict:
        """Приветствие сервера (``GET /``): версия и vendor."""
        response = self._request("GET", f"{self.base_url}/")
        return response.json()

    def ensure_database(self) -> bool:
        """Идемпотентно создаёт базу. Возвращает True, если база создана этим вызовом."""
        response = self._request("PUT", self.db_url, allowed=(412,))
        return response.status_code != 412

    def get_document(self, doc_id: str) -> Optional[Dict]:
        """Текущая версия документа.

        Для удалённого документа возвращается его последнее надгробие
        (``_deleted: true`` и сохранённые поля), для отсутствующего — None.
        """
        response = self._request("GET", self._doc_url(doc_id), allowed=(404,))
        if response.status_code != 404:
            return response.json()
        if self._not_found_reason(response) != "deleted":
            return None
        return self._latest_tombstone(doc_id)

    @staticmethod
    def _not_found_reason(response: requests.Response) -> Optional[str]:
        try:
            return response.json().get("reason")
        except (ValueError, AttributeError):
            return None

    def _latest_tombstone(self, doc_id: str) -> Dict:
        response = self._request(
            "GET",
            self._doc_url(doc_id),
            params={"open_revs": "all"},
            headers={"Accept": "application/json"},
            allowed=(404,),
        )
        leaves: List[Dict] = []
        if response.status_code != 404:
            leaves = [item["ok"] for item in response.json() if isinstance(item, dict) and "ok" in item]
        if not leaves:
            return {"_id": doc_id, "_deleted": True}
        return max(leaves, key=lambda doc: document_timestamp(doc) or 0)

    def put_document(self, doc: Dict) -> Dict:
        """Записывает документ; при устаревшем ``_rev`` поднимает CouchDBConflictError."""
        response = self._request("PUT", self._doc_url(doc["_id"]), json=doc)
        return response.json()

    def changes(self, since: str) -> Dict:
        """Лента изменений с документами, начиная с позиции ``since``."""
        response = self._request(
            "GET",
            f"{self.db_url}/_changes",
            params={"include_docs": "true", "since": since},
        )
        payload = response.json()
        if not isinstance(payload, dict) or "last_seq" not in payload:
            raise CouchDBAPIError(f"Неожиданный ответ _changes: {payload!r}")
        return payload


__all__ = [
    "CouchDBClient",
    "CouchDBAPIError",
    "CouchDBConflictError",
    "CouchDBConnectionError",
    "document_timestamp",
]
