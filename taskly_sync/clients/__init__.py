"""HTTP-клиенты внешних систем."""

from .couchdb import (
    CouchDBAPIError,
    CouchDBClient,
    CouchDBConflictError,
    CouchDBConnectionError,
    document_timestamp,
)

__all__ = [
    "CouchDBClient",
    "CouchDBAPIError",
    "CouchDBConflictError",
    "CouchDBConnectionError",
    "document_timestamp",
]
