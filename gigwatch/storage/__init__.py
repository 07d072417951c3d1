"""Document stores and the model ↔ document codec for persisted controller state."""

from gigwatch.storage.base import DocumentStore, StoredDocument
from gigwatch.storage.database import DEFAULT_DB_PATH, create_schema, open_db
from gigwatch.storage.documents import (
    credential_from_document,
    credential_to_document,
    format_timestamp,
    parse_timestamp,
    state_from_document,
    state_to_document,
)
from gigwatch.storage.memory import InMemoryDocumentStore
from gigwatch.storage.repository import SqliteDocumentStore

__all__ = [
    "DocumentStore",
    "StoredDocument",
    "InMemoryDocumentStore",
    "SqliteDocumentStore",
    "DEFAULT_DB_PATH",
    "open_db",
    "create_schema",
    "parse_timestamp",
    "format_timestamp",
    "credential_to_document",
    "credential_from_document",
    "state_to_document",
    "state_from_document",
]
