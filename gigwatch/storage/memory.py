"""In-process document store.

Holds documents in a dict guarded by an :class:`asyncio.Lock` so that
concurrent coroutines observe the same compare-and-set semantics as the
SQLite adapter.  Bodies are deep-copied on the way in and out so callers can
never mutate stored state by accident.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from typing import Any

from gigwatch.core.exceptions import DocumentNotFoundError, StaleStateError
from gigwatch.storage.base import StoredDocument

__all__ = ["InMemoryDocumentStore"]

logger = logging.getLogger(__name__)


class InMemoryDocumentStore:
    """Dict-backed :class:`~gigwatch.storage.base.DocumentStore`.

    Args:
        initial: Optional ``{doc_id: body}`` mapping to pre-populate, each
            stored at version ``1``.
    """

    def __init__(self, initial: dict[str, dict[str, Any]] | None = None) -> None:
        self._docs: dict[str, StoredDocument] = {
            doc_id: StoredDocument(doc_id, copy.deepcopy(body), 1)
            for doc_id, body in (initial or {}).items()
        }
        self._lock = asyncio.Lock()

    async def get(self, doc_id: str) -> StoredDocument | None:
        async with self._lock:
            doc = self._docs.get(doc_id)
            if doc is None:
                return None
            return StoredDocument(doc.doc_id, copy.deepcopy(doc.data), doc.version)

    async def create_if_absent(self, doc_id: str, data: dict[str, Any]) -> bool:
        async with self._lock:
            if doc_id in self._docs:
                return False
            self._docs[doc_id] = StoredDocument(doc_id, copy.deepcopy(data), 1)
            logger.debug("Created document %s", doc_id)
            return True

    async def update_if_version(
        self,
        doc_id: str,
        data: dict[str, Any],
        expected_version: int,
    ) -> StoredDocument:
        async with self._lock:
            current = self._docs.get(doc_id)
            if current is None:
                raise DocumentNotFoundError(doc_id)
            if current.version != expected_version:
                raise StaleStateError(doc_id, expected_version)
            updated = StoredDocument(doc_id, copy.deepcopy(data), current.version + 1)
            self._docs[doc_id] = updated
            logger.debug("Updated document %s → version %d", doc_id, updated.version)
            return StoredDocument(doc_id, copy.deepcopy(data), updated.version)

    async def put(self, doc_id: str, data: dict[str, Any]) -> StoredDocument:
        async with self._lock:
            current = self._docs.get(doc_id)
            version = current.version + 1 if current else 1
            self._docs[doc_id] = StoredDocument(doc_id, copy.deepcopy(data), version)
            return StoredDocument(doc_id, copy.deepcopy(data), version)
