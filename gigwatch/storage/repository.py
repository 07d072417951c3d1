"""SQLite-backed document repository.

Provides :class:`SqliteDocumentStore`, the production
:class:`~gigwatch.storage.base.DocumentStore`.  All persisted controller
state, the OAuth credential and the scheduler state, lives in the single
``documents`` table created by :func:`~gigwatch.storage.database.open_db`.

Conditional writes are a single ``UPDATE … WHERE id = ? AND version = ?``
statement; SQLite serialises writers on the database file, so the rowcount
tells us unambiguously whether this writer won.  When it did not, a second
read distinguishes "document missing" from "version moved on".

Typical usage::

    conn = await open_db(path)
    store = SqliteDocumentStore(conn)

    doc = await store.get("config/scheduler_state")
    await store.update_if_version(doc.doc_id, new_body, doc.version)
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from typing import Any

import aiosqlite

from gigwatch.core.exceptions import DocumentNotFoundError, StaleStateError
from gigwatch.storage.base import StoredDocument

__all__ = ["SqliteDocumentStore"]

logger = logging.getLogger(__name__)


class SqliteDocumentStore:
    """Data-access object for the ``documents`` table.

    Owns no connection lifecycle, the caller supplies an open
    :class:`aiosqlite.Connection` and closes it when done.

    Args:
        conn: Open, configured connection from
            :func:`~gigwatch.storage.database.open_db`.
    """

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self._conn = conn

    # ------------------------------------------------------------------
    # Read helpers
    # ------------------------------------------------------------------

    async def get(self, doc_id: str) -> StoredDocument | None:
        cursor = await self._conn.execute(
            "SELECT body, version FROM documents WHERE id = ?",
            (doc_id,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return StoredDocument(doc_id=doc_id, data=json.loads(row[0]), version=int(row[1]))

    # ------------------------------------------------------------------
    # Write helpers
    # ------------------------------------------------------------------

    async def create_if_absent(self, doc_id: str, data: dict[str, Any]) -> bool:
        cursor = await self._conn.execute(
            """
            INSERT OR IGNORE INTO documents (id, body, version, updated_at)
            VALUES (?, ?, 1, ?)
            """,
            (doc_id, json.dumps(data), _now_iso()),
        )
        await self._conn.commit()
        created = cursor.rowcount == 1
        logger.debug("create_if_absent %s → created=%s", doc_id, created)
        return created

    async def update_if_version(
        self,
        doc_id: str,
        data: dict[str, Any],
        expected_version: int,
    ) -> StoredDocument:
        cursor = await self._conn.execute(
            """
            UPDATE documents
               SET body = ?, version = version + 1, updated_at = ?
             WHERE id = ? AND version = ?
            """,
            (json.dumps(data), _now_iso(), doc_id, expected_version),
        )
        await self._conn.commit()

        if cursor.rowcount == 1:
            logger.debug("Updated document %s → version %d", doc_id, expected_version + 1)
            return StoredDocument(doc_id=doc_id, data=data, version=expected_version + 1)

        if await self.get(doc_id) is None:
            raise DocumentNotFoundError(doc_id)
        raise StaleStateError(doc_id, expected_version)

    async def put(self, doc_id: str, data: dict[str, Any]) -> StoredDocument:
        await self._conn.execute(
            """
            INSERT INTO documents (id, body, version, updated_at)
            VALUES (?, ?, 1, ?)
            ON CONFLICT(id) DO UPDATE SET
                body = excluded.body,
                version = documents.version + 1,
                updated_at = excluded.updated_at
            """,
            (doc_id, json.dumps(data), _now_iso()),
        )
        await self._conn.commit()
        stored = await self.get(doc_id)
        assert stored is not None  # noqa: S101
        return stored


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()
