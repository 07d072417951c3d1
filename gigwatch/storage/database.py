"""SQLite database initialisation for the Gigwatch document store.

This module is responsible for:

* Opening (or creating) the SQLite file.
* Configuring low-level PRAGMA settings (WAL journal mode, busy timeout).
* Bootstrapping the schema via ``CREATE TABLE IF NOT EXISTS``: safe to
  call on every startup because the statement is idempotent.

Typical usage::

    from gigwatch.storage.database import open_db
    from gigwatch.storage.repository import SqliteDocumentStore

    async def main() -> None:
        conn = await open_db(Path("data/gigwatch.db"))
        store = SqliteDocumentStore(conn)
        ...
        await conn.close()
"""

from __future__ import annotations

import logging
from pathlib import Path

import aiosqlite

__all__ = [
    "DEFAULT_DB_PATH",
    "open_db",
    "create_schema",
]

logger = logging.getLogger(__name__)

#: Fallback database path when no explicit path is passed to :func:`open_db`.
DEFAULT_DB_PATH: Path = Path("gigwatch.db")

#: Milliseconds SQLite waits on a locked database before raising ``BUSY``.
#: Two overlapping trigger processes contend on the same file.
_BUSY_TIMEOUT_MS: int = 5000

#: ``documents`` is a minimal key-document store.
#:
#: Column notes
#: ------------
#: id          Document identifier, e.g. ``config/scheduler_state``.
#: body        JSON-serialised document body (timestamps as ISO-8601 strings).
#: version     Write counter; conditional updates match on it.
#: updated_at  ISO-8601 UTC time of the last write, for manual inspection.
_DDL_DOCUMENTS = """\
CREATE TABLE IF NOT EXISTS documents (
    id          TEXT     NOT NULL,
    body        TEXT     NOT NULL,
    version     INTEGER  NOT NULL DEFAULT 1,
    updated_at  TEXT     NOT NULL,
    PRIMARY KEY (id)
)"""


async def open_db(path: Path | None = None) -> aiosqlite.Connection:
    """Open (or create) the SQLite database and configure it.

    Args:
        path: Filesystem path for the SQLite file.  Defaults to
            :data:`DEFAULT_DB_PATH`.

    Returns:
        An open, configured :class:`aiosqlite.Connection`.  The caller is
        responsible for closing it.

    Raises:
        aiosqlite.OperationalError: If the database file cannot be opened or
            created.
    """
    db_path = Path(path or DEFAULT_DB_PATH)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    logger.debug("Opening SQLite database at %s", db_path)

    conn: aiosqlite.Connection = await aiosqlite.connect(db_path)
    conn.row_factory = aiosqlite.Row

    await _configure_pragmas(conn)
    await create_schema(conn)

    logger.debug("SQLite document store ready at %s", db_path)
    return conn


async def create_schema(conn: aiosqlite.Connection) -> None:
    """Create all required tables if they do not already exist."""
    await conn.execute(_DDL_DOCUMENTS)
    await conn.commit()
    logger.debug("Schema bootstrap complete (documents table verified)")


async def _configure_pragmas(conn: aiosqlite.Connection) -> None:
    """Apply PRAGMA settings that must be set immediately after opening."""
    result = await conn.execute("PRAGMA journal_mode=WAL")
    row = await result.fetchone()
    mode = row[0] if row else "unknown"
    if mode != "wal":
        logger.warning(
            "Requested WAL journal mode but SQLite reported: %r. "
            "This may happen for in-memory databases (':memory:').",
            mode,
        )

    await conn.execute(f"PRAGMA busy_timeout={_BUSY_TIMEOUT_MS}")
