"""Document store contract shared by every storage adapter.

The controller persists exactly two documents, the credential and the
scheduler state, and needs only four operations on them.  Each stored
document carries an integer ``version`` that increases by one on every
successful write; conditional writes name the version the writer last
observed, which is the optimistic-concurrency precondition used throughout
:mod:`gigwatch.orchestrator`.

Adapters:

* :class:`~gigwatch.storage.memory.InMemoryDocumentStore`: tests, dry runs.
* :class:`~gigwatch.storage.repository.SqliteDocumentStore`: production
  default, backed by :mod:`aiosqlite`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

__all__ = ["StoredDocument", "DocumentStore"]


@dataclass(frozen=True)
class StoredDocument:
    """A document body together with its store-assigned version.

    Attributes:
        doc_id: Document identifier (e.g. ``"config/scheduler_state"``).
        data: Raw document body as held by the store.
        version: Monotonic write counter; ``1`` after creation.
    """

    doc_id: str
    data: dict[str, Any] = field(default_factory=dict)
    version: int = 1


class DocumentStore(Protocol):
    """Key-document store with strong per-document consistency."""

    async def get(self, doc_id: str) -> StoredDocument | None:
        """Return the current document, or ``None`` if it does not exist."""
        ...

    async def create_if_absent(self, doc_id: str, data: dict[str, Any]) -> bool:
        """Create *doc_id* with *data* unless it exists.

        Returns:
            ``True`` if the document was created, ``False`` if it already
            existed (the existing body is left untouched).
        """
        ...

    async def update_if_version(
        self,
        doc_id: str,
        data: dict[str, Any],
        expected_version: int,
    ) -> StoredDocument:
        """Replace the whole body of *doc_id* if its version still matches.

        Raises:
            DocumentNotFoundError: If *doc_id* does not exist.
            StaleStateError: If the stored version differs from
                *expected_version*.
        """
        ...

    async def put(self, doc_id: str, data: dict[str, Any]) -> StoredDocument:
        """Unconditionally create or replace *doc_id*.

        Only the out-of-band authorization flow uses this; every scheduled
        path goes through :meth:`update_if_version`.
        """
        ...
