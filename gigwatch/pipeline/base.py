"""Fetch-pipeline contract consumed by the scheduler trigger.

The pipeline is an external collaborator: it decides *what* to query and what
to do with the results.  The controller only decides *whether and when* it
runs and hands it a bearer token that stays valid for the refresh skew.

Failures must be raised, not returned:

* :class:`~gigwatch.core.exceptions.TransientError` (and subclasses) for rate
  limits, 5xx and network trouble;
* :class:`~gigwatch.core.exceptions.PipelineError` for domain failures such as
  a malformed response;
* :class:`~gigwatch.core.exceptions.AuthError` when the marketplace rejects
  the token.

Anything else that escapes is treated as a pipeline failure as well.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

__all__ = ["FetchResult", "FetchPipeline"]


@dataclass(frozen=True)
class FetchResult:
    """Outcome of one successful fetch.

    Attributes:
        items: Job nodes returned by the marketplace, de-duplicated by id.
        payload: Raw decoded response, for pipelines that need more than items.
    """

    items: list[dict[str, Any]] = field(default_factory=list)
    payload: Any = None

    @property
    def count(self) -> int:
        return len(self.items)


class FetchPipeline(Protocol):
    """One fetch attempt against the marketplace."""

    async def run(self, token: str) -> FetchResult:
        ...
