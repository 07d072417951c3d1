"""Generic GraphQL-over-HTTP fetch pipeline.

Sends a deployment-supplied GraphQL document to the marketplace endpoint with
the bearer token the trigger hands over, checks the response shape, and
returns the job nodes.  What the document asks for (search terms, filters,
pagination) is deployment configuration and is never inspected here.

Expected response shape::

    {"data": {"<result_field>": {"edges": [{"node": {"id": "...", ...}}, ...]}}}

Nodes are de-duplicated by ``id``; a later node with the same id replaces the
earlier one but keeps its position.

Typical usage::

    pipeline = GraphQLFetchPipeline(
        url="https://api.upwork.com/graphql",
        query=Path("queries/jobs.graphql").read_text(),
    )
    async with pipeline:
        result = await pipeline.run(token)
"""

from __future__ import annotations

import logging
from types import TracebackType
from typing import Any

from gigwatch.core.exceptions import PipelineError
from gigwatch.pipeline.base import FetchResult
from gigwatch.pipeline.http_client import MarketplaceHttpClient

__all__ = ["GraphQLFetchPipeline", "extract_nodes"]

logger = logging.getLogger(__name__)


def extract_nodes(payload: Any, result_field: str) -> list[dict[str, Any]]:
    """Return the de-duplicated ``node`` objects under ``data.<result_field>.edges``.

    Raises:
        PipelineError: If the payload lacks ``data``, the result field, or
            its ``edges`` list.
    """
    if not isinstance(payload, dict):
        raise PipelineError("Invalid GraphQL response: body is not an object")

    data = payload.get("data")
    if not isinstance(data, dict):
        errors = payload.get("errors") or []
        detail = "; ".join(str(e.get("message", e)) for e in errors if isinstance(e, dict))
        raise PipelineError(f"Invalid GraphQL response: no data ({detail or 'no error detail'})")

    connection = data.get(result_field)
    edges = connection.get("edges") if isinstance(connection, dict) else None
    if not isinstance(edges, list):
        raise PipelineError(
            f"Invalid response from marketplace GraphQL API: no {result_field}.edges"
        )

    unique: dict[Any, dict[str, Any]] = {}
    anonymous: list[dict[str, Any]] = []
    for edge in edges:
        node = edge.get("node") if isinstance(edge, dict) else None
        if not isinstance(node, dict):
            continue
        node_id = node.get("id")
        if node_id is None:
            anonymous.append(node)
        else:
            unique[node_id] = node
    return [*unique.values(), *anonymous]


class GraphQLFetchPipeline:
    """:class:`~gigwatch.pipeline.base.FetchPipeline` posting one GraphQL document.

    Args:
        url: GraphQL endpoint.
        query: GraphQL document text.
        result_field: Field under ``data`` holding the job connection.
        variables: Optional GraphQL variables sent with every request.
        client: HTTP client; one is created (and owned) when omitted.
    """

    def __init__(
        self,
        *,
        url: str,
        query: str,
        result_field: str = "marketplaceJobPostings",
        variables: dict[str, Any] | None = None,
        client: MarketplaceHttpClient | None = None,
    ) -> None:
        if not query.strip():
            raise ValueError("GraphQL query must not be empty.")
        self._url = url
        self._query = query
        self._result_field = result_field
        self._variables = variables
        self._owns_client = client is None
        self._client = client or MarketplaceHttpClient()

    async def __aenter__(self) -> GraphQLFetchPipeline:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if self._owns_client:
            await self._client.close()

    async def run(self, token: str) -> FetchResult:
        body: dict[str, Any] = {"query": self._query}
        if self._variables:
            body["variables"] = self._variables

        response = await self._client.post(
            self._url,
            json=body,
            headers={"Authorization": f"Bearer {token}"},
        )
        try:
            payload = response.json()
        except ValueError as exc:
            raise PipelineError("Marketplace GraphQL API returned a non-JSON body") from exc

        nodes = extract_nodes(payload, self._result_field)
        logger.info("Fetched %d unique jobs from %s.", len(nodes), self._url)
        return FetchResult(items=nodes, payload=payload)
