"""Fetch-pipeline boundary: protocol, GraphQL transport adapter, and loader."""

from gigwatch.pipeline.base import FetchPipeline, FetchResult
from gigwatch.pipeline.graphql import GraphQLFetchPipeline, extract_nodes
from gigwatch.pipeline.http_client import MarketplaceHttpClient
from gigwatch.pipeline.loader import load_pipeline

__all__ = [
    "FetchPipeline",
    "FetchResult",
    "GraphQLFetchPipeline",
    "MarketplaceHttpClient",
    "extract_nodes",
    "load_pipeline",
]
