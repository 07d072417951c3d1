"""Resolve the configured :class:`~gigwatch.pipeline.base.FetchPipeline`.

Resolution order:

1. ``PIPELINE_FACTORY=package.module:callable``: the callable is invoked with
   the :class:`~gigwatch.core.settings.Settings` and must return a pipeline.
2. ``MARKETPLACE_QUERY_PATH``: the built-in
   :class:`~gigwatch.pipeline.graphql.GraphQLFetchPipeline` posts that file.
3. Neither: :class:`~gigwatch.core.exceptions.ConfigError`.
"""

from __future__ import annotations

import importlib
import logging
from pathlib import Path

from gigwatch.core.exceptions import ConfigError
from gigwatch.core.settings import Settings
from gigwatch.pipeline.base import FetchPipeline
from gigwatch.pipeline.graphql import GraphQLFetchPipeline

__all__ = ["load_pipeline"]

logger = logging.getLogger(__name__)


def load_pipeline(settings: Settings) -> FetchPipeline:
    """Build the fetch pipeline described by *settings*.

    Raises:
        ConfigError: No pipeline configured, the factory cannot be imported,
            or the query file cannot be read.
    """
    if settings.pipeline_factory:
        return _from_factory(settings.pipeline_factory, settings)

    if settings.marketplace_query_path:
        path = Path(settings.marketplace_query_path)
        try:
            query = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise ConfigError(f"Cannot read MARKETPLACE_QUERY_PATH {path}: {exc}") from exc
        if not query.strip():
            raise ConfigError(f"MARKETPLACE_QUERY_PATH {path} is empty.")
        logger.debug("Using GraphQL pipeline with query from %s", path)
        return GraphQLFetchPipeline(
            url=settings.marketplace_graphql_url,
            query=query,
            result_field=settings.marketplace_result_field,
        )

    raise ConfigError(
        "No fetch pipeline configured. Set PIPELINE_FACTORY or MARKETPLACE_QUERY_PATH."
    )


def _from_factory(target: str, settings: Settings) -> FetchPipeline:
    module_name, sep, attr = target.partition(":")
    if not sep or not module_name or not attr:
        raise ConfigError(f"PIPELINE_FACTORY must look like 'module:callable', got {target!r}.")
    try:
        module = importlib.import_module(module_name)
        factory = getattr(module, attr)
    except (ImportError, AttributeError) as exc:
        raise ConfigError(f"Cannot load PIPELINE_FACTORY {target!r}: {exc}") from exc

    pipeline = factory(settings)
    if not callable(getattr(pipeline, "run", None)):
        raise ConfigError(f"PIPELINE_FACTORY {target!r} returned {pipeline!r}, which has no run().")
    logger.debug("Using pipeline from factory %s", target)
    return pipeline
