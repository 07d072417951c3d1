"""Orchestrator entry-point: assemble all components and fire one tick.

This module provides :func:`run_once`, the top-level async function invoked
by :mod:`gigwatch.__main__` for ``gigwatch tick`` and by the continuous
scheduler for each iteration.

Component wiring
----------------
Each call to :func:`run_once`:

1. Loads :class:`~gigwatch.core.settings.Settings` (or uses the supplied
   instance).
2. Opens the document store via :func:`open_store` unless one is supplied.
3. Resolves the fetch pipeline and the OAuth token client.  A configuration
   problem here is written to ``last_error`` and reported as
   ``CONFIG_ERROR`` without touching the failure counter.
4. Enters the pipeline's and token client's async context managers via
   :class:`contextlib.AsyncExitStack`.
5. Fires a :class:`~gigwatch.orchestrator.trigger.SchedulerTrigger`.
6. Tears down every resource cleanly on exit, including on exceptions.

Typical usage::

    import asyncio
    from gigwatch.orchestrator.runner import run_once

    report = asyncio.run(run_once())
    print(report.format_report())
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Any

from gigwatch.auth.provider import AuthorizationProvider, OAuthTokenClient
from gigwatch.auth.tokens import RefreshLockRegistry, TokenLifecycleManager
from gigwatch.core import events
from gigwatch.core.exceptions import ConfigError, StaleStateError
from gigwatch.core.settings import Settings
from gigwatch.orchestrator.admin import AdminInterface
from gigwatch.orchestrator.circuit_breaker import CircuitBreakerController
from gigwatch.orchestrator.trigger import OutcomeKind, SchedulerTrigger, TickReport
from gigwatch.pipeline.base import FetchPipeline
from gigwatch.pipeline.loader import load_pipeline
from gigwatch.storage.base import DocumentStore
from gigwatch.storage.database import open_db
from gigwatch.storage.memory import InMemoryDocumentStore
from gigwatch.storage.repository import SqliteDocumentStore

__all__ = [
    "open_store",
    "build_controller",
    "build_admin",
    "run_once",
]

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


@asynccontextmanager
async def open_store(settings: Settings) -> AsyncIterator[DocumentStore]:
    """Yield the configured :class:`~gigwatch.storage.base.DocumentStore`.

    The SQLite connection is closed on exit.  The ``memory`` backend starts
    empty every time, so it is only useful within one process.
    """
    if settings.store_backend == "memory":
        logger.debug("Using in-memory document store.")
        yield InMemoryDocumentStore()
        return

    conn = await open_db(settings.database_path_resolved)
    try:
        yield SqliteDocumentStore(conn)
    finally:
        await conn.close()
        logger.debug("Database connection closed.")


def build_controller(store: DocumentStore, settings: Settings) -> CircuitBreakerController:
    return CircuitBreakerController(
        store,
        doc_id=settings.state_document_id,
        failure_threshold=settings.failure_threshold,
        cooldown=settings.cooldown_duration,
        attempt_lease=settings.attempt_lease,
        write_attempts=settings.state_write_attempts,
    )


def build_admin(store: DocumentStore, settings: Settings) -> AdminInterface:
    return AdminInterface(
        build_controller(store, settings),
        store,
        credential_doc_id=settings.credential_document_id,
    )


async def _enter_if_context(stack: AsyncExitStack, obj: Any) -> None:
    if hasattr(obj, "__aenter__") and hasattr(obj, "__aexit__"):
        await stack.enter_async_context(obj)


# ---------------------------------------------------------------------------
# Public entry-point
# ---------------------------------------------------------------------------


async def run_once(
    settings: Settings | None = None,
    *,
    store: DocumentStore | None = None,
    pipeline: FetchPipeline | None = None,
    provider: AuthorizationProvider | None = None,
    locks: RefreshLockRegistry | None = None,
) -> TickReport:
    """Fire exactly one guarded tick.

    Args:
        settings: Pre-loaded settings.  If ``None``, a fresh instance is
            loaded from the environment and ``.env`` file.
        store: Already-open store (the continuous loop keeps one open).
        pipeline: Fetch pipeline; resolved with
            :func:`~gigwatch.pipeline.loader.load_pipeline` when omitted.
        provider: Token-endpoint client; built from settings when omitted.
        locks: Refresh lock registry shared across ticks of one process.

    Returns:
        The tick's :class:`~gigwatch.orchestrator.trigger.TickReport`.

    Raises:
        Exception: Only failures opening the store or tearing down resources
            propagate.  Everything that happens during the tick itself is
            classified inside the trigger.
    """
    if settings is None:
        settings = Settings()

    async with AsyncExitStack() as stack:
        if store is None:
            store = await stack.enter_async_context(open_store(settings))
        controller = build_controller(store, settings)

        try:
            if pipeline is None:
                pipeline = load_pipeline(settings)
            if provider is None:
                provider = OAuthTokenClient.from_settings(settings)
        except ConfigError as exc:
            return await _report_startup_config_error(controller, exc)

        await _enter_if_context(stack, pipeline)
        await _enter_if_context(stack, provider)

        tokens = TokenLifecycleManager(
            store,
            provider,
            doc_id=settings.credential_document_id,
            refresh_skew=settings.refresh_skew,
            refresh_timeout=settings.refresh_timeout,
            locks=locks,
        )
        trigger = SchedulerTrigger(
            controller,
            tokens,
            pipeline,
            pipeline_timeout=settings.pipeline_timeout,
        )
        report = await trigger.fire()

    logger.info("%s", report.format_report())
    return report


async def _report_startup_config_error(
    controller: CircuitBreakerController,
    exc: ConfigError,
) -> TickReport:
    message = f"{type(exc).__name__}: {exc}"
    logger.error("Tick not attempted: %s", exc, extra={"event": events.TICK_CONFIG_ERROR})
    state = None
    try:
        state = await controller.record_config_error(None, message)
    except (ConfigError, StaleStateError) as state_exc:
        logger.error("Could not record configuration error: %s", state_exc)
    return TickReport(tick_id="-", outcome=OutcomeKind.CONFIG_ERROR, message=message, state=state)
