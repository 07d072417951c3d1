"""Continuous fixed-cadence scheduler for Gigwatch.

For deployments without an external timer.  Fires
:func:`~gigwatch.orchestrator.runner.run_once` every ``TICK_INTERVAL``
(default 6 h).  The interval is fixed rather than jittered: the circuit
breaker and the cooldown already decide whether a tick does any work.

Two ``gigwatch run`` processes (or this loop plus an external cron) may fire
concurrently; the conditional claim in
:class:`~gigwatch.orchestrator.circuit_breaker.CircuitBreakerController`
lets exactly one of them attempt the fetch.

Architecture
~~~~~~~~~~~~
The scheduler uses ``asyncio.sleep`` for interval management, no external
scheduler library is required.  The document store is opened once for the
life of the loop and shared by every tick; pipeline and token-client
sessions are opened and closed per tick by ``run_once``.

Typical usage::

    import asyncio
    from gigwatch.orchestrator.scheduler import run_continuous

    asyncio.run(run_continuous())
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
import time
from typing import NoReturn

from gigwatch.auth.tokens import RefreshLockRegistry
from gigwatch.core.settings import Settings
from gigwatch.orchestrator.runner import open_store, run_once
from gigwatch.storage.base import DocumentStore

__all__ = [
    "HEARTBEAT_PATH",
    "run_continuous",
]

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Health-check heartbeat
# ---------------------------------------------------------------------------

#: Path to the heartbeat file written after each tick.  A container health
#: check can compare its timestamp with ``TICK_INTERVAL``.
#: Override via the ``GIGWATCH_HEARTBEAT_PATH`` environment variable if the
#: default ``/tmp`` location is not writable.
HEARTBEAT_PATH: str = os.environ.get("GIGWATCH_HEARTBEAT_PATH", "/tmp/gigwatch_heartbeat")


def _write_heartbeat(path: str = HEARTBEAT_PATH) -> None:
    """Write the current epoch timestamp to the heartbeat file.

    Called after every tick (success, failure or skip).  Errors are logged at
    WARNING level and never propagated.
    """
    try:
        with open(path, "w", encoding="utf-8") as fh:
            fh.write(str(time.time()))
    except OSError:
        logger.warning("Failed to write heartbeat file '%s'.", path, exc_info=True)


# ---------------------------------------------------------------------------
# Internal loop
# ---------------------------------------------------------------------------


async def _tick_loop(settings: Settings, store: DocumentStore) -> NoReturn:
    """Fire a tick, write the heartbeat, sleep; forever.

    Any exception escaping ``run_once`` (store I/O, teardown) is logged and
    the loop carries on after the normal interval.
    """
    interval = settings.tick_interval.total_seconds()
    locks = RefreshLockRegistry()
    logger.info("Tick loop started, interval %.0f s.", interval)

    while True:
        try:
            await run_once(settings, store=store, locks=locks)
        except Exception:
            logger.exception("Unhandled exception in tick, will retry after interval.")

        _write_heartbeat()

        logger.info("Next tick in %.0f s.", interval)
        await asyncio.sleep(interval)


# ---------------------------------------------------------------------------
# Public entry-point
# ---------------------------------------------------------------------------


async def run_continuous(settings: Settings | None = None) -> NoReturn:
    """Run the tick loop until cancelled.

    A ``SIGTERM`` handler cancels the loop task; the current tick finishes its
    current ``await`` point and resources are released through the
    ``AsyncExitStack`` in :func:`~gigwatch.orchestrator.runner.run_once` and
    the store context opened here.  The handler is removed in a ``finally``
    block so it does not leak into a later :func:`asyncio.run` call.

    Raises:
        asyncio.CancelledError: On SIGTERM or Ctrl+C (normal shutdown).
    """
    if settings is None:
        settings = Settings()

    logger.info(
        "Gigwatch entering continuous mode, tick interval %s, store=%s.",
        settings.tick_interval,
        settings.store_backend,
    )

    async with open_store(settings) as store:
        loop_task = asyncio.create_task(
            _tick_loop(settings, store),
            name="gigwatch-tick-loop",
        )

        loop = asyncio.get_running_loop()
        # One-element mutable cell so the inner closure can write to it.
        _shutdown_signal: list[str] = []

        def _request_graceful_shutdown(signame: str) -> None:
            if not _shutdown_signal:
                _shutdown_signal.append(signame)
                logger.info(
                    "Received %s, graceful shutdown requested; cancelling tick loop.",
                    signame,
                )
            loop_task.cancel()

        loop.add_signal_handler(signal.SIGTERM, lambda: _request_graceful_shutdown("SIGTERM"))

        try:
            await loop_task
        except (asyncio.CancelledError, KeyboardInterrupt):
            if _shutdown_signal:
                logger.info("Graceful shutdown complete (signal: %s).", _shutdown_signal[0])
            else:
                logger.info("Continuous loop cancelled, stopping.")
            loop_task.cancel()
            await asyncio.gather(loop_task, return_exceptions=True)
            raise
        finally:
            with contextlib.suppress(Exception):
                loop.remove_signal_handler(signal.SIGTERM)

    raise RuntimeError("run_continuous exited unexpectedly, this is a bug")
