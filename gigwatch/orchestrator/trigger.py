"""Scheduler trigger: one guarded fetch attempt per invocation.

:meth:`SchedulerTrigger.fire` is the only entry point an external timer (cron,
a cloud scheduler, or :mod:`gigwatch.orchestrator.scheduler`) needs to call.
It never raises for operational failures; every outcome is classified,
recorded through the
:class:`~gigwatch.orchestrator.circuit_breaker.CircuitBreakerController`, and
returned as a :class:`TickReport`.

Flow
----
1. Bind a fresh tick id into :data:`~gigwatch.core.logging_config.TICK_ID_CTX`.
2. Claim the attempt (kill switch, then circuit gate, then conditional
   ``last_run`` write).
3. Obtain a valid token from the
   :class:`~gigwatch.auth.tokens.TokenLifecycleManager`.
4. Run the pipeline under ``pipeline_timeout``.
5. Record the outcome.

Classification
--------------
==============================================  =====================  ===================
Raised                                          Outcome                Recorded as
==============================================  =====================  ===================
nothing                                         ``SUCCESS``            success
``AuthRefreshRejectedError``                    ``AUTH_FATAL``         failure + disable
``TransientError`` / deadline exceeded          ``TRANSIENT_FAILURE``  failure
``PipelineError`` / ``AuthError`` / other       ``PIPELINE_FAILURE``   failure
``ConfigError``                                 ``CONFIG_ERROR``       ``last_error`` only
==============================================  =====================  ===================

A store that fails while claiming or recording, a locked database for
instance, yields ``STATE_CONFLICT``; nothing is persisted and the error is
logged with its traceback.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import StrEnum
from uuid import uuid4

from gigwatch.auth.tokens import TokenLifecycleManager
from gigwatch.core import events
from gigwatch.core.exceptions import (
    AuthError,
    AuthRefreshRejectedError,
    ConfigError,
    PipelineError,
    PipelineTimeoutError,
    StaleStateError,
    TransientError,
)
from gigwatch.core.logging_config import TICK_ID_CTX
from gigwatch.core.models import SchedulerState, utc_now
from gigwatch.orchestrator.circuit_breaker import (
    CircuitBreakerController,
    Claim,
    GateDecision,
    SkipReason,
)
from gigwatch.pipeline.base import FetchPipeline

__all__ = ["OutcomeKind", "TickReport", "SchedulerTrigger"]

logger = logging.getLogger(__name__)


class OutcomeKind(StrEnum):
    """Classification of one trigger firing."""

    SUCCESS = "success"
    TRANSIENT_FAILURE = "transient_failure"
    PIPELINE_FAILURE = "pipeline_failure"
    AUTH_FATAL = "auth_fatal"
    CONFIG_ERROR = "config_error"
    SKIPPED_DISABLED = "skipped_disabled"
    SKIPPED_CIRCUIT_OPEN = "skipped_circuit_open"
    SKIPPED_CONCURRENT = "skipped_concurrent"
    STATE_CONFLICT = "state_conflict"


_SKIP_OUTCOMES: dict[SkipReason, OutcomeKind] = {
    SkipReason.DISABLED: OutcomeKind.SKIPPED_DISABLED,
    SkipReason.CIRCUIT_OPEN: OutcomeKind.SKIPPED_CIRCUIT_OPEN,
    SkipReason.CONCURRENT_ATTEMPT: OutcomeKind.SKIPPED_CONCURRENT,
}

_FAILURE_OUTCOMES: frozenset[OutcomeKind] = frozenset(
    {OutcomeKind.TRANSIENT_FAILURE, OutcomeKind.PIPELINE_FAILURE, OutcomeKind.AUTH_FATAL}
)


@dataclass
class TickReport:
    """Summary of one :meth:`SchedulerTrigger.fire` call.

    Attributes:
        tick_id: Correlation id bound into every log record of the tick.
        outcome: Classified :class:`OutcomeKind`.
        message: Error message for failures, skip detail otherwise.
        items_fetched: Items the pipeline returned (success only).
        state: Scheduler state after recording, or ``None`` when nothing was
            written (skips, discarded outcomes, unrecordable errors).
        trial: ``True`` when the attempt was the post-cooldown trial.
        discarded: ``True`` when the outcome lost to a newer success.
        duration_s: Wall-clock seconds spent in :meth:`~SchedulerTrigger.fire`.
    """

    tick_id: str
    outcome: OutcomeKind
    message: str | None = None
    items_fetched: int = 0
    state: SchedulerState | None = None
    trial: bool = False
    discarded: bool = False
    duration_s: float = 0.0

    @property
    def skipped(self) -> bool:
        return self.outcome in _SKIP_OUTCOMES.values()

    @property
    def failed(self) -> bool:
        return self.outcome in _FAILURE_OUTCOMES

    def format_report(self) -> str:
        """Return a one-line human-readable summary for the INFO log."""
        parts = [f"Tick {self.tick_id}: {self.outcome.value}"]
        if self.trial:
            parts.append("trial")
        if self.outcome is OutcomeKind.SUCCESS:
            parts.append(f"items={self.items_fetched}")
        if self.state is not None:
            parts.append(f"failures={self.state.consecutive_failures}")
            parts.append(f"circuit={'open' if self.state.circuit_open else 'closed'}")
        if self.discarded:
            parts.append("discarded")
        if self.message:
            parts.append(f"({self.message})")
        parts.append(f"in {self.duration_s:.1f}s")
        return " | ".join(parts)


@dataclass(frozen=True)
class _Attempt:
    outcome: OutcomeKind
    message: str | None = None
    items_fetched: int = 0


def _describe(exc: BaseException) -> str:
    text = str(exc)
    return f"{type(exc).__name__}: {text}" if text else type(exc).__name__


class SchedulerTrigger:
    """Runs one guarded attempt of the fetch pipeline.

    Args:
        controller: Persisted circuit breaker.
        tokens: Credential manager handing out valid access tokens.
        pipeline: Fetch pipeline invoked with the token.
        pipeline_timeout: Deadline for one pipeline run.
        clock: Callable returning the current aware UTC time.
    """

    def __init__(
        self,
        controller: CircuitBreakerController,
        tokens: TokenLifecycleManager,
        pipeline: FetchPipeline,
        *,
        pipeline_timeout: timedelta = timedelta(minutes=5),
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._controller = controller
        self._tokens = tokens
        self._pipeline = pipeline
        self._pipeline_timeout = pipeline_timeout
        self._clock = clock

    async def fire(self) -> TickReport:
        """Perform one guarded attempt and return its :class:`TickReport`."""
        tick_id = uuid4().hex[:8]
        ctx_token = TICK_ID_CTX.set(tick_id)
        t0 = time.monotonic()
        try:
            logger.info("Tick started.", extra={"event": events.TICK_START})
            report = await self._fire(tick_id)
        finally:
            TICK_ID_CTX.reset(ctx_token)
        report.duration_s = time.monotonic() - t0
        return report

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _fire(self, tick_id: str) -> TickReport:
        try:
            claim = await self._controller.claim(self._clock())
        except ConfigError as exc:
            logger.error(
                "Cannot evaluate gate: %s",
                exc,
                extra={"event": events.TICK_CONFIG_ERROR},
            )
            return TickReport(tick_id, OutcomeKind.CONFIG_ERROR, message=str(exc))
        except StaleStateError as exc:
            logger.error("Claim abandoned: %s", exc, extra={"event": events.TICK_STATE_CONFLICT})
            return TickReport(tick_id, OutcomeKind.STATE_CONFLICT, message=str(exc))
        except Exception as exc:
            logger.exception(
                "Scheduler state unreadable; tick abandoned.",
                extra={"event": events.TICK_STATE_CONFLICT},
            )
            return TickReport(tick_id, OutcomeKind.STATE_CONFLICT, message=_describe(exc))

        if isinstance(claim, GateDecision):
            assert claim.reason is not None  # noqa: S101
            logger.info(
                "Tick skipped: %s.",
                claim.reason.value,
                extra={"event": events.TICK_SKIPPED},
            )
            return TickReport(tick_id, _SKIP_OUTCOMES[claim.reason], message=claim.reason.value)

        attempt = await self._attempt()
        return await self._record(tick_id, claim, attempt)

    async def _attempt(self) -> _Attempt:
        try:
            token = await self._tokens.get_valid_token()
        except AuthRefreshRejectedError as exc:
            return _Attempt(OutcomeKind.AUTH_FATAL, _describe(exc))
        except ConfigError as exc:
            return _Attempt(OutcomeKind.CONFIG_ERROR, _describe(exc))
        except TransientError as exc:
            return _Attempt(OutcomeKind.TRANSIENT_FAILURE, _describe(exc))
        except Exception as exc:
            logger.exception("Unexpected error while obtaining an access token.")
            return _Attempt(OutcomeKind.TRANSIENT_FAILURE, _describe(exc))

        timeout_s = self._pipeline_timeout.total_seconds()
        try:
            result = await asyncio.wait_for(self._pipeline.run(token), timeout=timeout_s)
        except asyncio.TimeoutError:
            timeout_error = PipelineTimeoutError(timeout_s)
            return _Attempt(OutcomeKind.TRANSIENT_FAILURE, _describe(timeout_error))
        except TransientError as exc:
            return _Attempt(OutcomeKind.TRANSIENT_FAILURE, _describe(exc))
        except ConfigError as exc:
            return _Attempt(OutcomeKind.CONFIG_ERROR, _describe(exc))
        except (PipelineError, AuthError) as exc:
            logger.error("Fetch pipeline failed: %s", exc, exc_info=True)
            return _Attempt(OutcomeKind.PIPELINE_FAILURE, _describe(exc))
        except Exception as exc:
            logger.exception("Unexpected error in fetch pipeline.")
            return _Attempt(OutcomeKind.PIPELINE_FAILURE, _describe(exc))

        return _Attempt(OutcomeKind.SUCCESS, items_fetched=len(result.items))

    async def _record(self, tick_id: str, claim: Claim, attempt: _Attempt) -> TickReport:
        report = TickReport(
            tick_id,
            attempt.outcome,
            message=attempt.message,
            items_fetched=attempt.items_fetched,
            trial=claim.trial,
        )
        try:
            if attempt.outcome is OutcomeKind.SUCCESS:
                report.state = await self._controller.record_success(claim, self._clock())
                logger.info(
                    "Fetch succeeded (%d items).",
                    attempt.items_fetched,
                    extra={"event": events.TICK_SUCCESS},
                )
            elif attempt.outcome is OutcomeKind.CONFIG_ERROR:
                report.state = await self._controller.record_config_error(
                    claim, attempt.message or "configuration error", self._clock()
                )
                report.discarded = report.state is None
                logger.error(
                    "Configuration error: %s",
                    attempt.message,
                    extra={"event": events.TICK_CONFIG_ERROR},
                )
            else:
                report.state = await self._controller.record_failure(
                    claim,
                    attempt.message or attempt.outcome.value,
                    disable=attempt.outcome is OutcomeKind.AUTH_FATAL,
                    now=self._clock(),
                )
                report.discarded = report.state is None
                logger.warning(
                    "Attempt failed (%s): %s",
                    attempt.outcome.value,
                    attempt.message,
                    extra={"event": events.TICK_FAILURE},
                )
        except StaleStateError as exc:
            logger.error(
                "Outcome %s could not be recorded: %s",
                attempt.outcome.value,
                exc,
                extra={"event": events.TICK_STATE_CONFLICT},
            )
            return TickReport(
                tick_id,
                OutcomeKind.STATE_CONFLICT,
                message=f"{attempt.outcome.value} not recorded: {exc}",
                trial=claim.trial,
            )
        except ConfigError as exc:
            logger.error("Outcome not recorded: %s", exc, extra={"event": events.TICK_CONFIG_ERROR})
            return TickReport(
                tick_id, OutcomeKind.CONFIG_ERROR, message=str(exc), trial=claim.trial
            )
        except Exception as exc:
            logger.exception(
                "Outcome %s could not be recorded.",
                attempt.outcome.value,
                extra={"event": events.TICK_STATE_CONFLICT},
            )
            return TickReport(
                tick_id,
                OutcomeKind.STATE_CONFLICT,
                message=f"{attempt.outcome.value} not recorded: {_describe(exc)}",
                trial=claim.trial,
            )
        return report
