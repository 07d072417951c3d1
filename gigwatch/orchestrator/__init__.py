"""Scheduling, outcome classification, circuit breaking, and operator overrides.

Public API
----------
* :func:`~gigwatch.orchestrator.runner.run_once`: assemble components and
  fire one guarded tick; what ``gigwatch tick`` and external timers call.
* :func:`~gigwatch.orchestrator.scheduler.run_continuous`: optional
  in-process fixed-cadence loop with heartbeat and SIGTERM handling.
* :class:`~gigwatch.orchestrator.trigger.SchedulerTrigger`: claim, token,
  pipeline, classify, record.
* :class:`~gigwatch.orchestrator.circuit_breaker.CircuitBreakerController`
  and the pure transitions it is built from.
* :class:`~gigwatch.orchestrator.admin.AdminInterface`: status, token
  status, enable / disable / reset / initialize.
"""

from gigwatch.orchestrator.admin import AdminInterface, TokenStatus
from gigwatch.orchestrator.circuit_breaker import (
    CircuitBreakerController,
    CircuitState,
    Claim,
    GateDecision,
    SkipReason,
    StateSnapshot,
    apply_config_error,
    apply_failure,
    apply_success,
    evaluate_gate,
)
from gigwatch.orchestrator.runner import run_once
from gigwatch.orchestrator.scheduler import run_continuous
from gigwatch.orchestrator.trigger import OutcomeKind, SchedulerTrigger, TickReport

__all__ = [
    # Circuit breaker
    "CircuitBreakerController",
    "CircuitState",
    "Claim",
    "GateDecision",
    "SkipReason",
    "StateSnapshot",
    "apply_config_error",
    "apply_failure",
    "apply_success",
    "evaluate_gate",
    # Trigger
    "OutcomeKind",
    "SchedulerTrigger",
    "TickReport",
    # Operator surface
    "AdminInterface",
    "TokenStatus",
    # Entry-points
    "run_once",
    "run_continuous",
]
