"""Persisted circuit breaker gating the scheduled fetch.

After a configurable number of consecutive failed attempts the circuit
**opens** and every tick is skipped until a cooldown elapses.  The first tick
after the cooldown is a **trial**: its outcome either closes the circuit
(success) or re-opens it with a fresh cooldown (failure).  There is no
persisted HALF_OPEN state; "awaiting trial" is derived from the clock.

State machine
~~~~~~~~~~~~~
::

    CLOSED ──(failures ≥ threshold)──▶ OPEN ──(cooldown elapsed)──▶ trial tick
      ▲                                  ▲                              │
      │                                  └──────(trial fails)───────────┤
      └──────────────(trial succeeds)───────────────────────────────────┘

The manual kill switch (``enabled``) is evaluated before the circuit.

Layers
~~~~~~
* **Pure transitions**: :func:`evaluate_gate`, :func:`apply_claim`,
  :func:`apply_success`, :func:`apply_failure`, :func:`apply_config_error`.
  Plain functions over the frozen
  :class:`~gigwatch.core.models.SchedulerState`; no I/O, no clock.
* **Controller**: :class:`CircuitBreakerController` reads and writes the
  state document through a
  :class:`~gigwatch.storage.base.DocumentStore`.  Every write is conditional
  on the version it read.  Losing writers re-read and either rebase their
  transition onto the fresh state or discard it (see
  :meth:`CircuitBreakerController.record_failure`).

Typical usage::

    controller = CircuitBreakerController(store, failure_threshold=3)

    claim = await controller.claim()
    if isinstance(claim, GateDecision):
        return                                  # skipped
    try:
        await pipeline.run(token)
    except TransientError as exc:
        await controller.record_failure(claim, str(exc))
    else:
        await controller.record_success(claim)
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Any, Final

from gigwatch.core import events
from gigwatch.core.exceptions import ConfigError, DocumentNotFoundError, StaleStateError
from gigwatch.core.models import SchedulerState, utc_now
from gigwatch.storage.base import DocumentStore
from gigwatch.storage.documents import state_from_document, state_to_document

__all__ = [
    "CircuitState",
    "SkipReason",
    "GateDecision",
    "StateSnapshot",
    "Claim",
    "evolve_state",
    "circuit_state",
    "attempt_in_flight",
    "evaluate_gate",
    "apply_claim",
    "apply_success",
    "apply_failure",
    "apply_config_error",
    "CircuitBreakerController",
]

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

#: Default number of consecutive failures before the circuit opens.
_DEFAULT_FAILURE_THRESHOLD: Final[int] = 3

#: Default time the circuit stays open before the trial attempt.
_DEFAULT_COOLDOWN: Final[timedelta] = timedelta(hours=6)

#: Default conditional-write attempts before a contended update gives up.
_DEFAULT_WRITE_ATTEMPTS: Final[int] = 3

_DEFAULT_DOC_ID: Final[str] = "config/scheduler_state"


# ---------------------------------------------------------------------------
# State types
# ---------------------------------------------------------------------------


class CircuitState(StrEnum):
    """Persisted circuit positions."""

    CLOSED = "closed"
    """Normal operation, attempts are allowed."""

    OPEN = "open"
    """Attempts are blocked until ``circuit_open_until``."""


class SkipReason(StrEnum):
    """Why the gate refused an attempt."""

    DISABLED = "disabled"
    CIRCUIT_OPEN = "circuit_open"
    CONCURRENT_ATTEMPT = "concurrent_attempt"


@dataclass(frozen=True)
class GateDecision:
    """Result of :func:`evaluate_gate`.

    Attributes:
        proceed: ``True`` if the attempt may run.
        reason: Set when ``proceed`` is ``False``.
        trial: ``True`` when this is the post-cooldown trial attempt.
    """

    proceed: bool
    reason: SkipReason | None = None
    trial: bool = False


@dataclass(frozen=True)
class StateSnapshot:
    """A :class:`SchedulerState` together with the document version it was read at."""

    state: SchedulerState
    version: int


@dataclass(frozen=True)
class Claim:
    """The right to make one attempt, obtained by :meth:`CircuitBreakerController.claim`.

    Attributes:
        snapshot: State as written by the claim (``last_run`` = ``claimed_at``).
        claimed_at: Time of the claim; also the attempt's ``last_run``.
        trial: ``True`` when the attempt is the post-cooldown trial.
    """

    snapshot: StateSnapshot
    claimed_at: datetime
    trial: bool = False


# ---------------------------------------------------------------------------
# Pure transitions
# ---------------------------------------------------------------------------


def evolve_state(state: SchedulerState, **changes: Any) -> SchedulerState:
    """Return a re-validated copy of *state* with *changes* applied."""
    return SchedulerState.model_validate({**state.model_dump(), **changes})


def circuit_state(state: SchedulerState) -> CircuitState:
    return CircuitState.OPEN if state.circuit_open else CircuitState.CLOSED


def attempt_in_flight(state: SchedulerState, now: datetime, lease: timedelta) -> bool:
    """``True`` if an earlier claim has no recorded outcome and its lease is live.

    A claim whose process died never records an outcome; the lease bounds how
    long it can block later ticks.
    """
    if state.last_run is None or now >= state.last_run + lease:
        return False
    ended = (state.last_success, state.last_failure, state.last_config_error)
    outcomes = [t for t in ended if t is not None]
    return not outcomes or max(outcomes) < state.last_run


def evaluate_gate(
    state: SchedulerState,
    now: datetime,
    lease: timedelta | None = None,
) -> GateDecision:
    """Decide whether an attempt may run at *now*.

    Order matters: the kill switch wins over the circuit.  A circuit whose
    cooldown has elapsed stays open; the decision is flagged as a trial and
    only the recorded outcome closes or re-opens it.  With a *lease*, an
    attempt claimed less than *lease* ago and not yet recorded refuses the
    gate, so the trial is a single attempt.
    """
    if not state.enabled:
        return GateDecision(proceed=False, reason=SkipReason.DISABLED)
    trial = False
    if state.circuit_open:
        assert state.circuit_open_until is not None  # noqa: S101
        if now < state.circuit_open_until:
            return GateDecision(proceed=False, reason=SkipReason.CIRCUIT_OPEN)
        trial = True
    if lease is not None and attempt_in_flight(state, now, lease):
        return GateDecision(proceed=False, reason=SkipReason.CONCURRENT_ATTEMPT)
    return GateDecision(proceed=True, trial=trial)


def apply_claim(state: SchedulerState, now: datetime) -> SchedulerState:
    return evolve_state(state, last_run=now, updated_at=now)


def apply_success(state: SchedulerState, now: datetime) -> SchedulerState:
    """Reset the failure counter and close the circuit."""
    return evolve_state(
        state,
        consecutive_failures=0,
        circuit_open=False,
        circuit_open_until=None,
        last_success=now,
        last_error=None,
        updated_at=now,
    )


def apply_failure(
    state: SchedulerState,
    now: datetime,
    message: str,
    *,
    failure_threshold: int = _DEFAULT_FAILURE_THRESHOLD,
    cooldown: timedelta = _DEFAULT_COOLDOWN,
    disable: bool = False,
) -> SchedulerState:
    """Count one failure; open (or extend) the circuit at the threshold.

    Args:
        disable: Also flip the kill switch off (fatal auth failure).
    """
    failures = state.consecutive_failures + 1
    changes: dict[str, Any] = {
        "consecutive_failures": failures,
        "last_error": message,
        "last_failure": now,
        "updated_at": now,
    }
    if failures >= failure_threshold:
        changes["circuit_open"] = True
        changes["circuit_open_until"] = now + cooldown
    if disable:
        changes["enabled"] = False
    return evolve_state(state, **changes)


def apply_config_error(state: SchedulerState, now: datetime, message: str) -> SchedulerState:
    """Surface a configuration problem without touching counters or circuit.

    The error time is stamped so a claimed attempt that ended this way no
    longer reads as in flight.
    """
    return evolve_state(state, last_error=message, last_config_error=now, updated_at=now)


# ---------------------------------------------------------------------------
# Persisted controller
# ---------------------------------------------------------------------------


class CircuitBreakerController:
    """Reads, gates and records against the persisted scheduler state.

    Args:
        store: Document store holding the state document.
        doc_id: State document id.
        failure_threshold: Consecutive failures required to open the circuit.
        cooldown: Time the circuit stays open before the trial attempt.
        attempt_lease: How long an unrecorded claim blocks later claims.
            ``None`` relies on the conditional claim write alone.
        write_attempts: Conditional-write attempts for one update before
            :exc:`~gigwatch.core.exceptions.StaleStateError` is raised.
        clock: Callable returning the current aware UTC time.  Override in
            tests for deterministic behaviour.
    """

    def __init__(
        self,
        store: DocumentStore,
        *,
        doc_id: str = _DEFAULT_DOC_ID,
        failure_threshold: int = _DEFAULT_FAILURE_THRESHOLD,
        cooldown: timedelta = _DEFAULT_COOLDOWN,
        attempt_lease: timedelta | None = None,
        write_attempts: int = _DEFAULT_WRITE_ATTEMPTS,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if failure_threshold < 1:
            raise ValueError(f"failure_threshold must be ≥ 1, got {failure_threshold!r}.")
        if write_attempts < 1:
            raise ValueError(f"write_attempts must be ≥ 1, got {write_attempts!r}.")
        self._store = store
        self._doc_id = doc_id
        self._failure_threshold = failure_threshold
        self._cooldown = cooldown
        self._attempt_lease = attempt_lease
        self._write_attempts = write_attempts
        self._clock = clock

    @property
    def doc_id(self) -> str:
        return self._doc_id

    @property
    def clock(self) -> Callable[[], datetime]:
        return self._clock

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def load(self) -> StateSnapshot:
        """Return the current state and its version.

        Raises:
            ConfigError: If the state document is missing or malformed.
        """
        doc = await self._store.get(self._doc_id)
        if doc is None:
            raise ConfigError(
                f"Scheduler state document {self._doc_id!r} not found. Run `gigwatch init`."
            )
        return StateSnapshot(state=state_from_document(doc.data), version=doc.version)

    # ------------------------------------------------------------------
    # Gate
    # ------------------------------------------------------------------

    async def claim(self, now: datetime | None = None) -> Claim | GateDecision:
        """Evaluate the gate and, if it permits, reserve the attempt.

        Returns:
            A :class:`Claim` when this invocation may attempt the fetch, or
            the refusing :class:`GateDecision` otherwise.

        Raises:
            ConfigError: State document missing or malformed.
            StaleStateError: The claim kept losing to writers that did not
                claim (operator edits) for ``write_attempts`` rounds.
        """
        now = now or self._clock()
        snapshot = await self.load()

        for attempt in range(1, self._write_attempts + 1):
            decision = evaluate_gate(snapshot.state, now, self._attempt_lease)
            if not decision.proceed:
                return decision

            claimed = apply_claim(snapshot.state, now)
            try:
                stored = await self._store.update_if_version(
                    self._doc_id, state_to_document(claimed), snapshot.version
                )
            except DocumentNotFoundError as exc:
                raise ConfigError(f"Scheduler state document {self._doc_id!r} vanished.") from exc
            except StaleStateError:
                fresh = await self.load()
                logger.info(
                    "Claim on %s lost a write race (attempt %d/%d).",
                    self._doc_id,
                    attempt,
                    self._write_attempts,
                    extra={"event": events.STATE_WRITE_CONFLICT},
                )
                if fresh.state.last_run != snapshot.state.last_run:
                    return GateDecision(proceed=False, reason=SkipReason.CONCURRENT_ATTEMPT)
                snapshot = fresh
                continue

            if decision.trial:
                logger.info(
                    "Cooldown elapsed (circuit open since failure #%d), trial attempt.",
                    snapshot.state.consecutive_failures,
                    extra={"event": events.CIRCUIT_TRIAL},
                )
            return Claim(
                snapshot=StateSnapshot(state=claimed, version=stored.version),
                claimed_at=now,
                trial=decision.trial,
            )

        raise StaleStateError(self._doc_id, snapshot.version)

    # ------------------------------------------------------------------
    # Outcome recording
    # ------------------------------------------------------------------

    async def record_success(
        self,
        claim: Claim,
        now: datetime | None = None,
    ) -> SchedulerState:
        """Record a successful attempt.  Never discarded."""
        now = now or self._clock()
        new_state = await self._commit(claim.snapshot, lambda s: apply_success(s, now))
        assert new_state is not None  # noqa: S101
        self._log_transition(claim.snapshot.state, new_state)
        return new_state

    async def record_failure(
        self,
        claim: Claim,
        message: str,
        *,
        disable: bool = False,
        now: datetime | None = None,
    ) -> SchedulerState | None:
        """Record a failed attempt.

        If a concurrent writer recorded a success at or after this attempt's
        claim time, the failure is moot and discarded.

        Returns:
            The persisted state, or ``None`` when the failure was discarded.
        """
        now = now or self._clock()
        new_state = await self._commit(
            claim.snapshot,
            lambda s: apply_failure(
                s,
                now,
                message,
                failure_threshold=self._failure_threshold,
                cooldown=self._cooldown,
                disable=disable,
            ),
            is_moot=lambda s: _succeeded_since(s, claim.claimed_at),
        )
        if new_state is not None:
            self._log_transition(claim.snapshot.state, new_state)
        return new_state

    async def record_config_error(
        self,
        claim: Claim | None,
        message: str,
        now: datetime | None = None,
    ) -> SchedulerState | None:
        """Set ``last_error`` only.  *claim* may be ``None`` for errors before the gate."""
        now = now or self._clock()
        base = claim.snapshot if claim is not None else await self.load()
        since = claim.claimed_at if claim is not None else now
        return await self._commit(
            base,
            lambda s: apply_config_error(s, now, message),
            is_moot=lambda s: _succeeded_since(s, since),
        )

    async def update(
        self,
        transition: Callable[[SchedulerState], SchedulerState],
    ) -> SchedulerState:
        """Apply *transition* to the latest state with conflict retry (operator edits)."""
        new_state = await self._commit(await self.load(), transition)
        assert new_state is not None  # noqa: S101
        return new_state

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _commit(
        self,
        base: StateSnapshot,
        transition: Callable[[SchedulerState], SchedulerState],
        *,
        is_moot: Callable[[SchedulerState], bool] | None = None,
    ) -> SchedulerState | None:
        """Write ``transition(base.state)`` conditionally, rebasing on conflict.

        The transition is re-applied to each freshly read state, so fields it
        does not set (notably an operator's ``enabled``) keep the fresh value.
        """
        snapshot = base
        for attempt in range(1, self._write_attempts + 1):
            new_state = transition(snapshot.state)
            try:
                await self._store.update_if_version(
                    self._doc_id, state_to_document(new_state), snapshot.version
                )
                return new_state
            except DocumentNotFoundError as exc:
                raise ConfigError(f"Scheduler state document {self._doc_id!r} vanished.") from exc
            except StaleStateError:
                logger.info(
                    "Write to %s conflicted (attempt %d/%d); re-reading.",
                    self._doc_id,
                    attempt,
                    self._write_attempts,
                    extra={"event": events.STATE_WRITE_CONFLICT},
                )
                snapshot = await self.load()
                if is_moot is not None and is_moot(snapshot.state):
                    logger.info(
                        "A newer success was recorded concurrently; discarding this outcome.",
                        extra={"event": events.OUTCOME_DISCARDED},
                    )
                    return None

        raise StaleStateError(self._doc_id, snapshot.version)

    def _log_transition(self, before: SchedulerState, after: SchedulerState) -> None:
        if before.enabled and not after.enabled:
            logger.error(
                "Scheduler auto-disabled: %s. Re-authorize, then run `gigwatch enable`.",
                after.last_error,
                extra={"event": events.SCHEDULER_AUTO_DISABLED},
            )
        if after.circuit_open and not before.circuit_open:
            logger.warning(
                "Circuit OPEN after %d consecutive failures, skipping until %s.",
                after.consecutive_failures,
                after.circuit_open_until.isoformat() if after.circuit_open_until else "?",
                extra={"event": events.CIRCUIT_OPENED},
            )
        elif after.circuit_open and before.circuit_open:
            logger.warning(
                "Circuit stays OPEN (%d consecutive failures), cooldown extended to %s.",
                after.consecutive_failures,
                after.circuit_open_until.isoformat() if after.circuit_open_until else "?",
                extra={"event": events.CIRCUIT_EXTENDED},
            )
        elif before.circuit_open and not after.circuit_open:
            logger.info(
                "Circuit CLOSED, trial attempt succeeded.",
                extra={"event": events.CIRCUIT_CLOSED},
            )


def _succeeded_since(state: SchedulerState, since: datetime) -> bool:
    return state.last_success is not None and state.last_success >= since
