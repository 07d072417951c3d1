"""Gigwatch core domain models.

Defines the two persisted documents the controller owns,
:class:`CredentialRecord` and :class:`SchedulerState`, plus the derived
:class:`HealthStatus` used by the admin surface.

Every timestamp in these models is a timezone-aware UTC
:class:`~datetime.datetime`.  Conversion from whatever a store happens to
hold (ISO strings, epoch numbers) happens in
:mod:`gigwatch.storage.documents` and nowhere else; core logic never checks
whether a field "is still a string".

Both models are **frozen**.  State transitions build new, re-validated
instances so a snapshot read at the start of a tick can be compared against
the store later without being mutated underneath.

Typical usage::

    from gigwatch.core.models import SchedulerState, utc_now

    state = SchedulerState()                  # defaults: enabled, closed
    state.status(utc_now())                   # HealthStatus.RUNNING
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from enum import StrEnum

from pydantic import AwareDatetime, BaseModel, Field, model_validator

__all__ = [
    "utc_now",
    "HealthStatus",
    "CredentialRecord",
    "SchedulerState",
]

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class HealthStatus(StrEnum):
    """Operator-facing verdict derived from a :class:`SchedulerState`."""

    RUNNING = "running"
    """Enabled and circuit closed, ticks attempt the fetch normally."""

    DISABLED = "disabled"
    """Manual kill switch is off (or a fatal auth failure turned it off)."""

    COOLING_DOWN = "cooling_down"
    """Circuit open and cooldown not yet elapsed, ticks are skipped."""

    AWAITING_TRIAL = "awaiting_trial"
    """Circuit open but cooldown elapsed, the next tick is the trial attempt."""


# ---------------------------------------------------------------------------
# Credential
# ---------------------------------------------------------------------------


class CredentialRecord(BaseModel):
    """One OAuth credential pair and its expiry.

    Attributes:
        access_token: Opaque bearer token handed to the fetch pipeline.
        refresh_token: Opaque token exchanged for a new pair on refresh.
            Never cleared by this package, losing it requires a human to
            re-authorize.
        expires_at: Absolute UTC time after which ``access_token`` is invalid.
        updated_at: UTC time of the last refresh (or initial authorization).
        token_type: Token type reported by the provider.
    """

    model_config = {"frozen": True}

    access_token: str = Field(..., min_length=1)
    refresh_token: str = Field(..., min_length=1)
    expires_at: AwareDatetime
    updated_at: AwareDatetime
    token_type: str = Field(default="bearer")

    def remaining(self, now: datetime) -> timedelta:
        """Return the lifetime left on ``access_token`` at *now* (may be negative)."""
        return self.expires_at - now

    def is_usable(self, now: datetime, skew: timedelta) -> bool:
        """``True`` if ``access_token`` stays valid beyond ``now + skew``."""
        return self.expires_at > now + skew

    @staticmethod
    def masked(secret: str, visible: int = 8) -> str:
        """Return *secret* truncated for display, e.g. ``"oauth2v2…"``."""
        if len(secret) <= visible:
            return "…"
        return secret[:visible] + "…"

    def __repr__(self) -> str:
        return (
            f"CredentialRecord(access_token={self.masked(self.access_token)!r}, "
            f"refresh_token={self.masked(self.refresh_token)!r}, "
            f"expires_at={self.expires_at.isoformat()})"
        )

    __str__ = __repr__


# ---------------------------------------------------------------------------
# Scheduler state
# ---------------------------------------------------------------------------


class SchedulerState(BaseModel):
    """Persisted circuit-breaker state gating the scheduled fetch.

    Every field except ``enabled`` is owned by
    :class:`~gigwatch.orchestrator.circuit_breaker.CircuitBreakerController`.
    ``enabled`` is also written by operators at any time.

    Attributes:
        enabled: Manual kill switch.  ``False`` skips every tick regardless
            of circuit state.
        consecutive_failures: Failed attempts since the last success.
        circuit_open: ``True`` while the pipeline is being skipped.
        circuit_open_until: Earliest time a trial attempt is allowed.  Set
            whenever ``circuit_open`` is ``True``.
        last_run: Time of the last *attempt* (gated skips do not count).
        last_success: Time of the last successful attempt.
        last_failure: Time of the last failed attempt.
        last_config_error: Time of the last configuration error.  Ends an
            attempt as far as the in-flight check is concerned, without
            counting as a failure.
        last_error: Message of the last failure or configuration error.
        updated_at: Time of the last mutation.
    """

    model_config = {"frozen": True}

    enabled: bool = True
    consecutive_failures: int = Field(default=0, ge=0)
    circuit_open: bool = False
    circuit_open_until: AwareDatetime | None = None
    last_run: AwareDatetime | None = None
    last_success: AwareDatetime | None = None
    last_failure: AwareDatetime | None = None
    last_config_error: AwareDatetime | None = None
    last_error: str | None = None
    updated_at: AwareDatetime | None = None

    @model_validator(mode="after")
    def _open_circuit_has_deadline(self) -> SchedulerState:
        if self.circuit_open and self.circuit_open_until is None:
            raise ValueError("circuit_open requires circuit_open_until")
        return self

    def status(self, now: datetime) -> HealthStatus:
        """Derive the operator-facing :class:`HealthStatus` at *now*.

        Manual disable wins over the circuit, matching the gate order.
        """
        if not self.enabled:
            return HealthStatus.DISABLED
        if self.circuit_open:
            assert self.circuit_open_until is not None  # noqa: S101
            if now < self.circuit_open_until:
                return HealthStatus.COOLING_DOWN
            return HealthStatus.AWAITING_TRIAL
        return HealthStatus.RUNNING
