"""Structured log event name constants for the scheduled-fetch controller.

Every key transition emits a log record with an ``event`` field (passed via
``extra={"event": events.X}``).  In ``LOG_FORMAT=json`` mode it surfaces as
``extra.event``, which makes alerting rules in an external log aggregator a
one-line query (e.g. ``extra.event = "SCHEDULER_AUTO_DISABLED"``).

Usage example::

    import logging
    from gigwatch.core import events

    logger = logging.getLogger(__name__)

    logger.info("Tick started", extra={"event": events.TICK_START})
"""

from __future__ import annotations

__all__ = [
    # Tick lifecycle
    "TICK_START",
    "TICK_SKIPPED",
    "TICK_SUCCESS",
    "TICK_FAILURE",
    "TICK_CONFIG_ERROR",
    "TICK_STATE_CONFLICT",
    # Circuit breaker
    "CIRCUIT_OPENED",
    "CIRCUIT_EXTENDED",
    "CIRCUIT_CLOSED",
    "CIRCUIT_TRIAL",
    "SCHEDULER_AUTO_DISABLED",
    "STATE_WRITE_CONFLICT",
    "OUTCOME_DISCARDED",
    # Credentials
    "TOKEN_REFRESH_START",
    "TOKEN_REFRESHED",
    "TOKEN_REFRESH_REJECTED",
    "TOKEN_REFRESH_TRANSIENT",
    # Operator actions
    "ADMIN_ACTION",
]

# ---------------------------------------------------------------------------
# Tick lifecycle
# ---------------------------------------------------------------------------

#: Emitted once at the very start of every trigger firing.
TICK_START: str = "TICK_START"

#: The gate refused the attempt (disabled, cooling down, or concurrent claim).
TICK_SKIPPED: str = "TICK_SKIPPED"

#: The fetch pipeline succeeded and the success was recorded.
TICK_SUCCESS: str = "TICK_SUCCESS"

#: The attempt failed and the failure was recorded.
TICK_FAILURE: str = "TICK_FAILURE"

#: A configuration problem prevented the attempt; only ``last_error`` changed.
TICK_CONFIG_ERROR: str = "TICK_CONFIG_ERROR"

#: The outcome could not be persisted after repeated write conflicts.
TICK_STATE_CONFLICT: str = "TICK_STATE_CONFLICT"

# ---------------------------------------------------------------------------
# Circuit breaker
# ---------------------------------------------------------------------------

#: Failure threshold reached for the first time; the circuit is now open.
CIRCUIT_OPENED: str = "CIRCUIT_OPENED"

#: A further failure past the threshold pushed ``circuit_open_until`` out.
CIRCUIT_EXTENDED: str = "CIRCUIT_EXTENDED"

#: A success closed a previously open circuit.
CIRCUIT_CLOSED: str = "CIRCUIT_CLOSED"

#: Cooldown elapsed; this tick is the single trial attempt.
CIRCUIT_TRIAL: str = "CIRCUIT_TRIAL"

#: A fatal auth failure flipped ``enabled`` to ``False``.
SCHEDULER_AUTO_DISABLED: str = "SCHEDULER_AUTO_DISABLED"

#: A conditional write lost against a concurrent writer.
STATE_WRITE_CONFLICT: str = "STATE_WRITE_CONFLICT"

#: A losing writer dropped its outcome because a newer success made it moot.
OUTCOME_DISCARDED: str = "OUTCOME_DISCARDED"

# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------

#: The access token is inside the refresh skew; a refresh is starting.
TOKEN_REFRESH_START: str = "TOKEN_REFRESH_START"

#: A new access/refresh token pair was persisted.
TOKEN_REFRESHED: str = "TOKEN_REFRESHED"

#: The authorization provider rejected the refresh token (fatal).
TOKEN_REFRESH_REJECTED: str = "TOKEN_REFRESH_REJECTED"

#: The refresh failed transiently (network, 5xx, deadline).
TOKEN_REFRESH_TRANSIENT: str = "TOKEN_REFRESH_TRANSIENT"

# ---------------------------------------------------------------------------
# Operator actions
# ---------------------------------------------------------------------------

#: An operator override (enable / disable / reset / initialize) was applied.
ADMIN_ACTION: str = "ADMIN_ACTION"
