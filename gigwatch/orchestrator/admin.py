"""Operator surface: inspect controller state and apply manual overrides.

Not part of the scheduled path.  Reads go straight to the store; every
mutation is a conditional write with conflict retry through
:meth:`~gigwatch.orchestrator.circuit_breaker.CircuitBreakerController.update`,
so an override racing a tick is rebased rather than lost.

Typical usage::

    admin = AdminInterface(controller, store)
    print(await admin.summary())
    await admin.reset()
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from gigwatch.core import events
from gigwatch.core.exceptions import ConfigError
from gigwatch.core.models import CredentialRecord, HealthStatus, SchedulerState, utc_now
from gigwatch.orchestrator.circuit_breaker import CircuitBreakerController, evolve_state
from gigwatch.storage.base import DocumentStore
from gigwatch.storage.documents import credential_from_document, state_to_document

__all__ = [
    "TokenStatus",
    "AdminInterface",
    "reset_state",
    "format_summary",
]

logger = logging.getLogger(__name__)

_VERDICTS: dict[HealthStatus, str] = {
    HealthStatus.RUNNING: "Scheduler is ENABLED and running normally.",
    HealthStatus.DISABLED: (
        "SCHEDULER IS DISABLED (manually, or after a rejected refresh token). "
        "Run `gigwatch enable` once the cause is fixed."
    ),
    HealthStatus.COOLING_DOWN: (
        "CIRCUIT BREAKER IS OPEN (paused after repeated failures). "
        "Will try again after the cooldown."
    ),
    HealthStatus.AWAITING_TRIAL: (
        "CIRCUIT BREAKER IS OPEN; cooldown elapsed, the next tick is the trial attempt."
    ),
}


def reset_state(state: SchedulerState, now: datetime) -> SchedulerState:
    """Re-enable and close the circuit; run history is kept."""
    return evolve_state(
        state,
        enabled=True,
        consecutive_failures=0,
        circuit_open=False,
        circuit_open_until=None,
        last_error=None,
        updated_at=now,
    )


def _fmt(value: datetime | None) -> str:
    return value.isoformat() if value is not None else "NEVER"


def format_summary(state: SchedulerState, now: datetime) -> str:
    """Render *state* as a multi-line report ending with the health verdict."""
    lines = [
        "Scheduler state:",
        f"  - enabled: {state.enabled}",
        f"  - consecutive_failures: {state.consecutive_failures}",
        f"  - circuit_open: {state.circuit_open}",
    ]
    if state.circuit_open_until is not None:
        lines.append(f"  - circuit_open_until: {state.circuit_open_until.isoformat()}")
    lines += [
        f"  - last_run: {_fmt(state.last_run)}",
        f"  - last_success: {_fmt(state.last_success)}",
        f"  - last_failure: {_fmt(state.last_failure)}",
        f"  - last_error: {state.last_error or 'None'}",
        "",
        f"[{state.status(now).value}] {_VERDICTS[state.status(now)]}",
    ]
    return "\n".join(lines)


@dataclass(frozen=True)
class TokenStatus:
    """Display-safe view of the stored credential."""

    access_token_hint: str
    refresh_token_hint: str
    token_type: str
    expires_at: datetime
    updated_at: datetime
    remaining: timedelta

    @property
    def expired(self) -> bool:
        return self.remaining <= timedelta(0)

    @classmethod
    def from_record(cls, record: CredentialRecord, now: datetime) -> TokenStatus:
        return cls(
            access_token_hint=CredentialRecord.masked(record.access_token, visible=20),
            refresh_token_hint=CredentialRecord.masked(record.refresh_token, visible=20),
            token_type=record.token_type,
            expires_at=record.expires_at,
            updated_at=record.updated_at,
            remaining=record.remaining(now),
        )

    def format(self) -> str:
        if self.expired:
            verdict = f"Access token EXPIRED {-self.remaining} ago; next tick refreshes it."
        else:
            verdict = f"Access token valid for another {self.remaining}."
        return "\n".join(
            [
                "Credential:",
                f"  - access_token: {self.access_token_hint}",
                f"  - refresh_token: {self.refresh_token_hint}",
                f"  - token_type: {self.token_type}",
                f"  - expires_at: {self.expires_at.isoformat()}",
                f"  - updated_at: {self.updated_at.isoformat()}",
                "",
                verdict,
            ]
        )


class AdminInterface:
    """Inspection and override operations for operators.

    Args:
        controller: Circuit-breaker controller owning the state document.
        store: Store holding the credential document.
        credential_doc_id: Credential document id.
        clock: Callable returning the current aware UTC time.
    """

    def __init__(
        self,
        controller: CircuitBreakerController,
        store: DocumentStore,
        *,
        credential_doc_id: str = "config/upwork_tokens",
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._controller = controller
        self._store = store
        self._credential_doc_id = credential_doc_id
        self._clock = clock

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def snapshot(self) -> SchedulerState:
        """Return the current state.  Raises :exc:`ConfigError` if absent."""
        return (await self._controller.load()).state

    async def status(self, now: datetime | None = None) -> HealthStatus:
        return (await self.snapshot()).status(now or self._clock())

    async def summary(self, now: datetime | None = None) -> str:
        return format_summary(await self.snapshot(), now or self._clock())

    async def token_status(self, now: datetime | None = None) -> TokenStatus:
        doc = await self._store.get(self._credential_doc_id)
        if doc is None:
            raise ConfigError(
                f"Credential document {self._credential_doc_id!r} not found. "
                "Run `gigwatch authorize` first."
            )
        return TokenStatus.from_record(credential_from_document(doc.data), now or self._clock())

    # ------------------------------------------------------------------
    # Overrides
    # ------------------------------------------------------------------

    async def set_enabled(self, enabled: bool) -> SchedulerState:
        now = self._clock()
        state = await self._controller.update(
            lambda s: evolve_state(s, enabled=enabled, updated_at=now)
        )
        logger.info(
            "Scheduler %s by operator.",
            "enabled" if enabled else "disabled",
            extra={"event": events.ADMIN_ACTION},
        )
        return state

    async def reset(self) -> SchedulerState:
        now = self._clock()
        state = await self._controller.update(lambda s: reset_state(s, now))
        logger.info("Circuit breaker reset by operator.", extra={"event": events.ADMIN_ACTION})
        return state

    async def initialize(self) -> bool:
        """Create the state document with defaults if absent.

        Returns:
            ``True`` if created, ``False`` if it already existed.
        """
        created = await self._store.create_if_absent(
            self._controller.doc_id,
            state_to_document(SchedulerState(updated_at=self._clock())),
        )
        logger.info(
            "Scheduler state %s.",
            "initialised" if created else "already present; left untouched",
            extra={"event": events.ADMIN_ACTION},
        )
        return created
