"""Conversion between core models and persisted document bodies.

This is the store boundary: the only module that knows how documents are
laid out and how timestamps are represented on disk.

* **Writing**: timestamps are always ISO-8601 UTC strings.
* **Reading**: earlier tooling left a mix of representations behind, so
  :func:`parse_timestamp` accepts ISO strings (with or without offset; naive
  values are taken as UTC), epoch seconds, epoch milliseconds, and
  ``datetime`` objects.  Everything is normalised to an aware UTC
  ``datetime`` before it reaches a model.

Field names follow the ``snake_case`` layout of the existing
``config/upwork_tokens`` and ``config/scheduler_state`` documents.  Unknown
extra fields (``expires_in``, legacy counters) are ignored on read and
dropped on the next write.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from pydantic import ValidationError

from gigwatch.core.exceptions import ConfigError
from gigwatch.core.models import CredentialRecord, SchedulerState

__all__ = [
    "parse_timestamp",
    "format_timestamp",
    "credential_to_document",
    "credential_from_document",
    "state_to_document",
    "state_from_document",
]

logger = logging.getLogger(__name__)

#: Numeric epochs above this are milliseconds (10^11 s is the year 5138).
_EPOCH_MS_THRESHOLD: float = 1e11

_STATE_TIMESTAMP_FIELDS: tuple[str, ...] = (
    "circuit_open_until",
    "last_run",
    "last_success",
    "last_failure",
    "last_config_error",
    "updated_at",
)


# ---------------------------------------------------------------------------
# Timestamps
# ---------------------------------------------------------------------------


def parse_timestamp(value: Any) -> datetime | None:
    """Normalise a stored timestamp to an aware UTC ``datetime``.

    Args:
        value: ``None``, a ``datetime``, an ISO-8601 string, or a numeric
            epoch (seconds, or milliseconds when above 10^11).

    Returns:
        The UTC datetime, or ``None`` for ``None`` / blank strings.

    Raises:
        ValueError: If *value* cannot be interpreted as a timestamp.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.replace(tzinfo=UTC) if value.tzinfo is None else value.astimezone(UTC)
    if isinstance(value, bool):
        raise ValueError(f"not a timestamp: {value!r}")
    if isinstance(value, int | float):
        seconds = value / 1000.0 if value > _EPOCH_MS_THRESHOLD else float(value)
        return datetime.fromtimestamp(seconds, tz=UTC)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
        return parsed.replace(tzinfo=UTC) if parsed.tzinfo is None else parsed.astimezone(UTC)
    raise ValueError(f"not a timestamp: {value!r}")


def format_timestamp(value: datetime | None) -> str | None:
    """Render an aware datetime as an ISO-8601 UTC string (``None`` passes through)."""
    if value is None:
        return None
    return value.astimezone(UTC).isoformat()


# ---------------------------------------------------------------------------
# Credential document
# ---------------------------------------------------------------------------


def credential_to_document(record: CredentialRecord) -> dict[str, Any]:
    """Serialise *record* into a credential document body."""
    return {
        "access_token": record.access_token,
        "refresh_token": record.refresh_token,
        "token_type": record.token_type,
        "expires_at": format_timestamp(record.expires_at),
        "updated_at": format_timestamp(record.updated_at),
    }


def credential_from_document(data: dict[str, Any]) -> CredentialRecord:
    """Parse a credential document body.

    A document without ``updated_at`` (written by older setup tooling) is
    accepted; its ``expires_at`` stands in.

    Raises:
        ConfigError: If the document is missing tokens or has an unreadable
            expiry, the credential must be re-authorized.
    """
    try:
        expires_at = parse_timestamp(data.get("expires_at"))
        updated_at = parse_timestamp(data.get("updated_at")) or expires_at
        return CredentialRecord(
            access_token=data.get("access_token") or "",
            refresh_token=data.get("refresh_token") or "",
            token_type=data.get("token_type") or "bearer",
            expires_at=expires_at,  # type: ignore[arg-type]
            updated_at=updated_at,  # type: ignore[arg-type]
        )
    except (ValidationError, ValueError) as exc:
        raise ConfigError(f"Credential document is malformed: {exc}") from exc


# ---------------------------------------------------------------------------
# Scheduler-state document
# ---------------------------------------------------------------------------


def state_to_document(state: SchedulerState) -> dict[str, Any]:
    """Serialise *state* into a scheduler-state document body."""
    body: dict[str, Any] = {
        "enabled": state.enabled,
        "consecutive_failures": state.consecutive_failures,
        "circuit_open": state.circuit_open,
        "last_error": state.last_error,
    }
    for name in _STATE_TIMESTAMP_FIELDS:
        body[name] = format_timestamp(getattr(state, name))
    return body


def state_from_document(data: dict[str, Any]) -> SchedulerState:
    """Parse a scheduler-state document body.

    Missing fields take their defaults, so documents written by older
    tooling without ``last_run`` or ``last_error`` load cleanly.

    Raises:
        ConfigError: If a field holds an unreadable value or the document
            violates a state invariant (e.g. open circuit without deadline).
    """
    try:
        fields: dict[str, Any] = {
            "enabled": data.get("enabled", True),
            "consecutive_failures": data.get("consecutive_failures") or 0,
            "circuit_open": data.get("circuit_open") or False,
            "last_error": data.get("last_error") or None,
        }
        for name in _STATE_TIMESTAMP_FIELDS:
            fields[name] = parse_timestamp(data.get(name))
        return SchedulerState(**fields)
    except (ValidationError, ValueError) as exc:
        raise ConfigError(f"Scheduler-state document is malformed: {exc}") from exc
