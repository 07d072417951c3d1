"""Unit tests for the ``gigwatch.core`` layer.

Covers:
- :class:`~gigwatch.core.models.CredentialRecord` validation, expiry helpers
  and masking.
- :class:`~gigwatch.core.models.SchedulerState` invariants and the derived
  :class:`~gigwatch.core.models.HealthStatus`.
- :class:`~gigwatch.core.settings.Settings` loading, validation, and helpers.
- :class:`~gigwatch.core.logging_config.JsonFormatter` and the tick-id filter.
- Exception message formatting.
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime, timedelta

import pytest
from pydantic import ValidationError

from gigwatch.core.exceptions import (
    AuthRefreshRejectedError,
    DocumentNotFoundError,
    PipelineTimeoutError,
    RateLimitError,
    StaleStateError,
)
from gigwatch.core.logging_config import TICK_ID_CTX, JsonFormatter, TickContextFilter
from gigwatch.core.models import CredentialRecord, HealthStatus, SchedulerState, utc_now
from gigwatch.core.settings import Settings

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def _make_record(**overrides: object) -> CredentialRecord:
    fields: dict[str, object] = {
        "access_token": "oauth2v2_access_0123456789abcdef",
        "refresh_token": "oauth2v2_refresh_0123456789abcdef",
        "expires_at": T0 + timedelta(hours=1),
        "updated_at": T0,
    }
    fields.update(overrides)
    return CredentialRecord(**fields)  # type: ignore[arg-type]


# ===========================================================================
# CredentialRecord
# ===========================================================================


class TestCredentialRecord:
    """Validation and helpers of :class:`CredentialRecord`."""

    def test_minimal_valid_record(self) -> None:
        record = _make_record()
        assert record.token_type == "bearer"
        assert record.expires_at == T0 + timedelta(hours=1)

    def test_record_is_frozen(self) -> None:
        record = _make_record()
        with pytest.raises(ValidationError):
            record.access_token = "other"  # type: ignore[misc]

    def test_blank_access_token_rejected(self) -> None:
        with pytest.raises(ValidationError):
            _make_record(access_token="")

    def test_blank_refresh_token_rejected(self) -> None:
        with pytest.raises(ValidationError):
            _make_record(refresh_token="")

    def test_naive_expiry_rejected(self) -> None:
        with pytest.raises(ValidationError):
            _make_record(expires_at=datetime(2026, 3, 1, 13, 0))

    def test_remaining_may_be_negative(self) -> None:
        record = _make_record()
        assert record.remaining(T0) == timedelta(hours=1)
        assert record.remaining(T0 + timedelta(hours=2)) == timedelta(hours=-1)

    def test_usable_outside_skew(self) -> None:
        record = _make_record(expires_at=T0 + timedelta(minutes=10))
        assert record.is_usable(T0, timedelta(minutes=5)) is True

    def test_not_usable_inside_skew(self) -> None:
        """Two minutes left with a five-minute skew must trigger a refresh."""
        record = _make_record(expires_at=T0 + timedelta(minutes=2))
        assert record.is_usable(T0, timedelta(minutes=5)) is False

    def test_not_usable_exactly_at_skew_boundary(self) -> None:
        record = _make_record(expires_at=T0 + timedelta(minutes=5))
        assert record.is_usable(T0, timedelta(minutes=5)) is False

    def test_masked_short_secret_hides_everything(self) -> None:
        assert CredentialRecord.masked("abc") == "…"

    def test_masked_keeps_prefix(self) -> None:
        assert CredentialRecord.masked("abcdefghijkl", visible=4) == "abcd…"

    def test_repr_does_not_leak_tokens(self) -> None:
        record = _make_record()
        text = repr(record)
        assert record.access_token not in text
        assert record.refresh_token not in text
        assert "oauth2v2" in text
        assert str(record) == text


# ===========================================================================
# SchedulerState
# ===========================================================================


class TestSchedulerState:
    """Invariants and health derivation of :class:`SchedulerState`."""

    def test_defaults(self) -> None:
        state = SchedulerState()
        assert state.enabled is True
        assert state.consecutive_failures == 0
        assert state.circuit_open is False
        assert state.circuit_open_until is None
        assert state.last_run is None
        assert state.last_error is None

    def test_open_circuit_requires_deadline(self) -> None:
        with pytest.raises(ValidationError, match="circuit_open requires circuit_open_until"):
            SchedulerState(circuit_open=True)

    def test_negative_failures_rejected(self) -> None:
        with pytest.raises(ValidationError):
            SchedulerState(consecutive_failures=-1)

    def test_status_running(self) -> None:
        assert SchedulerState().status(T0) is HealthStatus.RUNNING

    def test_status_disabled_wins_over_circuit(self) -> None:
        state = SchedulerState(
            enabled=False, circuit_open=True, circuit_open_until=T0 + timedelta(hours=1)
        )
        assert state.status(T0) is HealthStatus.DISABLED

    def test_status_cooling_down(self) -> None:
        state = SchedulerState(circuit_open=True, circuit_open_until=T0 + timedelta(hours=1))
        assert state.status(T0) is HealthStatus.COOLING_DOWN

    def test_status_awaiting_trial_once_cooldown_elapsed(self) -> None:
        state = SchedulerState(circuit_open=True, circuit_open_until=T0)
        assert state.status(T0) is HealthStatus.AWAITING_TRIAL

    def test_utc_now_is_aware(self) -> None:
        assert utc_now().tzinfo is not None


# ===========================================================================
# Settings
# ===========================================================================


class TestSettings:
    """Tests for :class:`~gigwatch.core.settings.Settings`."""

    def test_defaults_load_without_env(self, clean_env: None) -> None:
        """Settings with no env vars use documented defaults."""
        s = Settings()
        assert s.failure_threshold == 3
        assert s.cooldown_duration == timedelta(hours=6)
        assert s.refresh_skew == timedelta(minutes=5)
        assert s.refresh_timeout == timedelta(seconds=30)
        assert s.pipeline_timeout == timedelta(minutes=5)
        assert s.store_backend == "sqlite"
        assert s.credential_document_id == "config/upwork_tokens"
        assert s.state_document_id == "config/scheduler_state"
        assert s.log_level == "INFO"
        assert s.log_format == "text"

    def test_oauth_configured_false_by_default(self, clean_env: None) -> None:
        assert Settings().oauth_configured is False

    def test_oauth_configured_requires_both_fields(
        self, monkeypatch: pytest.MonkeyPatch, clean_env: None
    ) -> None:
        monkeypatch.setenv("UPWORK_CLIENT_ID", "client")
        monkeypatch.setenv("UPWORK_CLIENT_SECRET", "secret")
        assert Settings().oauth_configured is True

    def test_oauth_configured_partial_is_false(
        self, monkeypatch: pytest.MonkeyPatch, clean_env: None
    ) -> None:
        monkeypatch.setenv("UPWORK_CLIENT_ID", "client")
        assert Settings().oauth_configured is False

    def test_iso_duration_accepted(
        self, monkeypatch: pytest.MonkeyPatch, clean_env: None
    ) -> None:
        monkeypatch.setenv("COOLDOWN_DURATION", "PT1H")
        monkeypatch.setenv("REFRESH_SKEW", "PT10M")
        s = Settings()
        assert s.cooldown_duration == timedelta(hours=1)
        assert s.refresh_skew == timedelta(minutes=10)

    def test_zero_duration_rejected(
        self, monkeypatch: pytest.MonkeyPatch, clean_env: None
    ) -> None:
        monkeypatch.setenv("COOLDOWN_DURATION", "PT0S")
        with pytest.raises(ValidationError, match="duration must be positive"):
            Settings()

    def test_threshold_below_one_rejected(
        self, monkeypatch: pytest.MonkeyPatch, clean_env: None
    ) -> None:
        monkeypatch.setenv("FAILURE_THRESHOLD", "0")
        with pytest.raises(ValidationError, match="failure_threshold"):
            Settings()

    def test_invalid_store_backend_raises(
        self, monkeypatch: pytest.MonkeyPatch, clean_env: None
    ) -> None:
        monkeypatch.setenv("STORE_BACKEND", "redis")
        with pytest.raises(ValidationError, match="store_backend"):
            Settings()

    def test_store_backend_normalised(
        self, monkeypatch: pytest.MonkeyPatch, clean_env: None
    ) -> None:
        monkeypatch.setenv("STORE_BACKEND", "MEMORY")
        assert Settings().store_backend == "memory"

    def test_invalid_log_level_raises(
        self, monkeypatch: pytest.MonkeyPatch, clean_env: None
    ) -> None:
        monkeypatch.setenv("LOG_LEVEL", "VERBOSE")
        with pytest.raises(ValidationError, match="log_level"):
            Settings()

    def test_log_level_normalised_to_upper(
        self, monkeypatch: pytest.MonkeyPatch, clean_env: None
    ) -> None:
        monkeypatch.setenv("LOG_LEVEL", "debug")
        assert Settings().log_level == "DEBUG"

    def test_attempt_lease_covers_refresh_and_pipeline(self, clean_env: None) -> None:
        s = Settings()
        assert s.attempt_lease > s.refresh_timeout + s.pipeline_timeout

    def test_database_path_resolved_is_absolute(self, clean_env: None) -> None:
        assert Settings().database_path_resolved.is_absolute()


# ===========================================================================
# Logging
# ===========================================================================


class TestJsonFormatter:
    """Output shape of :class:`JsonFormatter` and tick-id injection."""

    def _record(self, **extra: object) -> logging.LogRecord:
        record = logging.LogRecord(
            name="gigwatch.test",
            level=logging.INFO,
            pathname=__file__,
            lineno=1,
            msg="hello %s",
            args=("world",),
            exc_info=None,
        )
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_emits_required_fields(self) -> None:
        payload = json.loads(JsonFormatter().format(self._record()))
        assert payload["level"] == "INFO"
        assert payload["logger"] == "gigwatch.test"
        assert payload["message"] == "hello world"
        assert payload["ts"].endswith("Z")

    def test_event_and_tick_promoted(self) -> None:
        record = self._record(event="TICK_START", tick_id="abcd1234", items=3)
        payload = json.loads(JsonFormatter().format(record))
        assert payload["event"] == "TICK_START"
        assert payload["tick_id"] == "abcd1234"
        assert payload["extra"] == {"items": 3}

    def test_plain_record_has_empty_extra(self) -> None:
        payload = json.loads(JsonFormatter().format(self._record()))
        assert payload["event"] is None
        assert payload["tick_id"] == "-"
        assert payload["extra"] == {}

    def test_exception_rendered(self) -> None:
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            import sys  # noqa: PLC0415

            record = self._record()
            record.exc_info = sys.exc_info()
        payload = json.loads(JsonFormatter().format(record))
        assert "RuntimeError: boom" in payload["exc_info"]

    def test_tick_filter_injects_current_tick(self) -> None:
        token = TICK_ID_CTX.set("abcd1234")
        try:
            record = self._record()
            assert TickContextFilter().filter(record) is True
        finally:
            TICK_ID_CTX.reset(token)
        assert record.tick_id == "abcd1234"  # type: ignore[attr-defined]

    def test_tick_filter_default_outside_tick(self) -> None:
        record = self._record()
        TickContextFilter().filter(record)
        assert record.tick_id == "-"  # type: ignore[attr-defined]


# ===========================================================================
# Exception payloads
# ===========================================================================


class TestExceptionPayloads:
    def test_document_not_found_carries_id(self) -> None:
        exc = DocumentNotFoundError("config/scheduler_state")
        assert exc.doc_id == "config/scheduler_state"
        assert "config/scheduler_state" in str(exc)

    def test_stale_state_carries_version(self) -> None:
        exc = StaleStateError("config/scheduler_state", 7)
        assert exc.expected_version == 7
        assert "7" in str(exc)

    def test_rate_limit_carries_retry_after(self) -> None:
        exc = RateLimitError("api.upwork.com", retry_after=45.0)
        assert exc.source == "api.upwork.com"
        assert exc.retry_after == 45.0
        assert RateLimitError("api.upwork.com").retry_after is None

    def test_refresh_rejected_formats_status(self) -> None:
        exc = AuthRefreshRejectedError(
            "token revoked", status_code=400, oauth_error="invalid_grant"
        )
        assert str(exc) == "Refresh token rejected (HTTP 400): token revoked"
        assert exc.oauth_error == "invalid_grant"

    def test_pipeline_timeout_mentions_deadline(self) -> None:
        assert "300s" in str(PipelineTimeoutError(300.0))
