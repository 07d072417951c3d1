"""Shared pytest fixtures and configuration for the Gigwatch test suite.

This file is loaded automatically by pytest before any test module.
It provides project-wide fixtures used across the unit tests.
"""

from __future__ import annotations

import logging
import os
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
from pydantic_settings import SettingsConfigDict

from gigwatch.core import configure_logging
from gigwatch.core.models import SchedulerState
from gigwatch.core.settings import Settings
from gigwatch.storage.documents import state_to_document
from gigwatch.storage.memory import InMemoryDocumentStore

#: Fixed starting instant for every fake clock.
T0 = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)

STATE_DOC = "config/scheduler_state"


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _configure_test_logging() -> None:
    """Force DEBUG logging in text format for every test.

    Using ``force=True`` ensures the configuration is applied even when
    pytest's own ``log_cli`` handler is already present.
    """
    configure_logging(level="DEBUG", fmt="text", force=True)


# ---------------------------------------------------------------------------
# Environment
# ---------------------------------------------------------------------------


@pytest.fixture()
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Remove all Gigwatch-related env vars for the duration of a test.

    Also disables pydantic-settings `.env` file loading so that credentials
    present in a local `.env` file do not leak into Settings isolation tests.
    """
    sensitive_prefixes = (
        "UPWORK_",
        "MARKETPLACE_",
        "PIPELINE_",
        "FAILURE_",
        "COOLDOWN_",
        "REFRESH_",
        "AUTH_",
        "STATE_",
        "STORE_",
        "DATABASE_",
        "CREDENTIAL_",
        "TICK_",
        "LOG_LEVEL",
        "LOG_FORMAT",
    )
    for key in list(os.environ):
        if any(key.startswith(prefix) for prefix in sensitive_prefixes):
            monkeypatch.delenv(key, raising=False)

    monkeypatch.setattr(
        Settings,
        "model_config",
        SettingsConfigDict(
            env_file=None,
            env_file_encoding="utf-8",
            extra="ignore",
        ),
    )


# ---------------------------------------------------------------------------
# Time
# ---------------------------------------------------------------------------


class FakeClock:
    """Deterministic aware-UTC clock; call it to read, ``advance()`` to move."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: Any) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------


@pytest.fixture()
def store() -> InMemoryDocumentStore:
    """Empty in-memory document store."""
    return InMemoryDocumentStore()


@pytest.fixture()
def initialized_store() -> InMemoryDocumentStore:
    """In-memory store holding a default scheduler-state document."""
    return InMemoryDocumentStore({STATE_DOC: state_to_document(SchedulerState())})


# ---------------------------------------------------------------------------
# Misc helpers
# ---------------------------------------------------------------------------


@pytest.fixture()
def logger() -> logging.Logger:
    """Return a ``logging.Logger`` scoped to the running test."""
    return logging.getLogger("tests")
