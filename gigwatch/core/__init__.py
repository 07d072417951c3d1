"""Core domain models, settings, logging configuration, and exception taxonomy."""

from gigwatch.core.exceptions import (
    AuthError,
    AuthRefreshRejectedError,
    AuthTransientError,
    ConfigError,
    DocumentNotFoundError,
    GigwatchError,
    OrchestratorError,
    PipelineError,
    PipelineTimeoutError,
    RateLimitError,
    StaleStateError,
    StorageError,
    TransientError,
)
from gigwatch.core.logging_config import JsonFormatter, configure_logging
from gigwatch.core.models import CredentialRecord, HealthStatus, SchedulerState, utc_now
from gigwatch.core.settings import Settings

__all__ = [
    # Logging
    "configure_logging",
    "JsonFormatter",
    # Domain models
    "CredentialRecord",
    "SchedulerState",
    "HealthStatus",
    "utc_now",
    # Settings
    "Settings",
    # Exceptions: base
    "GigwatchError",
    # Exceptions: config
    "ConfigError",
    # Exceptions: storage
    "StorageError",
    "DocumentNotFoundError",
    "StaleStateError",
    # Exceptions: auth
    "AuthError",
    "AuthRefreshRejectedError",
    "AuthTransientError",
    # Exceptions: transient / pipeline
    "TransientError",
    "RateLimitError",
    "PipelineTimeoutError",
    "PipelineError",
    # Exceptions: orchestrator
    "OrchestratorError",
]
