"""Gigwatch application settings loaded from environment and ``.env`` files.

Uses :mod:`pydantic_settings` to parse environment variables (and optionally
an ``.env`` file) into a validated settings object.

The field name is the **lowercase** version of the env-var name (e.g.
``FAILURE_THRESHOLD`` → ``failure_threshold``).  Duration fields accept
either a number of seconds (``COOLDOWN_DURATION=21600``) or an ISO-8601
duration (``COOLDOWN_DURATION=PT6H``).

Typical usage::

    from gigwatch.core.settings import Settings

    settings = Settings()                 # loads from env + .env
    print(settings.cooldown_duration)     # datetime.timedelta(seconds=21600)
    print(settings.oauth_configured)      # True / False
"""

from __future__ import annotations

import logging
from datetime import timedelta
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

__all__ = ["Settings"]

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Central application configuration.

    Values are loaded in priority order:

    1. Actual environment variables (highest priority).
    2. ``.env`` file in the working directory.
    3. Field defaults (lowest priority).

    OAuth credentials may be left empty for local development; the
    ``oauth_configured`` property then returns ``False`` and building the
    authorization provider raises :exc:`~gigwatch.core.exceptions.ConfigError`.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Circuit breaker
    # ------------------------------------------------------------------
    failure_threshold: int = Field(
        default=3,
        ge=1,
        description="Consecutive failures before the circuit opens.",
    )
    cooldown_duration: timedelta = Field(
        default=timedelta(hours=6),
        description="How long the circuit stays open before a trial attempt.",
    )
    state_write_attempts: int = Field(
        default=3,
        ge=1,
        description="Conditional-write attempts before giving up on a contended update.",
    )

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------
    refresh_skew: timedelta = Field(
        default=timedelta(minutes=5),
        description="Refresh the access token when it expires within this margin.",
    )
    refresh_timeout: timedelta = Field(
        default=timedelta(seconds=30),
        description="Deadline for one complete token refresh.",
    )
    auth_max_attempts: int = Field(
        default=3,
        ge=1,
        description="Token-endpoint attempts for transient failures (1 = no retry).",
    )
    upwork_client_id: str = Field(default="", description="OAuth client id.")
    upwork_client_secret: str = Field(default="", description="OAuth client secret.")
    upwork_redirect_uri: str = Field(
        default="",
        description="Redirect URI registered with the OAuth application.",
    )
    upwork_token_url: str = Field(
        default="https://www.upwork.com/api/v3/oauth2/token",
        description="OAuth 2 token endpoint.",
    )
    upwork_authorize_url: str = Field(
        default="https://www.upwork.com/ab/account-security/oauth2/authorize",
        description="OAuth 2 authorization endpoint (used by the setup flow).",
    )

    # ------------------------------------------------------------------
    # Fetch pipeline
    # ------------------------------------------------------------------
    pipeline_timeout: timedelta = Field(
        default=timedelta(minutes=5),
        description="Deadline for one fetch attempt.",
    )
    pipeline_factory: str = Field(
        default="",
        description="Optional 'module:callable' returning a FetchPipeline.",
    )
    marketplace_graphql_url: str = Field(
        default="https://api.upwork.com/graphql",
        description="GraphQL endpoint used by the built-in pipeline.",
    )
    marketplace_query_path: str = Field(
        default="",
        description="Path to the GraphQL document the built-in pipeline sends.",
    )
    marketplace_result_field: str = Field(
        default="marketplaceJobPostings",
        description="Top-level field under 'data' holding the job connection.",
    )

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------
    store_backend: str = Field(default="sqlite", description="'sqlite' or 'memory'.")
    database_path: str = Field(
        default="data/gigwatch.db",
        description="Path to the SQLite document store.",
    )
    credential_document_id: str = Field(default="config/upwork_tokens")
    state_document_id: str = Field(default="config/scheduler_state")

    # ------------------------------------------------------------------
    # Scheduling / runtime
    # ------------------------------------------------------------------
    tick_interval: timedelta = Field(
        default=timedelta(hours=6),
        description="Cadence of the built-in continuous loop.",
    )
    log_level: str = Field(default="INFO", description="Logging level.")
    log_format: str = Field(default="text", description="Log format: 'text' or 'json'.")

    # ------------------------------------------------------------------
    # Field validators
    # ------------------------------------------------------------------

    @field_validator(
        "cooldown_duration",
        "refresh_skew",
        "refresh_timeout",
        "pipeline_timeout",
        "tick_interval",
    )
    @classmethod
    def _validate_positive_duration(cls, v: timedelta) -> timedelta:
        if v <= timedelta(0):
            raise ValueError(f"duration must be positive, got {v!r}")
        return v

    @field_validator("store_backend")
    @classmethod
    def _validate_store_backend(cls, v: str) -> str:
        allowed = {"sqlite", "memory"}
        v_lower = v.lower()
        if v_lower not in allowed:
            raise ValueError(f"store_backend must be one of {allowed}, got {v!r}")
        return v_lower

    @field_validator("log_level")
    @classmethod
    def _validate_log_level(cls, v: str) -> str:
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR"}
        v_upper = v.upper()
        if v_upper not in allowed:
            raise ValueError(f"log_level must be one of {allowed}, got {v!r}")
        return v_upper

    @field_validator("log_format")
    @classmethod
    def _validate_log_format(cls, v: str) -> str:
        allowed = {"text", "json"}
        v_lower = v.lower()
        if v_lower not in allowed:
            raise ValueError(f"log_format must be one of {allowed}, got {v!r}")
        return v_lower

    # ------------------------------------------------------------------
    # Derived helpers
    # ------------------------------------------------------------------

    @property
    def database_path_resolved(self) -> Path:
        """Return the database path as a resolved :class:`~pathlib.Path`."""
        return Path(self.database_path).resolve()

    @property
    def attempt_lease(self) -> timedelta:
        """Longest a claimed attempt can legitimately run before its outcome is recorded."""
        return self.refresh_timeout + self.pipeline_timeout + timedelta(minutes=1)

    @property
    def oauth_configured(self) -> bool:
        """``True`` if both OAuth client credentials are set."""
        return bool(self.upwork_client_id and self.upwork_client_secret)
