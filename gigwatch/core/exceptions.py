"""Gigwatch exception taxonomy.

Every custom exception inherits from :class:`GigwatchError`.  Exceptions are
organised by the way the scheduled-fetch controller must react to them, so
callers can catch at the right granularity:

    Layer hierarchy
    ---------------
    GigwatchError
    ├── ConfigError
    ├── StorageError
    │   ├── DocumentNotFoundError
    │   └── StaleStateError
    ├── AuthError
    │   ├── AuthRefreshRejectedError      (fatal: never retried)
    │   └── AuthTransientError            (also a TransientError)
    ├── TransientError
    │   ├── RateLimitError
    │   └── PipelineTimeoutError
    ├── PipelineError
    └── OrchestratorError

Classification at the trigger boundary
--------------------------------------
* :class:`TransientError`: counted toward ``consecutive_failures``; retried
  on the next natural tick; never disables the scheduler by itself.
* :class:`AuthRefreshRejectedError`: counted *and* forces ``enabled=False``;
  only an operator re-authorization clears it.
* :class:`ConfigError`: surfaced via ``last_error`` only.  It is evidence of
  a deployment problem, not of an unhealthy dependency.
* :class:`PipelineError`: treated like a transient failure.

Usage:

    from gigwatch.core.exceptions import AuthRefreshRejectedError

    raise AuthRefreshRejectedError("invalid_grant: refresh token revoked")
"""

from __future__ import annotations

__all__ = [
    "GigwatchError",
    # Config
    "ConfigError",
    # Storage
    "StorageError",
    "DocumentNotFoundError",
    "StaleStateError",
    # Auth
    "AuthError",
    "AuthRefreshRejectedError",
    "AuthTransientError",
    # Transient / pipeline
    "TransientError",
    "RateLimitError",
    "PipelineTimeoutError",
    "PipelineError",
    # Orchestrator
    "OrchestratorError",
]

# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------


class GigwatchError(Exception):
    """Root exception for all Gigwatch errors."""


# ---------------------------------------------------------------------------
# Config layer
# ---------------------------------------------------------------------------


class ConfigError(GigwatchError):
    """Raised when the deployment configuration is invalid or incomplete.

    Examples:
        - The credential document does not exist (authorization never run).
        - The scheduler-state document was never initialised.
        - No fetch pipeline is configured.
        - OAuth client id / secret are missing.
    """


# ---------------------------------------------------------------------------
# Storage layer
# ---------------------------------------------------------------------------


class StorageError(GigwatchError):
    """Raised when a document store operation fails."""


class DocumentNotFoundError(StorageError):
    """Raised when a conditional write targets a document that does not exist.

    Args:
        doc_id: Identifier of the missing document.
    """

    def __init__(self, doc_id: str) -> None:
        self.doc_id = doc_id
        super().__init__(f"Document not found: {doc_id!r}")


class StaleStateError(StorageError):
    """Raised when a conditional write loses against a concurrent writer.

    The writer observed *expected_version* but the store now holds a
    different version.  Callers re-read and decide whether to rebase or
    discard their update.

    Args:
        doc_id: Identifier of the contended document.
        expected_version: Version the writer based its update on.
    """

    def __init__(self, doc_id: str, expected_version: int) -> None:
        self.doc_id = doc_id
        self.expected_version = expected_version
        super().__init__(
            f"Conditional write on {doc_id!r} lost: version {expected_version} is stale"
        )


# ---------------------------------------------------------------------------
# Transient failures
# ---------------------------------------------------------------------------


class TransientError(GigwatchError):
    """A failure that may resolve by itself: network blip, rate limit, timeout."""


class RateLimitError(TransientError):
    """Raised when a remote endpoint answers HTTP 429.

    Args:
        source: Short label of the endpoint that throttled us.
        retry_after: Recommended back-off interval in seconds, if known.
    """

    def __init__(self, source: str, retry_after: float | None = None) -> None:
        self.source = source
        self.retry_after = retry_after
        detail = f"retry after {retry_after}s" if retry_after is not None else "no retry hint"
        super().__init__(f"[{source}] Rate limited, {detail}")


class PipelineTimeoutError(TransientError):
    """Raised when a fetch attempt exceeds its deadline.

    Args:
        timeout_s: The deadline that was exceeded, in seconds.
    """

    def __init__(self, timeout_s: float) -> None:
        self.timeout_s = timeout_s
        super().__init__(f"Fetch pipeline exceeded its {timeout_s:.0f}s deadline")


# ---------------------------------------------------------------------------
# Auth layer
# ---------------------------------------------------------------------------


class AuthError(GigwatchError):
    """Base class for credential errors."""


class AuthRefreshRejectedError(AuthError):
    """The authorization provider rejected the refresh token.

    Fatal and non-retryable: retrying with the same refresh token cannot
    succeed.  The stored refresh token is left untouched so an operator can
    inspect it; the scheduler is disabled until re-authorization.

    Args:
        message: Human-readable error description.
        status_code: HTTP status code from the token endpoint, if available.
        oauth_error: The ``error`` field of the OAuth error body, if any.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        oauth_error: str | None = None,
    ) -> None:
        self.status_code = status_code
        self.oauth_error = oauth_error
        detail = f" (HTTP {status_code})" if status_code is not None else ""
        super().__init__(f"Refresh token rejected{detail}: {message}")


class AuthTransientError(AuthError, TransientError):
    """A refresh attempt failed for a reason that may resolve by itself.

    Covers network errors, HTTP 429 / 5xx from the token endpoint, and
    exceeding the refresh deadline.
    """


# ---------------------------------------------------------------------------
# Pipeline layer
# ---------------------------------------------------------------------------


class PipelineError(GigwatchError):
    """The fetch pipeline reported a domain-level failure.

    Examples:
        - Malformed GraphQL response (missing ``data``).
        - GraphQL ``errors`` array in an otherwise successful response.
    """


# ---------------------------------------------------------------------------
# Orchestrator layer
# ---------------------------------------------------------------------------


class OrchestratorError(GigwatchError):
    """Raised for errors originating in the scheduling layer itself."""
