"""OAuth 2 token-endpoint client for the marketplace authorization provider.

Two grants are used: ``refresh_token`` on every scheduled path and
``authorization_code`` once, during out-of-band setup.

Token-endpoint answers map onto the auth errors as follows:

* 2xx: parsed into a :class:`TokenGrant`.
* 429, 5xx, network failure: :class:`AuthTransientError`, retried with
  exponential back-off (a 429 waits for its ``Retry-After``).
* 400 / 401 / 403, or an ``invalid_grant``-style error body: the grant was
  refused.  For a refresh this is :class:`AuthRefreshRejectedError` and is
  never retried, since the provider may already have invalidated the token.
* anything else: :class:`ConfigError` (the endpoint URL is wrong).

Typical usage::

    async with OAuthTokenClient.from_settings(settings) as provider:
        grant = await provider.refresh(record.refresh_token)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from types import TracebackType
from typing import Any, Final, Protocol
from urllib.parse import urlencode

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from gigwatch.core.exceptions import (
    AuthError,
    AuthRefreshRejectedError,
    AuthTransientError,
    ConfigError,
)
from gigwatch.core.settings import Settings

__all__ = [
    "TokenGrant",
    "AuthorizationProvider",
    "OAuthTokenClient",
]

logger = logging.getLogger(__name__)

_REFUSED: Final[frozenset[int]] = frozenset({400, 401, 403})
_REFUSED_CODES: Final[frozenset[str]] = frozenset(
    {"invalid_grant", "invalid_client", "unauthorized_client"}
)

#: Lifetime assumed when the provider omits ``expires_in``.
_DEFAULT_EXPIRES_IN: Final[float] = 3600.0

_TIMEOUT: Final[httpx.Timeout] = httpx.Timeout(20.0, connect=10.0, pool=5.0)

#: Longest single wait; a refresh also runs under ``refresh_timeout``.
_MAX_WAIT: Final[float] = 30.0

_BACKOFF = wait_exponential_jitter(initial=1.0, max=_MAX_WAIT, jitter=5.0)


@dataclass(frozen=True)
class TokenGrant:
    """A successful token-endpoint response.

    Attributes:
        access_token: New bearer token.
        refresh_token: New refresh token, or ``None`` when the provider does
            not rotate refresh tokens (the caller keeps the old one).
        expires_in: Access-token lifetime in seconds.
        token_type: Token type, usually ``"bearer"``.
    """

    access_token: str
    refresh_token: str | None
    expires_in: float
    token_type: str = "bearer"

    def __repr__(self) -> str:
        return f"TokenGrant(expires_in={self.expires_in}, token_type={self.token_type!r})"


class AuthorizationProvider(Protocol):
    """What :class:`~gigwatch.auth.tokens.TokenLifecycleManager` needs."""

    async def refresh(self, refresh_token: str) -> TokenGrant:
        """Exchange *refresh_token* for a new grant.

        Raises:
            AuthRefreshRejectedError: The provider refused the token.
            AuthTransientError: Network / server failure after retries.
        """
        ...


class _Throttled(AuthTransientError):
    def __init__(self, retry_after: float) -> None:
        self.retry_after = retry_after
        super().__init__(f"Token endpoint rate limited; retry after {retry_after:.0f}s")


def _token_wait(retry_state: RetryCallState) -> float:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    if isinstance(exc, _Throttled):
        return min(exc.retry_after, _MAX_WAIT)
    return _BACKOFF(retry_state)


class OAuthTokenClient:
    """Client for one OAuth 2 application's token endpoint.

    Use as an ``async with`` context manager so the connection pool is closed.

    Args:
        token_url: OAuth 2 token endpoint.
        client_id: OAuth application id.
        client_secret: OAuth application secret.
        redirect_uri: Redirect URI registered with the application (needed
            for the authorization-code grant and URL).
        authorize_url: OAuth 2 authorization endpoint.
        max_attempts: Total attempts for transient failures (≥ 1).
        transport: Optional transport, e.g. :class:`httpx.MockTransport`.

    Raises:
        ValueError: If ``max_attempts`` is less than 1.
    """

    def __init__(
        self,
        *,
        token_url: str,
        client_id: str,
        client_secret: str,
        redirect_uri: str = "",
        authorize_url: str = "",
        max_attempts: int = 3,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be ≥ 1, got {max_attempts!r}.")
        self._token_url = token_url
        self._credentials = {"client_id": client_id, "client_secret": client_secret}
        self._redirect_uri = redirect_uri
        self._authorize_url = authorize_url
        self._max_attempts = max_attempts
        self._transport = transport
        self._http: httpx.AsyncClient | None = None

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> OAuthTokenClient:
        """Build a client from :class:`~gigwatch.core.settings.Settings`.

        Raises:
            ConfigError: If the OAuth client id or secret is missing.
        """
        if not settings.oauth_configured:
            raise ConfigError(
                "OAuth client credentials missing. "
                "Set UPWORK_CLIENT_ID and UPWORK_CLIENT_SECRET in .env (or env vars)."
            )
        return cls(
            token_url=settings.upwork_token_url,
            client_id=settings.upwork_client_id,
            client_secret=settings.upwork_client_secret,
            redirect_uri=settings.upwork_redirect_uri,
            authorize_url=settings.upwork_authorize_url,
            max_attempts=settings.auth_max_attempts,
            transport=transport,
        )

    async def __aenter__(self) -> OAuthTokenClient:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()

    async def close(self) -> None:
        if self._http is not None:
            await self._http.aclose()
            self._http = None

    def authorization_url(self, state: str | None = None) -> str:
        """Return the URL an operator visits to authorize the application."""
        params = {
            "response_type": "code",
            "client_id": self._credentials["client_id"],
            "redirect_uri": self._redirect_uri,
        }
        if state:
            params["state"] = state
        return f"{self._authorize_url}?{urlencode(params)}"

    async def refresh(self, refresh_token: str) -> TokenGrant:
        """Exchange *refresh_token* for a new access/refresh token pair.

        Raises:
            AuthRefreshRejectedError: The provider refused the refresh token.
            AuthTransientError: Network / 429 / 5xx failure after retries.
            ConfigError: The token endpoint answered with an unexpected
                client error (wrong URL).
        """
        return await self._grant({"grant_type": "refresh_token", "refresh_token": refresh_token})

    async def exchange_code(self, code: str) -> TokenGrant:
        """Exchange an authorization *code* for the initial token pair."""
        return await self._grant(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self._redirect_uri,
            }
        )

    async def _grant(self, form: dict[str, str]) -> TokenGrant:
        grant_type = form["grant_type"]
        if self._http is None:
            self._http = httpx.AsyncClient(
                timeout=_TIMEOUT,
                transport=self._transport,
                headers={"Accept": "application/json"},
            )
        http = self._http

        def _log_retry(rs: RetryCallState) -> None:
            logger.warning(
                "Token endpoint (%s grant) failed on attempt %d/%d (%s); retrying.",
                grant_type,
                rs.attempt_number,
                self._max_attempts,
                rs.outcome.exception() if rs.outcome else None,
            )

        retrying = AsyncRetrying(
            wait=_token_wait,
            stop=stop_after_attempt(self._max_attempts),
            retry=retry_if_exception_type(AuthTransientError),
            before_sleep=_log_retry,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                try:
                    response = await http.post(
                        self._token_url, data={**form, **self._credentials}
                    )
                except httpx.TransportError as exc:
                    raise AuthTransientError(f"Token endpoint unreachable: {exc!r}") from exc
                logger.debug("Token endpoint (%s grant) -> %d", grant_type, response.status_code)
                grant = self._to_grant(response, grant_type)
        return grant

    def _to_grant(self, response: httpx.Response, grant_type: str) -> TokenGrant:
        status = response.status_code
        if response.is_success:
            return _parse_grant(response)
        if status == 429:
            hint = response.headers.get("retry-after", "")
            raise _Throttled(max(float(hint), 1.0) if hint.isdigit() else 1.0)
        if status >= 500:
            raise AuthTransientError(f"Transient HTTP {status} from token endpoint")
        body = _json_object(response)
        oauth_error = body.get("error")
        if status not in _REFUSED and oauth_error not in _REFUSED_CODES:
            raise ConfigError(
                f"Token endpoint {self._token_url} answered HTTP {status}; "
                "check UPWORK_TOKEN_URL."
            )

        message = body.get("error_description") or oauth_error or response.text[:200]
        if grant_type == "refresh_token":
            raise AuthRefreshRejectedError(message, status_code=status, oauth_error=oauth_error)
        raise AuthError(f"Authorization code rejected (HTTP {status}): {message}")


def _json_object(response: httpx.Response) -> dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def _parse_grant(response: httpx.Response) -> TokenGrant:
    payload = _json_object(response)
    # Some SDK responses nest the grant under "token".
    if isinstance(payload.get("token"), dict):
        payload = payload["token"]

    access_token = payload.get("access_token")
    if not access_token:
        raise AuthTransientError("Token endpoint response lacks access_token")

    try:
        expires_in = float(payload.get("expires_in") or _DEFAULT_EXPIRES_IN)
    except (TypeError, ValueError):
        expires_in = _DEFAULT_EXPIRES_IN

    return TokenGrant(
        access_token=str(access_token),
        refresh_token=payload.get("refresh_token") or None,
        expires_in=expires_in,
        token_type=str(payload.get("token_type") or "bearer"),
    )
