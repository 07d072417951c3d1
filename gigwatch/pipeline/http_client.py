"""Retrying HTTP transport for marketplace API calls.

:class:`MarketplaceHttpClient` owns one lazily opened :class:`httpx.AsyncClient`
and sends every request through a :mod:`tenacity` retry loop.  Responses are
mapped onto the controller's error taxonomy before they leave this module:

====================  ===========  ====================================
Response              Retried      Raised once attempts run out
====================  ===========  ====================================
2xx                   n/a          (returned)
429                   yes          :class:`RateLimitError`
500 / 502 / 503 / 504 yes          :class:`TransientError`
network failure       yes          :class:`TransientError`
401                   no           :class:`AuthError`
other 4xx             no           :class:`PipelineError`
====================  ===========  ====================================

A 429 waits exactly as long as the endpoint asked (``Retry-After`` header or
a ``retryAfter`` body field); everything else backs off exponentially with
jitter.  All retries happen inside one pipeline attempt, so the trigger's
pipeline deadline bounds them.
"""

from __future__ import annotations

import logging
from types import TracebackType
from typing import Any, Final

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from gigwatch.core.exceptions import AuthError, PipelineError, RateLimitError, TransientError

__all__ = ["MarketplaceHttpClient"]

logger = logging.getLogger(__name__)

_SERVER_FAULTS: Final[frozenset[int]] = frozenset({500, 502, 503, 504})

_DEFAULT_TIMEOUT: Final[httpx.Timeout] = httpx.Timeout(30.0, connect=10.0, pool=5.0)

_DEFAULT_MAX_ATTEMPTS: Final[int] = 3

#: Back-off for everything except a throttled response with a hint.
_BACKOFF = wait_exponential_jitter(initial=1.0, max=60.0, jitter=10.0)


class _ServerFault(TransientError):
    """A 5xx answer; retried, and surfaced as-is once attempts run out."""


def _marketplace_wait(retry_state: RetryCallState) -> float:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    if isinstance(exc, RateLimitError) and exc.retry_after:
        logger.debug("Waiting %.1f s as requested by %s.", exc.retry_after, exc.source)
        return exc.retry_after
    return _BACKOFF(retry_state)


def _retry_after(response: httpx.Response) -> float:
    """Seconds a 429 response asks us to wait; never below one second."""
    hint: Any = response.headers.get("retry-after")
    if not hint:
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            hint = body.get("retryAfter", body.get("retry_after"))
    try:
        return max(float(hint), 1.0)
    except (TypeError, ValueError):
        return 1.0


def _check(response: httpx.Response) -> httpx.Response:
    """Return *response* if it is a 2xx, else raise the mapped error."""
    if response.is_success:
        return response

    status = response.status_code
    host = response.request.url.host
    if status == 429:
        raise RateLimitError(source=host, retry_after=_retry_after(response))
    if status in _SERVER_FAULTS:
        raise _ServerFault(f"Transient HTTP {status} from {host}")
    if status == 401:
        raise AuthError(f"{host} rejected the access token (HTTP 401)")
    raise PipelineError(f"HTTP {status} from {host}: {response.text[:200]}")


class MarketplaceHttpClient:
    """Async JSON client for the marketplace API.

    Args:
        timeout: Per-request :class:`httpx.Timeout` (or seconds).
        max_attempts: Total attempts per request, first try included.
        transport: Optional transport, e.g. :class:`httpx.MockTransport`.
    """

    def __init__(
        self,
        *,
        timeout: httpx.Timeout | float = _DEFAULT_TIMEOUT,
        max_attempts: int = _DEFAULT_MAX_ATTEMPTS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be ≥ 1, got {max_attempts!r}.")
        self._timeout = timeout
        self._max_attempts = max_attempts
        self._transport = transport
        self._http: httpx.AsyncClient | None = None

    async def __aenter__(self) -> MarketplaceHttpClient:
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

    async def post(
        self,
        url: str,
        *,
        json: Any | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        """POST *json* to *url*, retrying transient failures.

        Raises:
            RateLimitError: Still throttled after the last attempt.
            TransientError: 5xx or network failure after the last attempt.
            AuthError: HTTP 401.
            PipelineError: Any other non-2xx status.
        """
        if self._http is None:
            self._http = httpx.AsyncClient(
                timeout=self._timeout,
                transport=self._transport,
                headers={"Accept": "application/json"},
            )
        http = self._http

        def _log_retry(rs: RetryCallState) -> None:
            exc = rs.outcome.exception() if rs.outcome else None
            logger.warning(
                "POST %s failed on attempt %d/%d (%s); retrying.",
                url,
                rs.attempt_number,
                self._max_attempts,
                exc,
            )

        retrying = AsyncRetrying(
            wait=_marketplace_wait,
            stop=stop_after_attempt(self._max_attempts),
            retry=retry_if_exception_type((_ServerFault, RateLimitError, httpx.TransportError)),
            before_sleep=_log_retry,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    response = _check(await http.post(url, json=json, headers=headers))
                    logger.debug("POST %s -> %d", url, response.status_code)
        except httpx.TransportError as exc:
            raise TransientError(f"Network error talking to {url}: {exc!r}") from exc
        return response
