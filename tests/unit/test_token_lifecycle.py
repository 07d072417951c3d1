"""Unit tests for the OAuth credential lifecycle.

Covers:
- :class:`~gigwatch.auth.tokens.TokenLifecycleManager`: refresh inside the
  skew, single-flight under concurrency, fatal rejection leaving the stored
  refresh token untouched, deadline handling, and conditional persistence.
- :func:`~gigwatch.auth.tokens.record_from_grant` and
  :func:`~gigwatch.auth.tokens.install_credential`.
- :class:`~gigwatch.auth.provider.OAuthTokenClient` against an
  :class:`httpx.MockTransport`: status mapping and retry policy.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any
from unittest.mock import MagicMock, patch
from urllib.parse import parse_qs, parse_qsl, urlparse

import httpx
import pytest

from gigwatch.auth.provider import OAuthTokenClient, TokenGrant
from gigwatch.auth.tokens import (
    RefreshLockRegistry,
    TokenLifecycleManager,
    install_credential,
    record_from_grant,
)
from gigwatch.core import events
from gigwatch.core.exceptions import (
    AuthError,
    AuthRefreshRejectedError,
    AuthTransientError,
    ConfigError,
)
from gigwatch.core.models import CredentialRecord
from gigwatch.core.settings import Settings
from gigwatch.storage.base import StoredDocument
from gigwatch.storage.documents import credential_from_document, credential_to_document
from gigwatch.storage.memory import InMemoryDocumentStore

if TYPE_CHECKING:
    from conftest import FakeClock

CREDENTIAL_DOC = "config/upwork_tokens"
TOKEN_URL = "https://auth.example.com/oauth2/token"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class _FakeProvider:
    """Scripted :class:`~gigwatch.auth.provider.AuthorizationProvider`."""

    def __init__(
        self,
        *,
        grant: TokenGrant | None = None,
        error: Exception | None = None,
        hang: bool = False,
    ) -> None:
        self.grant = grant or TokenGrant(
            access_token="access-2", refresh_token="refresh-2", expires_in=86400
        )
        self.error = error
        self.hang = hang
        self.calls: list[str] = []
        self.before_return: Any = None

    async def refresh(self, refresh_token: str) -> TokenGrant:
        self.calls.append(refresh_token)
        # Give concurrent callers a chance to pile up on the lock.
        await asyncio.sleep(0)
        if self.hang:
            await asyncio.Event().wait()
        if self.before_return is not None:
            await self.before_return()
        if self.error is not None:
            raise self.error
        return self.grant


class _SlowWriteStore(InMemoryDocumentStore):
    """Conditional writes take longer than a short refresh deadline."""

    def __init__(self, initial: dict[str, dict[str, Any]]) -> None:
        super().__init__(initial)
        self.written = asyncio.Event()

    async def update_if_version(
        self, doc_id: str, data: dict[str, Any], expected_version: int
    ) -> StoredDocument:
        await asyncio.sleep(0.2)
        doc = await super().update_if_version(doc_id, data, expected_version)
        self.written.set()
        return doc


def _record(now: datetime, *, lifetime: timedelta, suffix: str = "1") -> CredentialRecord:
    return CredentialRecord(
        access_token=f"access-{suffix}",
        refresh_token=f"refresh-{suffix}",
        expires_at=now + lifetime,
        updated_at=now,
    )


def _store_with(record: CredentialRecord) -> InMemoryDocumentStore:
    return InMemoryDocumentStore({CREDENTIAL_DOC: credential_to_document(record)})


def _manager(
    store: InMemoryDocumentStore,
    provider: _FakeProvider,
    clock: FakeClock,
    **kwargs: Any,
) -> TokenLifecycleManager:
    kwargs.setdefault("locks", RefreshLockRegistry())
    return TokenLifecycleManager(
        store,
        provider,
        doc_id=CREDENTIAL_DOC,
        refresh_skew=timedelta(minutes=5),
        clock=clock,
        **kwargs,
    )


async def _stored(store: InMemoryDocumentStore) -> CredentialRecord:
    doc = await store.get(CREDENTIAL_DOC)
    assert doc is not None
    return credential_from_document(doc.data)


# ===========================================================================
# TokenLifecycleManager
# ===========================================================================


class TestGetValidToken:
    @pytest.mark.asyncio
    async def test_usable_token_returned_without_refresh(self, clock: FakeClock) -> None:
        store = _store_with(_record(clock(), lifetime=timedelta(hours=1)))
        provider = _FakeProvider()
        token = await _manager(store, provider, clock).get_valid_token()
        assert token == "access-1"
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_token_inside_skew_is_refreshed(self, clock: FakeClock) -> None:
        """Two minutes left with a five-minute skew: refresh before handing out."""
        store = _store_with(_record(clock(), lifetime=timedelta(minutes=2)))
        provider = _FakeProvider()

        token = await _manager(store, provider, clock).get_valid_token()

        assert token == "access-2"
        assert provider.calls == ["refresh-1"]
        stored = await _stored(store)
        assert stored.access_token == "access-2"
        assert stored.refresh_token == "refresh-2"
        assert stored.expires_at == clock() + timedelta(seconds=86400)
        assert stored.updated_at == clock()

    @pytest.mark.asyncio
    async def test_expired_token_is_refreshed(self, clock: FakeClock) -> None:
        store = _store_with(_record(clock(), lifetime=timedelta(hours=-1)))
        token = await _manager(store, _FakeProvider(), clock).get_valid_token()
        assert token == "access-2"

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_refresh(self, clock: FakeClock) -> None:
        store = _store_with(_record(clock(), lifetime=timedelta(minutes=1)))
        provider = _FakeProvider()
        locks = RefreshLockRegistry()
        managers = [_manager(store, provider, clock, locks=locks) for _ in range(5)]

        tokens = await asyncio.gather(*(m.get_valid_token() for m in managers))

        assert tokens == ["access-2"] * 5
        assert provider.calls == ["refresh-1"]

    @pytest.mark.asyncio
    async def test_grant_without_refresh_token_keeps_old_one(self, clock: FakeClock) -> None:
        store = _store_with(_record(clock(), lifetime=timedelta(minutes=1)))
        provider = _FakeProvider(
            grant=TokenGrant(access_token="access-2", refresh_token=None, expires_in=3600)
        )
        await _manager(store, provider, clock).get_valid_token()
        stored = await _stored(store)
        assert stored.access_token == "access-2"
        assert stored.refresh_token == "refresh-1"

    @pytest.mark.asyncio
    async def test_missing_document_is_config_error(
        self, store: InMemoryDocumentStore, clock: FakeClock
    ) -> None:
        with pytest.raises(ConfigError, match="gigwatch authorize"):
            await _manager(store, _FakeProvider(), clock).get_valid_token()

    @pytest.mark.asyncio
    async def test_skew_longer_than_token_lifetime_keeps_rotated_token(
        self, clock: FakeClock
    ) -> None:
        original = _record(clock(), lifetime=timedelta(minutes=1))
        store = _store_with(original)
        provider = _FakeProvider(
            grant=TokenGrant(access_token="access-2", refresh_token="refresh-2", expires_in=60)
        )
        with pytest.raises(ConfigError, match="REFRESH_SKEW"):
            await _manager(store, provider, clock).get_valid_token()
        stored = await _stored(store)
        assert stored.refresh_token == "refresh-2"
        assert stored.access_token == "access-2"

    @pytest.mark.asyncio
    async def test_deadline_during_write_still_stores_rotated_token(
        self, clock: FakeClock
    ) -> None:
        store = _SlowWriteStore(
            {CREDENTIAL_DOC: credential_to_document(_record(clock(), lifetime=timedelta(0)))}
        )
        manager = _manager(store, _FakeProvider(), clock, refresh_timeout=timedelta(seconds=0.05))

        with pytest.raises(AuthTransientError, match="deadline"):
            await manager.get_valid_token()
        await store.written.wait()
        assert (await _stored(store)).refresh_token == "refresh-2"


class TestRefreshFailures:
    @pytest.mark.asyncio
    async def test_rejection_is_fatal_and_keeps_stored_tokens(
        self, clock: FakeClock, caplog: pytest.LogCaptureFixture
    ) -> None:
        original = _record(clock(), lifetime=timedelta(minutes=1))
        store = _store_with(original)
        provider = _FakeProvider(
            error=AuthRefreshRejectedError("revoked", status_code=400, oauth_error="invalid_grant")
        )

        with (
            caplog.at_level(logging.ERROR, logger="gigwatch.auth.tokens"),
            pytest.raises(AuthRefreshRejectedError),
        ):
            await _manager(store, provider, clock).get_valid_token()

        assert provider.calls == ["refresh-1"]
        assert await _stored(store) == original
        assert any(
            getattr(r, "event", None) == events.TOKEN_REFRESH_REJECTED for r in caplog.records
        )

    @pytest.mark.asyncio
    async def test_rejection_after_concurrent_rotation_adopts_winner(
        self, clock: FakeClock
    ) -> None:
        store = _store_with(_record(clock(), lifetime=timedelta(minutes=1)))
        provider = _FakeProvider(error=AuthRefreshRejectedError("already used"))
        winner = _record(clock(), lifetime=timedelta(hours=24), suffix="w")

        async def _other_process_refreshes() -> None:
            await store.put(CREDENTIAL_DOC, credential_to_document(winner))

        provider.before_return = _other_process_refreshes

        token = await _manager(store, provider, clock).get_valid_token()
        assert token == "access-w"

    @pytest.mark.asyncio
    async def test_transient_error_propagates(self, clock: FakeClock) -> None:
        store = _store_with(_record(clock(), lifetime=timedelta(minutes=1)))
        provider = _FakeProvider(error=AuthTransientError("HTTP 503"))
        with pytest.raises(AuthTransientError, match="503"):
            await _manager(store, provider, clock).get_valid_token()

    @pytest.mark.asyncio
    async def test_refresh_deadline_is_transient(self, clock: FakeClock) -> None:
        store = _store_with(_record(clock(), lifetime=timedelta(minutes=1)))
        provider = _FakeProvider(hang=True)
        manager = _manager(store, provider, clock, refresh_timeout=timedelta(milliseconds=50))
        with pytest.raises(AuthTransientError, match="deadline"):
            await manager.get_valid_token()


class TestPersistence:
    @pytest.mark.asyncio
    async def test_concurrent_write_with_usable_record_is_adopted(
        self, clock: FakeClock
    ) -> None:
        store = _store_with(_record(clock(), lifetime=timedelta(minutes=1)))
        provider = _FakeProvider()
        winner = _record(clock(), lifetime=timedelta(hours=24), suffix="w")

        async def _other_process_refreshes() -> None:
            await store.put(CREDENTIAL_DOC, credential_to_document(winner))

        provider.before_return = _other_process_refreshes

        token = await _manager(store, provider, clock).get_valid_token()
        assert token == "access-w"
        assert (await _stored(store)).access_token == "access-w"

    @pytest.mark.asyncio
    async def test_concurrent_write_with_stale_record_is_overwritten(
        self, clock: FakeClock
    ) -> None:
        store = _store_with(_record(clock(), lifetime=timedelta(minutes=1)))
        provider = _FakeProvider()
        edit = _record(clock(), lifetime=timedelta(minutes=1), suffix="e")

        async def _operator_touches_document() -> None:
            await store.put(CREDENTIAL_DOC, credential_to_document(edit))

        provider.before_return = _operator_touches_document

        token = await _manager(store, provider, clock).get_valid_token()
        assert token == "access-2"
        assert (await _stored(store)).refresh_token == "refresh-2"

    @pytest.mark.asyncio
    async def test_forced_refresh_ignores_remaining_lifetime(self, clock: FakeClock) -> None:
        store = _store_with(_record(clock(), lifetime=timedelta(hours=6)))
        provider = _FakeProvider()
        record = await _manager(store, provider, clock).refresh()
        assert record.access_token == "access-2"
        assert provider.calls == ["refresh-1"]


class TestGrantHelpers:
    def test_record_from_grant_measures_from_issue_time(self) -> None:
        issued = datetime(2026, 3, 1, tzinfo=UTC)
        grant = TokenGrant(access_token="a", refresh_token="r", expires_in=3600)
        record = record_from_grant(grant, issued_at=issued)
        assert record.expires_at == issued + timedelta(hours=1)
        assert record.updated_at == issued

    def test_record_from_grant_without_any_refresh_token(self) -> None:
        grant = TokenGrant(access_token="a", refresh_token=None, expires_in=3600)
        with pytest.raises(ConfigError, match="no refresh token"):
            record_from_grant(grant, issued_at=datetime(2026, 3, 1, tzinfo=UTC))

    def test_grant_repr_hides_tokens(self) -> None:
        grant = TokenGrant(access_token="secret-a", refresh_token="secret-r", expires_in=60)
        assert "secret" not in repr(grant)

    @pytest.mark.asyncio
    async def test_install_credential_overwrites(self, clock: FakeClock) -> None:
        store = _store_with(_record(clock(), lifetime=timedelta(minutes=1)))
        fresh = _record(clock(), lifetime=timedelta(hours=24), suffix="new")
        await install_credential(store, fresh, doc_id=CREDENTIAL_DOC)
        assert await _stored(store) == fresh


class TestRefreshLockRegistry:
    def test_one_lock_per_key_within_a_loop(self) -> None:
        registry = RefreshLockRegistry()

        async def _lookups() -> tuple[bool, bool]:
            same = registry.lock_for("a") is registry.lock_for("a")
            distinct = registry.lock_for("a") is not registry.lock_for("b")
            return same, distinct

        assert asyncio.run(_lookups()) == (True, True)

    def test_shared_registry_survives_a_new_event_loop(self) -> None:
        registry = RefreshLockRegistry()

        async def _contend() -> asyncio.Lock:
            lock = registry.lock_for(CREDENTIAL_DOC)

            async def _hold() -> None:
                async with lock:
                    await asyncio.sleep(0)

            await asyncio.gather(_hold(), _hold())
            return lock

        first = asyncio.run(_contend())
        second = asyncio.run(_contend())
        assert first is not second


# ===========================================================================
# OAuthTokenClient
# ===========================================================================


def _client(handler: Any, **kwargs: Any) -> OAuthTokenClient:
    return OAuthTokenClient(
        token_url=TOKEN_URL,
        client_id="client-id",
        client_secret="client-secret",
        redirect_uri="https://example.com/callback",
        authorize_url="https://auth.example.com/authorize",
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


def _form(request: httpx.Request) -> dict[str, str]:
    return dict(parse_qsl(request.read().decode()))


class TestOAuthTokenClient:
    @pytest.mark.asyncio
    async def test_refresh_posts_form_and_parses_grant(self) -> None:
        seen: list[dict[str, str]] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(_form(request))
            return httpx.Response(
                200,
                json={
                    "access_token": "a2",
                    "refresh_token": "r2",
                    "expires_in": 86400,
                    "token_type": "bearer",
                },
            )

        async with _client(handler) as client:
            grant = await client.refresh("r1")

        assert grant == TokenGrant(access_token="a2", refresh_token="r2", expires_in=86400.0)
        assert seen == [
            {
                "grant_type": "refresh_token",
                "refresh_token": "r1",
                "client_id": "client-id",
                "client_secret": "client-secret",
            }
        ]

    @pytest.mark.asyncio
    async def test_nested_token_and_default_lifetime(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"token": {"access_token": "a2"}})

        async with _client(handler) as client:
            grant = await client.refresh("r1")
        assert grant.access_token == "a2"
        assert grant.refresh_token is None
        assert grant.expires_in == 3600.0

    @pytest.mark.asyncio
    async def test_invalid_grant_is_rejected_without_retry(self) -> None:
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            return httpx.Response(
                400,
                json={"error": "invalid_grant", "error_description": "Token has been revoked"},
            )

        async with _client(handler) as client:
            with pytest.raises(AuthRefreshRejectedError) as excinfo:
                await client.refresh("r1")

        assert calls == 1
        assert excinfo.value.status_code == 400
        assert excinfo.value.oauth_error == "invalid_grant"
        assert "Token has been revoked" in str(excinfo.value)

    @pytest.mark.asyncio
    async def test_server_error_is_retried(self) -> None:
        responses = [httpx.Response(503), httpx.Response(200, json={"access_token": "a2"})]

        def handler(request: httpx.Request) -> httpx.Response:
            return responses.pop(0)

        with patch("gigwatch.auth.provider._token_wait", return_value=0.0):
            async with _client(handler) as client:
                grant = await client.refresh("r1")
        assert grant.access_token == "a2"
        assert responses == []

    @pytest.mark.asyncio
    async def test_rate_limit_is_retried(self) -> None:
        responses = [
            httpx.Response(429, headers={"Retry-After": "2"}),
            httpx.Response(200, json={"access_token": "a2"}),
        ]

        def handler(request: httpx.Request) -> httpx.Response:
            return responses.pop(0)

        with patch("gigwatch.auth.provider._token_wait", return_value=0.0):
            async with _client(handler) as client:
                grant = await client.refresh("r1")
        assert grant.access_token == "a2"

    @pytest.mark.asyncio
    async def test_network_errors_exhaust_into_transient(self) -> None:
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            raise httpx.ConnectError("connection refused", request=request)

        with patch("gigwatch.auth.provider._token_wait", return_value=0.0):
            async with _client(handler, max_attempts=3) as client:
                with pytest.raises(AuthTransientError, match="unreachable"):
                    await client.refresh("r1")
        assert calls == 3

    @pytest.mark.asyncio
    async def test_unexpected_status_is_config_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(404, text="not found")

        async with _client(handler) as client:
            with pytest.raises(ConfigError, match="UPWORK_TOKEN_URL"):
                await client.refresh("r1")

    @pytest.mark.asyncio
    async def test_oauth_error_body_is_rejection_on_any_client_status(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(422, json={"error": "invalid_client"})

        async with _client(handler) as client:
            with pytest.raises(AuthRefreshRejectedError) as excinfo:
                await client.refresh("r1")
        assert excinfo.value.status_code == 422
        assert excinfo.value.oauth_error == "invalid_client"

    @pytest.mark.asyncio
    async def test_rejected_code_exchange_is_plain_auth_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, json={"error": "invalid_request"})

        async with _client(handler) as client:
            with pytest.raises(AuthError) as excinfo:
                await client.exchange_code("code-1")
        assert not isinstance(excinfo.value, AuthRefreshRejectedError)

    @pytest.mark.asyncio
    async def test_code_exchange_sends_redirect_uri(self) -> None:
        seen: list[dict[str, str]] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(_form(request))
            return httpx.Response(200, json={"access_token": "a1", "refresh_token": "r1"})

        async with _client(handler) as client:
            await client.exchange_code("code-1")
        assert seen[0]["grant_type"] == "authorization_code"
        assert seen[0]["code"] == "code-1"
        assert seen[0]["redirect_uri"] == "https://example.com/callback"

    def test_authorization_url(self) -> None:
        client = _client(lambda request: httpx.Response(200))
        url = urlparse(client.authorization_url(state="xyz"))
        params = parse_qs(url.query)
        assert url.netloc == "auth.example.com"
        assert params["response_type"] == ["code"]
        assert params["client_id"] == ["client-id"]
        assert params["redirect_uri"] == ["https://example.com/callback"]
        assert params["state"] == ["xyz"]

    def test_max_attempts_must_be_positive(self) -> None:
        with pytest.raises(ValueError, match="max_attempts"):
            _client(lambda request: httpx.Response(200), max_attempts=0)

    def test_from_settings_requires_credentials(self) -> None:
        settings = MagicMock(spec=Settings)
        settings.oauth_configured = False
        with pytest.raises(ConfigError, match="UPWORK_CLIENT_ID"):
            OAuthTokenClient.from_settings(settings)
