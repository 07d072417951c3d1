"""Credential lifecycle: hand out access tokens that stay valid for the skew.

:class:`TokenLifecycleManager` owns exactly one persisted
:class:`~gigwatch.core.models.CredentialRecord` (one document id).  Its two
promises:

1. :meth:`~TokenLifecycleManager.get_valid_token` never returns a token that
   expires within ``refresh_skew``; it refreshes first.
2. A refresh persists access token, refresh token and expiry together in one
   conditional write, or not at all.  The refresh token is never cleared.

Single-flight
-------------
Refreshes for one document id are serialised through an :class:`asyncio.Lock`
taken from a :class:`RefreshLockRegistry`.  A waiter re-reads the record once
it holds the lock and returns the winner's token instead of refreshing again.
Across processes the conditional write is the serialisation point; a writer
that loses adopts the winner's record when it is usable.
Locks are kept per running event loop, so one registry survives several
``asyncio.run`` calls in a process.

Deadline
--------
A refresh runs under ``refresh_timeout``.  Once the provider has answered,
the write of the new record is shielded from that deadline and the record is
stored before any check on its lifetime.  What remains unprotected is the
provider call itself: if the deadline fires after the provider accepted the
refresh token but before its answer arrives, the rotated token is lost and
the next refresh is rejected, which disables the scheduler.

Typical usage::

    manager = TokenLifecycleManager(store, provider, refresh_skew=timedelta(minutes=5))
    token = await manager.get_valid_token()
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from collections.abc import Callable
from datetime import datetime, timedelta

from gigwatch.auth.provider import AuthorizationProvider, TokenGrant
from gigwatch.core import events
from gigwatch.core.exceptions import (
    AuthRefreshRejectedError,
    AuthTransientError,
    ConfigError,
    DocumentNotFoundError,
    StaleStateError,
)
from gigwatch.core.models import CredentialRecord, utc_now
from gigwatch.storage.base import DocumentStore
from gigwatch.storage.documents import credential_from_document, credential_to_document

__all__ = [
    "RefreshLockRegistry",
    "TokenLifecycleManager",
    "record_from_grant",
    "install_credential",
]

logger = logging.getLogger(__name__)

_DEFAULT_DOC_ID = "config/upwork_tokens"


class RefreshLockRegistry:
    """Keyed registry of :class:`asyncio.Lock` objects, one per credential id.

    Locks are scoped to the event loop that asks for them; a closed loop
    takes its locks with it.
    """

    def __init__(self) -> None:
        self._by_loop: weakref.WeakKeyDictionary[
            asyncio.AbstractEventLoop, dict[str, asyncio.Lock]
        ] = weakref.WeakKeyDictionary()

    def lock_for(self, key: str) -> asyncio.Lock:
        locks = self._by_loop.setdefault(asyncio.get_running_loop(), {})
        lock = locks.get(key)
        if lock is None:
            lock = locks[key] = asyncio.Lock()
        return lock


#: Process-wide registry used when a manager is built without one.
_SHARED_LOCKS = RefreshLockRegistry()


def record_from_grant(
    grant: TokenGrant,
    *,
    issued_at: datetime,
    previous: CredentialRecord | None = None,
) -> CredentialRecord:
    """Build the record a successful grant produces.

    Expiry is measured from *issued_at*, the moment the request was sent, so
    it errs on the early side.  A grant without a refresh token keeps the one
    from *previous*.

    Raises:
        ConfigError: If there is neither a new nor a previous refresh token.
    """
    refresh_token = grant.refresh_token or (previous.refresh_token if previous else None)
    if not refresh_token:
        raise ConfigError("Token grant carried no refresh token and none was stored.")
    return CredentialRecord(
        access_token=grant.access_token,
        refresh_token=refresh_token,
        token_type=grant.token_type,
        expires_at=issued_at + timedelta(seconds=grant.expires_in),
        updated_at=issued_at,
    )


async def install_credential(
    store: DocumentStore,
    record: CredentialRecord,
    *,
    doc_id: str = _DEFAULT_DOC_ID,
) -> None:
    """Unconditionally write *record*; used by the out-of-band setup flow only."""
    await store.put(doc_id, credential_to_document(record))
    logger.info(
        "Credential %s installed (expires %s).",
        doc_id,
        record.expires_at.isoformat(),
        extra={"event": events.TOKEN_REFRESHED},
    )


class TokenLifecycleManager:
    """Keeps one OAuth credential usable for at least ``refresh_skew``.

    Args:
        store: Document store holding the credential document.
        provider: Token-endpoint client used for refreshes.
        doc_id: Credential document id (also the single-flight key).
        refresh_skew: Minimum remaining lifetime of a handed-out token.
        refresh_timeout: Deadline for one complete refresh.
        clock: Zero-argument callable returning the current aware UTC time.
        locks: Lock registry; defaults to the process-wide registry.
    """

    def __init__(
        self,
        store: DocumentStore,
        provider: AuthorizationProvider,
        *,
        doc_id: str = _DEFAULT_DOC_ID,
        refresh_skew: timedelta = timedelta(minutes=5),
        refresh_timeout: timedelta = timedelta(seconds=30),
        clock: Callable[[], datetime] = utc_now,
        locks: RefreshLockRegistry | None = None,
    ) -> None:
        self._store = store
        self._provider = provider
        self._doc_id = doc_id
        self._skew = refresh_skew
        self._refresh_timeout = refresh_timeout
        self._clock = clock
        self._locks = locks or _SHARED_LOCKS

    @property
    def doc_id(self) -> str:
        return self._doc_id

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def load(self) -> CredentialRecord:
        """Return the stored record without refreshing.

        Raises:
            ConfigError: If the document is missing or malformed.
        """
        record, _ = await self._read()
        return record

    async def get_valid_token(self) -> str:
        """Return an access token valid for at least ``refresh_skew``.

        Raises:
            AuthRefreshRejectedError: The provider refused the refresh token.
            AuthTransientError: The refresh failed transiently.
            ConfigError: No credential stored, or the skew exceeds the
                provider's token lifetime.
        """
        record, _ = await self._read()
        if record.is_usable(self._clock(), self._skew):
            return record.access_token

        logger.info(
            "Access token expires in %s (skew %s), refreshing.",
            record.remaining(self._clock()),
            self._skew,
            extra={"event": events.TOKEN_REFRESH_START},
        )
        refreshed = await self._refresh_single_flight(observed=record)
        return refreshed.access_token

    async def refresh(self) -> CredentialRecord:
        """Refresh unconditionally and return the persisted record."""
        return await self._refresh_single_flight(observed=None)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _read(self) -> tuple[CredentialRecord, int]:
        doc = await self._store.get(self._doc_id)
        if doc is None:
            raise ConfigError(
                f"Credential document {self._doc_id!r} not found. "
                "Run `gigwatch authorize` and `gigwatch exchange-code CODE` first."
            )
        return credential_from_document(doc.data), doc.version

    async def _refresh_single_flight(self, observed: CredentialRecord | None) -> CredentialRecord:
        async with self._locks.lock_for(self._doc_id):
            record, version = await self._read()
            if (
                observed is not None
                and record.access_token != observed.access_token
                and record.is_usable(self._clock(), self._skew)
            ):
                logger.debug("Concurrent refresh already renewed %s; reusing it.", self._doc_id)
                return record

            timeout_s = self._refresh_timeout.total_seconds()
            try:
                return await asyncio.wait_for(self._refresh(record, version), timeout=timeout_s)
            except asyncio.TimeoutError as exc:
                logger.warning(
                    "Token refresh exceeded its %.0fs deadline.",
                    timeout_s,
                    extra={"event": events.TOKEN_REFRESH_TRANSIENT},
                )
                raise AuthTransientError(
                    f"Token refresh exceeded its {timeout_s:.0f}s deadline"
                ) from exc

    async def _refresh(self, record: CredentialRecord, version: int) -> CredentialRecord:
        issued_at = self._clock()
        try:
            grant = await self._provider.refresh(record.refresh_token)
        except AuthRefreshRejectedError:
            winner = await self._concurrent_winner(record)
            if winner is not None:
                logger.info("Refresh token was consumed by a concurrent refresh; adopting it.")
                return winner
            logger.error(
                "Refresh token for %s rejected; re-authorization required.",
                self._doc_id,
                extra={"event": events.TOKEN_REFRESH_REJECTED},
            )
            raise
        except AuthTransientError as exc:
            logger.warning(
                "Token refresh failed transiently: %s",
                exc,
                extra={"event": events.TOKEN_REFRESH_TRANSIENT},
            )
            raise

        new_record = record_from_grant(grant, issued_at=issued_at, previous=record)
        # The grant consumed the stored refresh token; the new one must be
        # written even if the deadline fires now.
        persisted = await asyncio.shield(self._persist(new_record, version))
        logger.info(
            "Access token refreshed; expires %s (%s).",
            persisted.expires_at.isoformat(),
            persisted,
            extra={"event": events.TOKEN_REFRESHED},
        )
        if not persisted.is_usable(self._clock(), self._skew):
            raise ConfigError(
                f"Refreshed token lives {grant.expires_in:.0f}s, not longer than the "
                f"refresh skew {self._skew}; lower REFRESH_SKEW."
            )
        return persisted

    async def _persist(self, new_record: CredentialRecord, version: int) -> CredentialRecord:
        """Write *new_record* conditionally; adopt a usable concurrent winner."""
        body = credential_to_document(new_record)
        try:
            await self._store.update_if_version(self._doc_id, body, version)
            return new_record
        except DocumentNotFoundError as exc:
            raise ConfigError(
                f"Credential document {self._doc_id!r} vanished mid-refresh."
            ) from exc
        except StaleStateError:
            logger.info(
                "Credential %s changed during refresh.",
                self._doc_id,
                extra={"event": events.STATE_WRITE_CONFLICT},
            )

        latest, latest_version = await self._read()
        if latest.is_usable(self._clock(), self._skew):
            return latest
        await self._store.update_if_version(self._doc_id, body, latest_version)
        return new_record

    async def _concurrent_winner(self, record: CredentialRecord) -> CredentialRecord | None:
        latest, _ = await self._read()
        if latest.refresh_token != record.refresh_token and latest.is_usable(
            self._clock(), self._skew
        ):
            return latest
        return None
