"""Credential lifecycle: reuse, refresh, or re-authorize.

:class:`CredentialManager` is the single owner of the in-memory credential for
a server process. It is created by the server lifespan and handed to whoever
needs it (startup path, refresh scheduler) instead of living in a module
global. Consumers read :attr:`CredentialManager.current`, an immutable record
that is replaced by one assignment, so a reader never sees a half-updated
credential.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Protocol

from gdrive_mcp.credentials import CredentialRecord, CredentialStore, LoadOutcome
from gdrive_mcp.errors import (
    AuthorizationError,
    CredentialRefreshError,
    CredentialStoreError,
)

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_THRESHOLD = timedelta(minutes=5)
DEFAULT_AUTHORIZE_TIMEOUT = 300.0


class OAuthClient(Protocol):
    """Blocking authorizer/refresher pair, e.g. :class:`GoogleOAuthClient`."""

    def authorize(self) -> CredentialRecord:
        ...

    def refresh(self, record: CredentialRecord) -> CredentialRecord:
        ...


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CredentialManager:
    """Produces a credential that stays usable for at least ``threshold``.

    Sources are tried in order: the current in-memory or persisted record, a
    silent refresh with its refresh token, then the interactive consent flow.

    Args:
        store: Durable copy of the record.
        oauth: Authorizer and refresher. Both calls block and are run in a
            worker thread.
        threshold: Remaining lifetime below which a record is refreshed.
        authorize_timeout: Seconds to wait for the consent flow before failing
            with :class:`AuthorizationError`. ``None`` waits forever.
        clock: Returns the current aware UTC time.
    """

    def __init__(
        self,
        store: CredentialStore,
        oauth: OAuthClient,
        threshold: timedelta = DEFAULT_REFRESH_THRESHOLD,
        authorize_timeout: Optional[float] = DEFAULT_AUTHORIZE_TIMEOUT,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._oauth = oauth
        self._threshold = threshold
        self._authorize_timeout = authorize_timeout
        self._clock = clock
        self._current: Optional[CredentialRecord] = None
        self._last_load_outcome: Optional[LoadOutcome] = None

    @property
    def current(self) -> Optional[CredentialRecord]:
        """Snapshot of the record last produced, or ``None`` before the first."""
        return self._current

    @property
    def threshold(self) -> timedelta:
        return self._threshold

    @property
    def last_load_outcome(self) -> Optional[LoadOutcome]:
        return self._last_load_outcome

    async def ensure_valid_credential(
        self, min_remaining: Optional[timedelta] = None
    ) -> CredentialRecord:
        """Return a credential valid for at least the refresh threshold.

        Every path that obtains a new record writes it to the store before
        returning. A persisted record that cannot be read is handled like a
        missing one.

        Args:
            min_remaining: Lifetime the returned record must still have,
                defaulting to the threshold. The scheduler passes its interval
                plus the threshold so the record outlives the next tick.

        Raises:
            AuthorizationError: No credential could be produced because the
                interactive flow failed.
        """
        horizon = self._threshold if min_remaining is None else max(min_remaining, self._threshold)
        current = self._current
        if current is not None and current.is_fresh(self._clock(), horizon):
            return current

        record = self._load_persisted()
        if record is None:
            # the in-memory copy is still authoritative if the file went away
            record = current

        if record is None:
            record = await self._authorize()
        elif record.is_fresh(self._clock(), horizon):
            pass
        elif record.refresh_token:
            logger.info("Token needs refresh...")
            try:
                record = await self._refresh(record)
            except CredentialRefreshError as exc:
                logger.warning(
                    "Error refreshing token, launching new auth flow: %s",
                    exc,
                    extra={"event": "credential_refresh_failed"},
                )
                record = await self._authorize()
        else:
            logger.info("No refresh token, launching new auth flow...")
            record = await self._authorize()

        self._current = record
        return record

    def _load_persisted(self) -> Optional[CredentialRecord]:
        try:
            record = self._store.load()
        except CredentialStoreError as exc:
            self._last_load_outcome = LoadOutcome.CORRUPT
            logger.warning(
                "Ignoring unreadable credentials file: %s",
                exc,
                extra={"event": "credential_store_corrupt", "path": str(self._store.path)},
            )
            return None

        if record is None:
            self._last_load_outcome = LoadOutcome.MISSING
            logger.info(
                "No saved credentials at %s",
                self._store.path,
                extra={"event": "credential_store_missing", "path": str(self._store.path)},
            )
            return None

        self._last_load_outcome = LoadOutcome.FOUND
        return record

    async def _refresh(self, record: CredentialRecord) -> CredentialRecord:
        refreshed = await asyncio.to_thread(self._oauth.refresh, record)
        if not refreshed.refresh_token:
            refreshed = replace(refreshed, refresh_token=record.refresh_token)
        if refreshed.remaining(self._clock()) <= timedelta(0):
            raise CredentialRefreshError("Refresh returned an already expired token")

        self._persist(refreshed)
        logger.info(
            "Token refreshed successfully",
            extra={"event": "credential_refreshed", "expiry": _iso(refreshed.expiry)},
        )
        return refreshed

    async def _authorize(self) -> CredentialRecord:
        try:
            if self._authorize_timeout is None:
                record = await asyncio.to_thread(self._oauth.authorize)
            else:
                record = await asyncio.wait_for(
                    asyncio.to_thread(self._oauth.authorize),
                    timeout=self._authorize_timeout,
                )
        except asyncio.TimeoutError as exc:
            logger.error("Authorization flow timed out after %ss", self._authorize_timeout)
            raise AuthorizationError(
                f"Authorization flow timed out after {self._authorize_timeout}s"
            ) from exc
        except AuthorizationError as exc:
            logger.error("Authorization failed: %s", exc)
            raise
        except Exception as exc:
            logger.error("Authorization failed: %s", exc)
            raise AuthorizationError(str(exc)) from exc

        self._persist(record)
        logger.info(
            "Credentials saved from new authorization",
            extra={"event": "credential_authorized", "expiry": _iso(record.expiry)},
        )
        return record

    def _persist(self, record: CredentialRecord) -> None:
        if not self._store.save(record):
            logger.warning(
                "Continuing with unsaved credentials; the next start may need to re-authorize"
            )


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None
