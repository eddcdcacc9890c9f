"""Hands the current credential to Google API clients."""

from __future__ import annotations

import logging
from datetime import timezone
from typing import Any, Optional, Tuple

from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build

from gdrive_mcp.credentials import CredentialRecord
from gdrive_mcp.errors import CredentialUnavailableError

logger = logging.getLogger(__name__)


class ApiClientBinding:
    """Holds the credential attached to outbound Drive and Sheets calls.

    The binding does not own the credential: the lifecycle manager produces
    records and the startup path or scheduler re-supplies each new one with
    :meth:`bind`. Clients are built per call from the bound snapshot, so a
    call that is already in flight keeps the credential it started with.
    """

    def __init__(self):
        self._bound: Optional[Tuple[CredentialRecord, Credentials]] = None
        self._bind_count = 0

    @property
    def record(self) -> Optional[CredentialRecord]:
        bound = self._bound
        return bound[0] if bound else None

    @property
    def bind_count(self) -> int:
        """Number of times a different record was bound."""
        return self._bind_count

    def bind(self, record: CredentialRecord) -> None:
        """Use ``record`` for subsequent calls. Rebinding the same record is a no-op."""
        bound = self._bound
        if bound is not None and bound[0] == record:
            return
        expiry = record.expiry
        if expiry is not None and expiry.tzinfo is not None:
            # google-auth compares against naive UTC
            expiry = expiry.astimezone(timezone.utc).replace(tzinfo=None)
        credentials = Credentials(token=record.access_token, expiry=expiry)
        self._bound = (record, credentials)
        self._bind_count += 1
        logger.debug("Bound credential expiring at %s", record.expiry)

    @property
    def credentials(self) -> Credentials:
        bound = self._bound
        if bound is None:
            raise CredentialUnavailableError("No Google credential is available yet")
        return bound[1]

    def drive(self) -> Any:
        """Drive v3 client for the bound credential."""
        return build("drive", "v3", credentials=self.credentials, cache_discovery=False)

    def sheets(self) -> Any:
        """Sheets v4 client for the bound credential."""
        return build("sheets", "v4", credentials=self.credentials, cache_discovery=False)
