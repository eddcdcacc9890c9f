"""Credential record and its on-disk store.

The store keeps exactly one serialized record at a fixed path. The JSON layout
matches the one written by Google's Node client (``expiry_date`` in
milliseconds since the epoch) so an existing credentials file keeps working.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Union

from gdrive_mcp.errors import CredentialStoreError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CredentialRecord:
    """OAuth2 authorization state.

    Attributes:
        access_token: Short-lived bearer token.
        refresh_token: Long-lived token used for silent refresh, if issued.
        expiry: Absolute UTC time after which ``access_token`` is invalid.
            ``None`` means unknown and is treated as already expired.
        scope: Space separated granted scopes, when the server reported them.
        token_type: Usually ``"Bearer"``.
    """

    access_token: str
    refresh_token: Optional[str] = None
    expiry: Optional[datetime] = None
    scope: Optional[str] = None
    token_type: Optional[str] = None

    def remaining(self, now: datetime) -> timedelta:
        """Time left before expiry; negative once expired."""
        if self.expiry is None:
            return timedelta(0)
        return self.expiry - now

    def is_fresh(self, now: datetime, threshold: timedelta) -> bool:
        """True when the token stays valid for at least ``threshold``."""
        if self.expiry is None:
            return False
        return self.remaining(now) >= threshold

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"access_token": self.access_token}
        if self.refresh_token:
            data["refresh_token"] = self.refresh_token
        if self.expiry is not None:
            data["expiry_date"] = int(self.expiry.timestamp() * 1000)
        if self.scope:
            data["scope"] = self.scope
        if self.token_type:
            data["token_type"] = self.token_type
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> CredentialRecord:
        if not isinstance(data, dict):
            raise ValueError("credential record must be a JSON object")
        access_token = data.get("access_token")
        if not access_token or not isinstance(access_token, str):
            raise ValueError("credential record has no access_token")

        expiry: Optional[datetime] = None
        expiry_date = data.get("expiry_date")
        if expiry_date is not None:
            if isinstance(expiry_date, bool) or not isinstance(expiry_date, (int, float)):
                raise ValueError(f"invalid expiry_date: {expiry_date!r}")
            expiry = datetime.fromtimestamp(expiry_date / 1000, tz=timezone.utc)

        return cls(
            access_token=access_token,
            refresh_token=data.get("refresh_token") or None,
            expiry=expiry,
            scope=data.get("scope"),
            token_type=data.get("token_type"),
        )


class LoadOutcome(str, Enum):
    """What the last store read found."""

    FOUND = "found"
    MISSING = "missing"
    CORRUPT = "corrupt"


class CredentialStore:
    """Durable single-record persistence for a :class:`CredentialRecord`.

    Only one process is expected to write the file; there is no locking.
    """

    def __init__(self, path: Union[str, Path]):
        self._path = Path(path).expanduser()

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> Optional[CredentialRecord]:
        """Read the persisted record.

        Returns:
            The record, or ``None`` when no file exists.

        Raises:
            CredentialStoreError: The file exists but is unreadable or malformed.
        """
        if not self._path.exists():
            return None
        try:
            raw = self._path.read_text(encoding="utf-8")
            return CredentialRecord.from_dict(json.loads(raw))
        except (OSError, OverflowError, ValueError) as exc:
            # json.JSONDecodeError is a ValueError
            raise CredentialStoreError(
                f"Unable to read credentials from {self._path}: {exc}"
            ) from exc

    def save(self, record: CredentialRecord) -> bool:
        """Write the whole record, replacing the previous file atomically."""
        payload = json.dumps(record.to_dict())
        tmp_name: Optional[str] = None
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=str(self._path.parent), prefix=f".{self._path.name}.", suffix=".tmp"
            )
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
            os.chmod(tmp_name, 0o600)
            os.replace(tmp_name, self._path)
            tmp_name = None
            return True
        except OSError as exc:
            logger.error("Failed to save credentials to %s: %s", self._path, exc)
            return False
        finally:
            if tmp_name is not None:
                try:
                    os.unlink(tmp_name)
                except OSError:
                    pass
