"""Google OAuth2 client: interactive consent flow and silent refresh.

Both operations block (local HTTP callback server, token endpoint request) and
are meant to be run off the event loop by the caller.
"""

from __future__ import annotations

import json
import logging
from dataclasses import replace
from datetime import timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

from google.auth.exceptions import GoogleAuthError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import InstalledAppFlow

from gdrive_mcp.credentials import CredentialRecord
from gdrive_mcp.errors import AuthorizationError, CredentialRefreshError

logger = logging.getLogger(__name__)

SCOPES = [
    "https://www.googleapis.com/auth/drive.readonly",
    "https://www.googleapis.com/auth/spreadsheets",
]

GOOGLE_TOKEN_URI = "https://oauth2.googleapis.com/token"


def record_from_google_credentials(
    creds: Credentials, fallback_refresh_token: Optional[str] = None
) -> CredentialRecord:
    """Convert google-auth credentials into a :class:`CredentialRecord`."""
    expiry = creds.expiry
    if expiry is not None and expiry.tzinfo is None:
        # google-auth keeps expiry as naive UTC
        expiry = expiry.replace(tzinfo=timezone.utc)
    scopes = creds.scopes or []
    return CredentialRecord(
        access_token=creds.token,
        refresh_token=creds.refresh_token or fallback_refresh_token,
        expiry=expiry,
        scope=" ".join(scopes) or None,
        token_type="Bearer",
    )


def load_client_secrets(keyfile_path: Union[str, Path]) -> Dict[str, Any]:
    """Read the ``installed`` or ``web`` section of a client secrets file.

    Raises:
        FileNotFoundError: The keyfile does not exist.
        ValueError: The keyfile is not a Google OAuth client secrets document.
    """
    path = Path(keyfile_path).expanduser()
    data = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError(f"{path} is not a client secrets document")
    for section in ("installed", "web"):
        if isinstance(data.get(section), dict):
            secrets = data[section]
            break
    else:
        raise ValueError(f"{path} has no 'installed' or 'web' client section")
    if not secrets.get("client_id") or not secrets.get("client_secret"):
        raise ValueError(f"{path} is missing client_id or client_secret")
    return secrets


class GoogleOAuthClient:
    """Authorizer and refresher backed by google-auth-oauthlib.

    Args:
        keyfile_path: OAuth client secrets JSON from the Google Cloud Console.
        scopes: Scopes requested during consent.
        timeout_seconds: How long the consent flow waits for the browser
            redirect before giving up.
        open_browser: Whether to launch the system browser for consent.
    """

    def __init__(
        self,
        keyfile_path: Union[str, Path],
        scopes: Optional[Sequence[str]] = None,
        timeout_seconds: Optional[float] = 300,
        open_browser: bool = True,
    ):
        self._keyfile_path = Path(keyfile_path).expanduser()
        self._scopes: List[str] = list(scopes or SCOPES)
        self._timeout_seconds = timeout_seconds
        self._open_browser = open_browser

    def authorize(self) -> CredentialRecord:
        """Run the local-server consent flow and return a fresh record.

        Offline access with a forced consent prompt is requested so Google
        issues a refresh token every time.
        """
        if not self._keyfile_path.is_file():
            raise AuthorizationError(f"OAuth keyfile not found: {self._keyfile_path}")

        logger.info("Launching auth flow...")
        try:
            flow = InstalledAppFlow.from_client_secrets_file(
                str(self._keyfile_path), scopes=self._scopes
            )
            creds = flow.run_local_server(
                port=0,
                open_browser=self._open_browser,
                timeout_seconds=self._timeout_seconds,
                access_type="offline",
                prompt="consent",
            )
        except Exception as exc:
            raise AuthorizationError(f"Interactive authorization failed: {exc}") from exc

        if not creds or not creds.token:
            raise AuthorizationError("Interactive authorization returned no access token")
        if not creds.refresh_token:
            logger.warning("Authorization did not return a refresh token")
        return record_from_google_credentials(creds)

    def refresh(self, record: CredentialRecord) -> CredentialRecord:
        """Exchange the record's refresh token for a new access token."""
        if not record.refresh_token:
            raise CredentialRefreshError("Credential has no refresh token")
        try:
            secrets = load_client_secrets(self._keyfile_path)
        except (OSError, ValueError) as exc:
            raise CredentialRefreshError(f"Cannot load OAuth client secrets: {exc}") from exc

        creds = Credentials(
            token=record.access_token,
            refresh_token=record.refresh_token,
            token_uri=secrets.get("token_uri") or GOOGLE_TOKEN_URI,
            client_id=secrets["client_id"],
            client_secret=secrets["client_secret"],
        )
        try:
            creds.refresh(Request())
        except GoogleAuthError as exc:
            raise CredentialRefreshError(f"Token refresh failed: {exc}") from exc

        refreshed = record_from_google_credentials(
            creds, fallback_refresh_token=record.refresh_token
        )
        if refreshed.scope is None and record.scope:
            refreshed = replace(refreshed, scope=record.scope)
        return refreshed
