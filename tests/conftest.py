from datetime import datetime, timedelta, timezone
from pathlib import Path
from types import SimpleNamespace
from typing import List, Optional

import pytest

from gdrive_mcp.credentials import CredentialRecord
from gdrive_mcp.errors import AuthorizationError, CredentialStoreError

NOW = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


class MemoryStore:
    """CredentialStore stand-in that counts reads and writes."""

    def __init__(self, record: Optional[CredentialRecord] = None, corrupt: bool = False):
        self.record = record
        self.corrupt = corrupt
        self.loads = 0
        self.saves: List[CredentialRecord] = []
        self.fail_saves = False

    @property
    def path(self) -> Path:
        return Path("memory://credentials")

    def load(self) -> Optional[CredentialRecord]:
        self.loads += 1
        if self.corrupt:
            raise CredentialStoreError("Unable to read credentials: Expecting value")
        return self.record

    def save(self, record: CredentialRecord) -> bool:
        if self.fail_saves:
            return False
        self.saves.append(record)
        self.record = record
        self.corrupt = False
        return True


class FakeOAuth:
    """Scripted authorizer/refresher recording every call."""

    def __init__(
        self,
        refresh_result: Optional[CredentialRecord] = None,
        refresh_error: Optional[Exception] = None,
        authorize_result: Optional[CredentialRecord] = None,
        authorize_error: Optional[Exception] = None,
    ):
        self.refresh_result = refresh_result
        self.refresh_error = refresh_error
        self.authorize_result = authorize_result
        self.authorize_error = authorize_error
        self.refresh_calls: List[CredentialRecord] = []
        self.authorize_calls = 0

    def refresh(self, record: CredentialRecord) -> CredentialRecord:
        self.refresh_calls.append(record)
        if self.refresh_error is not None:
            raise self.refresh_error
        return self.refresh_result

    def authorize(self) -> CredentialRecord:
        self.authorize_calls += 1
        if self.authorize_error is not None:
            raise self.authorize_error
        return self.authorize_result


class Clock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now = self.now + delta


def make_record(
    expires_in: timedelta,
    access_token: str = "ya29.old",
    refresh_token: Optional[str] = "r1",
    now: datetime = NOW,
) -> CredentialRecord:
    return CredentialRecord(
        access_token=access_token,
        refresh_token=refresh_token,
        expiry=now + expires_in,
        scope="https://www.googleapis.com/auth/drive.readonly",
        token_type="Bearer",
    )


def fake_context(state) -> SimpleNamespace:
    return SimpleNamespace(request_context=SimpleNamespace(lifespan_context=state))


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def fresh_authorization() -> CredentialRecord:
    return make_record(timedelta(hours=1), access_token="ya29.authorized", refresh_token="r-auth")


@pytest.fixture
def failing_oauth() -> FakeOAuth:
    return FakeOAuth(authorize_error=AuthorizationError("consent flow unavailable"))
