"""Tests for the on-disk credential store."""

import json
import os
import stat
from datetime import datetime, timedelta, timezone

import pytest

from gdrive_mcp.credentials import CredentialRecord, CredentialStore
from gdrive_mcp.errors import CredentialStoreError


def _record(**overrides) -> CredentialRecord:
    values = {
        "access_token": "ya29.token",
        "refresh_token": "1//refresh",
        "expiry": datetime(2030, 1, 1, tzinfo=timezone.utc),
        "scope": "https://www.googleapis.com/auth/drive.readonly",
        "token_type": "Bearer",
    }
    values.update(overrides)
    return CredentialRecord(**values)


def test_load_missing_file_returns_none(tmp_path):
    store = CredentialStore(tmp_path / "creds.json")
    assert store.load() is None


def test_save_then_load_returns_same_record(tmp_path):
    store = CredentialStore(tmp_path / "creds.json")
    record = _record()

    assert store.save(record) is True
    assert store.load() == record


def test_expiry_is_written_as_epoch_milliseconds(tmp_path):
    path = tmp_path / "creds.json"
    CredentialStore(path).save(_record())

    data = json.loads(path.read_text())
    assert data["expiry_date"] == 1893456000000
    assert data["access_token"] == "ya29.token"
    assert data["refresh_token"] == "1//refresh"


def test_reads_file_written_by_node_client(tmp_path):
    path = tmp_path / "creds.json"
    path.write_text(
        json.dumps(
            {
                "access_token": "ya29.node",
                "refresh_token": "1//node",
                "scope": "https://www.googleapis.com/auth/drive.readonly",
                "token_type": "Bearer",
                "id_token": "ignored",
                "expiry_date": 1700000000000,
            }
        )
    )

    record = CredentialStore(path).load()

    assert record.access_token == "ya29.node"
    assert record.refresh_token == "1//node"
    assert record.expiry == datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc)


def test_record_without_refresh_token_omits_it(tmp_path):
    path = tmp_path / "creds.json"
    store = CredentialStore(path)
    store.save(_record(refresh_token=None))

    assert "refresh_token" not in json.loads(path.read_text())
    assert store.load().refresh_token is None


@pytest.mark.parametrize(
    "content",
    [
        "{not json",
        "[]",
        json.dumps({"refresh_token": "r1", "expiry_date": 1700000000000}),
        json.dumps({"access_token": "a", "expiry_date": "tomorrow"}),
    ],
)
def test_unreadable_file_raises_store_error(tmp_path, content):
    path = tmp_path / "creds.json"
    path.write_text(content)

    with pytest.raises(CredentialStoreError):
        CredentialStore(path).load()


def test_save_replaces_previous_record(tmp_path):
    store = CredentialStore(tmp_path / "creds.json")
    store.save(_record(access_token="first"))
    store.save(_record(access_token="second", refresh_token=None))

    loaded = store.load()
    assert loaded.access_token == "second"
    assert loaded.refresh_token is None
    assert [p.name for p in tmp_path.iterdir()] == ["creds.json"]


@pytest.mark.skipif(os.name == "nt", reason="POSIX permissions only")
def test_saved_file_is_readable_by_owner_only(tmp_path):
    path = tmp_path / "creds.json"
    CredentialStore(path).save(_record())

    mode = stat.S_IMODE(path.stat().st_mode)
    assert mode == 0o600


def test_save_failure_returns_false(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory")
    store = CredentialStore(blocker / "creds.json")

    assert store.save(_record()) is False


def test_record_freshness_uses_threshold():
    now = datetime(2026, 1, 1, tzinfo=timezone.utc)
    record = _record(expiry=now + timedelta(minutes=5))

    assert record.is_fresh(now, timedelta(minutes=5)) is True
    assert record.is_fresh(now + timedelta(seconds=1), timedelta(minutes=5)) is False


def test_record_without_expiry_is_never_fresh():
    now = datetime(2026, 1, 1, tzinfo=timezone.utc)
    record = _record(expiry=None)

    assert record.is_fresh(now, timedelta(0)) is False
    assert "expiry_date" not in record.to_dict()
