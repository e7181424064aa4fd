from __future__ import annotations

import json
import stat
from pathlib import Path

import pytest

from tgrelay.accounts.store import AccountStore, SessionStore
from tgrelay.protocol.client import Identity


def test_upsert_persists_new_account(tmp_path: Path) -> None:
    path = tmp_path / "accounts.json"
    store = AccountStore(path)

    account = store.upsert_from_identity(
        "owner-1", Identity(user_id=42, first_name="Ada", username="ada"), session_token="a" * 32
    )

    assert account.telegram_id == 42
    assert account.is_active is True
    on_disk = json.loads(path.read_text("utf-8"))
    assert [item["id"] for item in on_disk] == [account.id]
    reloaded = AccountStore(path).get(account.id)
    assert reloaded is not None and reloaded.username == "ada"


def test_same_user_same_owner_refreshes_record(tmp_path: Path) -> None:
    store = AccountStore(tmp_path / "accounts.json")
    first = store.upsert_from_identity("owner-1", Identity(user_id=42), session_token="a" * 32)

    second = store.upsert_from_identity(
        "owner-1", Identity(user_id=42, first_name="New"), session_token="b" * 32
    )
    other_owner = store.upsert_from_identity(
        "owner-2", Identity(user_id=42), session_token="c" * 32
    )

    assert second.id == first.id
    assert second.created_at == first.created_at
    assert second.session_token == "b" * 32
    assert second.first_name == "New"
    assert other_owner.id != first.id
    assert [account.id for account in store.list_for_owner("owner-1")] == [first.id]


def test_session_blobs_are_private_files(tmp_path: Path) -> None:
    sessions = SessionStore(tmp_path / "sessions")
    token = sessions.new_token()

    path = sessions.save(token, b"blob")

    assert path.name == f"account_{token}.session"
    assert stat.S_IMODE(path.stat().st_mode) == 0o600
    assert sessions.load(token) == b"blob"
    assert sessions.delete(token) is True
    assert sessions.load(token) is None
    assert sessions.delete(token) is False


def test_session_tokens_cannot_escape_directory(tmp_path: Path) -> None:
    sessions = SessionStore(tmp_path / "sessions")

    with pytest.raises(ValueError):
        sessions.save("../../etc/passwd", b"x")


def test_delete_removes_persisted_account(tmp_path: Path) -> None:
    path = tmp_path / "accounts.json"
    store = AccountStore(path)
    account = store.upsert_from_identity("owner-1", Identity(user_id=42), session_token="a" * 32)

    removed = store.delete(account.id)

    assert removed is not None and removed.session_token == "a" * 32
    assert store.delete(account.id) is None
    assert AccountStore(path).list_for_owner("owner-1") == []
