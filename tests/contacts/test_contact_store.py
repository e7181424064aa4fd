from __future__ import annotations

import json
from pathlib import Path

from tgrelay.contacts.store import ContactStore
from tgrelay.protocol.client import Peer


def test_upsert_creates_and_persists_contacts(tmp_path: Path) -> None:
    path = tmp_path / "contacts.json"
    store = ContactStore(path)

    created = store.upsert_many(
        "acc-1",
        [Peer(user_id=1, access_hash=11, first_name="Ada"), Peer(user_id=2, phone="+2")],
        labels=["imported", ""],
    )

    assert [contact.telegram_id for contact in created] == [1, 2]
    assert created[0].labels == ["imported"]
    on_disk = json.loads(path.read_text("utf-8"))
    assert {item["telegram_id"] for item in on_disk} == {1, 2}
    assert ContactStore(path).known_telegram_ids("acc-1") == {1, 2}


def test_upsert_refreshes_existing_contact(tmp_path: Path) -> None:
    store = ContactStore(tmp_path / "contacts.json")
    first = store.upsert_many("acc-1", [Peer(user_id=1, first_name="Ada", phone="+1")], labels=["a"])

    second = store.upsert_many(
        "acc-1", [Peer(user_id=1, username="ada", first_name="")], labels=["b", "a"]
    )

    assert second[0].id == first[0].id
    refreshed = store.get(first[0].id)
    assert refreshed is not None
    assert refreshed.first_name == "Ada"
    assert refreshed.phone == "+1"
    assert refreshed.username == "ada"
    assert refreshed.labels == ["a", "b"]
    assert len(store.list_for_account("acc-1")) == 1


def test_contacts_are_scoped_per_account() -> None:
    store = ContactStore(None)
    store.upsert_many("acc-1", [Peer(user_id=1)])
    store.upsert_many("acc-2", [Peer(user_id=1)])

    assert len(store.list_for_account("acc-1")) == 1
    assert store.known_telegram_ids("acc-2") == {1}
    assert store.list_for_account("acc-3") == []


def test_returned_contacts_are_copies() -> None:
    store = ContactStore(None)
    contact = store.upsert_many("acc-1", [Peer(user_id=1)], labels=["x"])[0]

    contact.labels.append("mutated")

    stored = store.get(contact.id)
    assert stored is not None and stored.labels == ["x"]


def test_contact_converts_back_to_peer() -> None:
    store = ContactStore(None)
    contact = store.upsert_many("acc-1", [Peer(user_id=5, access_hash=9, username="bob")])[0]

    peer = contact.to_peer()

    assert peer.user_id == 5
    assert peer.access_hash == 9
    assert peer.username == "bob"


def test_delete_single_and_per_account(tmp_path: Path) -> None:
    path = tmp_path / "contacts.json"
    store = ContactStore(path)
    first, second = store.upsert_many("acc-1", [Peer(user_id=1), Peer(user_id=2)])
    other = store.upsert_many("acc-2", [Peer(user_id=1)])[0]

    assert store.delete(first.id) is True
    assert store.delete(first.id) is False
    assert store.delete_for_account("acc-1") == 1
    assert store.delete_for_account("acc-1") == 0

    reloaded = ContactStore(path)
    assert reloaded.get(second.id) is None
    assert [contact.id for contact in reloaded.list_for_account("acc-2")] == [other.id]
