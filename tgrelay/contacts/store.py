"""Snapshot store for contacts discovered through the protocol client."""

from __future__ import annotations

import secrets
import threading
from collections.abc import Callable, Iterable, Mapping
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Any

from tgrelay.protocol.client import Peer
from tgrelay.utils.files import read_json, write_json_atomic
from tgrelay.utils.time import now_utc, parse_timestamp

__all__ = ["Contact", "ContactStore"]


@dataclass(slots=True)
class Contact:
    id: str
    account_id: str
    telegram_id: int
    access_hash: int = 0
    phone: str = ""
    first_name: str = ""
    last_name: str = ""
    username: str = ""
    labels: list[str] = field(default_factory=list)
    is_valid: bool = True
    created_at: datetime = field(default_factory=now_utc)
    updated_at: datetime = field(default_factory=now_utc)

    def to_peer(self) -> Peer:
        return Peer(
            user_id=self.telegram_id,
            access_hash=self.access_hash,
            phone=self.phone,
            first_name=self.first_name,
            last_name=self.last_name,
            username=self.username,
        )

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["created_at"] = self.created_at.isoformat()
        payload["updated_at"] = self.updated_at.isoformat()
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> Contact:
        created_at = parse_timestamp(payload.get("created_at")) or now_utc()
        return cls(
            id=str(payload["id"]),
            account_id=str(payload.get("account_id", "")),
            telegram_id=int(payload.get("telegram_id", 0)),
            access_hash=int(payload.get("access_hash", 0)),
            phone=str(payload.get("phone") or ""),
            first_name=str(payload.get("first_name") or ""),
            last_name=str(payload.get("last_name") or ""),
            username=str(payload.get("username") or ""),
            labels=[str(label) for label in payload.get("labels") or []],
            is_valid=bool(payload.get("is_valid", True)),
            created_at=created_at,
            updated_at=parse_timestamp(payload.get("updated_at")) or created_at,
        )


def _merge_labels(existing: list[str], incoming: Iterable[str]) -> list[str]:
    merged = list(existing)
    for label in incoming:
        if label and label not in merged:
            merged.append(label)
    return merged


class ContactStore:
    """Contacts keyed by ``(account_id, telegram_id)``.

    ``path`` of ``None`` keeps the store in memory only.
    """

    def __init__(
        self,
        path: str | Path | None,
        *,
        now_fn: Callable[[], datetime] | None = None,
    ) -> None:
        self._path = Path(path) if path is not None else None
        self._now = now_fn or now_utc
        self._lock = threading.RLock()
        self._contacts: dict[str, Contact] = {}
        if self._path is not None:
            for item in read_json(self._path, default=[]) or []:
                contact = Contact.from_dict(item)
                self._contacts[contact.id] = contact

    def _persist(self) -> None:
        if self._path is None:
            return
        write_json_atomic(self._path, [contact.to_dict() for contact in self._contacts.values()])

    def get(self, contact_id: str) -> Contact | None:
        with self._lock:
            contact = self._contacts.get(contact_id)
            return replace(contact, labels=list(contact.labels)) if contact else None

    def list_for_account(self, account_id: str) -> list[Contact]:
        with self._lock:
            contacts = [
                replace(contact, labels=list(contact.labels))
                for contact in self._contacts.values()
                if contact.account_id == account_id
            ]
        contacts.sort(key=lambda contact: contact.created_at)
        return contacts

    def known_telegram_ids(self, account_id: str) -> set[int]:
        with self._lock:
            return {
                contact.telegram_id
                for contact in self._contacts.values()
                if contact.account_id == account_id
            }

    def upsert_many(
        self,
        account_id: str,
        peers: Iterable[Peer],
        *,
        labels: Iterable[str] = (),
    ) -> list[Contact]:
        """Insert or refresh contacts for ``peers`` and persist once."""

        label_list = [label for label in labels if label]
        with self._lock:
            index = {
                contact.telegram_id: contact
                for contact in self._contacts.values()
                if contact.account_id == account_id
            }
            now = self._now()
            touched: list[Contact] = []
            for peer in peers:
                contact = index.get(peer.user_id)
                if contact is None:
                    contact = Contact(
                        id=secrets.token_hex(8),
                        account_id=account_id,
                        telegram_id=peer.user_id,
                        access_hash=peer.access_hash,
                        phone=peer.phone,
                        first_name=peer.first_name,
                        last_name=peer.last_name,
                        username=peer.username,
                        labels=list(label_list),
                        created_at=now,
                        updated_at=now,
                    )
                    self._contacts[contact.id] = contact
                    index[peer.user_id] = contact
                else:
                    contact.access_hash = peer.access_hash or contact.access_hash
                    contact.phone = peer.phone or contact.phone
                    contact.first_name = peer.first_name or contact.first_name
                    contact.last_name = peer.last_name or contact.last_name
                    contact.username = peer.username or contact.username
                    contact.labels = _merge_labels(contact.labels, label_list)
                    contact.is_valid = True
                    contact.updated_at = now
                touched.append(replace(contact, labels=list(contact.labels)))
            if touched:
                self._persist()
            return touched

    def delete(self, contact_id: str) -> bool:
        with self._lock:
            if self._contacts.pop(contact_id, None) is None:
                return False
            self._persist()
            return True

    def delete_for_account(self, account_id: str) -> int:
        """Drop every contact of ``account_id`` and return how many were removed."""

        with self._lock:
            doomed = [
                contact_id
                for contact_id, contact in self._contacts.items()
                if contact.account_id == account_id
            ]
            for contact_id in doomed:
                del self._contacts[contact_id]
            if doomed:
                self._persist()
            return len(doomed)
