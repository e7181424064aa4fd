"""Linked account records and their protocol session blobs."""

from __future__ import annotations

import re
import secrets
import threading
from collections.abc import Callable, Mapping
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Any

from tgrelay.protocol.client import Identity
from tgrelay.utils.files import read_json, write_bytes_atomic, write_json_atomic
from tgrelay.utils.time import now_utc, parse_timestamp

__all__ = ["Account", "AccountStore", "SessionStore"]

_TOKEN_PATTERN = re.compile(r"^[A-Za-z0-9_-]{8,128}$")


@dataclass(slots=True)
class Account:
    id: str
    owner_key: str
    telegram_id: int
    session_token: str
    phone: str = ""
    first_name: str = ""
    last_name: str = ""
    username: str = ""
    proxy_url: str | None = None
    is_active: bool = True
    created_at: datetime = field(default_factory=now_utc)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["created_at"] = self.created_at.isoformat()
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> Account:
        return cls(
            id=str(payload["id"]),
            owner_key=str(payload.get("owner_key", "")),
            telegram_id=int(payload.get("telegram_id", 0)),
            session_token=str(payload.get("session_token", "")),
            phone=str(payload.get("phone") or ""),
            first_name=str(payload.get("first_name") or ""),
            last_name=str(payload.get("last_name") or ""),
            username=str(payload.get("username") or ""),
            proxy_url=payload.get("proxy_url") or None,
            is_active=bool(payload.get("is_active", True)),
            created_at=parse_timestamp(payload.get("created_at")) or now_utc(),
        )


class AccountStore:
    def __init__(
        self,
        path: str | Path | None,
        *,
        now_fn: Callable[[], datetime] | None = None,
    ) -> None:
        self._path = Path(path) if path is not None else None
        self._now = now_fn or now_utc
        self._lock = threading.RLock()
        self._accounts: dict[str, Account] = {}
        if self._path is not None:
            for item in read_json(self._path, default=[]) or []:
                account = Account.from_dict(item)
                self._accounts[account.id] = account

    def _persist(self) -> None:
        if self._path is None:
            return
        write_json_atomic(self._path, [account.to_dict() for account in self._accounts.values()])

    def get(self, account_id: str) -> Account | None:
        with self._lock:
            account = self._accounts.get(account_id)
            return replace(account) if account is not None else None

    def list_for_owner(self, owner_key: str) -> list[Account]:
        with self._lock:
            return [
                replace(account)
                for account in self._accounts.values()
                if account.owner_key == owner_key
            ]

    def upsert_from_identity(
        self, owner_key: str, identity: Identity, *, session_token: str
    ) -> Account:
        """Record a freshly authorised account.

        A second login of the same user for the same owner refreshes the existing
        record and keeps its id and creation time.
        """

        with self._lock:
            existing = next(
                (
                    account
                    for account in self._accounts.values()
                    if account.owner_key == owner_key
                    and account.telegram_id == identity.user_id
                ),
                None,
            )
            if existing is None:
                account = Account(
                    id=secrets.token_hex(8),
                    owner_key=owner_key,
                    telegram_id=identity.user_id,
                    session_token=session_token,
                    created_at=self._now(),
                )
            else:
                account = existing
                account.session_token = session_token
                account.is_active = True
            account.phone = identity.phone
            account.first_name = identity.first_name
            account.last_name = identity.last_name
            account.username = identity.username
            self._accounts[account.id] = account
            self._persist()
            return replace(account)

    def delete(self, account_id: str) -> Account | None:
        """Remove ``account_id`` and return the removed record."""

        with self._lock:
            account = self._accounts.pop(account_id, None)
            if account is None:
                return None
            self._persist()
            return account


class SessionStore:
    """Session blobs stored as ``account_<token>.session`` files."""

    def __init__(self, directory: str | Path) -> None:
        self._directory = Path(directory)

    def _path(self, session_token: str) -> Path:
        if not _TOKEN_PATTERN.match(session_token):
            raise ValueError("invalid session token")
        return self._directory / f"account_{session_token}.session"

    @staticmethod
    def new_token() -> str:
        return secrets.token_hex(16)

    def save(self, session_token: str, blob: bytes) -> Path:
        path = self._path(session_token)
        write_bytes_atomic(path, blob, mode=0o600)
        return path

    def load(self, session_token: str) -> bytes | None:
        try:
            return self._path(session_token).read_bytes()
        except FileNotFoundError:
            return None

    def delete(self, session_token: str) -> bool:
        path = self._path(session_token)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        return True
