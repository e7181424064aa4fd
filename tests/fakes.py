"""In-memory protocol client used by the job and handshake tests."""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Awaitable, Callable, Iterable, Sequence
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta
from typing import Any, AsyncIterator

from tgrelay.protocol.client import (
    ConversationPage,
    Identity,
    LoginCredential,
    LoginPending,
    LoginSuccess,
    Peer,
    SecondFactorChallenge,
    TransportConfig,
    VerifyOutcome,
)
from tgrelay.protocol.errors import (
    AliasNotFoundError,
    InvalidSecondFactorError,
    SecondFactorRequiredError,
)


def peer_for_phone(phone: str) -> Peer:
    digits = "".join(ch for ch in phone if ch.isdigit())
    return Peer(user_id=int(digits), access_hash=1, phone=phone, first_name=f"User{digits[-3:]}")


class FakeClient:
    def __init__(self, *, clock: Callable[[], datetime] | None = None) -> None:
        self.clock = clock or (lambda: datetime.now(UTC))
        self.existing: list[Peer] = []
        self.removed: list[Peer] = []
        self.verify_calls: list[list[str]] = []
        self.verify_handler: Callable[[Sequence[str]], Awaitable[VerifyOutcome]] | None = None
        self.aliases: dict[str, Peer] = {}
        self.alias_calls: list[str] = []
        self.pages: dict[str | None, ConversationPage] = {}
        self.sent: list[tuple[Peer, str]] = []
        self.send_errors: dict[int, deque[Exception]] = {}
        self.send_delay: float = 0.0

        self.identity = Identity(user_id=777, phone="+15550000777", first_name="Owner")
        self.credential_ttl = timedelta(seconds=30)
        self.credentials_issued = 0
        self.login_outcomes: deque[Any] = deque()
        self.password: str | None = None
        self.challenges_issued = 0
        self.proof_delay: float = 0.0
        self.session_blob = b"session-blob"

    # jobs
    async def bulk_verify(self, phones: Sequence[str]) -> VerifyOutcome:
        self.verify_calls.append(list(phones))
        if self.verify_handler is not None:
            return await self.verify_handler(phones)
        return VerifyOutcome(resolved=[peer_for_phone(phone) for phone in phones])

    async def list_existing_relationships(self) -> list[Peer]:
        return list(self.existing)

    async def remove_relationships(self, peers: Sequence[Peer]) -> None:
        self.removed.extend(peers)

    async def send_message(self, peer: Peer, text: str) -> None:
        if self.send_delay:
            await asyncio.sleep(self.send_delay)
        errors = self.send_errors.get(peer.user_id)
        if errors:
            raise errors.popleft()
        self.sent.append((peer, text))

    async def resolve_alias(self, alias: str) -> Peer:
        self.alias_calls.append(alias)
        try:
            return self.aliases[alias]
        except KeyError:
            raise AliasNotFoundError(alias) from None

    async def list_conversations(self, cursor: str | None) -> ConversationPage:
        return self.pages.get(cursor, ConversationPage())

    # login
    async def export_login_credential(self) -> LoginCredential:
        self.credentials_issued += 1
        token = f"token-{self.credentials_issued}".encode()
        return LoginCredential(token=token, expires_at=self.clock() + self.credential_ttl)

    async def import_login_credential(self, token: bytes) -> LoginSuccess | LoginPending:
        if self.login_outcomes:
            outcome = self.login_outcomes.popleft()
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        if self.password is not None:
            raise SecondFactorRequiredError("password needed")
        return LoginSuccess(identity=self.identity)

    async def get_second_factor_challenge(self) -> SecondFactorChallenge:
        self.challenges_issued += 1
        return SecondFactorChallenge(params={"round": self.challenges_issued}, hint="pet name")

    async def compute_second_factor_proof(
        self, challenge: SecondFactorChallenge, secret: str
    ) -> bytes:
        if self.proof_delay:
            await asyncio.sleep(self.proof_delay)
        return f"proof:{secret}".encode()

    async def submit_second_factor_proof(self, proof: bytes) -> Identity:
        if proof != f"proof:{self.password}".encode():
            raise InvalidSecondFactorError("PASSWORD_HASH_INVALID")
        return self.identity

    async def export_session(self) -> bytes:
        return self.session_blob


class FakeConnector:
    def __init__(self, client: FakeClient | None = None) -> None:
        self.client = client or FakeClient()
        self.opened: list[tuple[bytes | None, TransportConfig | None]] = []
        self.login_listeners: list[Callable[[], None]] = []
        self.active = 0
        self.max_active = 0

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[FakeClient]:
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            yield self.client
        finally:
            self.active -= 1

    def open(
        self,
        session: bytes | None,
        *,
        transport: TransportConfig | None = None,
        on_login_token: Callable[[], None] | None = None,
    ):
        self.opened.append((session, transport))
        if on_login_token is not None:
            self.login_listeners.append(on_login_token)
        return self._session()

    def scan(self) -> None:
        """Simulate the login code being scanned on another device."""

        for listener in list(self.login_listeners):
            listener()


async def wait_until(
    predicate: Callable[[], bool], *, timeout: float = 5.0, interval: float = 0.01
) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() >= deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)


def phones(count: int, *, start: int = 15550100000) -> list[str]:
    return [f"+{start + index}" for index in range(count)]


def peers(ids: Iterable[int], **overrides: Any) -> list[Peer]:
    return [Peer(user_id=user_id, access_hash=user_id, **overrides) for user_id in ids]
