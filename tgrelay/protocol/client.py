"""Data types and protocols describing the messaging client collaborator.

The engine never speaks the wire protocol itself. A deployment supplies a
``ProtocolConnector`` whose ``open`` method yields a connected
``ProtocolClient``. Any client call may raise
:class:`~tgrelay.protocol.errors.FloodWaitError`; callers route those calls
through :class:`~tgrelay.jobs.retry.RetryPolicy`.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol

__all__ = [
    "ConversationPage",
    "Identity",
    "LoginCredential",
    "LoginPending",
    "LoginSuccess",
    "Peer",
    "ProtocolClient",
    "ProtocolConnector",
    "SecondFactorChallenge",
    "TransportConfig",
    "VerifyOutcome",
]


@dataclass(slots=True, frozen=True)
class Peer:
    """A user as seen by the protocol client."""

    user_id: int
    access_hash: int = 0
    phone: str = ""
    first_name: str = ""
    last_name: str = ""
    username: str = ""
    is_bot: bool = False
    is_deleted: bool = False


# The logged-in user has the same shape as any other peer.
Identity = Peer


@dataclass(slots=True, frozen=True)
class VerifyOutcome:
    """Result of one bulk verification call.

    ``resolved`` holds peers for numbers that exist, ``retry_later`` the numbers
    the server refused to check right now. Numbers in neither list are
    unresolved.
    """

    resolved: Sequence[Peer] = ()
    retry_later: Sequence[str] = ()


@dataclass(slots=True, frozen=True)
class ConversationPage:
    peers: Sequence[Peer] = ()
    scanned: int = 0
    next_cursor: str | None = None


@dataclass(slots=True, frozen=True)
class LoginCredential:
    token: bytes
    expires_at: datetime


@dataclass(slots=True, frozen=True)
class LoginSuccess:
    identity: Identity


@dataclass(slots=True, frozen=True)
class LoginPending:
    """The credential was consumed but the login is not finished yet."""


@dataclass(slots=True, frozen=True)
class SecondFactorChallenge:
    """Opaque parameters needed to compute a proof of the cloud password."""

    params: dict[str, object] = field(default_factory=dict)
    hint: str = ""


@dataclass(slots=True, frozen=True)
class TransportConfig:
    proxy_url: str | None = None


class ProtocolClient(Protocol):
    """Operations of one connected protocol session."""

    async def bulk_verify(self, phones: Sequence[str]) -> VerifyOutcome:
        ...

    async def list_existing_relationships(self) -> list[Peer]:
        ...

    async def remove_relationships(self, peers: Sequence[Peer]) -> None:
        ...

    async def send_message(self, peer: Peer, text: str) -> None:
        ...

    async def resolve_alias(self, alias: str) -> Peer:
        ...

    async def list_conversations(self, cursor: str | None) -> ConversationPage:
        ...

    async def export_login_credential(self) -> LoginCredential:
        ...

    async def import_login_credential(self, token: bytes) -> LoginSuccess | LoginPending:
        ...

    async def get_second_factor_challenge(self) -> SecondFactorChallenge:
        ...

    async def compute_second_factor_proof(
        self, challenge: SecondFactorChallenge, secret: str
    ) -> bytes:
        ...

    async def submit_second_factor_proof(self, proof: bytes) -> Identity:
        ...

    async def export_session(self) -> bytes:
        ...


class ProtocolConnector(Protocol):
    """Factory for connected clients.

    ``session`` is a previously exported session blob, or ``None`` to start an
    anonymous connection for a login handshake. ``on_login_token`` is invoked
    from the client when the server reports that a login credential has been
    consumed on another device.
    """

    def open(
        self,
        session: bytes | None,
        *,
        transport: TransportConfig | None = None,
        on_login_token: Callable[[], None] | None = None,
    ) -> AbstractAsyncContextManager[ProtocolClient]:
        ...
