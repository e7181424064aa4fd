"""Contracts for the external messaging protocol client."""

from tgrelay.protocol.client import (
    ConversationPage,
    Identity,
    LoginCredential,
    LoginPending,
    LoginSuccess,
    Peer,
    ProtocolClient,
    ProtocolConnector,
    SecondFactorChallenge,
    TransportConfig,
    VerifyOutcome,
)
from tgrelay.protocol.errors import (
    AliasNotFoundError,
    ConnectionFatalError,
    FloodWaitError,
    InvalidSecondFactorError,
    MigrationRequiredError,
    PeerInvalidError,
    ProtocolError,
    SecondFactorRequiredError,
)

__all__ = [
    "AliasNotFoundError",
    "ConnectionFatalError",
    "ConversationPage",
    "FloodWaitError",
    "Identity",
    "InvalidSecondFactorError",
    "LoginCredential",
    "LoginPending",
    "LoginSuccess",
    "MigrationRequiredError",
    "Peer",
    "PeerInvalidError",
    "ProtocolClient",
    "ProtocolConnector",
    "ProtocolError",
    "SecondFactorChallenge",
    "SecondFactorRequiredError",
    "TransportConfig",
    "VerifyOutcome",
]
