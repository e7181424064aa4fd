"""Error types raised by protocol client implementations."""

from __future__ import annotations

__all__ = [
    "AliasNotFoundError",
    "ConnectionFatalError",
    "FloodWaitError",
    "InvalidSecondFactorError",
    "MigrationRequiredError",
    "PeerInvalidError",
    "ProtocolError",
    "SecondFactorRequiredError",
]


class ProtocolError(RuntimeError):
    """Base error for failures reported by the messaging endpoint."""


class FloodWaitError(ProtocolError):
    """Raised when the server demands a pause before the next request."""

    def __init__(self, seconds: float) -> None:
        self.seconds = max(0.0, float(seconds))
        super().__init__(f"flood wait of {self.seconds:g}s requested")


class ConnectionFatalError(ProtocolError):
    """Raised when the session can no longer be used (revoked or expired)."""

    def __init__(
        self,
        message: str = "session expired or revoked - please re-authenticate this account",
    ) -> None:
        super().__init__(message)


class PeerInvalidError(ProtocolError):
    """Raised when a cached peer reference is rejected by the server."""


class AliasNotFoundError(ProtocolError):
    """Raised when a username does not resolve to a peer."""

    def __init__(self, alias: str) -> None:
        self.alias = alias
        super().__init__(f"username not found: {alias}")


class SecondFactorRequiredError(ProtocolError):
    """Raised by a login import when the account has a cloud password."""


class InvalidSecondFactorError(ProtocolError):
    """Raised when a submitted second-factor proof is rejected."""


class MigrationRequiredError(ProtocolError):
    """Raised when the login has to continue on another data center."""

    def __init__(self, dc_id: int | None = None) -> None:
        self.dc_id = dc_id
        super().__init__("data-center migration required")
