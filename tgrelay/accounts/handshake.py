"""Scannable-code login handshake with an optional cloud-password step.

Each handshake is owned by exactly one background task. The task talks to
the outside world through two narrow hand-offs only: an :class:`asyncio.Event`
set by the protocol client when the login code has been scanned, and a
one-shot future armed while the task waits for the account password. All
other state lives in the session registry behind ``_lock``.
"""

from __future__ import annotations

import asyncio
import base64
import secrets
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from threading import Lock

from tgrelay.accounts.store import Account, AccountStore, SessionStore
from tgrelay.config import HandshakeConfig
from tgrelay.errors import HandshakeNotFoundError, SecretNotAwaitedError, SecretSlotOccupiedError
from tgrelay.logging import get_logger
from tgrelay.logging_events import log_event
from tgrelay.protocol.client import (
    Identity,
    LoginCredential,
    LoginPending,
    ProtocolClient,
    ProtocolConnector,
)
from tgrelay.protocol.errors import InvalidSecondFactorError, SecondFactorRequiredError
from tgrelay.utils.time import now_utc

__all__ = ["AuthSession", "HandshakeManager", "HandshakeStatus", "login_url"]

logger = get_logger(__name__)

CODE_EXPIRED_ERROR = "login code expired"
PASSWORD_TIMEOUT_ERROR = "password input timed out"
HANDSHAKE_TIMEOUT_ERROR = "handshake timed out"
INVALID_PASSWORD_ERROR = "invalid password"


class HandshakeStatus(str, Enum):
    PENDING = "pending"
    SCANNING = "scanning"
    PASSWORD_REQUIRED = "password_required"
    SUCCESS = "success"
    ERROR = "error"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in (HandshakeStatus.SUCCESS, HandshakeStatus.ERROR, HandshakeStatus.EXPIRED)


@dataclass(slots=True)
class AuthSession:
    token: str
    owner_key: str
    status: HandshakeStatus
    created_at: datetime
    expires_at: datetime
    qr_payload: str | None = None
    account: Account | None = None
    error: str | None = None
    password_hint: str = ""

    def snapshot(self) -> AuthSession:
        return replace(self, account=replace(self.account) if self.account else None)


@dataclass(slots=True)
class _HandshakeState:
    session: AuthSession
    scanned: asyncio.Event = field(default_factory=asyncio.Event)
    published: asyncio.Event = field(default_factory=asyncio.Event)
    task: asyncio.Task[None] | None = None
    secret_slot: asyncio.Future[str] | None = None
    removal: asyncio.TimerHandle | None = None


def login_url(token: bytes) -> str:
    encoded = base64.urlsafe_b64encode(token).decode("ascii").rstrip("=")
    return f"tg://login?token={encoded}"


class HandshakeManager:
    def __init__(
        self,
        *,
        connector: ProtocolConnector,
        accounts: AccountStore,
        sessions: SessionStore,
        config: HandshakeConfig,
        now_fn: Callable[[], datetime] | None = None,
    ) -> None:
        self._connector = connector
        self._accounts = accounts
        self._sessions = sessions
        self._config = config
        self._now = now_fn or now_utc
        self._lock = Lock()
        self._states: dict[str, _HandshakeState] = {}

    async def start(self, owner_key: str) -> AuthSession:
        """Register a handshake and return its state after a short grace period."""

        now = self._now()
        token = secrets.token_urlsafe(24)
        session = AuthSession(
            token=token,
            owner_key=owner_key,
            status=HandshakeStatus.PENDING,
            created_at=now,
            expires_at=now + timedelta(seconds=self._config.session_ttl_seconds),
        )
        state = _HandshakeState(session=session)
        with self._lock:
            self._states[token] = state
        state.task = asyncio.create_task(self._run(state), name=f"handshake-{token[:8]}")
        log_event(logger, "handshake.started", owner_key=owner_key)

        if self._config.start_grace_seconds > 0:
            try:
                async with asyncio.timeout(self._config.start_grace_seconds):
                    await state.published.wait()
            except asyncio.TimeoutError:
                pass
        with self._lock:
            return state.session.snapshot()

    def get_status(self, token: str) -> AuthSession | None:
        with self._lock:
            state = self._states.get(token)
            if state is None:
                return None
            session = state.session
            if (
                session.status in (HandshakeStatus.PENDING, HandshakeStatus.SCANNING)
                and self._now() >= session.expires_at
            ):
                session.status = HandshakeStatus.EXPIRED
                session.error = CODE_EXPIRED_ERROR
                if state.task is not None:
                    state.task.cancel()
            return session.snapshot()

    def submit_secret(self, token: str, secret: str) -> None:
        with self._lock:
            state = self._states.get(token)
            if state is None:
                raise HandshakeNotFoundError()
            if state.session.status is not HandshakeStatus.PASSWORD_REQUIRED:
                raise SecretNotAwaitedError()
            slot = state.secret_slot
            if slot is None:
                raise SecretNotAwaitedError()
            if slot.done():
                raise SecretSlotOccupiedError()
            slot.set_result(secret)

    def cancel(self, token: str) -> bool:
        with self._lock:
            state = self._states.pop(token, None)
        if state is None:
            return False
        if state.removal is not None:
            state.removal.cancel()
        if state.task is not None:
            state.task.cancel()
        log_event(logger, "handshake.cancelled", owner_key=state.session.owner_key)
        return True

    async def shutdown(self) -> None:
        with self._lock:
            states = list(self._states.values())
            self._states.clear()
        tasks = []
        for state in states:
            if state.removal is not None:
                state.removal.cancel()
            if state.task is not None:
                state.task.cancel()
                tasks.append(state.task)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _is_live(self, state: _HandshakeState) -> bool:
        """Return whether the task still owns ``state``; callers hold ``_lock``."""

        return (
            self._states.get(state.session.token) is state
            and not state.session.status.is_terminal
        )

    def _update(self, state: _HandshakeState, **changes: object) -> bool:
        with self._lock:
            if not self._is_live(state):
                return False
            for name, value in changes.items():
                setattr(state.session, name, value)
            if state.session.status is not HandshakeStatus.PENDING:
                state.published.set()
            return True

    def _finish(self, state: _HandshakeState, status: HandshakeStatus, error: str) -> None:
        with self._lock:
            if state.session.status.is_terminal:
                return
            state.session.status = status
            state.session.error = error
            state.published.set()

    async def _run(self, state: _HandshakeState) -> None:
        session = state.session
        try:
            async with asyncio.timeout(self._config.task_timeout_seconds):
                await self._drive(state)
        except asyncio.TimeoutError:
            self._finish(state, HandshakeStatus.EXPIRED, HANDSHAKE_TIMEOUT_ERROR)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Handshake for %s failed: %s", session.owner_key, exc)
            self._finish(state, HandshakeStatus.ERROR, str(exc) or exc.__class__.__name__)
        finally:
            self._schedule_removal(state)
            with self._lock:
                status = session.status
                error = session.error
            if status is HandshakeStatus.SUCCESS:
                log_event(logger, "handshake.completed", owner_key=session.owner_key)
            elif status.is_terminal:
                log_event(
                    logger,
                    "handshake.failed",
                    owner_key=session.owner_key,
                    status=status.value,
                    error=error,
                )

    def _schedule_removal(self, state: _HandshakeState) -> None:
        token = state.session.token
        with self._lock:
            if self._states.get(token) is not state:
                return
        loop = asyncio.get_running_loop()
        state.removal = loop.call_later(
            self._config.retention_seconds, self._remove, token, state
        )

    def _remove(self, token: str, state: _HandshakeState) -> None:
        with self._lock:
            if self._states.get(token) is state:
                del self._states[token]

    def _seconds_until(self, moment: datetime) -> float:
        remaining = (moment - self._now()).total_seconds()
        if remaining <= 0:
            return self._config.credential_fallback_seconds
        return remaining

    async def _drive(self, state: _HandshakeState) -> None:
        session = state.session
        async with self._connector.open(None, on_login_token=state.scanned.set) as client:
            while True:
                if self._now() >= session.expires_at:
                    self._finish(state, HandshakeStatus.EXPIRED, CODE_EXPIRED_ERROR)
                    return
                state.scanned.clear()
                credential: LoginCredential = await client.export_login_credential()
                if not self._update(
                    state, status=HandshakeStatus.SCANNING, qr_payload=login_url(credential.token)
                ):
                    return
                log_event(logger, "handshake.credential_minted", owner_key=session.owner_key)
                try:
                    async with asyncio.timeout(self._seconds_until(credential.expires_at)):
                        await state.scanned.wait()
                except asyncio.TimeoutError:
                    continue

                try:
                    result = await client.import_login_credential(credential.token)
                except SecondFactorRequiredError:
                    identity = await self._second_factor(state, client)
                    if identity is None:
                        return
                    break
                if isinstance(result, LoginPending):
                    continue
                identity = result.identity
                break
            await self._complete(state, client, identity)

    async def _second_factor(
        self, state: _HandshakeState, client: ProtocolClient
    ) -> Identity | None:
        challenge = await client.get_second_factor_challenge()
        timeout = self._config.password_timeout_seconds
        loop = asyncio.get_running_loop()
        while True:
            slot: asyncio.Future[str] = loop.create_future()
            with self._lock:
                if not self._is_live(state):
                    return None
                state.secret_slot = slot
                state.session.status = HandshakeStatus.PASSWORD_REQUIRED
                state.session.expires_at = self._now() + timedelta(seconds=timeout)
                state.session.password_hint = challenge.hint
                state.published.set()
            log_event(logger, "handshake.password_required", owner_key=state.session.owner_key)
            try:
                async with asyncio.timeout(timeout):
                    secret = await slot
            except asyncio.TimeoutError:
                with self._lock:
                    state.secret_slot = None
                self._finish(state, HandshakeStatus.EXPIRED, PASSWORD_TIMEOUT_ERROR)
                return None
            with self._lock:
                state.secret_slot = None

            try:
                proof = await client.compute_second_factor_proof(challenge, secret)
                del secret
                identity = await client.submit_second_factor_proof(proof)
            except InvalidSecondFactorError:
                if not self._update(state, error=INVALID_PASSWORD_ERROR):
                    return None
                challenge = await client.get_second_factor_challenge()
                continue
            self._update(state, error=None)
            return identity

    async def _complete(
        self, state: _HandshakeState, client: ProtocolClient, identity: Identity
    ) -> None:
        session = state.session
        blob = await client.export_session()
        # Nothing durable is written once the handshake was cancelled or expired.
        with self._lock:
            if not self._is_live(state):
                return
            previous = [
                account.session_token
                for account in self._accounts.list_for_owner(session.owner_key)
                if account.telegram_id == identity.user_id
            ]
            session_token = self._sessions.new_token()
            self._sessions.save(session_token, blob)
            account = self._accounts.upsert_from_identity(
                session.owner_key, identity, session_token=session_token
            )
            for stale in previous:
                if stale and stale != session_token:
                    self._sessions.delete(stale)
            session.status = HandshakeStatus.SUCCESS
            session.account = account
            session.error = None
            session.qr_payload = None
            state.published.set()
