"""HTTP endpoints driving the scannable-code login handshake."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from tgrelay.accounts.handshake import AuthSession, HandshakeManager
from tgrelay.api.dependencies import get_handshake_manager
from tgrelay.errors import HandshakeNotFoundError

router = APIRouter(prefix="/handshakes", tags=["Handshakes"])


class HandshakeStartRequest(BaseModel):
    owner_key: str = Field(..., min_length=1)


class HandshakeSecretRequest(BaseModel):
    secret: str = Field(..., min_length=1)


class AccountPayload(BaseModel):
    id: str
    telegram_id: int
    phone: str
    first_name: str
    last_name: str
    username: str


class HandshakePayload(BaseModel):
    token: str
    status: str
    qr_payload: Optional[str] = None
    expires_at: datetime
    error: Optional[str] = None
    password_hint: Optional[str] = None
    account: Optional[AccountPayload] = None


class HandshakeEnvelope(BaseModel):
    ok: bool
    data: HandshakePayload
    error: Optional[Dict[str, Any]] = None


class AckEnvelope(BaseModel):
    ok: bool
    error: Optional[Dict[str, Any]] = None


def _to_payload(session: AuthSession) -> HandshakePayload:
    account = None
    if session.account is not None:
        account = AccountPayload(
            id=session.account.id,
            telegram_id=session.account.telegram_id,
            phone=session.account.phone,
            first_name=session.account.first_name,
            last_name=session.account.last_name,
            username=session.account.username,
        )
    return HandshakePayload(
        token=session.token,
        status=session.status.value,
        qr_payload=session.qr_payload,
        expires_at=session.expires_at,
        error=session.error,
        password_hint=session.password_hint or None,
        account=account,
    )


@router.post("", response_model=HandshakeEnvelope)
async def start_handshake(
    request: HandshakeStartRequest,
    handshakes: HandshakeManager = Depends(get_handshake_manager),
) -> HandshakeEnvelope:
    session = await handshakes.start(request.owner_key.strip())
    return HandshakeEnvelope(ok=True, data=_to_payload(session), error=None)


@router.get("/{token}", response_model=HandshakeEnvelope)
async def get_handshake(
    token: str, handshakes: HandshakeManager = Depends(get_handshake_manager)
) -> HandshakeEnvelope:
    session = handshakes.get_status(token)
    if session is None:
        raise HandshakeNotFoundError()
    return HandshakeEnvelope(ok=True, data=_to_payload(session), error=None)


@router.post("/{token}/secret", response_model=AckEnvelope)
async def submit_secret(
    token: str,
    request: HandshakeSecretRequest,
    handshakes: HandshakeManager = Depends(get_handshake_manager),
) -> AckEnvelope:
    handshakes.submit_secret(token, request.secret)
    return AckEnvelope(ok=True, error=None)


@router.delete("/{token}", response_model=AckEnvelope)
async def cancel_handshake(
    token: str, handshakes: HandshakeManager = Depends(get_handshake_manager)
) -> AckEnvelope:
    handshakes.cancel(token)
    return AckEnvelope(ok=True, error=None)
