"""HTTP endpoints for linked accounts and their contacts."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from tgrelay.accounts.store import Account, AccountStore, SessionStore
from tgrelay.api.dependencies import get_account_store, get_contact_store, get_session_store
from tgrelay.contacts.store import Contact, ContactStore
from tgrelay.errors import AccountNotFoundError, ContactNotFoundError
from tgrelay.logging import get_logger
from tgrelay.logging_events import log_event

router = APIRouter(tags=["Accounts"])

logger = get_logger(__name__)


class LinkedAccountPayload(BaseModel):
    id: str
    owner_key: str
    telegram_id: int
    phone: str
    first_name: str
    last_name: str
    username: str
    is_active: bool
    created_at: datetime


class ContactPayload(BaseModel):
    id: str
    account_id: str
    telegram_id: int
    phone: str
    first_name: str
    last_name: str
    username: str
    labels: list[str]
    is_valid: bool
    created_at: datetime
    updated_at: datetime


class AccountListEnvelope(BaseModel):
    ok: bool
    data: list[LinkedAccountPayload]
    error: Optional[Dict[str, Any]] = None


class ContactListEnvelope(BaseModel):
    ok: bool
    data: list[ContactPayload]
    count: int
    error: Optional[Dict[str, Any]] = None


class DeletedData(BaseModel):
    id: str
    contacts_removed: int = 0


class DeletedEnvelope(BaseModel):
    ok: bool
    data: DeletedData
    error: Optional[Dict[str, Any]] = None


def _account_payload(account: Account) -> LinkedAccountPayload:
    # Session tokens and proxy credentials stay server-side.
    return LinkedAccountPayload(
        id=account.id,
        owner_key=account.owner_key,
        telegram_id=account.telegram_id,
        phone=account.phone,
        first_name=account.first_name,
        last_name=account.last_name,
        username=account.username,
        is_active=account.is_active,
        created_at=account.created_at,
    )


def _contact_payload(contact: Contact) -> ContactPayload:
    return ContactPayload(
        id=contact.id,
        account_id=contact.account_id,
        telegram_id=contact.telegram_id,
        phone=contact.phone,
        first_name=contact.first_name,
        last_name=contact.last_name,
        username=contact.username,
        labels=list(contact.labels),
        is_valid=contact.is_valid,
        created_at=contact.created_at,
        updated_at=contact.updated_at,
    )


@router.get("/accounts", response_model=AccountListEnvelope)
def list_accounts(
    owner_key: str = Query(..., min_length=1),
    accounts: AccountStore = Depends(get_account_store),
) -> AccountListEnvelope:
    owned = sorted(accounts.list_for_owner(owner_key), key=lambda account: account.created_at)
    return AccountListEnvelope(
        ok=True, data=[_account_payload(account) for account in owned], error=None
    )


@router.delete("/accounts/{account_id}", response_model=DeletedEnvelope)
def delete_account(
    account_id: str,
    accounts: AccountStore = Depends(get_account_store),
    contacts: ContactStore = Depends(get_contact_store),
    sessions: SessionStore = Depends(get_session_store),
) -> DeletedEnvelope:
    account = accounts.delete(account_id)
    if account is None:
        raise AccountNotFoundError(account_id)
    session_removed = False
    if account.session_token:
        session_removed = sessions.delete(account.session_token)
    removed = contacts.delete_for_account(account.id)
    log_event(
        logger,
        "account.deleted",
        account_id=account.id,
        contacts_removed=removed,
        session_removed=session_removed,
    )
    return DeletedEnvelope(
        ok=True, data=DeletedData(id=account.id, contacts_removed=removed), error=None
    )


@router.get("/accounts/{account_id}/contacts", response_model=ContactListEnvelope)
def list_contacts(
    account_id: str,
    valid: bool = Query(False),
    accounts: AccountStore = Depends(get_account_store),
    contacts: ContactStore = Depends(get_contact_store),
) -> ContactListEnvelope:
    if accounts.get(account_id) is None:
        raise AccountNotFoundError(account_id)
    listed = contacts.list_for_account(account_id)
    if valid:
        listed = [contact for contact in listed if contact.is_valid]
    return ContactListEnvelope(
        ok=True,
        data=[_contact_payload(contact) for contact in listed],
        count=len(listed),
        error=None,
    )


@router.delete("/contacts/{contact_id}", response_model=DeletedEnvelope)
def delete_contact(
    contact_id: str,
    contacts: ContactStore = Depends(get_contact_store),
) -> DeletedEnvelope:
    if not contacts.delete(contact_id):
        raise ContactNotFoundError(contact_id)
    return DeletedEnvelope(ok=True, data=DeletedData(id=contact_id), error=None)
