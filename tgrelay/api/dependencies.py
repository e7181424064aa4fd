"""Request-scoped accessors for the services attached to ``app.state``."""

from __future__ import annotations

from dataclasses import dataclass

from fastapi import Request

from tgrelay.accounts.handshake import HandshakeManager
from tgrelay.accounts.store import AccountStore, SessionStore
from tgrelay.contacts.store import ContactStore
from tgrelay.jobs.manager import JobManager


@dataclass(slots=True)
class Services:
    jobs: JobManager
    handshakes: HandshakeManager
    accounts: AccountStore
    contacts: ContactStore
    sessions: SessionStore


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_job_manager(request: Request) -> JobManager:
    return get_services(request).jobs


def get_handshake_manager(request: Request) -> HandshakeManager:
    return get_services(request).handshakes


def get_account_store(request: Request) -> AccountStore:
    return get_services(request).accounts


def get_contact_store(request: Request) -> ContactStore:
    return get_services(request).contacts


def get_session_store(request: Request) -> SessionStore:
    return get_services(request).sessions
