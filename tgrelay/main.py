"""Application factory for the tgrelay HTTP service."""

from __future__ import annotations

import importlib
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from tgrelay import __version__
from tgrelay.accounts.handshake import HandshakeManager
from tgrelay.accounts.store import AccountStore, SessionStore
from tgrelay.api import accounts as accounts_api
from tgrelay.api import handshakes as handshakes_api
from tgrelay.api import jobs as jobs_api
from tgrelay.api.dependencies import Services
from tgrelay.api.errors import setup_exception_handlers
from tgrelay.config import AppConfig, get_env, load_config
from tgrelay.contacts.store import ContactStore
from tgrelay.jobs.manager import JobManager
from tgrelay.jobs.retry import RetryPolicy
from tgrelay.jobs.store import JobStore
from tgrelay.logging import configure_logging, get_logger
from tgrelay.protocol.client import ProtocolConnector
from tgrelay.rewrite import RewriteClient

logger = get_logger(__name__)

API_PREFIX = "/api/v1"


def load_connector(target: str) -> ProtocolConnector:
    """Import ``module:attribute`` and return the connector it names.

    A class or factory function is invoked without arguments to build the
    connector.
    """

    module_name, _, attribute = target.partition(":")
    if not module_name or not attribute:
        raise ValueError("connector must be given as 'module:attribute'")
    candidate = getattr(importlib.import_module(module_name), attribute)
    if isinstance(candidate, type) or (callable(candidate) and not hasattr(candidate, "open")):
        candidate = candidate()
    return candidate


def build_services(config: AppConfig, connector: ProtocolConnector) -> Services:
    storage = config.storage
    storage.data_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
    sessions = SessionStore(storage.sessions_dir)
    accounts = AccountStore(storage.accounts_file)
    contacts = ContactStore(storage.contacts_file)
    store = JobStore(storage.jobs_dir, config.jobs.policies)
    rewriter = RewriteClient(config.rewrite) if config.rewrite.enabled else None
    jobs = JobManager(
        store=store,
        connector=connector,
        sessions=sessions,
        contacts=contacts,
        config=config.jobs,
        retry=RetryPolicy.from_config(config.retry),
        rewriter=rewriter,
    )
    handshakes = HandshakeManager(
        connector=connector,
        accounts=accounts,
        sessions=sessions,
        config=config.handshake,
    )
    return Services(
        jobs=jobs,
        handshakes=handshakes,
        accounts=accounts,
        contacts=contacts,
        sessions=sessions,
    )


def create_app(
    config: AppConfig | None = None,
    connector: ProtocolConnector | None = None,
) -> FastAPI:
    config = config or load_config()
    configure_logging(config.logging.level, config.logging.log_file)
    if connector is None:
        target = (get_env("TGRELAY_CONNECTOR") or "").strip()
        if not target:
            raise RuntimeError("TGRELAY_CONNECTOR must name a protocol connector factory")
        connector = load_connector(target)

    services = build_services(config, connector)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info("tgrelay %s started (data_dir=%s)", __version__, config.storage.data_dir)
        try:
            yield
        finally:
            await services.handshakes.shutdown()
            await services.jobs.shutdown()
            logger.info("tgrelay stopped")

    app = FastAPI(title="tgrelay", version=__version__, lifespan=lifespan)
    app.state.config_snapshot = config
    app.state.services = services
    setup_exception_handlers(app)
    app.include_router(jobs_api.router, prefix=API_PREFIX)
    app.include_router(handshakes_api.router, prefix=API_PREFIX)
    app.include_router(accounts_api.router, prefix=API_PREFIX)
    return app


__all__ = ["API_PREFIX", "build_services", "create_app", "load_connector"]
