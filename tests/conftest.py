import asyncio
import inspect
import sys
from collections.abc import Iterator
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from tgrelay.config import (
    AppConfig,
    HandshakeConfig,
    JobsConfig,
    LoggingConfig,
    RetryConfig,
    RewriteConfig,
    StorageConfig,
    override_runtime_env,
)


@pytest.hookimpl(tryfirst=True)
def pytest_pyfunc_call(pyfuncitem: pytest.Function) -> bool | None:
    marker = pyfuncitem.get_closest_marker("asyncio")
    if marker is None:
        return None
    test_func = pyfuncitem.obj
    if not inspect.iscoroutinefunction(test_func):
        return None
    fixtureinfo = getattr(pyfuncitem, "_fixtureinfo", None)
    if fixtureinfo is None:
        return None
    kwargs = {name: pyfuncitem.funcargs[name] for name in fixtureinfo.argnames}
    asyncio.run(test_func(**kwargs))
    return True


@pytest.fixture(autouse=True)
def _test_environment() -> Iterator[None]:
    override_runtime_env({})
    try:
        yield
    finally:
        override_runtime_env(None)


@pytest.fixture()
def data_dir(tmp_path: Path) -> Path:
    path = tmp_path / "data"
    path.mkdir(parents=True, exist_ok=True)
    return path


@pytest.fixture()
def app_config(data_dir: Path) -> AppConfig:
    return AppConfig(
        storage=StorageConfig(data_dir=data_dir),
        jobs=JobsConfig(),
        retry=RetryConfig(max_attempts=0, max_total_wait_seconds=60.0),
        handshake=HandshakeConfig(
            session_ttl_seconds=300.0,
            task_timeout_seconds=30.0,
            password_timeout_seconds=30.0,
            start_grace_seconds=0.5,
            retention_seconds=30.0,
            credential_fallback_seconds=30.0,
        ),
        rewrite=RewriteConfig(),
        logging=LoggingConfig(level="DEBUG"),
    )
