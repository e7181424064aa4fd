"""Application configuration utilities for tgrelay."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from tgrelay.logging import get_logger

logger = get_logger(__name__)

_RUNTIME_ENV_CACHE: dict[str, str] | None = None

DEFAULT_DATA_DIR = ".data"
DEFAULT_MAX_JOBS_PER_RESOURCE = 50
DEFAULT_VERIFY_BATCH_SIZE = 15
DEFAULT_RETRY_MAX_TOTAL_WAIT_S = 3600.0
DEFAULT_REWRITE_BASE_URL = "https://api.openai.com/v1"
DEFAULT_REWRITE_MODEL = "gpt-4o-mini"

JOB_KIND_VERIFY = "verify"
JOB_KIND_IMPORT_CHATS = "import_chats"
JOB_KIND_IMPORT_CONTACTS = "import_contacts"
JOB_KIND_SEND = "send"


def _load_env_file(path: Path) -> dict[str, str]:
    try:
        contents = path.read_text(encoding="utf-8")
    except OSError:
        return {}
    env_values: dict[str, str] = {}
    for line in contents.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#") or "=" not in stripped:
            continue
        key, value = stripped.split("=", 1)
        key = key.strip()
        if not key:
            continue
        env_values[key] = value.strip().strip('"').strip("'")
    return env_values


def load_runtime_env(
    *,
    env_file: str | os.PathLike[str] | None = None,
    base_env: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Load runtime environment values applying .env before explicit environment."""

    env: dict[str, str] = {}
    source = dict(base_env or os.environ)

    path = Path(env_file) if env_file is not None else Path(".env")
    if path.exists() and path.is_file():
        env.update(_load_env_file(path))

    env.update({key: str(value) for key, value in source.items() if value is not None})
    return env


def get_runtime_env() -> Mapping[str, str]:
    """Return the cached runtime environment mapping."""

    global _RUNTIME_ENV_CACHE
    if _RUNTIME_ENV_CACHE is None:
        _RUNTIME_ENV_CACHE = load_runtime_env()
    return _RUNTIME_ENV_CACHE


def override_runtime_env(runtime_env: Mapping[str, str] | None) -> None:
    """Override the cached runtime environment (primarily for testing)."""

    global _RUNTIME_ENV_CACHE
    if runtime_env is None:
        _RUNTIME_ENV_CACHE = None
    else:
        _RUNTIME_ENV_CACHE = dict(runtime_env)


def get_env(name: str, default: str | None = None) -> str | None:
    """Return an environment variable honoring ENV > .env > defaults."""

    env = get_runtime_env()
    return env.get(name, default)


def _env_value(env: Mapping[str, Any], key: str) -> str | None:
    value = env.get(key)
    if value is None:
        return None
    return str(value)


def _as_bool(value: str | None, *, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _coerce_int(value: Any, *, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _bounded_int(
    value: Any,
    *,
    default: int,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    resolved = _coerce_int(value, default=default)
    if minimum is not None:
        resolved = max(minimum, resolved)
    if maximum is not None:
        resolved = min(maximum, resolved)
    return resolved


def _bounded_float(
    value: Any,
    *,
    default: float,
    minimum: float | None = None,
    maximum: float | None = None,
) -> float:
    try:
        resolved = float(value)
    except (TypeError, ValueError):
        resolved = default
    if minimum is not None:
        resolved = max(minimum, resolved)
    if maximum is not None:
        resolved = min(maximum, resolved)
    return resolved


@dataclass(slots=True, frozen=True)
class JobKindPolicy:
    """Scheduling rules for one job kind.

    ``family`` selects the snapshot file the kind is persisted to. Kinds that
    share a family share one file. ``durable`` controls whether that file exists
    at all; a non-durable family lives in memory for the process lifetime and is
    not reconciled on restart because nothing survives one.
    """

    kind: str
    family: str
    single_active: bool
    timeout_seconds: float
    durable: bool = True


_DEFAULT_KIND_POLICIES: tuple[JobKindPolicy, ...] = (
    JobKindPolicy(JOB_KIND_VERIFY, "verify", True, 3600.0),
    JobKindPolicy(JOB_KIND_IMPORT_CHATS, "import", True, 6 * 3600.0),
    JobKindPolicy(JOB_KIND_IMPORT_CONTACTS, "import", True, 6 * 3600.0),
    JobKindPolicy(JOB_KIND_SEND, "send", False, 3600.0),
)


@dataclass(slots=True, frozen=True)
class StorageConfig:
    data_dir: Path

    @property
    def jobs_dir(self) -> Path:
        return self.data_dir / "jobs"

    @property
    def sessions_dir(self) -> Path:
        return self.data_dir / "sessions"

    @property
    def accounts_file(self) -> Path:
        return self.data_dir / "accounts.json"

    @property
    def contacts_file(self) -> Path:
        return self.data_dir / "contacts.json"

    @classmethod
    def from_env(cls, env: Mapping[str, Any]) -> StorageConfig:
        raw = (_env_value(env, "TGRELAY_DATA_DIR") or "").strip() or DEFAULT_DATA_DIR
        return cls(data_dir=Path(raw))


@dataclass(slots=True, frozen=True)
class RetryConfig:
    max_attempts: int = 0
    max_total_wait_seconds: float = DEFAULT_RETRY_MAX_TOTAL_WAIT_S

    @classmethod
    def from_env(cls, env: Mapping[str, Any]) -> RetryConfig:
        return cls(
            max_attempts=_bounded_int(
                env.get("RETRY_MAX_ATTEMPTS"), default=0, minimum=0
            ),
            max_total_wait_seconds=_bounded_float(
                env.get("RETRY_MAX_TOTAL_WAIT_S"),
                default=DEFAULT_RETRY_MAX_TOTAL_WAIT_S,
                minimum=0.0,
            ),
        )


@dataclass(slots=True, frozen=True)
class JobsConfig:
    policies: dict[str, JobKindPolicy] = field(
        default_factory=lambda: {policy.kind: policy for policy in _DEFAULT_KIND_POLICIES}
    )
    max_jobs_per_resource: int = DEFAULT_MAX_JOBS_PER_RESOURCE
    verify_batch_size: int = DEFAULT_VERIFY_BATCH_SIZE
    protocol_multiplexed: bool = False

    def policy_for(self, kind: str) -> JobKindPolicy:
        try:
            return self.policies[kind]
        except KeyError:
            raise KeyError(f"unknown job kind: {kind}") from None

    def families(self) -> dict[str, bool]:
        """Return ``family -> durable`` for every configured family."""

        result: dict[str, bool] = {}
        for policy in self.policies.values():
            result[policy.family] = result.get(policy.family, False) or policy.durable
        return result

    @classmethod
    def from_env(cls, env: Mapping[str, Any]) -> JobsConfig:
        policies: dict[str, JobKindPolicy] = {}
        for default in _DEFAULT_KIND_POLICIES:
            prefix = f"JOBS_{default.kind.upper()}"
            policies[default.kind] = JobKindPolicy(
                kind=default.kind,
                family=default.family,
                single_active=_as_bool(
                    _env_value(env, f"{prefix}_SINGLE_ACTIVE"),
                    default=default.single_active,
                ),
                timeout_seconds=_bounded_float(
                    env.get(f"{prefix}_TIMEOUT_S"),
                    default=default.timeout_seconds,
                    minimum=1.0,
                ),
                durable=_as_bool(
                    _env_value(env, f"{prefix}_DURABLE"), default=default.durable
                ),
            )
        return cls(
            policies=policies,
            max_jobs_per_resource=_bounded_int(
                env.get("JOBS_MAX_PER_RESOURCE"),
                default=DEFAULT_MAX_JOBS_PER_RESOURCE,
                minimum=1,
            ),
            verify_batch_size=_bounded_int(
                env.get("JOBS_VERIFY_BATCH_SIZE"),
                default=DEFAULT_VERIFY_BATCH_SIZE,
                minimum=1,
                maximum=100,
            ),
            protocol_multiplexed=_as_bool(
                _env_value(env, "JOBS_PROTOCOL_MULTIPLEXED"), default=False
            ),
        )


@dataclass(slots=True, frozen=True)
class HandshakeConfig:
    session_ttl_seconds: float = 300.0
    task_timeout_seconds: float = 600.0
    password_timeout_seconds: float = 300.0
    start_grace_seconds: float = 3.0
    retention_seconds: float = 30.0
    credential_fallback_seconds: float = 30.0

    @classmethod
    def from_env(cls, env: Mapping[str, Any]) -> HandshakeConfig:
        return cls(
            session_ttl_seconds=_bounded_float(
                env.get("HANDSHAKE_SESSION_TTL_S"), default=300.0, minimum=1.0
            ),
            task_timeout_seconds=_bounded_float(
                env.get("HANDSHAKE_TASK_TIMEOUT_S"), default=600.0, minimum=1.0
            ),
            password_timeout_seconds=_bounded_float(
                env.get("HANDSHAKE_PASSWORD_TIMEOUT_S"), default=300.0, minimum=1.0
            ),
            start_grace_seconds=_bounded_float(
                env.get("HANDSHAKE_START_GRACE_S"), default=3.0, minimum=0.0, maximum=30.0
            ),
            retention_seconds=_bounded_float(
                env.get("HANDSHAKE_RETENTION_S"), default=30.0, minimum=0.0
            ),
            credential_fallback_seconds=_bounded_float(
                env.get("HANDSHAKE_CREDENTIAL_FALLBACK_S"), default=30.0, minimum=1.0
            ),
        )


@dataclass(slots=True, frozen=True)
class RewriteConfig:
    base_url: str = DEFAULT_REWRITE_BASE_URL
    model: str = DEFAULT_REWRITE_MODEL
    timeout_seconds: float = 30.0
    api_token: str | None = None

    @property
    def enabled(self) -> bool:
        return bool(self.api_token)

    @classmethod
    def from_env(cls, env: Mapping[str, Any]) -> RewriteConfig:
        base_url = (_env_value(env, "REWRITE_BASE_URL") or "").strip()
        model = (_env_value(env, "REWRITE_MODEL") or "").strip()
        return cls(
            api_token=(_env_value(env, "REWRITE_API_TOKEN") or "").strip() or None,
            base_url=(base_url or DEFAULT_REWRITE_BASE_URL).rstrip("/"),
            model=model or DEFAULT_REWRITE_MODEL,
            timeout_seconds=_bounded_float(
                env.get("REWRITE_TIMEOUT_S"), default=30.0, minimum=1.0, maximum=300.0
            ),
        )


@dataclass(slots=True, frozen=True)
class LoggingConfig:
    level: str = "INFO"
    log_file: str | None = None


@dataclass(slots=True, frozen=True)
class AppConfig:
    storage: StorageConfig
    jobs: JobsConfig
    retry: RetryConfig
    handshake: HandshakeConfig
    rewrite: RewriteConfig
    logging: LoggingConfig


def load_config(runtime_env: Mapping[str, Any] | None = None) -> AppConfig:
    """Build the application configuration from the runtime environment."""

    env = runtime_env if runtime_env is not None else get_runtime_env()
    level = (_env_value(env, "TGRELAY_LOG_LEVEL") or "INFO").strip().upper() or "INFO"
    log_file = (_env_value(env, "TGRELAY_LOG_FILE") or "").strip() or None
    config = AppConfig(
        storage=StorageConfig.from_env(env),
        jobs=JobsConfig.from_env(env),
        retry=RetryConfig.from_env(env),
        handshake=HandshakeConfig.from_env(env),
        rewrite=RewriteConfig.from_env(env),
        logging=LoggingConfig(level=level, log_file=log_file),
    )
    logger.debug("Loaded configuration (data_dir=%s)", config.storage.data_dir)
    return config


__all__ = [
    "AppConfig",
    "HandshakeConfig",
    "JOB_KIND_IMPORT_CHATS",
    "JOB_KIND_IMPORT_CONTACTS",
    "JOB_KIND_SEND",
    "JOB_KIND_VERIFY",
    "JobKindPolicy",
    "JobsConfig",
    "LoggingConfig",
    "RetryConfig",
    "RewriteConfig",
    "StorageConfig",
    "get_env",
    "load_config",
    "override_runtime_env",
]
