"""Structured log events for jobs, handshakes and account changes."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from tgrelay.logging import RECORD_ATTRIBUTES

_JSON_PRIMITIVES = (str, int, float, bool, type(None))

# Values under these names are credentials or login material.
SENSITIVE_FIELDS = frozenset(
    {"api_token", "proxy_url", "qr_payload", "secret", "session_ref", "session_token"}
)
REDACTED = "***"


def _redact(name: str, value: Any) -> Any:
    if name in SENSITIVE_FIELDS and value is not None:
        return REDACTED
    return value


def _check_field(name: str, value: Any) -> None:
    if name in RECORD_ATTRIBUTES:
        raise ValueError(f"Field '{name}' clashes with a log record attribute")
    if not isinstance(value, _JSON_PRIMITIVES):
        raise TypeError(f"Field '{name}' must be a flat JSON-compatible value")


def _clean_meta(value: Any, *, path: str) -> Any:
    if isinstance(value, _JSON_PRIMITIVES):
        return value
    if isinstance(value, Mapping):
        cleaned: dict[str, Any] = {}
        for key, nested in value.items():
            if not isinstance(key, str):
                raise TypeError(f"Keys in '{path}' must be strings")
            cleaned[key] = _redact(key, _clean_meta(nested, path=f"{path}.{key}"))
        return cleaned
    if isinstance(value, (list, tuple)):
        return [_clean_meta(nested, path=f"{path}[{index}]") for index, nested in enumerate(value)]
    raise TypeError(f"Unsupported value in '{path}': {type(value).__name__}")


def log_event(logger: Any, event: str, /, *, level: int = logging.INFO, **fields: Any) -> None:
    """Emit ``event`` with flat fields attached to the log record.

    Nested data goes under ``meta``. Credential fields such as ``secret`` or
    ``session_ref`` are masked wherever they appear.
    """

    if not isinstance(event, str) or not event.strip():
        raise ValueError("event must be a non-empty string")

    meta = fields.pop("meta", None)
    if meta is not None and not isinstance(meta, Mapping):
        raise TypeError("meta must be a mapping if provided")

    extra: dict[str, Any] = {"event": event}
    for name, value in fields.items():
        _check_field(name, value)
        extra[name] = _redact(name, value)
    if meta is not None:
        extra["meta"] = _clean_meta(meta, path="meta")

    logger.log(level, event, extra=extra)


__all__ = ["REDACTED", "SENSITIVE_FIELDS", "log_event"]
