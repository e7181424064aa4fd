"""Per-recipient message templates."""

from __future__ import annotations

import random
from collections.abc import Mapping
from typing import Any

from jinja2 import StrictUndefined, TemplateError
from jinja2.sandbox import SandboxedEnvironment

__all__ = ["MessageTemplateError", "recipient_context", "render_message"]


class MessageTemplateError(ValueError):
    """Raised when a message template cannot be parsed or rendered."""


def _pick(*options: Any) -> str:
    if not options:
        return ""
    return str(random.choice(options))


_ENV = SandboxedEnvironment(undefined=StrictUndefined, autoescape=False)
_ENV.globals["pick"] = _pick


def recipient_context(
    *, first_name: str = "", last_name: str = "", phone: str = "", username: str = ""
) -> dict[str, str]:
    name = " ".join(part for part in (first_name.strip(), last_name.strip()) if part)
    return {
        "first_name": first_name,
        "last_name": last_name,
        "name": name or "Unknown",
        "phone": phone,
        "username": username,
    }


def render_message(source: str, context: Mapping[str, Any]) -> str:
    """Render ``source`` for one recipient.

    ``{{ pick("Hi", "Hello") }}`` picks one option at random per render.
    """

    try:
        return _ENV.from_string(source).render(**context)
    except TemplateError as exc:
        raise MessageTemplateError(str(exc)) from exc
