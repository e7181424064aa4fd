"""Logging setup for the tgrelay service."""

from __future__ import annotations

import logging
import sys
from typing import Optional

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

# Attributes every LogRecord carries; anything else arrived through ``extra``.
RECORD_ATTRIBUTES = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"}


class EventFormatter(logging.Formatter):
    """Plain-text formatter that appends the fields of structured events.

    Records emitted through :func:`tgrelay.logging_events.log_event` carry an
    ``event`` attribute; their flat fields are rendered as ``key=value`` pairs
    after the message so job and handshake transitions stay greppable.
    """

    def formatMessage(self, record: logging.LogRecord) -> str:
        line = super().formatMessage(record)
        if getattr(record, "event", None) is None:
            return line
        pairs = [
            f"{key}={value}"
            for key, value in vars(record).items()
            if key not in RECORD_ATTRIBUTES and key != "event" and value is not None
        ]
        if not pairs:
            return line
        return f"{line} {' '.join(pairs)}"


def configure_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    formatter = EventFormatter(LOG_FORMAT)
    for handler in handlers:
        handler.setFormatter(formatter)

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        handlers=handlers,
        force=True,
    )
    # httpx logs every request line at INFO, including rewrite endpoint URLs.
    logging.getLogger("httpx").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
