"""Time helpers shared by the stores and the background tasks."""

from __future__ import annotations

import asyncio
import random
from datetime import UTC, datetime

__all__ = ["now_utc", "parse_timestamp", "sleep_between_ms"]


def now_utc() -> datetime:
    """Return the current UTC time with timezone information."""

    return datetime.now(UTC)


def parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


async def sleep_between_ms(min_ms: int, max_ms: int) -> float:
    """Sleep for a uniformly drawn delay in ``[min_ms, max_ms]`` milliseconds.

    Returns the number of seconds slept. Cancellation propagates out of the
    sleep unchanged.
    """

    low = max(0, int(min_ms))
    high = max(low, int(max_ms))
    if high <= 0:
        return 0.0
    seconds = random.uniform(low, high) / 1000.0
    if seconds > 0:
        await asyncio.sleep(seconds)
    return seconds
