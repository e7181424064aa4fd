"""Flood-wait aware retry wrapper for protocol client calls."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from tgrelay.config import RetryConfig
from tgrelay.logging import get_logger
from tgrelay.logging_events import log_event
from tgrelay.protocol.errors import FloodWaitError

__all__ = ["RetryBudgetExceededError", "RetryPolicy"]

T = TypeVar("T")

logger = get_logger(__name__)

Sleeper = Callable[[float], Awaitable[Any]]


class RetryBudgetExceededError(RuntimeError):
    """Raised when repeated flood waits exhaust the configured retry budget."""

    def __init__(self, attempts: int, waited: float, last_wait: float) -> None:
        self.attempts = attempts
        self.waited = waited
        self.last_wait = last_wait
        super().__init__(
            f"rate limited after {attempts} attempt(s); "
            f"server asked to wait another {last_wait:g}s"
        )


class RetryPolicy:
    """Re-run an operation for as long as the server answers with a flood wait.

    The wait is taken verbatim from the error. ``max_attempts`` (0 means no
    limit) and ``max_total_wait_seconds`` bound the loop; any other error is
    re-raised untouched.
    """

    def __init__(
        self,
        *,
        max_attempts: int = 0,
        max_total_wait_seconds: float | None = None,
        sleep: Sleeper | None = None,
    ) -> None:
        self._max_attempts = max(0, int(max_attempts))
        self._max_total_wait = (
            max(0.0, float(max_total_wait_seconds))
            if max_total_wait_seconds is not None
            else None
        )
        self._sleep = sleep or asyncio.sleep

    @classmethod
    def from_config(cls, config: RetryConfig, *, sleep: Sleeper | None = None) -> RetryPolicy:
        return cls(
            max_attempts=config.max_attempts,
            max_total_wait_seconds=config.max_total_wait_seconds or None,
            sleep=sleep,
        )

    async def call(
        self,
        op: Callable[..., Awaitable[T]],
        *args: Any,
        operation: str | None = None,
        **kwargs: Any,
    ) -> T:
        attempts = 0
        waited = 0.0
        name = operation or getattr(op, "__name__", "call")
        while True:
            attempts += 1
            try:
                return await op(*args, **kwargs)
            except FloodWaitError as exc:
                wait = exc.seconds
                if self._max_attempts and attempts >= self._max_attempts:
                    raise RetryBudgetExceededError(attempts, waited, wait) from exc
                if self._max_total_wait is not None and waited + wait > self._max_total_wait:
                    raise RetryBudgetExceededError(attempts, waited, wait) from exc
                log_event(
                    logger,
                    "protocol.flood_wait",
                    operation=name,
                    attempt=attempts,
                    wait_s=wait,
                )
                await self._sleep(wait)
                waited += wait
