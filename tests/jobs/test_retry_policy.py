from __future__ import annotations

import asyncio

import pytest

from tgrelay.config import RetryConfig
from tgrelay.jobs.retry import RetryBudgetExceededError, RetryPolicy
from tgrelay.protocol.errors import FloodWaitError, PeerInvalidError


class ScriptedOperation:
    def __init__(self, *outcomes: object) -> None:
        self.outcomes = list(outcomes)
        self.calls = 0

    async def __call__(self, *args: object, **kwargs: object) -> object:
        self.calls += 1
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class RecordingSleep:
    def __init__(self) -> None:
        self.waits: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.waits.append(seconds)


@pytest.mark.asyncio
async def test_flood_waits_are_honoured_verbatim() -> None:
    sleep = RecordingSleep()
    op = ScriptedOperation(FloodWaitError(7), FloodWaitError(3), "done")
    policy = RetryPolicy(sleep=sleep)

    result = await policy.call(op)

    assert result == "done"
    assert op.calls == 3
    assert sleep.waits == [7.0, 3.0]


@pytest.mark.asyncio
async def test_elapsed_time_covers_requested_waits() -> None:
    op = ScriptedOperation(FloodWaitError(0.05), FloodWaitError(0.05), 42)
    policy = RetryPolicy()
    loop = asyncio.get_running_loop()

    started = loop.time()
    result = await policy.call(op)
    elapsed = loop.time() - started

    assert result == 42
    assert op.calls == 3
    # allow for the event loop clock resolution
    assert elapsed >= 0.1 - 1e-3


@pytest.mark.asyncio
async def test_other_errors_propagate_unchanged() -> None:
    error = PeerInvalidError("PEER_ID_INVALID")
    op = ScriptedOperation(error)
    policy = RetryPolicy(sleep=RecordingSleep())

    with pytest.raises(PeerInvalidError) as excinfo:
        await policy.call(op)

    assert excinfo.value is error
    assert op.calls == 1


@pytest.mark.asyncio
async def test_arguments_are_forwarded() -> None:
    received: list[tuple[object, ...]] = []

    async def op(*args: object, **kwargs: object) -> str:
        received.append((args, kwargs))
        return "ok"

    await RetryPolicy().call(op, "peer", text="hello")

    assert received == [(("peer",), {"text": "hello"})]


@pytest.mark.asyncio
async def test_cancellation_during_wait_propagates() -> None:
    op = ScriptedOperation(FloodWaitError(30), "never")
    policy = RetryPolicy()

    task = asyncio.create_task(policy.call(op))
    await asyncio.sleep(0.05)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert op.calls == 1


@pytest.mark.asyncio
async def test_attempt_budget_is_enforced() -> None:
    op = ScriptedOperation(FloodWaitError(1), FloodWaitError(2), "late")
    policy = RetryPolicy(max_attempts=2, sleep=RecordingSleep())

    with pytest.raises(RetryBudgetExceededError) as excinfo:
        await policy.call(op)

    assert excinfo.value.attempts == 2
    assert excinfo.value.last_wait == 2.0


@pytest.mark.asyncio
async def test_total_wait_budget_is_enforced() -> None:
    sleep = RecordingSleep()
    op = ScriptedOperation(FloodWaitError(40), FloodWaitError(40), "late")
    policy = RetryPolicy.from_config(
        RetryConfig(max_attempts=0, max_total_wait_seconds=60.0), sleep=sleep
    )

    with pytest.raises(RetryBudgetExceededError):
        await policy.call(op)

    assert sleep.waits == [40.0]
    assert op.calls == 2
