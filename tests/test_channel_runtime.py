from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from chameleon_bot.proxy.channel import ChannelCallPolicy, call_with_retry  # noqa: E402
from chameleon_bot.proxy.errors import ChannelRejected, DispatchFailed  # noqa: E402
from chameleon_bot.proxy.locks import KeyedLocks  # noqa: E402
from chameleon_bot.proxy.ratelimit import ChannelRateLimiter  # noqa: E402


class _FakeTime:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def clock(self) -> float:
        return self.now

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        self.now += delay


def _policy(**overrides: float) -> ChannelCallPolicy:
    values = {"timeout_seconds": 1.0, "attempts": 3, "base_delay": 0.5, "max_delay": 1.5, "jitter": 0.0}
    values.update(overrides)
    return ChannelCallPolicy(**values)  # type: ignore[arg-type]


def test_backoff_grows_exponentially_and_is_capped() -> None:
    policy = _policy()

    assert [policy.backoff(attempt) for attempt in (1, 2, 3, 4)] == [0.5, 1.0, 1.5, 1.5]


def test_policy_rejects_bad_values() -> None:
    with pytest.raises(ValueError):
        _policy(attempts=0)
    with pytest.raises(ValueError):
        _policy(timeout_seconds=0)


def test_retry_succeeds_after_transient_errors() -> None:
    fake = _FakeTime()
    calls = {"count": 0}

    async def flaky() -> str:
        calls["count"] += 1
        if calls["count"] < 3:
            raise RuntimeError("try again")
        return "ok"

    result = asyncio.run(call_with_retry("send", flaky, _policy(), sleep=fake.sleep))

    assert result == "ok"
    assert calls["count"] == 3
    assert fake.sleeps == [0.5, 1.0]


def test_retry_gives_up_with_dispatch_failed() -> None:
    fake = _FakeTime()

    async def broken() -> None:
        raise RuntimeError("down")

    with pytest.raises(DispatchFailed) as caught:
        asyncio.run(call_with_retry("send", broken, _policy(attempts=2), sleep=fake.sleep))

    assert caught.value.attempts == 2
    assert caught.value.retryable is True
    assert isinstance(caught.value.last_error, RuntimeError)


def test_timeout_counts_as_failure() -> None:
    async def hangs() -> None:
        await asyncio.sleep(10)

    async def no_wait(_delay: float) -> None:
        return None

    with pytest.raises(DispatchFailed) as caught:
        asyncio.run(call_with_retry("send", hangs, _policy(timeout_seconds=0.01, attempts=2), sleep=no_wait))

    assert isinstance(caught.value.last_error, asyncio.TimeoutError)


def test_rejection_is_not_retried() -> None:
    calls = {"count": 0}

    async def forbidden() -> None:
        calls["count"] += 1
        raise ChannelRejected("missing permission")

    with pytest.raises(DispatchFailed) as caught:
        asyncio.run(call_with_retry("send", forbidden, _policy()))

    assert calls["count"] == 1
    assert caught.value.retryable is False


def test_cancellation_propagates() -> None:
    async def scenario() -> None:
        started = asyncio.Event()

        async def slow() -> None:
            started.set()
            await asyncio.sleep(10)

        task = asyncio.create_task(call_with_retry("send", slow, _policy(timeout_seconds=30)))
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(scenario())


def test_before_attempt_runs_for_every_try() -> None:
    seen: list[str] = []

    async def gate() -> None:
        seen.append("gate")

    async def broken() -> None:
        raise RuntimeError("down")

    async def no_wait(_delay: float) -> None:
        return None

    with pytest.raises(DispatchFailed):
        asyncio.run(call_with_retry("send", broken, _policy(attempts=3), before_attempt=gate, sleep=no_wait))

    assert seen == ["gate", "gate", "gate"]


def test_rate_limiter_spends_burst_then_waits_for_refill() -> None:
    fake = _FakeTime()
    limiter = ChannelRateLimiter(2, 1.0, clock=fake.clock, sleep=fake.sleep)

    async def scenario() -> list[float]:
        return [await limiter.acquire("c1") for _ in range(3)]

    waits = asyncio.run(scenario())

    assert waits[:2] == [0.0, 0.0]
    assert waits[2] == pytest.approx(1.0)


def test_rate_limiter_channels_are_independent() -> None:
    fake = _FakeTime()
    limiter = ChannelRateLimiter(1, 0.5, clock=fake.clock, sleep=fake.sleep)

    async def scenario() -> tuple[float, float]:
        await limiter.acquire("busy")
        return await limiter.acquire("quiet"), limiter.available("busy")

    waited, busy_tokens = asyncio.run(scenario())

    assert waited == 0.0
    assert busy_tokens == pytest.approx(0.0)


def test_keyed_locks_are_released_after_use() -> None:
    locks = KeyedLocks()
    order: list[str] = []

    async def worker(name: str) -> None:
        async with locks.hold("k"):
            order.append(f"{name}-in")
            await asyncio.sleep(0)
            order.append(f"{name}-out")

    async def scenario() -> None:
        await asyncio.gather(worker("a"), worker("b"))

    asyncio.run(scenario())

    assert order == ["a-in", "a-out", "b-in", "b-out"]
    assert len(locks) == 0
