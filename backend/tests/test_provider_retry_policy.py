import asyncio

import pytest

from gridrank.providers.errors import ProviderAuthError, ProviderTimeoutError
from gridrank.providers.retry import RetryExhaustedError, RetryPolicy


def _recording_sleep(sleeps: list[float]):
    async def _sleep(delay: float) -> None:
        sleeps.append(delay)

    return _sleep


def test_retry_policy_retries_until_success() -> None:
    calls = {"count": 0}
    sleeps: list[float] = []
    policy = RetryPolicy(
        max_attempts=3,
        base_delay_seconds=0.5,
        max_delay_seconds=5.0,
        jitter_ratio=0.0,
        sleep_fn=_recording_sleep(sleeps),
    )

    async def _op() -> str:
        calls["count"] += 1
        if calls["count"] < 3:
            raise ProviderTimeoutError()
        return "ok"

    assert asyncio.run(policy.execute(_op)) == "ok"
    assert calls["count"] == 3
    assert sleeps == [0.5, 1.0]


def test_retry_policy_raises_exhausted_for_retryable_error() -> None:
    policy = RetryPolicy(max_attempts=2, jitter_ratio=0.0, sleep_fn=_recording_sleep([]))

    async def _op() -> str:
        raise ProviderTimeoutError()

    with pytest.raises(RetryExhaustedError) as exc:
        asyncio.run(policy.execute(_op))
    assert exc.value.attempts == 2
    assert exc.value.last_error.reason_code == "timeout"


def test_retry_policy_propagates_non_retryable_without_sleep() -> None:
    sleeps: list[float] = []
    policy = RetryPolicy(max_attempts=5, sleep_fn=_recording_sleep(sleeps))

    async def _op() -> str:
        raise ProviderAuthError("bad token")

    with pytest.raises(ProviderAuthError):
        asyncio.run(policy.execute(_op))
    assert sleeps == []


def test_retry_policy_reports_each_retry() -> None:
    seen: list[tuple[int, str, float]] = []
    policy = RetryPolicy(max_attempts=3, base_delay_seconds=2.0, jitter_ratio=0.0, sleep_fn=_recording_sleep([]))

    async def _op() -> str:
        raise ProviderTimeoutError()

    with pytest.raises(RetryExhaustedError):
        asyncio.run(policy.execute(_op, on_retry=lambda attempt, error, delay: seen.append((attempt, error.reason_code, delay))))
    assert seen == [(1, "timeout", 2.0), (2, "timeout", 4.0)]


def test_delay_is_capped_and_jitter_stays_in_bounds() -> None:
    policy = RetryPolicy(base_delay_seconds=1.0, multiplier=2.0, max_delay_seconds=30.0, jitter_ratio=0.0)
    assert [policy.delay_for_attempt(n) for n in range(1, 7)] == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0]

    jittered = RetryPolicy(base_delay_seconds=10.0, jitter_ratio=0.1, random_fn=lambda low, high: high)
    assert jittered.delay_for_attempt(1) == pytest.approx(11.0)
    jittered_low = RetryPolicy(base_delay_seconds=10.0, jitter_ratio=0.1, random_fn=lambda low, high: low)
    assert jittered_low.delay_for_attempt(1) == pytest.approx(9.0)


def test_retry_policy_rejects_zero_attempts() -> None:
    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=0)
