from __future__ import annotations

import pytest

from authgate.utils.retry import RetryPolicy, backoff_delay, retry_async

from fakes import RecordingSleep


def test_backoff_ladder_doubles_and_caps():
    policy = RetryPolicy(max_retries=5, base_delay=1.0, max_delay=10.0, jitter=0.0)
    assert [backoff_delay(policy, n) for n in range(5)] == [1.0, 2.0, 4.0, 8.0, 10.0]


def test_jitter_stays_within_bounds():
    policy = RetryPolicy(base_delay=1.0, max_delay=10.0, jitter=0.1)
    for _ in range(50):
        assert 3.6 <= backoff_delay(policy, 2) <= 4.4


@pytest.mark.asyncio
async def test_retry_async_succeeds_after_failures():
    sleep = RecordingSleep()
    calls = []

    async def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise ConnectionError("down")
        return "ok"

    policy = RetryPolicy(max_retries=3, base_delay=1.0, jitter=0.0)
    assert await retry_async(flaky, policy, sleep=sleep) == "ok"
    assert len(calls) == 3
    assert sleep.delays == [1.0, 2.0]


@pytest.mark.asyncio
async def test_retry_async_reraises_last_error_when_exhausted():
    sleep = RecordingSleep()
    attempts = []

    async def always_fails():
        attempts.append(1)
        raise ConnectionError(f"attempt {len(attempts)}")

    with pytest.raises(ConnectionError, match="attempt 4"):
        await retry_async(always_fails, RetryPolicy(max_retries=3, jitter=0.0), sleep=sleep)
    assert len(attempts) == 4


@pytest.mark.asyncio
async def test_should_retry_false_stops_immediately():
    sleep = RecordingSleep()
    retried = []

    async def fails():
        raise ValueError("permanent")

    with pytest.raises(ValueError):
        await retry_async(
            fails,
            RetryPolicy(max_retries=3),
            should_retry=lambda exc: not isinstance(exc, ValueError),
            on_retry=lambda attempt, exc, delay: retried.append(attempt),
            sleep=sleep,
        )
    assert retried == []
    assert sleep.delays == []
