import asyncio
import random

import pytest

from conftest import no_sleep
from errors import CompletionError, FatalServiceError, TransientServiceError
from retry import RetryPolicy, classify, is_retryable_status


class FlakyCall:
    def __init__(self, failures: list, result="ok"):
        self.failures = list(failures)
        self.result = result
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        return self.result


@pytest.mark.parametrize("status", [None, 429, 500, 502, 503, 599])
def test_retryable_statuses(status):
    assert is_retryable_status(status)
    assert isinstance(classify(CompletionError("x", status)), TransientServiceError)


@pytest.mark.parametrize("status", [400, 401, 403, 404, 422])
def test_fatal_statuses(status):
    assert not is_retryable_status(status)
    assert isinstance(classify(CompletionError("x", status)), FatalServiceError)


def test_delay_has_bounded_jitter():
    policy = RetryPolicy(base_delay=0.3, max_delay=5.0, rng=random.Random(1))
    for attempt in range(8):
        cap = min(5.0, 0.3 * 2 ** attempt)
        for _ in range(20):
            assert 0.5 * cap <= policy.delay(attempt) <= cap


def test_succeeds_after_transient_failures():
    sleeps: list[float] = []

    async def record_sleep(seconds):
        sleeps.append(seconds)

    call = FlakyCall([CompletionError("slow down", 429), CompletionError("oops", 503)])
    policy = RetryPolicy(retries=5, sleep=record_sleep, rng=random.Random(3))

    assert asyncio.run(policy.call(call, label="chunk#1")) == "ok"
    assert call.calls == 3
    assert len(sleeps) == 2


def test_fatal_status_is_not_retried():
    call = FlakyCall([CompletionError("bad request", 400)])
    policy = RetryPolicy(retries=5, sleep=no_sleep)

    with pytest.raises(FatalServiceError) as info:
        asyncio.run(policy.call(call, label="chunk#1"))
    assert info.value.status == 400
    assert call.calls == 1


def test_exhausted_retries_become_fatal_with_last_status():
    call = FlakyCall([CompletionError("busy", 503)] * 10)
    policy = RetryPolicy(retries=5, sleep=no_sleep)

    with pytest.raises(FatalServiceError) as info:
        asyncio.run(policy.call(call, label="chunk#4"))
    assert info.value.status == 503
    assert "giving up after 5 retries" in str(info.value)
    assert call.calls == 6


def test_on_retry_hook_sees_each_attempt():
    seen = []

    async def hook(attempt, error, delay):
        seen.append((attempt, error.status, delay > 0))

    call = FlakyCall([CompletionError("a", 429), CompletionError("b", None)])
    policy = RetryPolicy(retries=5, sleep=no_sleep, rng=random.Random(0))
    asyncio.run(policy.call(call, label="chunk#2", on_retry=hook))

    assert seen == [(1, 429, True), (2, None, True)]
