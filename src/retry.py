"""
retry.py

Bounded exponential backoff with jitter around flaky remote calls.

    retryable:  429, 5xx, no status (network / timeout)
    fatal:      every other status

    delay(attempt) = min(max_delay, base_delay * 2**attempt) * U(0.5, 1.0)

RetryPolicy.call() runs any coroutine factory under the policy and always
finishes with either the call's result or a FatalServiceError carrying the
last observed status and message. RetryableCompletionClient applies it to
CompletionClient.complete().
"""

import asyncio
import logging
import random
from typing import Awaitable, Callable, Optional

from config import AI_MAX_RETRIES, RETRY_BASE_DELAY, RETRY_MAX_DELAY
from errors import CompletionError, FatalServiceError, TransientServiceError
from models import Chunk, JobConfig

logger = logging.getLogger(__name__)

# on_retry(attempt, error, delay_seconds): awaited before each backoff sleep.
RetryHook = Callable[[int, CompletionError, float], Awaitable[None]]


def is_retryable_status(status: Optional[int]) -> bool:
    return status is None or status == 429 or 500 <= status < 600


def classify(error: CompletionError) -> CompletionError:
    """Re-type a raw CompletionError as transient or fatal (preserving status)."""
    if isinstance(error, (TransientServiceError, FatalServiceError)):
        return error
    cls = TransientServiceError if is_retryable_status(error.status) else FatalServiceError
    return cls(str(error), status=error.status)


class RetryPolicy:
    def __init__(
        self,
        retries: int = AI_MAX_RETRIES,
        base_delay: float = RETRY_BASE_DELAY,
        max_delay: float = RETRY_MAX_DELAY,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ):
        self.retries = retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._sleep = sleep
        self._rng = rng or random.Random()

    def delay(self, attempt: int) -> float:
        return min(self.max_delay, self.base_delay * (2 ** attempt)) * self._rng.uniform(0.5, 1.0)

    async def call(
        self,
        func: Callable[[], Awaitable],
        label: str = "",
        on_retry: Optional[RetryHook] = None,
    ):
        attempt = 0
        while True:
            try:
                return await func()
            except CompletionError as exc:
                error = classify(exc)

                if isinstance(error, FatalServiceError):
                    logger.error(f"{label}: fatal {error.status or 'error'} → {error}")
                    raise error from exc

                if attempt >= self.retries:
                    logger.error(f"{label}: giving up after {attempt} retries → {error}")
                    raise FatalServiceError(
                        f"{label}: giving up after {attempt} retries → {error}",
                        status=error.status,
                    ) from exc

                backoff = self.delay(attempt)
                logger.warning(
                    f"{label}: {error.status or 'err'} → backoff {backoff * 1000:.0f}ms "
                    f"(retry {attempt + 1}/{self.retries})"
                )
                if on_retry is not None:
                    await on_retry(attempt + 1, error, backoff)
                await self._sleep(backoff)
                attempt += 1


class RetryableCompletionClient:
    """CompletionClient.complete() under a RetryPolicy."""

    def __init__(self, client, policy: Optional[RetryPolicy] = None):
        self.client = client
        self.policy = policy or RetryPolicy()

    async def complete(
        self,
        job: JobConfig,
        chunk: Chunk,
        on_retry: Optional[RetryHook] = None,
    ) -> str:
        return await self.policy.call(
            lambda: self.client.complete(job, chunk),
            label=f"chunk#{chunk.index + 1}",
            on_retry=on_retry,
        )
