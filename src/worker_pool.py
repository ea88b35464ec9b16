"""
worker_pool.py

Bounded pool of asyncio workers pulling chunk indices from a shared cursor.

    cursor = [3, 4, 7, 8, 9]          pending chunk indices, in order
    worker 1 ─ claim 3 ─ claim 7 ─ …
    worker 2 ─ claim 4 ─ claim 8 ─ …

claim() is synchronous, so no two workers can take the same index under a
single event loop. A worker exits when the cursor is exhausted. The first
exception raised by a handler closes the cursor: no new index is handed out,
handlers already in flight run to completion (their store writes land before
the caller sees the error), and then the first exception is re-raised.
Cancelling run_worker_pool itself still cancels every worker.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Iterable, Optional

logger = logging.getLogger(__name__)


class ChunkCursor:
    def __init__(self, indices: Iterable[int]):
        self._pending = list(indices)
        self._next = 0
        self._closed = False

    def claim(self) -> Optional[int]:
        if self._closed or self._next >= len(self._pending):
            return None
        index = self._pending[self._next]
        self._next += 1
        return index

    def close(self) -> None:
        self._closed = True

    @property
    def remaining(self) -> int:
        return 0 if self._closed else len(self._pending) - self._next


async def run_worker_pool(
    pending: list[int],
    concurrency: int,
    handler: Callable[[int], Awaitable[None]],
) -> None:
    if not pending:
        return

    cursor = ChunkCursor(pending)
    worker_count = max(1, min(concurrency, len(pending)))
    failures: list[Exception] = []

    async def worker(worker_no: int) -> None:
        while True:
            index = cursor.claim()
            if index is None:
                return
            try:
                await handler(index)
            except Exception as exc:
                if not failures:
                    logger.warning(f"Worker {worker_no}: chunk index {index} failed, draining in-flight chunks.")
                failures.append(exc)
                cursor.close()
                return

    tasks = [asyncio.create_task(worker(n)) for n in range(worker_count)]
    logger.info(f"Worker pool started: {worker_count} worker(s), {len(pending)} chunk(s).")

    try:
        await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise

    if failures:
        raise failures[0]
