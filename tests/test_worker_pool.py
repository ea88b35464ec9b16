import asyncio

import pytest

from worker_pool import ChunkCursor, run_worker_pool


def test_cursor_hands_out_each_index_once():
    cursor = ChunkCursor([4, 7, 9])
    assert [cursor.claim(), cursor.claim(), cursor.claim(), cursor.claim()] == [4, 7, 9, None]
    assert cursor.remaining == 0


def test_every_pending_chunk_handled_once_within_bound():
    handled: list[int] = []
    in_flight = 0
    peak = 0

    async def handler(index: int) -> None:
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.001 * (index % 3))
        handled.append(index)
        in_flight -= 1

    pending = [i for i in range(20) if i not in (2, 5)]
    asyncio.run(run_worker_pool(pending, 4, handler))

    assert sorted(handled) == pending
    assert 1 < peak <= 4


def test_first_error_stops_handing_out_chunks():
    started: list[int] = []

    async def handler(index: int) -> None:
        started.append(index)
        if index == 1:
            raise RuntimeError("chunk 1 exploded")
        await asyncio.sleep(0.05)

    with pytest.raises(RuntimeError, match="chunk 1 exploded"):
        asyncio.run(run_worker_pool(list(range(50)), 3, handler))

    assert sorted(started) == [0, 1]


def test_in_flight_chunks_finish_before_error_surfaces():
    finished: list[int] = []

    async def handler(index: int) -> None:
        if index == 1:
            await asyncio.sleep(0.01)
            raise RuntimeError("forbidden")
        await asyncio.sleep(0.1)
        finished.append(index)

    with pytest.raises(RuntimeError, match="forbidden"):
        asyncio.run(run_worker_pool([0, 1, 2, 3], 2, handler))

    assert finished == [0]


def test_closed_cursor_hands_out_nothing():
    cursor = ChunkCursor([1, 2, 3])
    assert cursor.claim() == 1
    cursor.close()
    assert cursor.claim() is None
    assert cursor.remaining == 0



def test_nothing_pending_is_a_no_op():
    async def handler(index: int) -> None:
        raise AssertionError("should not be called")

    asyncio.run(run_worker_pool([], 8, handler))
