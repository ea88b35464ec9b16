import asyncio

import pytest

from lease import LeaseManager


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_heartbeat_must_be_shorter_than_ttl(store):
    with pytest.raises(ValueError):
        LeaseManager(store, ttl=10, heartbeat_interval=10)


def test_second_owner_declines_live_lease(store):
    clock = FakeClock()
    first = LeaseManager(store, ttl=60, heartbeat_interval=10, clock=clock, owner="a")
    second = LeaseManager(store, ttl=60, heartbeat_interval=10, clock=clock, owner="b")

    async def scenario():
        assert await first.acquire("job")
        clock.now += 30
        assert not await second.acquire("job")
        lease = await store.load_lease("job")
        await first.release("job")
        return lease

    lease = asyncio.run(scenario())
    assert lease["owner"] == "a"


def test_expired_lease_can_be_reclaimed(store):
    clock = FakeClock()
    dead = LeaseManager(store, ttl=60, heartbeat_interval=10, clock=clock, owner="dead")
    fresh = LeaseManager(store, ttl=60, heartbeat_interval=10, clock=clock, owner="fresh")

    async def scenario():
        await store.save_lease("job", dead._record("job"))
        clock.now += 61
        acquired = await fresh.acquire("job")
        owner = (await store.load_lease("job"))["owner"]
        await fresh.release("job")
        return acquired, owner

    assert asyncio.run(scenario()) == (True, "fresh")


def test_release_deletes_record(store):
    manager = LeaseManager(store, ttl=60, heartbeat_interval=10)

    async def scenario():
        async with manager.held("job") as acquired:
            assert acquired
            assert await store.load_lease("job") is not None
        return await store.load_lease("job")

    assert asyncio.run(scenario()) is None


def test_held_yields_false_without_touching_other_lease(store):
    clock = FakeClock()
    holder = LeaseManager(store, ttl=60, heartbeat_interval=10, clock=clock, owner="holder")
    other = LeaseManager(store, ttl=60, heartbeat_interval=10, clock=clock, owner="other")

    async def scenario():
        await store.save_lease("job", holder._record("job"))
        async with other.held("job") as acquired:
            assert not acquired
        return await store.load_lease("job")

    assert asyncio.run(scenario())["owner"] == "holder"


def test_heartbeat_refreshes_timestamp(store):
    manager = LeaseManager(store, ttl=1.0, heartbeat_interval=0.02)

    async def scenario():
        assert await manager.acquire("job")
        first_ts = (await store.load_lease("job"))["ts"]
        await asyncio.sleep(0.15)
        later_ts = (await store.load_lease("job"))["ts"]
        await manager.release("job")
        return first_ts, later_ts

    first_ts, later_ts = asyncio.run(scenario())
    assert later_ts > first_ts


def test_release_survives_store_failure(store):
    manager = LeaseManager(store, ttl=60, heartbeat_interval=10)

    async def broken_delete(job_id):
        raise RuntimeError("store down")

    async def scenario():
        assert await manager.acquire("job")
        store.delete_lease = broken_delete
        await manager.release("job")

    asyncio.run(scenario())


def test_simultaneous_acquires_admit_exactly_one(store):
    first = LeaseManager(store, ttl=60, heartbeat_interval=10, settle=0.05, owner="a")
    second = LeaseManager(store, ttl=60, heartbeat_interval=10, settle=0.05, owner="b")

    async def scenario():
        results = await asyncio.gather(first.acquire("job"), second.acquire("job"))
        owner = (await store.load_lease("job"))["owner"]
        for manager, acquired in zip((first, second), results):
            if acquired:
                await manager.release("job")
        return results, owner

    results, owner = asyncio.run(scenario())
    assert sorted(results) == [False, True]
    assert owner == ("a" if results[0] else "b")


def test_release_waits_for_in_flight_renewal(store):
    manager = LeaseManager(store, ttl=60, heartbeat_interval=0.02, settle=0)
    original_save = store.save_lease
    saves = 0

    async def slow_renewal(job_id, record):
        nonlocal saves
        saves += 1
        if saves > 1:
            await asyncio.sleep(0.1)
        await original_save(job_id, record)

    store.save_lease = slow_renewal

    async def scenario():
        assert await manager.acquire("job")
        await asyncio.sleep(0.05)
        await manager.release("job")
        right_after = await store.load_lease("job")
        await asyncio.sleep(0.15)
        return right_after, await store.load_lease("job")

    right_after, later = asyncio.run(scenario())
    assert saves >= 2
    assert right_after is None
    assert later is None
