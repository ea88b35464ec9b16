import asyncio

from models import STATUS_FAILED, STATUS_RUNNING
from status_reporter import JobStatus, StatusDelta, StatusReporter, next_status


def test_counters_never_decrease():
    prev = JobStatus(job_id="j", completed_chunks=5, processed_rows=50, total_chunks=10)
    late = next_status(prev, StatusDelta(completed_chunks=3, processed_rows=30), now="t1")

    assert late.completed_chunks == 5
    assert late.processed_rows == 50
    assert late.total_chunks == 10

    ahead = next_status(late, StatusDelta(completed_chunks=6, processed_rows=60), now="t2")
    assert (ahead.completed_chunks, ahead.processed_rows) == (6, 60)


def test_plain_fields_overwrite_and_unset_fields_keep():
    prev = JobStatus(job_id="j", status=STATUS_RUNNING, last_error="old")
    nxt = next_status(prev, StatusDelta(status=STATUS_FAILED), now="t")

    assert nxt.status == STATUS_FAILED
    assert nxt.last_error == "old"
    assert nxt.updated_at == "t"


def test_event_log_is_capped_to_newest():
    status = JobStatus(job_id="j")
    for i in range(8):
        status = next_status(status, StatusDelta(message=f"m{i}"), now=f"t{i}", event_limit=3)

    assert status.events == [
        {"ts": "t5", "msg": "m5"},
        {"ts": "t6", "msg": "m6"},
        {"ts": "t7", "msg": "m7"},
    ]


def test_next_status_does_not_mutate_prev():
    prev = JobStatus(job_id="j")
    next_status(prev, StatusDelta(completed_chunks=2, message="x"), now="t")
    assert prev.completed_chunks == 0
    assert prev.events == []


def test_round_trip_through_dict_ignores_unknown_keys():
    data = JobStatus(job_id="j", completed_chunks=2).to_dict()
    data["something_new"] = 1
    assert JobStatus.from_dict(data).completed_chunks == 2


def test_reporter_out_of_order_updates_stay_monotonic(store):
    async def scenario():
        reporter = StatusReporter(store, "job-1")
        await asyncio.gather(*[
            reporter.update(completed_chunks=n, processed_rows=n * 10, message=f"chunk {n}")
            for n in [3, 1, 5, 2, 4]
        ])
        return await reporter.snapshot()

    final = asyncio.run(scenario())
    assert final.completed_chunks == 5
    assert final.processed_rows == 50
    assert len(final.events) == 5
