import pytest

from chunk_planner import chunk_bounds, clamp_chunk_size, count_chunks, plan_chunks, processed_rows
from models import Row


def _rows(n: int) -> list[Row]:
    return [Row(id=i, fields={"text": f"t{i}"}, text=f"t{i}") for i in range(n)]


@pytest.mark.parametrize("n", [0, 1, 2, 5, 9, 10, 11, 23])
@pytest.mark.parametrize("k", [1, 2, 3, 7, 10])
def test_chunks_partition_row_ids(n, k):
    chunks = plan_chunks(_rows(n), k)

    assert len(chunks) == count_chunks(n, k) == -(-n // k)
    ids = [row.id for chunk in chunks for row in chunk.rows]
    assert ids == list(range(n))
    for chunk in chunks:
        start, end = chunk_bounds(chunk.index, k, n)
        assert [r.id for r in chunk.rows] == list(range(start, end))
        assert 1 <= len(chunk.rows) <= k


def test_chunk_bounds_clip_the_last_chunk():
    assert chunk_bounds(0, 3, 7) == (0, 3)
    assert chunk_bounds(2, 3, 7) == (6, 7)


def test_only_last_chunk_is_short():
    chunks = plan_chunks(_rows(7), 3)
    assert [len(c.rows) for c in chunks] == [3, 3, 1]
    assert [c.index for c in chunks] == [0, 1, 2]


def test_planning_is_deterministic():
    rows = _rows(12)
    assert plan_chunks(rows, 5) == plan_chunks(rows, 5)


@pytest.mark.parametrize("bad", [0, -1, 1001])
def test_out_of_range_chunk_size_rejected(bad):
    with pytest.raises(ValueError):
        plan_chunks(_rows(3), bad)


def test_clamp_chunk_size():
    assert clamp_chunk_size(0) == 1
    assert clamp_chunk_size(5000) == 1000
    assert clamp_chunk_size("25") == 25
    assert clamp_chunk_size("abc") == 1


def test_processed_rows_caps_at_row_count():
    assert processed_rows(0, 10, 25) == 0
    assert processed_rows(2, 10, 25) == 20
    assert processed_rows(3, 10, 25) == 25


def test_chunk_payload_shape():
    chunk = plan_chunks(_rows(2), 2)[0]
    assert chunk.first_id == 0
    assert chunk.payload() == {"rows": [{"id": 0, "text": "t0"}, {"id": 1, "text": "t1"}]}
