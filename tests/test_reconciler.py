from models import ChunkResult, NamedColumns, RawText, Row
from reconciler import reconcile


def _rows(n: int) -> list[Row]:
    return [Row(id=i, fields={"id": str(i), "text": f"t{i}"}, text=f"t{i}") for i in range(n)]


HEADERS = ["id", "text"]


def test_named_column_lands_on_its_row_only():
    partials = {1: ChunkResult(chunk_index=1, results=[NamedColumns(row_id=3, columns={"lang": "es"})])}
    table = reconcile(HEADERS, _rows(6), partials, chunk_size=3, total_chunks=2)

    assert table.headers == ["id", "text", "lang"]
    assert [r["lang"] for r in table.rows] == ["", "", "", "es", "", ""]


def test_positional_fallback_only_without_id():
    partials = {
        1: ChunkResult(chunk_index=1, results=[RawText(row_id=None, text="a"), RawText(row_id=None, text="b")]),
    }
    table = reconcile(HEADERS, _rows(4), partials, chunk_size=2, total_chunks=2)

    assert [r["result"] for r in table.rows] == ["", "", "a", "b"]


def test_out_of_range_id_is_dropped_not_routed_by_position():
    partials = {0: ChunkResult(chunk_index=0, results=[RawText(row_id=1, text="B"), RawText(row_id=7, text="X")])}
    table = reconcile(["text"], _rows(2), partials, chunk_size=2, total_chunks=1)

    assert [r["result"] for r in table.rows] == ["", "B"]


def test_targets_outside_the_table_are_ignored():
    partials = {1: ChunkResult(chunk_index=1, results=[RawText(row_id=None, text="x")] * 3)}
    table = reconcile(HEADERS, _rows(3), partials, chunk_size=2, total_chunks=2)

    assert [r["result"] for r in table.rows] == ["", "", "x"]


def test_dynamic_columns_in_first_seen_order():
    partials = {
        0: ChunkResult(chunk_index=0, results=[NamedColumns(row_id=0, columns={"b": "1", "a": "2"})]),
        1: ChunkResult(chunk_index=1, results=[RawText(row_id=1, text="r"), NamedColumns(row_id=1, columns={"c": "3", "a": "4"})]),
    }
    table = reconcile(HEADERS, _rows(2), partials, chunk_size=1, total_chunks=2)

    assert table.headers == ["id", "text", "b", "a", "result", "c"]
    assert table.rows[1] == {"id": "1", "text": "t1", "b": "", "a": "4", "result": "r", "c": "3"}


def test_column_named_like_original_overwrites_in_place():
    partials = {0: ChunkResult(chunk_index=0, results=[NamedColumns(row_id=0, columns={"text": "rewritten"})])}
    table = reconcile(HEADERS, _rows(2), partials, chunk_size=2, total_chunks=1)

    assert table.headers == HEADERS
    assert [r["text"] for r in table.rows] == ["rewritten", "t1"]


def test_missing_partials_leave_rows_untouched():
    partials = {2: ChunkResult(chunk_index=2, results=[RawText(row_id=2, text="done")])}
    table = reconcile(HEADERS, _rows(3), partials, chunk_size=1, total_chunks=3)

    assert [r["result"] for r in table.rows] == ["", "", "done"]
    assert [r["id"] for r in table.rows] == ["0", "1", "2"]


def test_input_rows_are_not_mutated():
    rows = _rows(1)
    partials = {0: ChunkResult(chunk_index=0, results=[RawText(row_id=0, text="x")])}
    reconcile(HEADERS, rows, partials, chunk_size=1, total_chunks=1)
    assert rows[0].fields == {"id": "0", "text": "t0"}
