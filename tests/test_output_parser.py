import json

import pytest

from errors import MalformedOutputError
from models import Chunk, NamedColumns, RawText, Row
from output_parser import decode_results, parse_chunk_output, stringify


def _chunk(index=2, ids=(6, 7, 8)):
    return Chunk(index=index, rows=tuple(Row(id=i, fields={}, text=f"t{i}") for i in ids))


def test_results_object_with_both_shapes():
    text = json.dumps({"results": [
        {"id": 6, "result": "six"},
        {"id": 7, "cols": {"lang": "es", "score": 3}},
    ]})
    assert decode_results(text) == [
        RawText(row_id=6, text="six"),
        NamedColumns(row_id=7, columns={"lang": "es", "score": "3"}),
    ]


def test_bare_list_and_code_fences():
    text = "```json\n" + json.dumps([{"id": "6", "result": "x"}]) + "\n```"
    assert decode_results(text) == [RawText(row_id=6, text="x")]


def test_single_object_has_no_id():
    assert decode_results('{"result": "only"}') == [RawText(row_id=None, text="only")]
    assert decode_results('{"cols": {"a": "b"}}') == [NamedColumns(row_id=None, columns={"a": "b"})]


def test_items_without_payload_are_dropped():
    text = json.dumps({"results": [{"id": 1}, {"id": 2, "cols": {}}, "junk", {"id": 3, "result": None}]})
    assert decode_results(text) == [RawText(row_id=3, text="")]


def test_unusable_ids_become_none():
    text = json.dumps([{"id": True, "result": "a"}, {"id": "x7", "result": "b"}, {"id": 4.0, "result": "c"}])
    assert [r.row_id for r in decode_results(text)] == [None, None, 4]


@pytest.mark.parametrize("bad", ["not json", "42", '{"rows": []}', '{"cols": {}}'])
def test_strict_decode_rejects_other_shapes(bad):
    with pytest.raises(MalformedOutputError):
        decode_results(bad)


def test_lenient_parse_falls_back_to_raw_text_on_first_row():
    assert parse_chunk_output("Sorry, I can't do that", _chunk()) == [
        RawText(row_id=6, text="Sorry, I can't do that")
    ]


def test_lenient_parse_of_empty_text():
    assert parse_chunk_output("   ", _chunk()) == []


def test_stringify():
    assert stringify(None) == ""
    assert stringify(5) == "5"
    assert stringify({"k": "ñ"}) == '{"k": "ñ"}'
    assert stringify(["a", 1]) == '["a", 1]'
