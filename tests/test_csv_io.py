import pytest

from csv_io import parse_rows, read_table, table_to_csv


def test_rows_are_strings_in_file_order():
    data = "id,text,score\n7,Hola,1.50\n8,,NA\n".encode("utf-8")
    headers, rows = parse_rows(data, "text")

    assert headers == ["id", "text", "score"]
    assert [r.id for r in rows] == [0, 1]
    assert rows[0].fields == {"id": "7", "text": "Hola", "score": "1.50"}
    assert rows[1].fields["score"] == "NA"
    assert rows[1].text == ""


def test_bom_and_quoted_commas():
    data = '\ufefftext,note\n"a, b",x\n'.encode("utf-8")
    headers, rows = parse_rows(data, "text")

    assert headers == ["text", "note"]
    assert rows[0].text == "a, b"


def test_missing_input_column_gives_empty_text():
    headers, rows = parse_rows(b"a,b\n1,2\n", "text")
    assert rows[0].text == ""
    assert rows[0].fields == {"a": "1", "b": "2"}


def test_max_rows_truncates():
    data = b"text\none\ntwo\nthree\n"
    _, rows = parse_rows(data, "text", max_rows=2)
    assert [r.text for r in rows] == ["one", "two"]


def test_empty_upload_is_rejected():
    with pytest.raises(ValueError):
        parse_rows(b"", "text")


def test_table_round_trip_keeps_unicode_and_blanks():
    headers = ["text", "result"]
    rows = [{"text": "Adiós", "result": "Goodbye"}, {"text": "x"}]
    assert read_table(table_to_csv(headers, rows)) == (
        headers,
        [{"text": "Adiós", "result": "Goodbye"}, {"text": "x", "result": ""}],
    )


def test_malformed_lines_are_skipped_with_warning(caplog):
    data = b"id,text\n0,uno\n1,dos,extra\n2,tres\n"
    with caplog.at_level("WARNING", logger="csv_io"):
        headers, rows = parse_rows(data, "text")

    assert [r.text for r in rows] == ["uno", "tres"]
    assert [r.id for r in rows] == [0, 1]
    assert "skipped 1 malformed line" in caplog.text
