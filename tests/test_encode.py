import json
import struct

import pytest

from conftest import build_datasheet
from datasheet_reader import (
    CellType,
    Column,
    Format,
    Table,
    decode,
    encode,
    format_number,
    to_csv,
    to_json,
)


def test_sample_csv(sample_buffer):
    assert encode(decode(sample_buffer), Format.CSV) == b"Name,Score\nAnn,3.5"


def test_sample_json(sample_buffer):
    assert encode(decode(sample_buffer), Format.JSON) == b'[{"Name":"Ann","Score":3.5}]'


def test_absent_string_is_empty_field_and_omitted_key():
    table = decode(build_datasheet([("Name", 1), ("Note", 1)], [["Ann", None]]))
    assert to_csv(table) == "Name,Note\nAnn,"
    assert to_json(table) == '[{"Name":"Ann"}]'


def test_comma_quoting():
    table = Table(
        columns=[Column("a,b", CellType.STRING), Column("plain", CellType.STRING)],
        rows=[["x,y", "no comma"]],
    )
    assert to_csv(table) == '"a,b",plain\n"x,y",no comma'


def test_quotes_are_not_escaped():
    table = Table(columns=[Column("q", CellType.STRING)], rows=[['say "hi", ok']])
    assert to_csv(table).splitlines()[1] == '"say "hi", ok"'


def test_booleans_and_integral_floats_in_csv():
    table = Table(
        columns=[Column("on", CellType.BOOLEAN), Column("n", CellType.FLOAT)],
        rows=[[True, 3.0], [False, -0.5]],
    )
    assert to_csv(table) == "on,n\ntrue,3\nfalse,-0.5"


def test_absent_column_text():
    table = Table(columns=[Column(None, CellType.BOOLEAN)], rows=[[True]])
    assert to_csv(table) == "\ntrue"
    assert to_json(table) == '[{"null":true}]'


def test_duplicate_column_text_last_wins():
    table = Table(
        columns=[Column("id", CellType.STRING), Column("id", CellType.STRING)],
        rows=[["first", "second"], ["only", None]],
    )
    assert json.loads(to_json(table)) == [{"id": "second"}, {"id": "only"}]
    assert to_csv(table) == "id,id\nfirst,second\nonly,"


@pytest.mark.parametrize(
    "value,text",
    [
        (3.5, "3.5"),
        (2.0, "2"),
        (-0.0, "0"),
        (1e21, "1e+21"),
        (float("nan"), "NaN"),
        (float("inf"), "Infinity"),
        (float("-inf"), "-Infinity"),
    ],
)
def test_format_number(value, text):
    assert format_number(value) == text


def test_non_finite_json_values_are_null():
    table = Table(columns=[Column("f", CellType.FLOAT)], rows=[[float("nan")]])
    assert to_json(table) == '[{"f":null}]'


def test_json_round_trip_preserves_present_values():
    f32 = [struct.unpack("<f", struct.pack("<f", v))[0] for v in (0.1, 123.456, -7.0, 1e-3)]
    columns = [("name", 1), ("value", 2), ("flag", 3)]
    rows = [["row, one", f32[0], 1], [None, f32[1], 0], ["ünï", f32[2], 5], ["x", f32[3], 0]]
    table = decode(build_datasheet(columns, rows))

    parsed = json.loads(encode(table, Format.JSON).decode("utf-8"))
    assert len(parsed) == table.row_count
    for record, row in zip(parsed, table.rows):
        for column, value in zip(table.columns, row):
            if value is None:
                assert column.text not in record
            else:
                assert record[column.text] == value


def test_json_keeps_non_ascii():
    table = Table(columns=[Column("ü", CellType.STRING)], rows=[["ö"]])
    assert encode(table, Format.JSON) == '[{"ü":"ö"}]'.encode("utf-8")


def test_empty_rows():
    table = Table(columns=[Column("a", CellType.STRING)], rows=[])
    assert to_csv(table) == "a"
    assert to_json(table) == "[]"


@pytest.mark.parametrize("name,expected", [("csv", Format.CSV), ("JSON", Format.JSON), (" Csv ", Format.CSV)])
def test_format_parse(name, expected):
    assert Format.parse(name) is expected


def test_format_parse_rejects_unknown():
    with pytest.raises(ValueError, match="Supported: csv, json"):
        Format.parse("xml")
