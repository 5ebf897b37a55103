import struct

import pytest

from datasheet_reader import COLUMN_COUNT_OFFSET, COLUMN_HEADERS_START, ROW_COUNT_OFFSET


def build_datasheet(columns, rows, pool_tail=b""):
    """
    Assemble a datasheet buffer.

    columns: list of (text, type_tag); rows: list of lists of raw values
    (str/None for tag 1, float for tag 2, int/bool otherwise).
    """
    pool = bytearray(b"\x00")
    offsets = {}

    def intern(text):
        if text is None:
            return 0
        if text not in offsets:
            offsets[text] = len(pool)
            pool.extend(text.encode("utf-8") + b"\x00")
        return offsets[text]

    header = bytearray(COLUMN_HEADERS_START)
    struct.pack_into("<i", header, COLUMN_COUNT_OFFSET, len(columns))
    struct.pack_into("<i", header, ROW_COUNT_OFFSET, len(rows))

    body = bytearray()
    for i, (text, tag) in enumerate(columns):
        body += struct.pack("<IIi", 0xC0FFEE00 + i, intern(text), tag)

    for row in rows:
        for (_text, tag), value in zip(columns, row):
            if tag == 1:
                payload = struct.pack("<I", intern(value))
            elif tag == 2:
                payload = struct.pack("<f", value)
            else:
                payload = struct.pack("<i", int(value))
            body += struct.pack("<I", 0xFFFFFFFF) + payload

    return bytes(header + body + pool + pool_tail)


@pytest.fixture
def sample_buffer():
    return build_datasheet([("Name", 1), ("Score", 2)], [["Ann", 3.5]])
