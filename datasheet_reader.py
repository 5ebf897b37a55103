#!/usr/bin/env python3
"""
datasheet_reader.py

Decode ".datasheet" binary tables and re-encode them as CSV or JSON text.

Usage:
  Convert every datasheet under a directory to CSV (written alongside):
    datasheet-reader csv path/to/datasheets

  Convert a single file to JSON into a separate output tree:
    datasheet-reader json path/to/file.datasheet -o out/

File layout (all integers little-endian):
  [0x44]        int32   column count
  [0x48]        int32   row count
  [0x5c]        column headers, 12 bytes each:
                  hash (unused) | string pool offset | type tag
  [cells]       row-major cell matrix, 8 bytes per cell:
                  hash (unused) | payload
  [strings]     string pool, null-terminated UTF-8

"""

import argparse
import enum
import json
import logging
import math
import struct
import sys
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Union

logger = logging.getLogger(__name__)

# Fixed header offsets
COLUMN_COUNT_OFFSET = 0x44
ROW_COUNT_OFFSET = 0x48
COLUMN_HEADERS_START = 0x5C

# Record sizes
HEADER_RECORD_SIZE = 12
CELL_RECORD_SIZE = 8

# Shortest buffer that still holds both counts
MIN_HEADER_SIZE = ROW_COUNT_OFFSET + 4

DATASHEET_SUFFIX = ".datasheet"


# -----------------------------
# Errors
# -----------------------------
class DecodeError(ValueError):
    """A datasheet buffer could not be decoded.

    Carries the byte offset the failure was detected at and, once known,
    the identity of the file the buffer came from.
    """

    def __init__(self, message: str, offset: Optional[int] = None, source=None):
        self.message = message
        self.offset = offset
        self.source = source
        super().__init__(message)

    @property
    def kind(self) -> str:
        return type(self).__name__

    def __str__(self):
        text = f"{self.kind}: {self.message}"
        if self.offset is not None:
            text += f" (at {self.offset:#x})"
        if self.source is not None:
            text = f"{self.source}: {text}"
        return text


class TruncatedHeader(DecodeError):
    pass


class TruncatedBody(DecodeError):
    pass


class UnknownColumnType(DecodeError):
    def __init__(self, tag: int, column: int, offset: Optional[int] = None, source=None):
        self.tag = tag
        self.column = column
        super().__init__(f"column {column} has unknown type tag {tag}", offset, source)


class UnterminatedString(DecodeError):
    pass


class NegativeCount(DecodeError):
    pass


# -----------------------------
# Data model
# -----------------------------
class CellType(enum.IntEnum):
    STRING = 1
    FLOAT = 2
    BOOLEAN = 3


CellValue = Union[Optional[str], float, bool]


@dataclass(frozen=True)
class Column:
    text: Optional[str]
    type: CellType


@dataclass
class Table:
    columns: List[Column] = field(default_factory=list)
    rows: List[List[CellValue]] = field(default_factory=list)

    @property
    def column_count(self) -> int:
        return len(self.columns)

    @property
    def row_count(self) -> int:
        return len(self.rows)


@dataclass(frozen=True)
class Layout:
    """Absolute region offsets derived from the two header counts."""

    column_count: int
    row_count: int
    cell_matrix_start: int
    row_stride: int
    string_pool_start: int

    def header_offset(self, col: int) -> int:
        return COLUMN_HEADERS_START + col * HEADER_RECORD_SIZE

    def cell_offset(self, row: int, col: int) -> int:
        return self.cell_matrix_start + row * self.row_stride + col * CELL_RECORD_SIZE


def compute_layout(column_count: int, row_count: int) -> Layout:
    cell_matrix_start = COLUMN_HEADERS_START + column_count * HEADER_RECORD_SIZE
    row_stride = CELL_RECORD_SIZE * column_count
    string_pool_start = cell_matrix_start + row_count * column_count * CELL_RECORD_SIZE
    return Layout(
        column_count=column_count,
        row_count=row_count,
        cell_matrix_start=cell_matrix_start,
        row_stride=row_stride,
        string_pool_start=string_pool_start,
    )


# -----------------------------
# Binary helpers
# -----------------------------
def require_region(data: bytes, start: int, end: int, what: str) -> None:
    if end > len(data):
        raise TruncatedBody(
            f"{what} spans {start:#x}..{end:#x} but buffer is only {len(data):#x} bytes",
            offset=start,
        )


def read_i32le(data: bytes, off: int) -> int:
    return struct.unpack_from("<i", data, off)[0]


def read_counts(data: bytes):
    if len(data) < MIN_HEADER_SIZE:
        raise TruncatedHeader(
            f"need {MIN_HEADER_SIZE:#x} bytes for the file header, got {len(data):#x}",
            offset=len(data),
        )

    column_count = read_i32le(data, COLUMN_COUNT_OFFSET)
    row_count = read_i32le(data, ROW_COUNT_OFFSET)

    if column_count < 0:
        raise NegativeCount(f"column count is {column_count}", offset=COLUMN_COUNT_OFFSET)
    if row_count < 0:
        raise NegativeCount(f"row count is {row_count}", offset=ROW_COUNT_OFFSET)
    return column_count, row_count


def read_cstring(data: bytes, pool_start: int, offset: int) -> Optional[str]:
    """
    Read the null-terminated string at pool_start + offset.
    An immediate terminator means the value is absent and yields None.
    """
    start = pool_start + offset
    if start >= len(data):
        raise TruncatedBody(
            f"string offset {offset:#x} points past the end of the buffer", offset=start
        )

    end = data.find(b"\x00", start)
    if end < 0:
        raise UnterminatedString(
            f"no null terminator after string offset {offset:#x}", offset=start
        )
    if end == start:
        return None
    return data[start:end].decode("utf-8", errors="replace")


def parse_cell_type(tag: int, column: int, offset: int) -> CellType:
    try:
        return CellType(tag)
    except ValueError:
        raise UnknownColumnType(tag, column, offset=offset) from None


def interpret_cell(data: bytes, layout: Layout, payload: int, cell_type: CellType) -> CellValue:
    """Reinterpret the 4 payload bytes at `payload` as the column's type."""
    if cell_type is CellType.STRING:
        offset = struct.unpack_from("<I", data, payload)[0]
        return read_cstring(data, layout.string_pool_start, offset)
    if cell_type is CellType.FLOAT:
        return struct.unpack_from("<f", data, payload)[0]
    if cell_type is CellType.BOOLEAN:
        return read_i32le(data, payload) != 0
    raise UnknownColumnType(int(cell_type), -1, offset=payload)


# -----------------------------
# Decoder
# -----------------------------
def decode_columns(data: bytes, layout: Layout) -> List[Column]:
    columns = []
    for i in range(layout.column_count):
        off = layout.header_offset(i)
        # bytes 0..3 are a hash
        (text_offset,) = struct.unpack_from("<I", data, off + 4)
        tag = read_i32le(data, off + 8)
        cell_type = parse_cell_type(tag, i, off + 8)
        text = read_cstring(data, layout.string_pool_start, text_offset)
        columns.append(Column(text=text, type=cell_type))
    return columns


def decode_rows(data: bytes, layout: Layout, columns: List[Column]) -> List[List[CellValue]]:
    rows = []
    for r in range(layout.row_count):
        cells = []
        for c, column in enumerate(columns):
            # first 4 bytes of the cell are unused
            payload = layout.cell_offset(r, c) + 4
            cells.append(interpret_cell(data, layout, payload, column.type))
        rows.append(cells)
    return rows


def decode(data: bytes, source=None) -> Table:
    """
    Decode a whole datasheet buffer into a Table.

    Raises a DecodeError subclass on malformed input; `source` is attached
    to the error so callers can report which file failed.
    """
    data = bytes(data)
    try:
        column_count, row_count = read_counts(data)
        layout = compute_layout(column_count, row_count)
        logger.debug(
            "%s: %d columns, %d rows, cells at %#x, strings at %#x",
            source if source is not None else "<buffer>",
            column_count,
            row_count,
            layout.cell_matrix_start,
            layout.string_pool_start,
        )

        require_region(data, COLUMN_HEADERS_START, layout.cell_matrix_start, "column headers")
        columns = decode_columns(data, layout)

        require_region(data, layout.cell_matrix_start, layout.string_pool_start, "cell matrix")
        rows = decode_rows(data, layout, columns)
    except DecodeError as e:
        if e.source is None:
            e.source = source
        raise

    return Table(columns=columns, rows=rows)


# -----------------------------
# Encoders
# -----------------------------
class Format(enum.Enum):
    CSV = "csv"
    JSON = "json"

    @property
    def suffix(self) -> str:
        return "." + self.value

    @classmethod
    def parse(cls, name: str) -> "Format":
        try:
            return cls(name.strip().lower())
        except ValueError:
            supported = ", ".join(f.value for f in cls)
            raise ValueError(f"Invalid output format '{name}'. Supported: {supported}") from None


# Largest magnitude still printed in plain integer form
_PLAIN_INTEGER_LIMIT = 1e21


def _is_plain_integer(value: float) -> bool:
    return math.isfinite(value) and value.is_integer() and abs(value) < _PLAIN_INTEGER_LIMIT


def format_number(value: float) -> str:
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "Infinity" if value > 0 else "-Infinity"
    if _is_plain_integer(value):
        return str(int(value))
    return repr(value)


def _csv_field(value: CellValue) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        return format_number(value)
    if "," in value:
        return f'"{value}"'
    return value


def to_csv(table: Table) -> str:
    lines = [",".join(_csv_field(column.text) for column in table.columns)]
    for row in table.rows:
        lines.append(",".join(_csv_field(value) for value in row))
    return "\n".join(lines)


def _json_value(value: CellValue):
    if isinstance(value, float):
        if not math.isfinite(value):
            return None
        if _is_plain_integer(value):
            return int(value)
    return value


def to_json(table: Table) -> str:
    keys = [column.text if column.text is not None else "null" for column in table.columns]

    records = []
    for row in table.rows:
        record = {}
        for key, value in zip(keys, row):
            if value is not None:
                # duplicate column names: the later column wins
                record[key] = _json_value(value)
        records.append(record)

    return json.dumps(records, separators=(",", ":"), ensure_ascii=False)


def encode(table: Table, fmt: Format) -> bytes:
    if fmt is Format.CSV:
        text = to_csv(table)
    elif fmt is Format.JSON:
        text = to_json(table)
    else:
        raise ValueError(f"Unsupported format: {fmt!r}")
    return text.encode("utf-8")


# -----------------------------
# Files
# -----------------------------
def find_datasheets(path: Path) -> List[Path]:
    path = Path(path)
    if path.is_file():
        return [path]
    return sorted(p for p in path.rglob("*" + DATASHEET_SUFFIX) if p.is_file())


def output_path_for(
    source: Path,
    fmt: Format,
    root: Optional[Path] = None,
    output_dir: Optional[Path] = None,
) -> Path:
    source = Path(source)
    target = source.with_suffix(fmt.suffix)
    if output_dir is None:
        return target

    if root is not None and Path(root).is_dir():
        relative = target.relative_to(root)
    else:
        relative = Path(target.name)
    return Path(output_dir) / relative


def convert_file(source: Path, fmt: Format, destination: Path, remove_source: bool = False) -> Table:
    data = Path(source).read_bytes()
    table = decode(data, source=source)

    destination = Path(destination)
    destination.parent.mkdir(parents=True, exist_ok=True)
    destination.write_bytes(encode(table, fmt))

    if remove_source:
        Path(source).unlink()
    return table


@dataclass
class ConversionReport:
    converted: List[Path] = field(default_factory=list)
    failed: List[Path] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return bool(self.converted) and not self.failed


def _convert_one(source: Path, fmt: Format, destination: Path, remove_source: bool) -> bool:
    try:
        table = convert_file(source, fmt, destination, remove_source=remove_source)
    except DecodeError as e:
        logger.error("Skipping %s: %s", source, e)
        return False
    except OSError as e:
        logger.error("Could not convert %s: %s", source, e)
        return False

    print(f"Converted {source} → {destination} ({table.row_count} rows)")
    return True


def convert_all(
    paths: List[Path],
    fmt: Format,
    root: Optional[Path] = None,
    output_dir: Optional[Path] = None,
    remove_source: bool = False,
    workers: int = 1,
) -> ConversionReport:
    """
    Convert every datasheet in `paths`. A file that fails to decode is
    logged and skipped; the rest of the batch still runs.
    """
    jobs = [(p, output_path_for(p, fmt, root=root, output_dir=output_dir)) for p in paths]

    if workers > 1:
        with ThreadPoolExecutor(max_workers=workers) as pool:
            results = list(pool.map(lambda job: _convert_one(job[0], fmt, job[1], remove_source), jobs))
    else:
        results = [_convert_one(src, fmt, dst, remove_source) for src, dst in jobs]

    report = ConversionReport()
    for (src, _dst), ok in zip(jobs, results):
        (report.converted if ok else report.failed).append(src)
    return report


# -----------------------------
# CLI
# -----------------------------
def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Convert .datasheet files to CSV or JSON")
    parser.add_argument("format", help="Output format: csv or json")
    parser.add_argument("path", help="A .datasheet file or a directory to search recursively")
    parser.add_argument("-o", "--output-dir", help="Write outputs under this directory instead of alongside")
    parser.add_argument("--remove-source", action="store_true", help="Delete each datasheet after converting it")
    parser.add_argument("-j", "--workers", type=int, default=1, help="Number of files to convert in parallel")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )

    try:
        fmt = Format.parse(args.format)
    except ValueError as e:
        parser.error(str(e))
    if args.workers < 1:
        parser.error("--workers must be at least 1")

    root = Path(args.path.replace('"', ""))
    if not root.exists():
        print(f"Error: {root} does not exist.")
        return 1

    paths = find_datasheets(root)
    if not paths:
        print(f"Error: no {DATASHEET_SUFFIX} files found under {root}.")
        return 1

    start = time.monotonic()
    report = convert_all(
        paths,
        fmt,
        root=root,
        output_dir=Path(args.output_dir) if args.output_dir else None,
        remove_source=args.remove_source,
        workers=args.workers,
    )
    elapsed_ms = int((time.monotonic() - start) * 1000)

    print(
        f"Converted {len(report.converted)} of {len(paths)} datasheets in {elapsed_ms}ms"
        + (f" ({len(report.failed)} failed)" if report.failed else "")
    )
    return 0 if report.ok else 1


if __name__ == "__main__":
    sys.exit(main())
