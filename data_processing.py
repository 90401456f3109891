"""Parsing and reshaping of plant measurement CSV exports.

Exports carry three header rows (parameter ids, display names, units) followed
by timestamped data rows. The helpers here decode the raw bytes, read the
header convention, and reshape the readings into a long frame (one row per
timestamp/parameter/value) and finally a wide frame (one row per timestamp).
"""

from __future__ import annotations

import io
import os
import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

# Debug toggler: set TS_DEBUG=1 to enable verbose parse logs
DEBUG = os.getenv("TS_DEBUG", "0") == "1"


def dprint(*args, **kwargs):
    if DEBUG:
        print(*args, **kwargs)


# Each data source exports in a fixed encoding. CASS writes Shift_JIS, which is
# read through the Windows code page so vendor extensions decode as well.
DATA_SOURCE_ENCODINGS: Dict[str, str] = {
    "CASS": "cp932",
    "Chinami": "utf-8",
}
DATA_SOURCES: Tuple[str, ...] = tuple(DATA_SOURCE_ENCODINGS)

DELIMITER = ","
MISSING = "-"
TIMESTAMP_COLUMN = "timestamp"
TIMESTAMP_LABELS = {"", "timestamp", "time", "datetime"}
HEADER_ROWS = 3

TIMESTAMP_FORMATS: Tuple[str, ...] = (
    "%Y-%m-%d %H:%M:%S",
    "%Y/%m/%d %H:%M:%S",
    "%Y-%m-%d %H:%M:%S.%f",
    "%Y/%m/%d %H:%M:%S.%f",
    "%d/%m/%Y %H:%M:%S",
    "%m/%d/%Y %H:%M:%S",
)

LONG_COLUMNS = ["timestamp", "parameter_id", "parameter_name", "unit", "value"]

_BOM = "\ufeff"
_REPLACEMENT_CHAR = "\ufffd"
_NUMERIC_RE = re.compile(r"^[-+]?(?:\d+\.?\d*|\.\d+)(?:[eE][-+]?\d+)?$")
_DIGIT_RE = re.compile(r"\d")


class CsvImportError(ValueError):
    """Base class for problems that stop a CSV file from being imported."""


class DecodeError(CsvImportError):
    """Raised when the raw bytes do not decode to any usable text."""


class CsvStructureError(CsvImportError):
    """Raised when the header convention of an export is not met."""


class EmptyResultError(CsvImportError):
    """Raised when no usable measurement survives the conversion."""


# A classified data cell: float for numeric text, str for other text, None
# for blanks.
Cell = Union[float, str, None]


@dataclass(frozen=True)
class HeaderColumn:
    parameter_id: str
    parameter_name: str = MISSING
    unit: str = MISSING
    column: int = 0


@dataclass
class ParsedCsv:
    """Headers and raw rows of one export.

    ``rows`` holds the untouched timestamp text in ``timestamp`` and one
    column of classified cells per parameter id.
    """

    headers: List[HeaderColumn]
    rows: pd.DataFrame
    warnings: List[str] = field(default_factory=list)


def encoding_for_source(data_source: str) -> str:
    """Return the text encoding used by exports of ``data_source``."""

    encoding = DATA_SOURCE_ENCODINGS.get(data_source)
    if encoding is None:
        raise ValueError(
            f"Unknown data source {data_source!r}; expected one of {', '.join(DATA_SOURCES)}"
        )
    return encoding


def decode_bytes(raw: bytes, data_source: str) -> str:
    """Decode an export to text and drop a leading byte-order mark."""

    encoding = encoding_for_source(data_source)
    text = raw.decode(encoding, errors="replace")
    if raw and not text.strip(_REPLACEMENT_CHAR):
        raise DecodeError(f"Could not decode file contents as {encoding}")
    if text.startswith(_BOM):
        text = text[1:]
    dprint(f"[decode] {len(raw)} bytes as {encoding} -> {len(text)} chars")
    return text


def classify_cell(raw: object) -> Cell:
    """Return a float for numeric-looking text, the text itself otherwise.

    Blank cells classify as ``None``.
    """

    if raw is None or (isinstance(raw, float) and np.isnan(raw)):
        return None
    text = str(raw).strip()
    if not text:
        return None
    if _NUMERIC_RE.match(text):
        return float(text)
    return text


def _split_header_line(line: str) -> List[str]:
    return [cell.strip() for cell in line.split(DELIMITER)]


def _cell_or_missing(cells: Sequence[str], index: int) -> str:
    value = cells[index] if index < len(cells) else ""
    return value or MISSING


def _read_headers(
    ids: Sequence[str], names: Sequence[str], units: Sequence[str], warnings: List[str]
) -> List[HeaderColumn]:
    headers: List[HeaderColumn] = []
    for index in range(1, len(ids)):
        parameter_id = ids[index]
        if not parameter_id or parameter_id == MISSING:
            continue
        if parameter_id == TIMESTAMP_COLUMN:
            warnings.append(
                f"Column {index + 1} uses the reserved id '{TIMESTAMP_COLUMN}' and was ignored"
            )
            continue
        headers.append(
            HeaderColumn(
                parameter_id=parameter_id,
                parameter_name=_cell_or_missing(names, index),
                unit=_cell_or_missing(units, index),
                column=index,
            )
        )
    return headers


def _read_rows(
    lines: Sequence[str], headers: Sequence[HeaderColumn], width: int, warnings: List[str]
) -> pd.DataFrame:
    """Read data lines into classified cells keyed by parameter id.

    Data column ``n`` (counting from 1) belongs to the ``n``-th recognized
    header; columns past the last header are ignored. Short rows are padded
    with blanks, rows wider than the id row are truncated with a warning.
    """

    def _on_bad_line(fields: List[str]) -> List[str]:
        timestamp = fields[0].strip() if fields else ""
        warnings.append(
            f"Row '{timestamp}': {len(fields)} fields where {width} were expected; "
            "extra fields ignored"
        )
        return fields[:width]

    try:
        frame = pd.read_csv(
            io.StringIO("\n".join(lines)),
            engine="python",
            sep=DELIMITER,
            header=None,
            names=list(range(width)),
            index_col=False,
            on_bad_lines=_on_bad_line,
            dtype=str,
            keep_default_na=False,
            skip_blank_lines=True,
        )
    except pd.errors.ParserError as exc:
        raise CsvStructureError(f"Data rows could not be read: {exc}") from exc

    columns: Dict[str, pd.Series] = {
        TIMESTAMP_COLUMN: frame[0].fillna("").astype(str).str.strip()
    }
    for position, header in enumerate(headers, start=1):
        columns[header.parameter_id] = frame[position].map(classify_cell).astype(object)
    return pd.DataFrame(columns)


def parse_csv_text(text: str) -> ParsedCsv:
    """Parse the three-header-row export layout.

    Raises
    ------
    CsvStructureError
        When fewer than four non-blank lines exist or the first column is not
        a timestamp column.
    """

    lines = [line for line in text.splitlines() if line.strip()]
    if len(lines) < HEADER_ROWS + 1:
        raise CsvStructureError(
            "CSV layout is invalid: at least 4 lines are required "
            "(3 header rows and 1 data row)"
        )

    ids = _split_header_line(lines[0])
    names = _split_header_line(lines[1])
    units = _split_header_line(lines[2])

    if ids[0].lower() not in TIMESTAMP_LABELS:
        raise CsvStructureError(
            f"The first column must be a timestamp column, found '{ids[0]}'"
        )

    warnings: List[str] = []
    headers = _read_headers(ids, names, units, warnings)
    rows = _read_rows(lines[HEADER_ROWS:], headers, len(ids), warnings)
    dprint(f"[parse] {len(headers)} parameters, {len(rows)} rows, {len(warnings)} warnings")
    for message in warnings:
        dprint(f"[parse] warning: {message}")
    return ParsedCsv(headers=headers, rows=rows, warnings=warnings)


def parse_csv_file(raw: bytes, data_source: str) -> ParsedCsv:
    """Decode and parse one export."""

    return parse_csv_text(decode_bytes(raw, data_source))


def filter_valid_parameters(headers: Iterable[HeaderColumn]) -> List[HeaderColumn]:
    """Drop columns that carry neither a display name nor a unit."""

    return [
        header
        for header in headers
        if header.parameter_name != MISSING or header.unit != MISSING
    ]


def _parse_free_form(text: str) -> Optional[pd.Timestamp]:
    parsed = pd.to_datetime(text, errors="coerce")
    if pd.isna(parsed):
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.tz_convert("UTC").tz_localize(None)
    return parsed


def parse_timestamps(values: pd.Series) -> pd.Series:
    """Parse timestamp text using the known export formats first.

    Each format only sees the entries no earlier format could read; whatever
    is left goes through pandas' free-form parser. Entries nothing can read
    come back as ``NaT``. Results are truncated to whole milliseconds.
    """

    text = values.astype("string").str.strip()
    # pandas resolves digit-free keywords such as "now" or "today" to the wall
    # clock, even under an explicit format
    has_text = text.fillna("").str.contains(_DIGIT_RE).astype(bool)
    parsed = pd.Series(pd.NaT, index=values.index, dtype="datetime64[ns]")

    for fmt in TIMESTAMP_FORMATS:
        pending = has_text & parsed.isna()
        if not pending.any():
            break
        parsed.loc[pending] = pd.to_datetime(text[pending], format=fmt, errors="coerce")

    pending = has_text & parsed.isna()
    if pending.any():
        fallback = text[pending].map(_parse_free_form)
        parsed.loc[pending] = pd.to_datetime(fallback, errors="coerce")
        dprint(f"[timestamps] free-form parse for {int(pending.sum())} values")

    return parsed.dt.floor("ms")


def parse_timestamp(value: object) -> Optional[pd.Timestamp]:
    """Parse a single timestamp; ``None`` when it cannot be read."""

    if value is None:
        return None
    parsed = parse_timestamps(pd.Series([value], dtype=object)).iloc[0]
    return None if pd.isna(parsed) else parsed


def _empty_long_frame() -> pd.DataFrame:
    return pd.DataFrame(
        {
            "timestamp": pd.Series(dtype="datetime64[ns]"),
            "parameter_id": pd.Series(dtype=object),
            "parameter_name": pd.Series(dtype=object),
            "unit": pd.Series(dtype=object),
            "value": pd.Series(dtype="float64"),
        }
    )


def convert_to_long_format(
    parsed: ParsedCsv, headers: Sequence[HeaderColumn]
) -> pd.DataFrame:
    """Expand parsed rows into one record per timestamp, parameter and value.

    Rows whose timestamp cannot be read are dropped, as are individual cells
    that are blank, non-numeric or not finite. Records keep the row order of
    the file and, within a row, the order of ``headers``.
    """

    rows = parsed.rows
    if rows.empty or not headers:
        return _empty_long_frame()

    timestamps = parse_timestamps(rows[TIMESTAMP_COLUMN])
    pieces: List[pd.DataFrame] = []
    for order, header in enumerate(headers):
        if header.parameter_id not in rows.columns:
            continue
        values = pd.to_numeric(rows[header.parameter_id], errors="coerce").astype("float64")
        pieces.append(
            pd.DataFrame(
                {
                    "timestamp": timestamps,
                    "parameter_id": header.parameter_id,
                    "parameter_name": header.parameter_name,
                    "unit": header.unit,
                    "value": values,
                    "_row": np.arange(len(rows)),
                    "_order": order,
                }
            )
        )
    if not pieces:
        return _empty_long_frame()

    long_df = pd.concat(pieces, ignore_index=True)
    usable = long_df["timestamp"].notna() & np.isfinite(long_df["value"].to_numpy(dtype=float))
    dropped_rows = int(timestamps.isna().sum())
    if dropped_rows:
        dprint(f"[long] {dropped_rows} rows dropped for unreadable timestamps")

    long_df = long_df.loc[usable].sort_values(["_row", "_order"], kind="stable")
    return long_df[LONG_COLUMNS].reset_index(drop=True)


def merge_long_format_data(frames: Iterable[pd.DataFrame]) -> pd.DataFrame:
    """Combine long frames from several files.

    Frames are concatenated in the order given and the first record seen for a
    ``(timestamp, parameter_id)`` pair wins, so earlier files take precedence
    over later ones. The result is sorted by timestamp.
    """

    usable = [frame for frame in frames if isinstance(frame, pd.DataFrame) and not frame.empty]
    if not usable:
        return _empty_long_frame()

    merged = pd.concat(usable, ignore_index=True)
    before = len(merged)
    merged = merged.drop_duplicates(subset=["timestamp", "parameter_id"], keep="first")
    dprint(f"[merge] {len(usable)} frames, {before - len(merged)} duplicates dropped")
    merged = merged.sort_values("timestamp", kind="stable")
    return merged[LONG_COLUMNS].reset_index(drop=True)


def convert_to_wide_format(
    records: pd.DataFrame,
) -> Tuple[pd.DataFrame, Dict[str, Dict[str, str]]]:
    """Pivot long records into one row per timestamp.

    Returns the wide frame (``timestamp`` plus one column per parameter id, in
    first-seen order) and the parameter info mapping. The name and unit of a
    parameter come from the first record seen for its id, even when later
    records report different metadata.
    """

    if records is None or records.empty:
        raise EmptyResultError("No usable measurements were found to convert")

    parameter_order = list(dict.fromkeys(records["parameter_id"]))
    first_seen = records.drop_duplicates(subset="parameter_id", keep="first")
    parameter_info: Dict[str, Dict[str, str]] = {
        str(row.parameter_id): {"name": str(row.parameter_name), "unit": str(row.unit)}
        for row in first_seen.itertuples(index=False)
    }

    wide = (
        records.pivot_table(
            index="timestamp",
            columns="parameter_id",
            values="value",
            aggfunc="last",
        )
        .reindex(columns=parameter_order)
        .rename_axis(None, axis=1)
        .sort_index()
        .reset_index()
    )
    dprint(f"[wide] {len(wide)} rows x {len(parameter_order)} parameters")
    return wide, parameter_info


__all__ = [
    "CsvImportError",
    "CsvStructureError",
    "DATA_SOURCES",
    "DecodeError",
    "EmptyResultError",
    "HeaderColumn",
    "ParsedCsv",
    "classify_cell",
    "convert_to_long_format",
    "convert_to_wide_format",
    "decode_bytes",
    "encoding_for_source",
    "filter_valid_parameters",
    "merge_long_format_data",
    "parse_csv_file",
    "parse_csv_text",
    "parse_timestamp",
    "parse_timestamps",
]
