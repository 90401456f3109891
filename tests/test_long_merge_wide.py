from datetime import datetime
from pathlib import Path
import sys

import pandas as pd
import pytest


sys.path.append(str(Path(__file__).resolve().parents[1]))

from data_processing import (
    EmptyResultError,
    convert_to_long_format,
    convert_to_wide_format,
    filter_valid_parameters,
    merge_long_format_data,
    parse_csv_text,
    parse_timestamp,
    parse_timestamps,
)


def _long(text):
    parsed = parse_csv_text(text)
    return convert_to_long_format(parsed, filter_valid_parameters(parsed.headers))


def _triples(long_df):
    return {
        (pd.Timestamp(row.timestamp), row.parameter_id, float(row.value))
        for row in long_df.itertuples(index=False)
    }


FILE_A = "timestamp,P1\n,Temp\n,C\n2024-01-01 00:00:00,1.0\n2024-01-01 00:00:10,2.0\n"
FILE_B = "timestamp,P1\n,Temp\n,C\n2024-01-01 00:00:10,99.0\n2024-01-01 00:00:20,3.0\n"


def test_simple_export_to_long_and_wide():
    text = "timestamp,P1\n,Temp\n,C\n2024-01-01 00:00:00,23.5\n2024-01-01 00:00:10,24.1"

    long_df = _long(text)

    assert len(long_df) == 2
    assert set(long_df["parameter_id"]) == {"P1"}
    assert long_df["parameter_name"].tolist() == ["Temp", "Temp"]
    assert long_df["unit"].tolist() == ["C", "C"]

    wide, info = convert_to_wide_format(long_df)

    assert list(wide.columns) == ["timestamp", "P1"]
    assert wide["timestamp"].tolist() == [
        pd.Timestamp("2024-01-01 00:00:00"),
        pd.Timestamp("2024-01-01 00:00:10"),
    ]
    assert wide["P1"].tolist() == pytest.approx([23.5, 24.1])
    assert info == {"P1": {"name": "Temp", "unit": "C"}}


def test_unparseable_timestamp_row_is_dropped():
    text = (
        "timestamp,P1\n,Temp\n,C\n"
        "2024-01-01 00:00:00,1\nnot-a-date,2\n2024-01-01 00:00:20,3\n"
    )

    long_df = _long(text)

    assert long_df["value"].tolist() == [1.0, 3.0]


def test_wall_clock_keywords_are_not_timestamps():
    text = "timestamp,P1\n,Temp\n,C\nnow,1\ntoday,2\n2024-01-01 00:00:00,4\n"

    long_df = _long(text)

    assert long_df["value"].tolist() == [4.0]
    assert long_df["timestamp"].tolist() == [pd.Timestamp("2024-01-01 00:00:00")]


def test_non_numeric_cells_are_skipped_per_column():
    text = (
        "timestamp,P1,P2\n,a,b\n,u,v\n"
        "2024-01-01 00:00:00,abc,5\n2024-01-01 00:00:01,,6\n2024-01-01 00:00:02,7,\n"
    )

    long_df = _long(text)

    assert list(zip(long_df["parameter_id"], long_df["value"])) == [
        ("P2", 5.0),
        ("P2", 6.0),
        ("P1", 7.0),
    ]


def test_long_records_are_row_major():
    text = "timestamp,P1,P2\n,a,b\n,u,v\n2024-01-01 00:00:00,1,2\n2024-01-01 00:00:01,3,4\n"

    long_df = _long(text)

    assert long_df["parameter_id"].tolist() == ["P1", "P2", "P1", "P2"]
    assert long_df["value"].tolist() == [1.0, 2.0, 3.0, 4.0]


def test_non_finite_values_are_dropped():
    text = "timestamp,P1\n,a\n,u\n2024-01-01 00:00:00,inf\n2024-01-01 00:00:01,nan\n2024-01-01 00:00:02,4\n"

    assert _long(text)["value"].tolist() == [4.0]


def test_long_format_without_headers_is_empty():
    parsed = parse_csv_text("timestamp,P1\n,-\n,-\n2024-01-01 00:00:00,1\n")

    long_df = convert_to_long_format(parsed, filter_valid_parameters(parsed.headers))

    assert long_df.empty
    assert list(long_df.columns) == ["timestamp", "parameter_id", "parameter_name", "unit", "value"]


@pytest.mark.parametrize(
    "text, expected",
    [
        ("2024-03-04 05:06:07", datetime(2024, 3, 4, 5, 6, 7)),
        ("2024/03/04 05:06:07", datetime(2024, 3, 4, 5, 6, 7)),
        ("2024-03-04 05:06:07.250", datetime(2024, 3, 4, 5, 6, 7, 250000)),
        ("2024/03/04 05:06:07.5", datetime(2024, 3, 4, 5, 6, 7, 500000)),
        ("25/12/2024 10:00:00", datetime(2024, 12, 25, 10, 0, 0)),
        ("12/25/2024 10:00:00", datetime(2024, 12, 25, 10, 0, 0)),
        ("2024-03-04T05:06:07", datetime(2024, 3, 4, 5, 6, 7)),
        ("2024-03-04T05:06:07+09:00", datetime(2024, 3, 3, 20, 6, 7)),
    ],
)
def test_parse_timestamp_formats(text, expected):
    assert parse_timestamp(text) == pd.Timestamp(expected)


def test_day_first_wins_when_both_orders_are_valid():
    assert parse_timestamp("04/03/2024 00:00:00") == pd.Timestamp(2024, 3, 4)


def test_parse_timestamp_truncates_to_milliseconds():
    assert parse_timestamp("2024-01-01 00:00:00.123456") == pd.Timestamp("2024-01-01 00:00:00.123")


@pytest.mark.parametrize("text", ["not-a-date", "", "   ", None, "now", "today", " NOW "])
def test_parse_timestamp_unreadable(text):
    assert parse_timestamp(text) is None


def test_parse_timestamps_mixed_series():
    parsed = parse_timestamps(pd.Series(["2024-01-01 00:00:00", "junk", "2024/01/02 00:00:00", None]))

    assert parsed.iloc[0] == pd.Timestamp(2024, 1, 1)
    assert pd.isna(parsed.iloc[1])
    assert parsed.iloc[2] == pd.Timestamp(2024, 1, 2)
    assert pd.isna(parsed.iloc[3])


def test_merge_prefers_earlier_file():
    a, b = _long(FILE_A), _long(FILE_B)
    overlap = pd.Timestamp("2024-01-01 00:00:10")

    ab = merge_long_format_data([a, b])
    ba = merge_long_format_data([b, a])

    assert ab.loc[ab["timestamp"] == overlap, "value"].tolist() == [2.0]
    assert ba.loc[ba["timestamp"] == overlap, "value"].tolist() == [99.0]
    assert len(ab) == 3


def test_merge_sorts_by_timestamp():
    merged = merge_long_format_data([_long(FILE_B), _long(FILE_A)])

    assert merged["timestamp"].is_monotonic_increasing


def test_merge_with_itself_is_unchanged():
    a = _long(FILE_A)

    assert _triples(merge_long_format_data([a, a])) == _triples(merge_long_format_data([a]))


def test_merge_of_nothing_is_empty():
    assert merge_long_format_data([]).empty


def test_wide_preserves_every_long_triple():
    text = (
        "timestamp,P1,P2\n,a,b\n,u,v\n"
        "2024-01-01 00:00:10,1,\n2024-01-01 00:00:00,2,3\n2024-01-01 00:00:20,,4\n"
    )
    long_df = merge_long_format_data([_long(text)])

    wide, _ = convert_to_wide_format(long_df)

    assert wide["timestamp"].is_monotonic_increasing
    assert wide["timestamp"].is_unique
    melted = wide.melt(id_vars="timestamp", var_name="parameter_id").dropna(subset=["value"])
    assert _triples(melted) == _triples(long_df)
    assert len(melted) == len(long_df)


def test_wide_later_duplicate_overwrites_and_first_metadata_wins():
    ts = pd.Timestamp("2024-01-01")
    records = pd.DataFrame(
        {
            "timestamp": [ts, ts],
            "parameter_id": ["P1", "P1"],
            "parameter_name": ["First", "Second"],
            "unit": ["C", "K"],
            "value": [1.0, 2.0],
        }
    )

    wide, info = convert_to_wide_format(records)

    assert wide["P1"].tolist() == [2.0]
    assert info["P1"] == {"name": "First", "unit": "C"}


def test_wide_keeps_first_seen_column_order():
    text = "timestamp,Z,A\n,z,a\n,u,v\n2024-01-01 00:00:00,1,2\n"

    wide, _ = convert_to_wide_format(_long(text))

    assert list(wide.columns) == ["timestamp", "Z", "A"]


def test_wide_of_nothing_fails():
    with pytest.raises(EmptyResultError):
        convert_to_wide_format(merge_long_format_data([]))
