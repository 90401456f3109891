import io
from pathlib import Path
import sys

import pandas as pd
import pytest


sys.path.append(str(Path(__file__).resolve().parents[1]))

from data_processing import EmptyResultError
from importer import COMPLETED, ERROR, import_csv_files, run_import
from storage import DatasetMetadata, DatasetStore
from validation import ValidationError


class _Upload(io.BytesIO):
    def __init__(self, name, data):
        super().__init__(data)
        self.name = name


FIRST = (
    "timestamp,P1,P2\n,Temp,Pressure\n,C,kPa\n"
    "2024-01-01 00:00:00,1.0,10\n2024-01-01 00:00:10,2.0,20\n"
)
SECOND = (
    "timestamp,P1\n,Temp\n,C\n"
    "2024-01-01 00:00:10,99.0\n2024-01-01 00:00:20,3.0\n"
)


@pytest.fixture
def store(tmp_path):
    with DatasetStore(str(tmp_path / "import.duckdb")) as opened:
        yield opened


def _metadata(**kwargs):
    kwargs.setdefault("data_source", "Chinami")
    return DatasetMetadata(plant="Plant A", machine_no="M-1", **kwargs)


def test_overlapping_files_keep_first_file_value(store):
    files = [_Upload("a.csv", FIRST.encode()), _Upload("b.csv", SECOND.encode())]

    result = import_csv_files(files, _metadata(), store)

    assert result.row_count == 3
    assert result.parameter_count == 2
    assert result.file_errors == {}
    series = store.get_time_series(result.dataset_id)
    at_overlap = series.loc[series["timestamp"] == pd.Timestamp("2024-01-01 00:00:10"), "P1"]
    assert at_overlap.tolist() == [2.0]
    assert series["P1"].tolist() == [1.0, 2.0, 3.0]


def test_file_order_decides_overlaps(store):
    files = [_Upload("b.csv", SECOND.encode()), _Upload("a.csv", FIRST.encode())]

    result = import_csv_files(files, _metadata(), store)

    series = store.get_time_series(result.dataset_id)
    at_overlap = series.loc[series["timestamp"] == pd.Timestamp("2024-01-01 00:00:10"), "P1"]
    assert at_overlap.tolist() == [99.0]


def test_broken_files_are_reported_and_the_rest_imported(store):
    files = [
        _Upload("garbage.csv", b"\xff\xfe\xfd"),
        _Upload("short.csv", b"timestamp,P1\n,Temp\n"),
        _Upload("notes.txt", FIRST.encode()),
        _Upload("good.csv", FIRST.encode()),
    ]

    result = import_csv_files(files, _metadata(), store)

    assert set(result.file_errors) == {"garbage.csv", "short.csv", "notes.txt"}
    assert result.row_count == 2
    assert store.get_dataset(result.dataset_id)["plant"] == "Plant A"


def test_stop_on_error_halts_after_first_failure(store):
    files = [_Upload("garbage.csv", b"\xff\xfe\xfd"), _Upload("good.csv", FIRST.encode())]

    with pytest.raises(EmptyResultError):
        import_csv_files(files, _metadata(), store, stop_on_error=True)

    assert store.get_datasets().empty


def test_files_without_valid_parameters_are_skipped(store):
    no_params = "timestamp,X\n,-\n,-\n2024-01-01 00:00:00,1\n"
    files = [_Upload("empty.csv", no_params.encode()), _Upload("good.csv", FIRST.encode())]

    result = import_csv_files(files, _metadata(), store)

    assert result.skipped_files == ["empty.csv"]
    assert "empty.csv" in result.warnings


def test_row_warnings_are_collected_per_file(store):
    ragged = FIRST + "2024-01-01 00:00:30,1,2,3,4\n"

    result = import_csv_files([_Upload("ragged.csv", ragged.encode())], _metadata(), store)

    assert list(result.warnings) == ["ragged.csv"]


def test_nothing_usable_fails_the_import(store):
    only_bad_dates = "timestamp,P1\n,Temp\n,C\nnot-a-date,1\n"

    with pytest.raises(EmptyResultError):
        import_csv_files([_Upload("bad.csv", only_bad_dates.encode())], _metadata(), store)

    assert store.get_datasets().empty


def test_invalid_metadata_stops_before_parsing(store):
    metadata = DatasetMetadata(plant=" ", machine_no="M-1", data_source="Chinami")

    with pytest.raises(ValidationError):
        import_csv_files([_Upload("a.csv", FIRST.encode())], metadata, store)

    assert store.get_datasets().empty


def test_shift_jis_export_keeps_japanese_metadata(store):
    text = "timestamp,T1\n,温度\n,℃\n2024-01-01 00:00:00,21.5\n"
    files = [_Upload("cass.csv", text.encode("cp932"))]

    result = import_csv_files(files, _metadata(data_source="CASS"), store)

    params = store.get_parameters(result.dataset_id)
    assert params["parameter_name"].tolist() == ["温度"]
    assert params["unit"].tolist() == ["℃"]


def test_progress_is_reported_until_completion(store):
    updates = []
    files = [_Upload("a.csv", FIRST.encode()), _Upload("b.csv", SECOND.encode())]

    import_csv_files(files, _metadata(), store, progress=updates.append)

    assert updates[0].current == 0
    assert updates[0].total == 2
    assert "a.csv" in updates[0].message
    assert updates[-1].status == COMPLETED
    assert updates[-1].current == updates[-1].total == 2


def test_plain_bytes_are_accepted(store):
    result = import_csv_files([FIRST.encode()], _metadata(), store)

    assert result.row_count == 2


class _FailingStore:
    def save_dataset(self, metadata, wide, parameter_info):
        raise ZeroDivisionError("boom")


def test_run_import_returns_result_on_success(store):
    result, failure = run_import([_Upload("a.csv", FIRST.encode())], _metadata(), store)

    assert failure is None
    assert result.row_count == 2


def test_run_import_reports_expected_errors_as_messages(store):
    metadata = DatasetMetadata(plant="", machine_no="M-1", data_source="Chinami")

    result, failure = run_import([_Upload("a.csv", FIRST.encode())], metadata, store)

    assert result is None
    assert "plant" in failure.lower()


def test_run_import_reports_unexpected_errors_as_messages():
    updates = []

    result, failure = run_import(
        [_Upload("a.csv", FIRST.encode())], _metadata(), _FailingStore(), progress=updates.append
    )

    assert result is None
    assert "ZeroDivisionError" in failure
    assert "boom" in failure
    assert updates[-1].status == ERROR
