"""Run the CSV pipeline over a batch of uploads and persist the result."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Tuple

import pandas as pd

from data_processing import (
    CsvImportError,
    EmptyResultError,
    convert_to_long_format,
    convert_to_wide_format,
    dprint,
    filter_valid_parameters,
    merge_long_format_data,
    parse_csv_file,
)
from storage import DatasetMetadata, DatasetStore, PersistenceError
from validation import ValidationError, validate_csv_file, validate_metadata


IDLE = "idle"
PROCESSING = "processing"
COMPLETED = "completed"
ERROR = "error"


@dataclass
class ImportProgress:
    current: int = 0
    total: int = 0
    status: str = IDLE
    message: str = ""


@dataclass
class ImportResult:
    dataset_id: int
    row_count: int
    parameter_count: int
    file_errors: Dict[str, str] = field(default_factory=dict)
    warnings: Dict[str, List[str]] = field(default_factory=dict)
    skipped_files: List[str] = field(default_factory=list)


ProgressCallback = Callable[[ImportProgress], None]


def _read_upload(upload) -> bytes:
    """Return the bytes of an uploaded file or a file-like object."""

    if isinstance(upload, (bytes, bytearray)):
        return bytes(upload)
    if hasattr(upload, "getvalue"):
        return upload.getvalue()
    if hasattr(upload, "seek"):
        upload.seek(0)
    return upload.read()


def _upload_name(upload, index: int) -> str:
    return str(getattr(upload, "name", None) or f"file_{index}.csv")


def import_csv_files(
    files: Iterable[object],
    metadata: DatasetMetadata,
    store: DatasetStore,
    progress: Optional[ProgressCallback] = None,
    stop_on_error: bool = False,
) -> ImportResult:
    """Import several exports of one machine as a single dataset.

    Files are handled one after another in the order given; when two files
    hold a value for the same timestamp and parameter, the earlier file wins.
    A file that cannot be decoded or parsed is reported under its name in
    ``file_errors`` and the remaining files are still imported, unless
    ``stop_on_error`` is set.

    Raises
    ------
    ValidationError
        When the metadata is incomplete.
    EmptyResultError
        When no file produced a usable measurement.
    PersistenceError
        When the dataset could not be written.
    """

    def report(current: int, total: int, status: str, message: str) -> None:
        dprint(f"[import] {status} {current}/{total}: {message}")
        if progress is not None:
            progress(ImportProgress(current=current, total=total, status=status, message=message))

    error = validate_metadata(metadata)
    if error:
        report(0, 0, ERROR, error)
        raise ValidationError(error)

    files = list(files)
    total = len(files)
    file_errors: Dict[str, str] = {}
    warnings: Dict[str, List[str]] = {}
    skipped: List[str] = []
    long_frames: List[pd.DataFrame] = []

    for index, upload in enumerate(files, start=1):
        name = _upload_name(upload, index)
        report(index - 1, total, PROCESSING, f"Processing {name} ({index}/{total})")

        try:
            raw = _read_upload(upload)
        except OSError as exc:
            file_errors[name] = f"Could not read file: {exc}"
            if stop_on_error:
                break
            continue

        size = getattr(upload, "size", None)
        problem = validate_csv_file(name, size if size is not None else len(raw))
        if problem:
            file_errors[name] = problem
            if stop_on_error:
                break
            continue

        try:
            parsed = parse_csv_file(raw, metadata.data_source)
        except CsvImportError as exc:
            file_errors[name] = str(exc)
            if stop_on_error:
                break
            continue

        if parsed.warnings:
            warnings[name] = list(parsed.warnings)

        headers = filter_valid_parameters(parsed.headers)
        if not headers:
            skipped.append(name)
            warnings.setdefault(name, []).append("No valid parameters found; file skipped")
            continue

        long_df = convert_to_long_format(parsed, headers)
        if long_df.empty:
            warnings.setdefault(name, []).append("No usable measurements found")
        long_frames.append(long_df)

    report(total, total, PROCESSING, "Merging data")
    merged = merge_long_format_data(long_frames)
    if merged.empty:
        message = "No usable measurements were found in the selected files"
        report(total, total, ERROR, message)
        raise EmptyResultError(message)

    wide, parameter_info = convert_to_wide_format(merged)

    report(total, total, PROCESSING, "Saving to database")
    try:
        dataset_id = store.save_dataset(metadata, wide, parameter_info)
    except Exception as exc:
        report(total, total, ERROR, str(exc))
        raise

    result = ImportResult(
        dataset_id=dataset_id,
        row_count=len(wide),
        parameter_count=len(parameter_info),
        file_errors=file_errors,
        warnings=warnings,
        skipped_files=skipped,
    )
    report(
        total,
        total,
        COMPLETED,
        f"Imported {result.row_count} rows with {result.parameter_count} parameters",
    )
    return result


def run_import(
    files: Iterable[object],
    metadata: DatasetMetadata,
    store: DatasetStore,
    progress: Optional[ProgressCallback] = None,
) -> Tuple[Optional[ImportResult], Optional[str]]:
    """Import for the UI: the result, or a message explaining why nothing was saved."""

    try:
        return import_csv_files(files, metadata, store, progress=progress), None
    except (ValidationError, CsvImportError, PersistenceError) as exc:
        return None, str(exc)
    except Exception as exc:
        dprint(f"[import] unexpected {type(exc).__name__}: {exc}")
        return None, f"Import failed unexpectedly ({type(exc).__name__}): {exc}"
