"""Checks run on uploads and import metadata before any parsing starts."""

from typing import Mapping, Optional

from data_processing import DATA_SOURCES


VALID_EXTENSIONS = (".csv",)
MAX_FILE_SIZE_MB = 100
MAX_FILE_SIZE_BYTES = MAX_FILE_SIZE_MB * 1024 * 1024

REQUIRED_METADATA: Mapping[str, str] = {
    "plant": "Plant name is required.",
    "machine_no": "Machine number is required.",
}


class ValidationError(ValueError):
    """Raised when an import is requested with invalid metadata."""


def validate_csv_file(name: Optional[str], size: Optional[int]) -> Optional[str]:
    """Return an error message for an unacceptable upload, ``None`` otherwise."""

    if not name:
        return "No file was selected."

    if not name.lower().endswith(VALID_EXTENSIONS):
        return f"{name}: please select a CSV file."

    if size is not None and size > MAX_FILE_SIZE_BYTES:
        return (
            f"{name}: file is too large. "
            f"Please select files of {MAX_FILE_SIZE_MB} MB or less."
        )

    return None


def _metadata_value(metadata: object, key: str) -> object:
    if isinstance(metadata, Mapping):
        return metadata.get(key)
    return getattr(metadata, key, None)


def validate_metadata(metadata: object) -> Optional[str]:
    """Return an error message when required metadata is missing.

    ``metadata`` may be a mapping or an object exposing the fields as
    attributes, such as :class:`storage.DatasetMetadata`.
    """

    for key, message in REQUIRED_METADATA.items():
        value = _metadata_value(metadata, key)
        if value is None or not str(value).strip():
            return message

    data_source = _metadata_value(metadata, "data_source")
    if data_source is not None and data_source not in DATA_SOURCES:
        return f"Unknown data source '{data_source}'."

    return None
