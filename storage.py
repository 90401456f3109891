"""DuckDB persistence for imported datasets.

A dataset is the metadata of one import plus its measurements and parameter
definitions. Measurements are stored one value per row and handed back as a
wide frame (``timestamp`` plus one column per parameter id).
"""

from __future__ import annotations

import os
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterator, Mapping, Optional

import duckdb
import pandas as pd

from data_processing import dprint


DEFAULT_DB_PATH = os.getenv("TS_DB_PATH", "timeseries.duckdb")

_SCHEMA = (
    "CREATE SEQUENCE IF NOT EXISTS dataset_id_seq START 1",
    """
    CREATE TABLE IF NOT EXISTS datasets (
        id BIGINT DEFAULT nextval('dataset_id_seq') PRIMARY KEY,
        plant VARCHAR NOT NULL,
        machine_no VARCHAR NOT NULL,
        label VARCHAR,
        event VARCHAR,
        start_time TIMESTAMP,
        end_time TIMESTAMP,
        data_source VARCHAR NOT NULL,
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS measurements (
        dataset_id BIGINT NOT NULL,
        timestamp TIMESTAMP NOT NULL,
        parameter_id VARCHAR NOT NULL,
        value DOUBLE NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS parameters (
        dataset_id BIGINT NOT NULL,
        parameter_id VARCHAR NOT NULL,
        parameter_name VARCHAR,
        unit VARCHAR
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_measurements_dataset_time ON measurements(dataset_id, timestamp)",
    "CREATE INDEX IF NOT EXISTS idx_parameters_dataset ON parameters(dataset_id)",
)


class PersistenceError(RuntimeError):
    """Raised when the store fails to write or delete a dataset."""


@dataclass
class DatasetMetadata:
    plant: str
    machine_no: str
    data_source: str = "CASS"
    label: Optional[str] = None
    event: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None


class DatasetStore:
    """Dataset storage backed by a single DuckDB file.

    The store must be opened before use and closed at shutdown, either
    explicitly or by using it as a context manager. Pass ``":memory:"`` as the
    path for a throwaway database.
    """

    def __init__(self, path: str = DEFAULT_DB_PATH):
        self.path = str(path)
        self._conn: Optional[duckdb.DuckDBPyConnection] = None

    def open(self) -> "DatasetStore":
        if self._conn is None:
            dprint(f"[store] opening {self.path}")
            self._conn = duckdb.connect(self.path)
            for statement in _SCHEMA:
                self._conn.execute(statement)
        return self

    def close(self) -> None:
        if self._conn is not None:
            dprint(f"[store] closing {self.path}")
            self._conn.close()
            self._conn = None

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    def __enter__(self) -> "DatasetStore":
        return self.open()

    def __exit__(self, *exc_info) -> None:
        self.close()

    @property
    def conn(self) -> duckdb.DuckDBPyConnection:
        if self._conn is None:
            raise RuntimeError("DatasetStore is not open")
        return self._conn

    @contextmanager
    def _transaction(self) -> Iterator[duckdb.DuckDBPyConnection]:
        conn = self.conn
        conn.begin()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    # ----- writes -------------------------------------------------------

    def _insert_dataset(self, conn: duckdb.DuckDBPyConnection, metadata: DatasetMetadata) -> int:
        now = datetime.now()
        row = conn.execute(
            """
            INSERT INTO datasets
                (plant, machine_no, label, event, start_time, end_time,
                 data_source, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            RETURNING id
            """,
            [
                metadata.plant.strip(),
                metadata.machine_no.strip(),
                metadata.label or None,
                metadata.event or None,
                metadata.start,
                metadata.end,
                metadata.data_source,
                now,
                now,
            ],
        ).fetchone()
        return int(row[0])

    def _insert_time_series(
        self,
        conn: duckdb.DuckDBPyConnection,
        dataset_id: int,
        wide: pd.DataFrame,
        parameter_info: Mapping[str, Mapping[str, str]],
    ) -> int:
        if wide is None or wide.empty:
            return 0

        long_df = wide.melt(
            id_vars=["timestamp"], var_name="__parameter_id__", value_name="__value__"
        ).dropna(subset=["timestamp", "__value__"])
        values = pd.DataFrame(
            {
                "dataset_id": dataset_id,
                "timestamp": long_df["timestamp"],
                "parameter_id": long_df["__parameter_id__"].astype(str),
                "value": long_df["__value__"].astype("float64"),
            }
        )
        present = list(dict.fromkeys(values["parameter_id"]))
        params = pd.DataFrame(
            [
                {
                    "dataset_id": dataset_id,
                    "parameter_id": parameter_id,
                    "parameter_name": parameter_info[parameter_id].get("name"),
                    "unit": parameter_info[parameter_id].get("unit"),
                }
                for parameter_id in present
                if parameter_id in parameter_info
            ],
            columns=["dataset_id", "parameter_id", "parameter_name", "unit"],
        )

        # registered views are replaced on the next register of the same name
        if not values.empty:
            conn.register("measurement_rows", values)
            conn.execute(
                """
                INSERT INTO measurements
                SELECT dataset_id, CAST(timestamp AS TIMESTAMP), parameter_id, value
                FROM measurement_rows
                """
            )
            conn.unregister("measurement_rows")
        if not params.empty:
            conn.register("parameter_rows", params)
            conn.execute(
                """
                INSERT INTO parameters
                SELECT dataset_id, parameter_id, parameter_name, unit FROM parameter_rows
                """
            )
            conn.unregister("parameter_rows")
        dprint(f"[store] dataset {dataset_id}: {len(values)} values, {len(params)} parameters")
        return len(values)

    def create_dataset(self, metadata: DatasetMetadata) -> int:
        try:
            with self._transaction() as conn:
                return self._insert_dataset(conn, metadata)
        except Exception as exc:
            raise PersistenceError(f"Failed to create dataset: {exc}") from exc

    def save_time_series(
        self,
        dataset_id: int,
        wide: pd.DataFrame,
        parameter_info: Mapping[str, Mapping[str, str]],
    ) -> None:
        """Write all rows and parameters of a dataset in one transaction."""

        try:
            with self._transaction() as conn:
                self._insert_time_series(conn, dataset_id, wide, parameter_info)
        except Exception as exc:
            raise PersistenceError(f"Failed to save data for dataset {dataset_id}: {exc}") from exc

    def save_dataset(
        self,
        metadata: DatasetMetadata,
        wide: pd.DataFrame,
        parameter_info: Mapping[str, Mapping[str, str]],
    ) -> int:
        """Create a dataset together with its rows; nothing is kept on failure."""

        try:
            with self._transaction() as conn:
                dataset_id = self._insert_dataset(conn, metadata)
                self._insert_time_series(conn, dataset_id, wide, parameter_info)
        except Exception as exc:
            raise PersistenceError(f"Failed to save dataset: {exc}") from exc
        return dataset_id

    def delete_dataset(self, dataset_id: int) -> None:
        """Remove a dataset with all of its measurements and parameters."""

        try:
            with self._transaction() as conn:
                conn.execute("DELETE FROM measurements WHERE dataset_id = ?", [dataset_id])
                conn.execute("DELETE FROM parameters WHERE dataset_id = ?", [dataset_id])
                conn.execute("DELETE FROM datasets WHERE id = ?", [dataset_id])
        except Exception as exc:
            raise PersistenceError(f"Failed to delete dataset {dataset_id}: {exc}") from exc

    # ----- reads --------------------------------------------------------

    def get_datasets(self) -> pd.DataFrame:
        return self.conn.execute("SELECT * FROM datasets ORDER BY id").df()

    def get_dataset(self, dataset_id: int) -> Optional[Dict[str, object]]:
        frame = self.conn.execute("SELECT * FROM datasets WHERE id = ?", [dataset_id]).df()
        if frame.empty:
            return None
        return frame.iloc[0].to_dict()

    def get_parameters(self, dataset_id: int) -> pd.DataFrame:
        return self.conn.execute(
            """
            SELECT parameter_id, parameter_name, unit
            FROM parameters
            WHERE dataset_id = ?
            ORDER BY rowid
            """,
            [dataset_id],
        ).df()

    def get_time_series(
        self,
        dataset_id: int,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> pd.DataFrame:
        """Return the wide rows of a dataset, optionally within inclusive bounds."""

        sql = ["SELECT timestamp, parameter_id, value FROM measurements WHERE dataset_id = ?"]
        params: list = [dataset_id]
        if start is not None:
            sql.append("AND timestamp >= ?")
            params.append(pd.Timestamp(start).to_pydatetime())
        if end is not None:
            sql.append("AND timestamp <= ?")
            params.append(pd.Timestamp(end).to_pydatetime())
        sql.append("ORDER BY timestamp, rowid")
        long_df = self.conn.execute(" ".join(sql), params).df()

        if long_df.empty:
            return pd.DataFrame({"timestamp": pd.Series(dtype="datetime64[ns]")})

        order = [
            pid for pid in self.get_parameters(dataset_id)["parameter_id"]
            if pid in set(long_df["parameter_id"])
        ]
        order.extend(pid for pid in dict.fromkeys(long_df["parameter_id"]) if pid not in order)
        wide = (
            long_df.pivot(index="timestamp", columns="parameter_id", values="value")
            .reindex(columns=order)
            .rename_axis(None, axis=1)
            .sort_index()
            .reset_index()
        )
        return wide


def filter_datasets(
    datasets: pd.DataFrame,
    plant: str = "",
    machine_no: str = "",
    label: str = "",
    event: str = "",
    data_source: str = "",
) -> pd.DataFrame:
    """Filter the dataset listing the way the browser's search fields do.

    Text filters are case-insensitive substring matches. Datasets without a
    label or event are kept when filtering on those fields.
    """

    if datasets is None or datasets.empty:
        return datasets

    mask = pd.Series(True, index=datasets.index)
    for column, needle in (("plant", plant), ("machine_no", machine_no)):
        if needle:
            values = datasets[column].fillna("").astype(str).str.lower()
            mask &= values.str.contains(needle.lower(), regex=False)
    for column, needle in (("label", label), ("event", event)):
        if needle:
            values = datasets[column].fillna("").astype(str)
            mask &= (values == "") | values.str.lower().str.contains(needle.lower(), regex=False)
    if data_source:
        mask &= datasets["data_source"] == data_source
    return datasets[mask]
