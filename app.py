import atexit
from datetime import datetime, time
from pathlib import Path
import sys
from typing import Dict, List, Optional

import streamlit as st
import pandas as pd
import altair as alt

# Ensure imports work whether the app is executed as a module or as a script
# where the repository directory might not already be on ``sys.path``.
CURRENT_DIR = Path(__file__).resolve().parent

if __package__:
    from .chart_utils import (
        SAMPLING_THRESHOLD,
        convert_to_relative_time,
        downsample_series,
        find_earliest_timestamp,
        format_elapsed_time,
        needs_sampling,
    )
    from .data_processing import DATA_SOURCES
    from .importer import ImportProgress, run_import
    from .storage import DEFAULT_DB_PATH, DatasetMetadata, DatasetStore, PersistenceError, filter_datasets
else:
    if str(CURRENT_DIR) not in sys.path:
        sys.path.insert(0, str(CURRENT_DIR))
    from chart_utils import (
        SAMPLING_THRESHOLD,
        convert_to_relative_time,
        downsample_series,
        find_earliest_timestamp,
        format_elapsed_time,
        needs_sampling,
    )
    from data_processing import DATA_SOURCES
    from importer import ImportProgress, run_import
    from storage import DEFAULT_DB_PATH, DatasetMetadata, DatasetStore, PersistenceError, filter_datasets


st.set_page_config(page_title="Plant Time-Series Importer", layout="wide", page_icon="📈")


@st.cache_resource
def _get_store(path: str) -> DatasetStore:
    store = DatasetStore(path).open()
    atexit.register(store.close)
    return store


store = _get_store(DEFAULT_DB_PATH)


def _combine(day, clock) -> Optional[datetime]:
    if day is None:
        return None
    return datetime.combine(day, clock or time())


def _dataset_label(row: pd.Series) -> str:
    parts = [str(row["plant"]), str(row["machine_no"])]
    for key in ("label", "event"):
        value = row.get(key)
        if isinstance(value, str) and value:
            parts.append(value)
    return f"#{int(row['id'])} " + " / ".join(parts)


# --- Import form -----------------------------------------------------------

st.sidebar.header("📥 Import CSV")
with st.sidebar.form("import_form", clear_on_submit=False):
    data_source = st.selectbox("Data source", DATA_SOURCES)
    plant = st.text_input("Plant *")
    machine_no = st.text_input("Machine No. *")
    label = st.text_input("Label")
    event = st.text_input("Event")
    start_day = st.date_input("Start date", value=None)
    start_clock = st.time_input("Start time", value=None)
    end_day = st.date_input("End date", value=None)
    end_clock = st.time_input("End time", value=None)
    uploads = st.file_uploader("CSV files", type=["csv"], accept_multiple_files=True)
    submitted = st.form_submit_button("Import")

if submitted:
    if not uploads:
        st.sidebar.error("Select at least one CSV file.")
    else:
        metadata = DatasetMetadata(
            plant=plant,
            machine_no=machine_no,
            data_source=data_source,
            label=label.strip() or None,
            event=event.strip() or None,
            start=_combine(start_day, start_clock),
            end=_combine(end_day, end_clock),
        )
        progress_bar = st.sidebar.progress(0.0)
        status_line = st.sidebar.empty()

        def _on_progress(update: ImportProgress) -> None:
            fraction = update.current / update.total if update.total else 0.0
            progress_bar.progress(min(max(fraction, 0.0), 1.0))
            status_line.caption(update.message)

        result, failure = run_import(uploads, metadata, store, progress=_on_progress)
        progress_bar.empty()
        if failure:
            st.sidebar.error(failure)
        else:
            st.sidebar.success(
                f"Dataset #{result.dataset_id}: {result.row_count:,} rows, "
                f"{result.parameter_count} parameters"
            )
            st.session_state["last_import"] = result

last_import = st.session_state.get("last_import")
if last_import is not None:
    for file_name, message in last_import.file_errors.items():
        st.sidebar.error(f"{file_name}: {message}")
    for file_name in last_import.skipped_files:
        st.sidebar.warning(f"{file_name}: skipped")
    if last_import.warnings:
        with st.sidebar.expander("Import warnings"):
            for file_name, messages in last_import.warnings.items():
                st.markdown(f"**{file_name}**")
                st.markdown("\n".join(f"- {msg}" for msg in messages))


datasets_tab, graphs_tab = st.tabs(["Datasets", "Graphs"])

# --- Dataset browser -------------------------------------------------------

with datasets_tab:
    all_datasets = store.get_datasets()
    if all_datasets.empty:
        st.info("No datasets yet. Import CSV files from the sidebar to begin.")
    else:
        cols = st.columns(5)
        plant_filter = cols[0].text_input("Plant", key="filter_plant")
        machine_filter = cols[1].text_input("Machine No.", key="filter_machine")
        label_filter = cols[2].text_input("Label", key="filter_label")
        event_filter = cols[3].text_input("Event", key="filter_event")
        source_filter = cols[4].selectbox("Data source", ("",) + DATA_SOURCES, key="filter_source")

        shown = filter_datasets(
            all_datasets,
            plant=plant_filter,
            machine_no=machine_filter,
            label=label_filter,
            event=event_filter,
            data_source=source_filter,
        )
        st.caption(f"{len(shown)} of {len(all_datasets)} datasets")
        st.dataframe(
            shown.drop(columns=["updated_at"]),
            use_container_width=True,
            hide_index=True,
        )

        if not shown.empty:
            labels = {int(row["id"]): _dataset_label(row) for _, row in shown.iterrows()}
            detail_id = st.selectbox(
                "Dataset details",
                options=list(labels),
                format_func=lambda opt: labels[opt],
                key="detail_id",
            )
            params = store.get_parameters(detail_id)
            series = store.get_time_series(detail_id)
            st.markdown(f"**Parameters:** {len(params)} | **Rows:** {len(series):,}")
            if not series.empty:
                st.caption(
                    f"{series['timestamp'].min()} → {series['timestamp'].max()}"
                )
            st.dataframe(params, use_container_width=True, hide_index=True)
            with st.expander("Preview rows"):
                st.dataframe(series.head(100), use_container_width=True, hide_index=True)

            confirm = st.checkbox("Confirm deletion", key=f"confirm_delete_{detail_id}")
            if st.button("Delete dataset", key=f"delete_{detail_id}", disabled=not confirm):
                try:
                    store.delete_dataset(detail_id)
                except PersistenceError as exc:
                    st.error(str(exc))
                else:
                    st.success(f"Deleted dataset #{detail_id}")
                    st.rerun()

# --- Charts ----------------------------------------------------------------


def _parameter_labels(dataset_id: int) -> Dict[str, str]:
    params = store.get_parameters(dataset_id)
    labels: Dict[str, str] = {}
    for row in params.itertuples(index=False):
        unit = f" [{row.unit}]" if row.unit and row.unit != "-" else ""
        name = row.parameter_name if row.parameter_name and row.parameter_name != "-" else row.parameter_id
        labels[row.parameter_id] = f"{name}{unit}"
    return labels


def _time_series_chart(
    frames: Dict[int, pd.DataFrame],
    parameters: List[str],
    labels: Dict[str, str],
    relative: bool,
) -> Optional[alt.Chart]:
    start = find_earliest_timestamp(frames) if relative else None
    pieces: List[pd.DataFrame] = []
    for dataset_id, frame in frames.items():
        for parameter in parameters:
            if parameter not in frame.columns:
                continue
            sub = downsample_series(frame, "timestamp", parameter)
            if sub.empty:
                continue
            piece = pd.DataFrame(
                {
                    "timestamp": sub["timestamp"],
                    "Value": sub[parameter],
                    "Series": f"#{dataset_id} {labels.get(parameter, parameter)}",
                }
            )
            if start is not None:
                piece["Elapsed (s)"] = convert_to_relative_time(piece["timestamp"], start)
                piece["Elapsed"] = piece["Elapsed (s)"].map(format_elapsed_time)
            pieces.append(piece)
    if not pieces:
        return None

    chart_df = pd.concat(pieces, ignore_index=True)
    if start is not None:
        x = alt.X("Elapsed (s):Q", title=f"Elapsed since {start}")
        tooltip = ["Series:N", "Elapsed:N", "Value:Q"]
    else:
        x = alt.X("timestamp:T", title="Timestamp")
        tooltip = ["Series:N", "timestamp:T", "Value:Q"]
    return (
        alt.Chart(chart_df)
        .mark_line()
        .encode(
            x=x,
            y=alt.Y("Value:Q", title="Value"),
            color=alt.Color(
                "Series:N",
                legend=alt.Legend(orient="bottom", direction="horizontal", labelLimit=1000, columns=3),
            ),
            tooltip=tooltip,
        )
        .interactive()
    )


def _xy_chart(frame: pd.DataFrame, x_param: str, y_param: str, labels: Dict[str, str]) -> Optional[alt.Chart]:
    sub = downsample_series(frame.sort_values(x_param), x_param, y_param)
    if sub.empty:
        return None
    # parameter ids may contain characters Altair reads as field paths
    sub = sub.rename(columns={x_param: "x", y_param: "y"})
    return (
        alt.Chart(sub)
        .mark_circle(size=12)
        .encode(
            x=alt.X("x:Q", title=labels.get(x_param, x_param)),
            y=alt.Y("y:Q", title=labels.get(y_param, y_param)),
            tooltip=["x:Q", "y:Q"],
        )
        .interactive()
    )


with graphs_tab:
    all_datasets = store.get_datasets()
    if all_datasets.empty:
        st.info("Import a dataset to draw charts.")
    else:
        labels = {int(row["id"]): _dataset_label(row) for _, row in all_datasets.iterrows()}
        selected_ids = st.multiselect(
            "Datasets",
            options=list(labels),
            format_func=lambda opt: labels[opt],
            key="chart_datasets",
        )
        if selected_ids:
            frames = {dataset_id: store.get_time_series(dataset_id) for dataset_id in selected_ids}
            param_labels: Dict[str, str] = {}
            for dataset_id in selected_ids:
                for pid, text in _parameter_labels(dataset_id).items():
                    param_labels.setdefault(pid, text)
            parameter_options = list(param_labels)

            total_points = sum(len(frame) for frame in frames.values())
            if needs_sampling(total_points):
                st.caption(
                    f"{total_points:,} rows selected; each series is reduced to "
                    f"{SAMPLING_THRESHOLD:,} points for display."
                )

            mode = st.radio("Chart type", ["Time series", "XY"], horizontal=True, key="chart_mode")
            if mode == "Time series":
                chosen = st.multiselect(
                    "Parameters",
                    options=parameter_options,
                    default=parameter_options[:1],
                    format_func=lambda opt: param_labels.get(opt, opt),
                    key="chart_parameters",
                )
                relative = st.toggle("Relative time", key="chart_relative")
                chart = _time_series_chart(frames, chosen, param_labels, relative)
                if chart is None:
                    st.info("No values for the selected parameters.")
                else:
                    st.altair_chart(chart, use_container_width=True)
            else:
                x_param = st.selectbox(
                    "X axis", parameter_options, format_func=lambda opt: param_labels.get(opt, opt), key="xy_x"
                )
                y_param = st.selectbox(
                    "Y axis", parameter_options, format_func=lambda opt: param_labels.get(opt, opt), key="xy_y"
                )
                for dataset_id, frame in frames.items():
                    if x_param not in frame.columns or y_param not in frame.columns or x_param == y_param:
                        st.caption(f"{labels[dataset_id]}: parameters not available")
                        continue
                    chart = _xy_chart(frame, x_param, y_param, param_labels)
                    if chart is not None:
                        st.markdown(f"**{labels[dataset_id]}**")
                        st.altair_chart(chart, use_container_width=True)
