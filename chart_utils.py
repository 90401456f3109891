"""Helpers for preparing stored series for charting."""

from __future__ import annotations

import math
from datetime import datetime
from typing import Dict, Iterable, List, Mapping, Optional, Union

import numpy as np
import pandas as pd

SAMPLING_THRESHOLD = 10_000


def needs_sampling(length: int, threshold: int = SAMPLING_THRESHOLD) -> bool:
    return length > threshold


def lttb_indices(points, threshold: int) -> np.ndarray:
    """Positions of the points Largest-Triangle-Three-Buckets keeps.

    The first and last points are always kept. Inputs with ``threshold``
    points or fewer, or a threshold below three, keep every point.
    """

    data = np.asarray(points, dtype=float)
    n = len(data)
    if threshold >= n or threshold < 3:
        return np.arange(n)

    every = (n - 2) / (threshold - 2)
    selected = np.empty(threshold, dtype=int)
    selected[0] = 0
    a = 0
    for i in range(threshold - 2):
        avg_start = int(math.floor((i + 1) * every)) + 1
        avg_end = min(int(math.floor((i + 2) * every)) + 1, n)
        avg_x, avg_y = data[avg_start:avg_end].mean(axis=0)

        range_start = int(math.floor(i * every)) + 1
        range_end = int(math.floor((i + 1) * every)) + 1
        bucket = data[range_start:range_end]

        ax, ay = data[a]
        areas = np.abs((ax - avg_x) * (bucket[:, 1] - ay) - (ax - bucket[:, 0]) * (avg_y - ay))
        a = range_start + int(np.argmax(areas))
        selected[i + 1] = a
    selected[-1] = n - 1
    return selected


def lttb_downsample(points, threshold: int) -> np.ndarray:
    """Reduce ``(x, y)`` points to at most ``threshold`` with LTTB."""

    data = np.asarray(points, dtype=float)
    return data[lttb_indices(data, threshold)]


def decimate_downsample(values, max_points: int) -> np.ndarray:
    """Keep every n-th value so that at most ``max_points`` remain."""

    data = np.asarray(values)
    if len(data) <= max_points:
        return data
    rate = math.ceil(len(data) / max_points)
    length = len(data) // rate
    return data[: length * rate : rate]


def binary_search_closest(values, target: float) -> int:
    """Index of the entry of sorted ``values`` nearest to ``target``.

    Returns -1 for empty input. On a tie the lower index wins.
    """

    arr = np.asarray(values, dtype=float)
    if len(arr) == 0:
        return -1
    if target <= arr[0]:
        return 0
    if target >= arr[-1]:
        return len(arr) - 1

    right = int(np.searchsorted(arr, target, side="left"))
    if arr[right] == target:
        return right
    left = right - 1
    return right if abs(arr[right] - target) < abs(arr[left] - target) else left


def format_elapsed_time(seconds: float) -> str:
    """Short label for an elapsed duration, e.g. ``1m 30s``, ``2h 15m``, ``3d 12h``."""

    if seconds < 0:
        return "0s"

    days = int(seconds // 86400)
    hours = int((seconds % 86400) // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = int(seconds % 60)

    if days > 0:
        return f"{days}d {hours}h" if hours > 0 else f"{days}d"
    if hours > 0:
        return f"{hours}h {minutes}m" if minutes > 0 else f"{hours}h"
    if minutes > 0:
        # seconds only matter for short spans
        if secs > 0 and minutes < 10:
            return f"{minutes}m {secs}s"
        return f"{minutes}m"
    return f"{secs}s"


def generate_time_axis_labels(
    min_time: float, max_time: float, num_labels: int = 5
) -> List[Dict[str, Union[float, str]]]:
    if num_labels < 2:
        return [{"value": min_time, "label": format_elapsed_time(min_time)}]
    step = (max_time - min_time) / (num_labels - 1)
    labels = []
    for i in range(num_labels):
        value = min_time + step * i
        labels.append({"value": value, "label": format_elapsed_time(value)})
    return labels


def convert_to_relative_time(timestamps, start) -> np.ndarray:
    """Seconds elapsed since ``start`` for each timestamp.

    Accepts datetimes (with ``start`` a datetime) or plain seconds.
    """

    if isinstance(start, (datetime, pd.Timestamp, np.datetime64)):
        series = pd.to_datetime(pd.Series(timestamps))
        return (series - pd.Timestamp(start)).dt.total_seconds().to_numpy()
    return np.asarray(timestamps, dtype=float) - float(start)


def find_earliest_timestamp(
    frames: Union[Mapping[object, pd.DataFrame], Iterable[pd.DataFrame]],
    column: str = "timestamp",
) -> Optional[pd.Timestamp]:
    """Earliest timestamp across several series; ``None`` when all are empty."""

    if isinstance(frames, Mapping):
        frames = frames.values()
    earliest: Optional[pd.Timestamp] = None
    for frame in frames:
        if frame is None or frame.empty or column not in frame.columns:
            continue
        first = pd.to_datetime(frame[column]).min()
        if pd.isna(first):
            continue
        if earliest is None or first < earliest:
            earliest = first
    return earliest


def downsample_series(
    frame: pd.DataFrame, x: str, y: str, threshold: int = SAMPLING_THRESHOLD
) -> pd.DataFrame:
    """Return ``frame[[x, y]]`` without gaps, LTTB-reduced when it is large.

    ``x`` may be a datetime column; it is reduced on seconds since its first
    value.
    """

    sub = frame[[x, y]].dropna().reset_index(drop=True)
    if not needs_sampling(len(sub), threshold):
        return sub

    x_values = sub[x]
    if pd.api.types.is_datetime64_any_dtype(x_values):
        x_numeric = (x_values - x_values.iloc[0]).dt.total_seconds().to_numpy()
    else:
        x_numeric = x_values.to_numpy(dtype=float)
    points = np.column_stack([x_numeric, sub[y].to_numpy(dtype=float)])
    return sub.iloc[lttb_indices(points, threshold)].reset_index(drop=True)
