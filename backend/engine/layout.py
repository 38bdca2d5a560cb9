"""
Layout engine: maps (filtered) records to colored 3D points.

Three interchangeable strategies:
- scatter: x/y/z column values normalized to [-50, 50]
- grid:    record index decomposed into a cube, data values ignored
- kmeans:  Lloyd clustering in normalized feature space, clusters on a ring

Normalization always uses the full-dataset statistics cached at ingestion, so
axis scales stay put when a filter narrows the view.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np

from core.dataset import Dataset
from core.models import (
    ColorMap,
    ColumnKind,
    LayoutKind,
    LayoutOptions,
    LayoutResult,
    Point,
    Position,
    Record,
)
from core.utils import format_value, integer_cbrt_ceil, normalize_value, parse_number, resolve_col, value_text
from engine.colors import ERROR_COLOR, cluster_color, color_for, create_color_map
from engine.kmeans import clamp_clusters, place_clusters, run_kmeans
from engine.stats import numeric_range

logger = logging.getLogger("uvicorn.error")

SCATTER_MIN = -50.0
SCATTER_MAX = 50.0
GRID_SPACING = 10.0

IndexedRecord = Tuple[int, Record]


class LayoutError(ValueError):
    """Raised when layout options reference unusable columns."""


# ---------------------------------------------------------------------------
# Option resolution
# ---------------------------------------------------------------------------

def parse_layout_kind(kind) -> LayoutKind:
    """Known kind, or scatter with a warning."""
    if isinstance(kind, LayoutKind):
        return kind
    try:
        return LayoutKind(str(kind).strip().lower())
    except ValueError:
        logger.warning("Unknown layout %r, falling back to scatter", kind)
        return LayoutKind.scatter


def _resolve_axis(dataset: Dataset, requested: Optional[str], default: str, axis: str) -> str:
    if not requested:
        return default
    name = resolve_col(requested, dataset.columns)
    if name is None:
        raise LayoutError(f"{axis} column '{requested}' not found")
    if dataset.schema.kind_of(name) != ColumnKind.numeric:
        raise LayoutError(f"{axis} column '{name}' is not numeric")
    return name


def resolve_axes(dataset: Dataset, options: LayoutOptions) -> Tuple[str, str, str]:
    """x/y/z columns: explicit options, else the first three numeric columns."""
    numeric = dataset.schema.numeric_columns
    if len(numeric) < 3:
        raise LayoutError("Dataset has fewer than three numeric columns")
    return (
        _resolve_axis(dataset, options.x_column, numeric[0], "X"),
        _resolve_axis(dataset, options.y_column, numeric[1], "Y"),
        _resolve_axis(dataset, options.z_column, numeric[2], "Z"),
    )


def default_color_column(dataset: Dataset) -> Optional[str]:
    categorical = dataset.schema.categorical_columns
    if categorical:
        return categorical[0]
    return dataset.columns[0] if dataset.columns else None


def resolve_color_column(dataset: Dataset, requested: Optional[str]) -> Optional[str]:
    if requested:
        name = resolve_col(requested, dataset.columns)
        if name is not None:
            return name
        logger.warning("Color column %r not found, using default", requested)
    return default_color_column(dataset)


# ---------------------------------------------------------------------------
# Filtering
# ---------------------------------------------------------------------------

def filter_records(
    dataset: Dataset,
    column: Optional[str],
    value: Optional[str],
) -> List[IndexedRecord]:
    """Rows whose *column* text contains *value*, case-insensitively.

    No column or an empty value means no filter. Null cells never match.
    """
    rows = dataset.indexed_records()
    if not column or value is None or value == "":
        return rows
    name = resolve_col(column, dataset.columns)
    if name is None:
        raise LayoutError(f"Filter column '{column}' not found")

    needle = value.lower()
    kept = [
        (i, r) for i, r in rows
        if r.get(name) is not None and needle in value_text(r.get(name)).lower()
    ]
    logger.info("Filter %s~%r kept %d of %d rows", name, value, len(kept), len(rows))
    return kept


# ---------------------------------------------------------------------------
# Point construction
# ---------------------------------------------------------------------------

def make_label(
    record: Record,
    index: int,
    columns: Sequence[Optional[str]],
    prefix: str = "",
) -> str:
    lines = [prefix, f"ID: {index}"] if prefix else [f"Point {index}"]
    shown = set()
    for col in columns:
        if col and col not in shown and col in record:
            lines.append(f"{col}: {format_value(record[col])}")
            shown.add(col)
    return "\n".join(lines)


def normalize_axis(dataset: Dataset, column: str, value, lo: float, hi: float) -> float:
    """Normalize one value against the full-dataset range of *column*.

    Missing or unparseable values count as a raw 0.
    """
    cmin, cmax = numeric_range(dataset, column)
    num = parse_number(value)
    return normalize_value(num if num is not None else 0.0, cmin, cmax, lo, hi)


def _error_point(n: int, index: int, record: Record, cluster: Optional[int], message: str) -> Point:
    return Point(
        id=f"point-{n}-error",
        index=index,
        position=Position(),
        color=ERROR_COLOR,
        label=f"Error: {message}",
        cluster=cluster,
        original_record=dict(record),
    )


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------

def scatter_layout(
    dataset: Dataset,
    records: Sequence[IndexedRecord],
    axes: Tuple[str, str, str],
    color_column: Optional[str],
    color_map: Optional[ColorMap],
) -> List[Point]:
    x_col, y_col, z_col = axes
    points: List[Point] = []
    for n, (index, record) in enumerate(records):
        pos = Position(
            x=normalize_axis(dataset, x_col, record.get(x_col), SCATTER_MIN, SCATTER_MAX),
            y=normalize_axis(dataset, y_col, record.get(y_col), SCATTER_MIN, SCATTER_MAX),
            z=normalize_axis(dataset, z_col, record.get(z_col), SCATTER_MIN, SCATTER_MAX),
        )
        points.append(Point(
            id=f"point-{n}",
            index=index,
            position=pos,
            color=color_for(record.get(color_column) if color_column else None, color_map),
            label=make_label(record, index, [x_col, y_col, z_col, color_column]),
            original_record=dict(record),
        ))
    return points


def grid_position(n: int, grid_size: int, spacing: float = GRID_SPACING) -> Position:
    """Position of the n-th cell of a grid_size³ cube centered on the origin."""
    offset = (grid_size - 1) * spacing / 2
    return Position(
        x=(n % grid_size) * spacing - offset,
        y=((n // grid_size) % grid_size) * spacing - offset,
        z=(n // (grid_size * grid_size)) * spacing - offset,
    )


def grid_layout(
    records: Sequence[IndexedRecord],
    color_column: Optional[str],
    color_map: Optional[ColorMap],
) -> List[Point]:
    grid_size = integer_cbrt_ceil(len(records))
    return [
        Point(
            id=f"point-{n}",
            index=index,
            position=grid_position(n, grid_size),
            color=color_for(record.get(color_column) if color_column else None, color_map),
            label=make_label(record, index, [color_column]),
            original_record=dict(record),
        )
        for n, (index, record) in enumerate(records)
    ]


def feature_matrix(
    dataset: Dataset,
    records: Sequence[IndexedRecord],
    axes: Tuple[str, str, str],
) -> np.ndarray:
    """(n, 3) matrix of [0, 1]-normalized axis values."""
    rows = [
        [normalize_axis(dataset, col, record.get(col), 0.0, 1.0) for col in axes]
        for _, record in records
    ]
    return np.asarray(rows, dtype=float).reshape(len(rows), len(axes))


def kmeans_layout(
    dataset: Dataset,
    records: Sequence[IndexedRecord],
    axes: Tuple[str, str, str],
    color_column: Optional[str],
    *,
    clusters: int,
    max_iterations: int,
    rng: np.random.Generator,
    cancel: Optional[threading.Event] = None,
    on_iteration: Optional[Callable[[int, int], None]] = None,
) -> Tuple[List[Point], int, int, bool]:
    """Points plus (effective K, iterations, converged)."""
    if not records:
        return [], 0, 0, True

    result = run_kmeans(
        feature_matrix(dataset, records, axes),
        clamp_clusters(clusters),
        max_iterations=max_iterations,
        rng=rng,
        cancel=cancel,
        on_iteration=on_iteration,
    )
    positions = place_clusters(result.assignments.tolist(), result.centroids, rng=rng)

    points: List[Point] = []
    for n, ((index, record), cluster, pos) in enumerate(zip(records, result.assignments.tolist(), positions)):
        if pos is None:
            points.append(_error_point(n, index, record, cluster, f"invalid centroid for cluster {cluster}"))
            continue
        points.append(Point(
            id=f"point-{n}",
            index=index,
            position=Position(x=pos[0], y=pos[1], z=pos[2]),
            color=cluster_color(cluster, result.k),
            label=make_label(record, index, [color_column], prefix=f"Cluster {cluster}"),
            cluster=cluster,
            original_record=dict(record),
        ))
    return points, result.k, result.iterations, result.converged


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def layout(
    dataset: Dataset,
    records: Sequence[IndexedRecord],
    kind,
    options: Optional[LayoutOptions] = None,
    *,
    cancel: Optional[threading.Event] = None,
    on_iteration: Optional[Callable[[int, int], None]] = None,
) -> LayoutResult:
    """Lay out an explicit (already filtered) list of (row index, record) pairs."""
    options = options or LayoutOptions()
    layout_kind = parse_layout_kind(kind)
    rng = np.random.default_rng(options.seed)

    axes = resolve_axes(dataset, options) if layout_kind != LayoutKind.grid else _grid_axes(dataset)
    color_column = resolve_color_column(dataset, options.color_column)

    result = LayoutResult(
        kind=layout_kind,
        x_column=axes[0] if axes else None,
        y_column=axes[1] if axes else None,
        z_column=axes[2] if axes else None,
        color_column=color_column,
    )

    if layout_kind == LayoutKind.kmeans:
        points, k, iterations, converged = kmeans_layout(
            dataset, records, axes, color_column,
            clusters=options.clusters,
            max_iterations=options.max_iterations,
            rng=rng,
            cancel=cancel,
            on_iteration=on_iteration,
        )
        result.points = points
        result.clusters = k
        result.iterations = iterations
        result.converged = converged
        logger.info("K-Means layout created with %d points in %d clusters", len(points), k)
        return result

    color_map = create_color_map(color_column, dataset, rng=rng) if color_column else None
    result.color_map = color_map
    if layout_kind == LayoutKind.grid:
        result.points = grid_layout(records, color_column, color_map)
    else:
        result.points = scatter_layout(dataset, records, axes, color_column, color_map)
    logger.info("%s layout created with %d points", layout_kind.value, len(result.points))
    return result


def _grid_axes(dataset: Dataset) -> Optional[Tuple[str, str, str]]:
    numeric = dataset.schema.numeric_columns
    return tuple(numeric[:3]) if len(numeric) >= 3 else None


def build_layout(
    dataset: Dataset,
    kind,
    options: Optional[LayoutOptions] = None,
    *,
    cancel: Optional[threading.Event] = None,
    on_iteration: Optional[Callable[[int, int], None]] = None,
) -> LayoutResult:
    """Apply the option filter to the full dataset, then lay out the rest."""
    options = options or LayoutOptions()
    records = filter_records(dataset, options.filter_column, options.filter_value)
    if not records:
        logger.warning("No rows to lay out for %s", dataset.name)
    return layout(dataset, records, kind, options, cancel=cancel, on_iteration=on_iteration)
