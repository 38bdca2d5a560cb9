"""
Column statistics.

Statistics are computed once against the full dataset and cached on it, so
filtered views and re-layouts share the same axis ranges and color scales.
"""

from __future__ import annotations

import logging
from typing import Dict, Sequence, Tuple

from core.dataset import Dataset
from core.models import CategoricalStats, ColumnKind, ColumnStats, NumericStats, Record, Schema
from core.utils import numeric_series, value_text

logger = logging.getLogger("uvicorn.error")


def numeric_column_stats(values: Sequence) -> NumericStats:
    """min/max/mean/count over the parseable values of a column."""
    s = numeric_series(values).dropna()
    if s.empty:
        logger.warning("Numeric column has no parseable values; using zero range")
        return NumericStats(min=0.0, max=0.0, mean=0.0, count=0)
    return NumericStats(
        min=float(s.min()),
        max=float(s.max()),
        mean=float(s.mean()),
        count=int(s.count()),
    )


def categorical_column_stats(values: Sequence) -> CategoricalStats:
    """Category -> count over the non-null values of a column."""
    categories: Dict[str, int] = {}
    for v in values:
        if v is None:
            continue
        key = value_text(v)
        categories[key] = categories.get(key, 0) + 1
    return CategoricalStats(categories=categories, unique_count=len(categories))


def compute_statistics(records: Sequence[Record], schema: Schema) -> Dict[str, ColumnStats]:
    """Statistics for every column of *schema* over the full record set."""
    stats: Dict[str, ColumnStats] = {}
    for col in schema.columns:
        values = [r.get(col.name) for r in records]
        if col.kind == ColumnKind.numeric:
            stats[col.name] = numeric_column_stats(values)
        else:
            stats[col.name] = categorical_column_stats(values)
    return stats


def get_numeric_stats(dataset: Dataset, column: str) -> NumericStats:
    """Cached numeric stats for *column*.

    Only numeric columns are cached with a range; asking for a categorical or
    unknown column is a programming error upstream and raises KeyError.
    """
    stats = dataset.stats.get(column)
    if not isinstance(stats, NumericStats):
        raise KeyError(f"No numeric statistics for column '{column}'")
    return stats


def numeric_range(dataset: Dataset, column: str) -> Tuple[float, float]:
    stats = get_numeric_stats(dataset, column)
    return stats.min, stats.max
