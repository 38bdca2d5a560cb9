"""
Color mapping: maps a column's values to hex colors.

Numeric columns get a continuous blue→yellow hue ramp over the cached
full-dataset range; categorical columns get evenly spread hues around a
random base hue.
"""

from __future__ import annotations

import logging
from typing import Optional

import numpy as np

from core.dataset import Dataset
from core.models import (
    CategoricalColorMap,
    CategoricalStats,
    ColorMap,
    ColumnKind,
    NumericColorMap,
    NumericStats,
    Value,
)
from core.utils import hsl_to_hex, normalize_value, value_text

logger = logging.getLogger("uvicorn.error")

# Numeric ramp: hue 0.6 (blue) at min down to 0.16 (yellow) at max
NUMERIC_HUE_START = 0.6
NUMERIC_HUE_SPAN = 0.44
NUMERIC_SATURATION = 0.7
NUMERIC_LIGHTNESS = 0.5

CATEGORY_HUE_SPREAD = 0.3
CATEGORY_SATURATION = 0.65
CATEGORY_LIGHTNESS = 0.6

UNIFORM_COLOR = hsl_to_hex(NUMERIC_HUE_START, NUMERIC_SATURATION, NUMERIC_LIGHTNESS)
UNKNOWN_CATEGORY_COLOR = "#cccccc"
ERROR_COLOR = "#ff0000"


def create_color_map(
    column: str,
    dataset: Dataset,
    *,
    rng: Optional[np.random.Generator] = None,
) -> ColorMap:
    """Build a color map for *column* from the dataset's cached statistics."""
    kind = dataset.schema.kind_of(column)
    if kind is None:
        raise KeyError(f"Unknown color column '{column}'")

    stats = dataset.stats.get(column)
    if kind == ColumnKind.numeric and isinstance(stats, NumericStats):
        if stats.min == stats.max:
            logger.warning("Numeric column %r has uniform values, using a single color", column)
        return NumericColorMap(
            column=column,
            min=stats.min,
            max=stats.max,
            is_uniform=stats.min == stats.max,
        )

    categories = stats.categories if isinstance(stats, CategoricalStats) else {}
    unique_values = sorted(categories)
    rng = rng or np.random.default_rng()
    base_hue = float(rng.random())
    denom = max(1, len(unique_values) - 1)

    colors = {}
    for i, value in enumerate(unique_values):
        offset = (i / denom - 0.5) * CATEGORY_HUE_SPREAD
        colors[value] = hsl_to_hex((base_hue + offset + 1) % 1, CATEGORY_SATURATION, CATEGORY_LIGHTNESS)
    return CategoricalColorMap(column=column, colors=colors)


def color_for(value: Value, color_map: Optional[ColorMap]) -> str:
    """Color of one cell value under *color_map*."""
    if color_map is None:
        return UNKNOWN_CATEGORY_COLOR
    if isinstance(color_map, NumericColorMap):
        if color_map.is_uniform:
            return UNIFORM_COLOR
        t = normalize_value(value, color_map.min, color_map.max, 0.0, 1.0)
        t = min(1.0, max(0.0, t))
        hue = NUMERIC_HUE_START - t * NUMERIC_HUE_SPAN
        return hsl_to_hex(hue, NUMERIC_SATURATION, NUMERIC_LIGHTNESS)
    if value is None:
        return UNKNOWN_CATEGORY_COLOR
    return color_map.colors.get(value_text(value), UNKNOWN_CATEGORY_COLOR)


def cluster_color(cluster: int, k: int) -> str:
    """Distinct color per k-means cluster."""
    return hsl_to_hex(cluster / max(1, k), 0.8, 0.6)
