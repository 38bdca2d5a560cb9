"""
Correlation analyzer: Pearson r between two numeric columns, plus the point
pairs a renderer should link when the correlation is strong.

The global r gates whether any pairs are emitted at all; pairs are not a
per-pair significance test. Linking is capped at the first
MAX_LINKED_POINTS eligible rows.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from core.dataset import Dataset
from core.models import CorrelationResult, Point, PointPair
from core.utils import parse_number, resolve_col

logger = logging.getLogger("uvicorn.error")

MAX_LINKED_POINTS = 50


class AnalysisError(ValueError):
    """Raised when analysis parameters reference unusable columns."""


def _resolve(dataset: Dataset, column: str) -> str:
    name = resolve_col(column, dataset.columns)
    if name is None:
        raise AnalysisError(f"Column '{column}' not found")
    return name


def paired_values(dataset: Dataset, col1: str, col2: str) -> List[Tuple[int, float, float]]:
    """(row index, v1, v2) for rows where both values parse as numbers."""
    out: List[Tuple[int, float, float]] = []
    for i, record in enumerate(dataset.records):
        v1 = parse_number(record.get(col1))
        v2 = parse_number(record.get(col2))
        if v1 is not None and v2 is not None:
            out.append((i, v1, v2))
    return out


def pearson(values1: Sequence[float], values2: Sequence[float]) -> Optional[float]:
    """Pearson r over mean-centered values; None when undefined."""
    if len(values1) < 2 or len(values1) != len(values2):
        return None
    a = np.asarray(values1, dtype=float)
    b = np.asarray(values2, dtype=float)
    da = a - a.mean()
    db = b - b.mean()
    denom = np.sqrt((da ** 2).sum()) * np.sqrt((db ** 2).sum())
    if denom == 0:
        return None
    return float((da * db).sum() / denom)


def pearson_correlation(dataset: Dataset, col1: str, col2: str) -> Optional[float]:
    """Pearson r between two columns of *dataset*, or None if undefined."""
    c1, c2 = _resolve(dataset, col1), _resolve(dataset, col2)
    pairs = paired_values(dataset, c1, c2)
    if len(pairs) < 2:
        logger.warning("Not enough valid data points for correlation of %s and %s", c1, c2)
        return None
    r = pearson([p[1] for p in pairs], [p[2] for p in pairs])
    if r is None:
        logger.warning("Correlation denominator is zero for %s and %s", c1, c2)
    return r


def calculate_correlations(
    dataset: Dataset,
    col1: str,
    col2: str,
    threshold: float,
    points: Optional[Sequence[Point]] = None,
) -> CorrelationResult:
    """
    Global r between *col1* and *col2*, and the point pairs to link if
    |r| >= threshold.

    With *points*, only rows shown in that layout are linked and pairs carry
    the point ids; otherwise pairs reference dataset row indices.
    """
    c1, c2 = _resolve(dataset, col1), _resolve(dataset, col2)
    r = pearson_correlation(dataset, c1, c2)
    result = CorrelationResult(column1=c1, column2=c2, coefficient=r, threshold=threshold)
    if r is None:
        return result
    if abs(r) < threshold:
        logger.info("Correlation %.4f below threshold %s, no links", r, threshold)
        return result

    valid_rows = [p[0] for p in paired_values(dataset, c1, c2)]
    ids: Dict[int, Optional[str]] = {}
    if points is not None:
        shown = {p.index: p.id for p in points}
        valid_rows = [i for i in valid_rows if i in shown]
        ids = {i: shown[i] for i in valid_rows}

    linked = valid_rows[:MAX_LINKED_POINTS]
    pairs: List[PointPair] = []
    for a in range(len(linked)):
        for b in range(a + 1, len(linked)):
            pairs.append(PointPair(
                point1_index=linked[a],
                point2_index=linked[b],
                point1_id=ids.get(linked[a]),
                point2_id=ids.get(linked[b]),
                correlation=r,
            ))
    result.pairs = pairs
    logger.info("Correlation %.4f meets threshold %s: %d pairs", r, threshold, len(pairs))
    return result
