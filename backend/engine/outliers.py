"""
Spatial outlier detection on a produced layout.

Each point's mean distance to every other point is compared against the
population mean/std-dev of those means (z-score style). O(n²) time; distances
are computed in row blocks so memory stays linear in n.
"""

from __future__ import annotations

import logging
import threading
from typing import Iterator, Optional, Sequence, Tuple

import numpy as np

from core.models import OutlierResult, Point
from engine.kmeans import check_cancelled

logger = logging.getLogger("uvicorn.error")

DEFAULT_THRESHOLD_STD_DEV = 1.5
MIN_POINTS = 3

# Row/column pairs per distance block (about 25 MB of float64 differences)
DISTANCE_BLOCK_CELLS = 1 << 20


def positions_array(points: Sequence[Point]) -> np.ndarray:
    return np.asarray(
        [[p.position.x, p.position.y, p.position.z] for p in points], dtype=float
    ).reshape(len(points), 3)


def distance_blocks(
    positions: np.ndarray,
    block_rows: Optional[int] = None,
    *,
    cancel: Optional[threading.Event] = None,
) -> Iterator[Tuple[int, np.ndarray]]:
    """Yield (first row, distances) for consecutive row blocks.

    Each block is a (rows, n) array of Euclidean distances from those rows to
    every position. Blocks hold about DISTANCE_BLOCK_CELLS row/column pairs,
    so peak memory grows with n, not n².
    """
    n = len(positions)
    if block_rows is None:
        block_rows = max(1, DISTANCE_BLOCK_CELLS // max(1, n))
    for start in range(0, n, block_rows):
        check_cancelled(cancel)
        block = positions[start:start + block_rows]
        yield start, np.linalg.norm(block[:, None, :] - positions[None, :, :], axis=2)


def mean_pairwise_distances(
    positions: np.ndarray,
    block_rows: Optional[int] = None,
    *,
    cancel: Optional[threading.Event] = None,
) -> np.ndarray:
    """Mean Euclidean distance from each row to every other row."""
    n = len(positions)
    if n < 2:
        return np.zeros(n)
    out = np.empty(n)
    for start, dists in distance_blocks(positions, block_rows, cancel=cancel):
        out[start:start + len(dists)] = dists.sum(axis=1) / (n - 1)
    return out


def detect_outliers(
    points: Sequence[Point],
    threshold_std_dev: float = DEFAULT_THRESHOLD_STD_DEV,
    *,
    cancel: Optional[threading.Event] = None,
) -> OutlierResult:
    """Flag points whose mean distance exceeds mean + threshold·std."""
    ids = [p.id for p in points]
    if len(points) < MIN_POINTS:
        logger.warning("Not enough points for outlier detection (%d)", len(points))
        return OutlierResult(non_outlier_ids=ids)

    avg = mean_pairwise_distances(positions_array(points), cancel=cancel)
    mean = float(avg.mean())
    std = float(avg.std())
    logger.info("Outlier detection stats: mean avg dist=%.2f, std dev=%.2f", mean, std)

    if std == 0:
        return OutlierResult(non_outlier_ids=ids, mean_distance=mean, std_distance=0.0)

    cutoff = mean + threshold_std_dev * std
    flagged = avg > cutoff
    outliers = [pid for pid, f in zip(ids, flagged) if f]
    logger.info("Found %d potential outliers", len(outliers))
    return OutlierResult(
        outlier_ids=outliers,
        non_outlier_ids=[pid for pid, f in zip(ids, flagged) if not f],
        mean_distance=mean,
        std_distance=std,
        threshold_distance=cutoff,
    )
