"""Nearest-neighbour connection lines between laid-out points."""

from __future__ import annotations

import logging
import threading
from typing import List, Optional, Sequence

import numpy as np

from core.models import Point, PointLink
from engine.outliers import distance_blocks, positions_array

logger = logging.getLogger("uvicorn.error")


def nearest_neighbor_links(
    points: Sequence[Point],
    *,
    cancel: Optional[threading.Event] = None,
    block_rows: Optional[int] = None,
) -> List[PointLink]:
    """One link per point to its nearest other point (first index wins ties)."""
    if len(points) < 2:
        return []
    pos = positions_array(points)
    nearest = np.empty(len(points), dtype=int)
    distance = np.empty(len(points))
    for start, dists in distance_blocks(pos, block_rows, cancel=cancel):
        rows = np.arange(len(dists))
        dists[rows, start + rows] = np.inf
        nearest[start:start + len(dists)] = np.argmin(dists, axis=1)
        distance[start:start + len(dists)] = dists[rows, nearest[start:start + len(dists)]]

    links = [
        PointLink(
            source_id=points[i].id,
            target_id=points[int(j)].id,
            distance=float(distance[i]),
        )
        for i, j in enumerate(nearest)
    ]
    logger.info("Created %d nearest-neighbour links", len(links))
    return links
