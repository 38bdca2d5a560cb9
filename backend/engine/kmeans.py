"""
K-Means clustering (Lloyd's algorithm) and cluster placement in 3D.

Clustering runs in the [0, 1]-normalized feature space; placement then puts
each cluster on a ring in the XZ plane and spreads its members over a small
sphere with a golden-angle spiral so points do not overlap.
"""

from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np

logger = logging.getLogger("uvicorn.error")

MIN_CLUSTERS = 2
MAX_CLUSTERS = 20
DEFAULT_CLUSTERS = 3
DEFAULT_MAX_ITERATIONS = 50

CLUSTER_RING_RADIUS = 60.0
CLUSTER_SPHERE_RADIUS = 15.0
PLACEMENT_JITTER = 1.0

GOLDEN_ANGLE_FACTOR = math.pi * (1 + math.sqrt(5))


class ComputationCancelled(RuntimeError):
    """Raised when a newer request superseded a running computation."""


@dataclass
class KMeansResult:
    assignments: np.ndarray
    centroids: List[List[float]] = field(default_factory=list)
    k: int = 0
    iterations: int = 0
    converged: bool = True

    @property
    def cluster_sizes(self) -> List[int]:
        if self.k == 0:
            return []
        return np.bincount(self.assignments, minlength=self.k).tolist()


def clamp_clusters(k: int) -> int:
    """Clamp a user-supplied K into the supported range."""
    return min(MAX_CLUSTERS, max(MIN_CLUSTERS, int(k)))


def check_cancelled(cancel: Optional[threading.Event]) -> None:
    if cancel is not None and cancel.is_set():
        raise ComputationCancelled("computation superseded by a newer request")


def run_kmeans(
    features: np.ndarray,
    k: int,
    *,
    max_iterations: int = DEFAULT_MAX_ITERATIONS,
    rng: Optional[np.random.Generator] = None,
    cancel: Optional[threading.Event] = None,
    on_iteration: Optional[Callable[[int, int], None]] = None,
) -> KMeansResult:
    """
    Cluster the rows of *features* into at most *k* groups.

    K is reduced to the number of distinct feature points when smaller.
    Centroids start at K distinct points sampled without replacement; a
    cluster that empties is re-seeded from a random point and forces another
    iteration. Stops when assignments are stable or *max_iterations* is hit.
    """
    features = np.asarray(features, dtype=float)
    n = len(features)
    if n == 0:
        return KMeansResult(assignments=np.zeros(0, dtype=int), k=0, iterations=0)

    rng = rng or np.random.default_rng()
    distinct = np.unique(features, axis=0)
    if k > len(distinct):
        logger.info("K=%d exceeds %d distinct points, reducing K", k, len(distinct))
    k = max(1, min(int(k), len(distinct)))

    init = rng.choice(len(distinct), size=k, replace=False)
    centroids = distinct[init].copy()
    assignments = np.full(n, -1, dtype=int)
    iterations = 0
    converged = False

    while iterations < max_iterations:
        check_cancelled(cancel)
        iterations += 1

        dists = np.linalg.norm(features[:, None, :] - centroids[None, :, :], axis=2)
        new_assignments = np.argmin(dists, axis=1)
        changed = int(np.count_nonzero(new_assignments != assignments))
        assignments = new_assignments

        reseeded = False
        new_centroids = centroids.copy()
        for j in range(k):
            members = features[assignments == j]
            if len(members):
                new_centroids[j] = members.mean(axis=0)
            else:
                logger.warning("K-Means: cluster %d became empty, re-seeding centroid", j)
                new_centroids[j] = features[int(rng.integers(n))]
                reseeded = True
        centroids = new_centroids

        if on_iteration is not None:
            on_iteration(iterations, changed)

        if changed == 0 and not reseeded:
            converged = True
            break

    logger.info("K-Means completed in %d iterations (converged=%s)", iterations, converged)
    return KMeansResult(
        assignments=assignments,
        centroids=[c.tolist() for c in centroids],
        k=k,
        iterations=iterations,
        converged=converged,
    )


# ---------------------------------------------------------------------------
# Placement
# ---------------------------------------------------------------------------

def cluster_center(cluster: int, k: int) -> Tuple[float, float, float]:
    """Center of *cluster* on a ring in the XZ plane."""
    if k <= 1:
        return 0.0, 0.0, 0.0
    angle = 2 * math.pi * cluster / k
    return CLUSTER_RING_RADIUS * math.cos(angle), 0.0, CLUSTER_RING_RADIUS * math.sin(angle)


def spiral_offset(i: int, n: int, radius: float = CLUSTER_SPHERE_RADIUS) -> Tuple[float, float, float]:
    """i-th of n golden-angle spiral points on a sphere of *radius*."""
    phi = math.acos(1 - 2 * i / n)
    theta = GOLDEN_ANGLE_FACTOR * i
    return (
        radius * math.sin(phi) * math.cos(theta),
        radius * math.cos(phi),
        radius * math.sin(phi) * math.sin(theta),
    )


def place_clusters(
    assignments: Sequence[int],
    centroids: Sequence[Sequence[float]],
    *,
    dimensions: int = 3,
    rng: Optional[np.random.Generator] = None,
) -> List[Optional[Tuple[float, float, float]]]:
    """
    3D position per assigned point, or None where the cluster index or its
    centroid is malformed (callers turn those into error points).
    """
    k = len(centroids)
    rng = rng or np.random.default_rng()
    sizes = [0] * k
    for c in assignments:
        if 0 <= c < k:
            sizes[c] += 1

    seen = [0] * k
    positions: List[Optional[Tuple[float, float, float]]] = []
    for idx, c in enumerate(assignments):
        if not (0 <= c < k):
            logger.error("Invalid cluster index %s for point %d (k=%d)", c, idx, k)
            positions.append(None)
            continue
        centroid = centroids[c]
        if centroid is None or len(centroid) != dimensions:
            logger.error("Invalid centroid for cluster %d: %r", c, centroid)
            positions.append(None)
            continue

        cx, cy, cz = cluster_center(c, k)
        ox, oy, oz = spiral_offset(seen[c], sizes[c])
        seen[c] += 1
        jx, jy, jz = rng.uniform(-PLACEMENT_JITTER, PLACEMENT_JITTER, size=3)
        positions.append((cx + ox + float(jx), cy + oy + float(jy), cz + oz + float(jz)))
    return positions
