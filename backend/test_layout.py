"""
Tests for the layout engine: scatter, grid and k-means strategies, filtering,
option resolution and cluster placement.
"""

import logging
import math
import threading

import numpy as np
import pytest

from core.models import LayoutKind, LayoutOptions
from engine.colors import ERROR_COLOR, cluster_color
from engine.ingest import ingest
from engine.kmeans import (
    CLUSTER_RING_RADIUS,
    CLUSTER_SPHERE_RADIUS,
    ComputationCancelled,
    clamp_clusters,
    place_clusters,
    run_kmeans,
    spiral_offset,
)
from engine.layout import (
    LayoutError,
    build_layout,
    filter_records,
    grid_position,
    layout,
    parse_layout_kind,
)


@pytest.fixture
def xyz_dataset():
    return ingest("x,y,z\n1,2,3\n4,5,6\n7,8,9", "csv", name="xyz")


@pytest.fixture
def labeled_dataset():
    csv = "x,y,z,kind\n0,0,0,Alpha\n10,10,10,beta\n5,5,5,alphabet"
    return ingest(csv, "csv", name="labeled")


def _numeric_dataset(n):
    rows = "\n".join(f"{i},{(i * i) % 7},{i % 3}" for i in range(n))
    return ingest("a,b,c\n" + rows, "csv", name=f"n{n}")


class TestScatterLayout:
    """Tests for column-driven positions."""

    def test_positions_span_fixed_range(self, xyz_dataset):
        """Min maps to -50, max to 50 and the midpoint to 0 on every axis."""
        result = build_layout(xyz_dataset, "scatter")
        assert result.kind == LayoutKind.scatter
        assert (result.x_column, result.y_column, result.z_column) == ("x", "y", "z")
        xs = [p.position.x for p in result.points]
        ys = [p.position.y for p in result.points]
        zs = [p.position.z for p in result.points]
        for axis in (xs, ys, zs):
            assert axis == pytest.approx([-50.0, 0.0, 50.0])

    def test_constant_column_maps_to_zero(self):
        ds = ingest("x,y,z\n3,1,2\n3,5,6", "csv")
        result = build_layout(ds, "scatter")
        assert all(p.position.x == 0.0 for p in result.points)

    def test_point_ids_and_labels(self, xyz_dataset):
        result = build_layout(xyz_dataset, "scatter")
        assert [p.id for p in result.points] == ["point-0", "point-1", "point-2"]
        assert result.points[1].label.splitlines()[:2] == ["Point 1", "x: 4"]
        assert result.points[0].original_record == {"x": 1.0, "y": 2.0, "z": 3.0}

    def test_explicit_axes(self, xyz_dataset):
        options = LayoutOptions(x_column="Z", y_column="x", z_column="y")
        result = build_layout(xyz_dataset, "scatter", options)
        assert (result.x_column, result.y_column, result.z_column) == ("z", "x", "y")

    @pytest.mark.parametrize("column", ["kind", "missing"])
    def test_unusable_axis_raises(self, labeled_dataset, column):
        with pytest.raises(LayoutError):
            build_layout(labeled_dataset, "scatter", LayoutOptions(x_column=column))

    def test_default_color_is_first_categorical(self, labeled_dataset):
        result = build_layout(labeled_dataset, "scatter", LayoutOptions(seed=3))
        assert result.color_column == "kind"
        assert result.color_map is not None
        colors = {p.original_record["kind"]: p.color for p in result.points}
        assert len(set(colors.values())) == 3

    def test_unknown_color_column_falls_back(self, labeled_dataset):
        result = build_layout(labeled_dataset, "scatter", LayoutOptions(color_column="nope"))
        assert result.color_column == "kind"

    def test_unknown_kind_falls_back_to_scatter(self, xyz_dataset):
        assert parse_layout_kind("spiral") == LayoutKind.scatter
        assert parse_layout_kind(" KMeans ") == LayoutKind.kmeans
        assert build_layout(xyz_dataset, "spiral").kind == LayoutKind.scatter


class TestFiltering:
    """Tests for filtered views over full-dataset statistics."""

    def test_substring_match_is_case_insensitive(self, labeled_dataset):
        kept = filter_records(labeled_dataset, "kind", "ALPHA")
        assert [i for i, _ in kept] == [0, 2]

    def test_empty_value_means_no_filter(self, labeled_dataset):
        assert len(filter_records(labeled_dataset, "kind", "")) == 3
        assert len(filter_records(labeled_dataset, None, "x")) == 3

    def test_unknown_filter_column_raises(self, labeled_dataset):
        with pytest.raises(LayoutError):
            filter_records(labeled_dataset, "nope", "a")

    def test_filtered_points_keep_full_range_normalization(self, labeled_dataset):
        """A filtered view is positioned against the full-dataset min/max."""
        options = LayoutOptions(filter_column="kind", filter_value="alphabet")
        result = build_layout(labeled_dataset, "scatter", options)
        assert len(result.points) == 1
        point = result.points[0]
        assert point.index == 2
        assert point.id == "point-0"
        assert point.position.x == pytest.approx(0.0)

    @pytest.mark.parametrize("kind", ["scatter", "grid", "kmeans"])
    def test_no_matches_gives_empty_layout(self, labeled_dataset, kind):
        options = LayoutOptions(filter_column="kind", filter_value="zzz")
        result = build_layout(labeled_dataset, kind, options)
        assert result.points == []


class TestGridLayout:
    """Tests for index-driven cube placement."""

    def test_positions_are_unique(self):
        result = build_layout(_numeric_dataset(10), "grid")
        positions = {(p.position.x, p.position.y, p.position.z) for p in result.points}
        assert len(positions) == 10

    def test_full_cube_is_centered(self):
        result = build_layout(_numeric_dataset(8), "grid")
        coords = sorted({p.position.x for p in result.points})
        assert coords == [-5.0, 5.0]
        assert sum(p.position.y for p in result.points) == 0.0
        assert sum(p.position.z for p in result.points) == 0.0

    def test_grid_position_decomposition(self):
        """n = x + y*g + z*g² with spacing 10."""
        pos = grid_position(5, 3)
        assert (pos.x, pos.y, pos.z) == (10.0, 0.0, -10.0)
        pos = grid_position(26, 3)
        assert (pos.x, pos.y, pos.z) == (10.0, 10.0, 10.0)

    def test_single_point_sits_at_origin(self):
        result = build_layout(_numeric_dataset(1), "grid")
        p = result.points[0].position
        assert (p.x, p.y, p.z) == (0.0, 0.0, 0.0)


class TestKMeansLayout:
    """Tests for clustering and cluster placement."""

    @pytest.mark.parametrize("n", [1, 2, 5, 17, 40])
    @pytest.mark.parametrize("k", [1, 3, 25])
    def test_cluster_sizes_sum_to_point_count(self, n, k):
        ds = _numeric_dataset(n)
        result = build_layout(ds, "kmeans", LayoutOptions(clusters=k, seed=11))
        assert len(result.points) == n
        assert 1 <= result.clusters <= min(clamp_clusters(k), n)
        sizes = [0] * result.clusters
        for p in result.points:
            assert 0 <= p.cluster < result.clusters
            sizes[p.cluster] += 1
        assert sum(sizes) == n

    def test_two_separated_groups(self):
        """Two well-separated triples split into clusters of size 3 and 3."""
        csv = (
            "x,y,z\n0,0,0\n1,0,1\n0,1,0\n"
            "100,100,100\n101,100,99\n100,101,100"
        )
        ds = ingest(csv, "csv")
        result = build_layout(ds, "kmeans", LayoutOptions(clusters=2, seed=42))
        assert result.clusters == 2
        assert result.converged is True
        clusters = [p.cluster for p in result.points]
        assert sorted([clusters.count(0), clusters.count(1)]) == [3, 3]
        assert len(set(clusters[:3])) == 1
        assert len(set(clusters[3:])) == 1

    def test_points_sit_near_their_ring_center(self):
        ds = _numeric_dataset(30)
        result = build_layout(ds, "kmeans", LayoutOptions(clusters=3, seed=5))
        k = result.clusters
        for p in result.points:
            angle = 2 * math.pi * p.cluster / k
            cx, cz = CLUSTER_RING_RADIUS * math.cos(angle), CLUSTER_RING_RADIUS * math.sin(angle)
            dist = math.sqrt((p.position.x - cx) ** 2 + p.position.y ** 2 + (p.position.z - cz) ** 2)
            assert dist <= CLUSTER_SPHERE_RADIUS + math.sqrt(3) + 1e-9

    def test_colored_by_cluster(self):
        result = build_layout(_numeric_dataset(12), "kmeans", LayoutOptions(clusters=3, seed=2))
        assert result.color_map is None
        for p in result.points:
            assert p.color == cluster_color(p.cluster, result.clusters)
            assert p.label.startswith(f"Cluster {p.cluster}\n")

    def test_duplicate_points_reduce_k(self):
        ds = ingest("x,y,z\n1,1,1\n1,1,1\n1,1,1\n1,1,1", "csv")
        result = build_layout(ds, "kmeans", LayoutOptions(clusters=3, seed=0))
        assert result.clusters == 1
        assert {p.cluster for p in result.points} == {0}

    def test_seeded_runs_are_reproducible(self):
        ds = _numeric_dataset(25)
        options = LayoutOptions(clusters=4, seed=99)
        a = build_layout(ds, "kmeans", options)
        b = build_layout(ds, "kmeans", options)
        assert [p.position for p in a.points] == [p.position for p in b.points]
        assert [p.cluster for p in a.points] == [p.cluster for p in b.points]

    def test_iteration_callback(self):
        calls = []
        ds = _numeric_dataset(20)
        result = layout(
            ds, ds.indexed_records(), "kmeans", LayoutOptions(clusters=3, seed=1),
            on_iteration=lambda it, changed: calls.append((it, changed)),
        )
        assert [c[0] for c in calls] == list(range(1, result.iterations + 1))
        assert calls[0][1] == 20
        if result.converged:
            assert calls[-1][1] == 0


class TestKMeansCore:
    """Tests for Lloyd iterations and placement helpers."""

    @pytest.mark.parametrize("k,expected", [(-4, 2), (0, 2), (1, 2), (7, 7), (20, 20), (99, 20)])
    def test_clamp_clusters(self, k, expected):
        assert clamp_clusters(k) == expected

    def test_empty_input(self):
        result = run_kmeans(np.zeros((0, 3)), 3)
        assert result.k == 0
        assert result.cluster_sizes == []

    def test_max_iterations_caps_run(self):
        rng = np.random.default_rng(0)
        features = rng.random((200, 3))
        result = run_kmeans(features, 8, max_iterations=1, rng=np.random.default_rng(1))
        assert result.iterations == 1
        assert result.converged is False
        assert sum(result.cluster_sizes) == 200

    def test_cancelled_run_raises(self):
        token = threading.Event()
        token.set()
        with pytest.raises(ComputationCancelled):
            run_kmeans(np.eye(3), 2, rng=np.random.default_rng(0), cancel=token)

    def test_malformed_centroid_yields_no_position(self):
        positions = place_clusters([0, 1, 5], [[0.1, 0.2, 0.3], [0.5, 0.5]], rng=np.random.default_rng(0))
        assert positions[0] is not None
        assert positions[1] is None
        assert positions[2] is None

    def test_spiral_points_lie_on_sphere(self):
        for i in range(7):
            x, y, z = spiral_offset(i, 7)
            assert math.sqrt(x * x + y * y + z * z) == pytest.approx(CLUSTER_SPHERE_RADIUS)

    def test_error_color_is_red(self):
        assert ERROR_COLOR == "#ff0000"


class _FixedInitRng:
    """Generator stand-in with a fixed centroid init and re-seed index."""

    def __init__(self, init, reseed_index):
        self._init = init
        self._reseed_index = reseed_index

    def choice(self, a, size=None, replace=True):
        return np.asarray(self._init)

    def integers(self, high):
        return self._reseed_index


TWO_GROUPS = np.array([
    [0.0, 0.0, 0.0], [0.0, 1.0, 0.0], [1.0, 0.0, 0.0],
    [10.0, 10.0, 10.0], [10.0, 11.0, 10.0], [11.0, 10.0, 10.0],
])


class TestKMeansReseed:
    """Tests for empty-cluster re-seeding."""

    def test_empty_cluster_is_reseeded(self, caplog):
        """Coincident initial centroids leave cluster 1 empty on the first pass."""
        caplog.set_level(logging.WARNING, logger="uvicorn.error")
        calls = []
        result = run_kmeans(
            TWO_GROUPS, 2,
            rng=_FixedInitRng([0, 0], reseed_index=3),
            on_iteration=lambda it, changed: calls.append((it, changed)),
        )
        assert "cluster 1 became empty" in caplog.text
        assert calls == [(1, 6), (2, 3), (3, 0)]
        assert result.converged is True
        assert result.iterations == 3
        assert sorted(result.cluster_sizes) == [3, 3]
        assert result.centroids[1] == pytest.approx([31 / 3, 31 / 3, 10.0])

    def test_reseeded_pass_is_not_converged(self):
        result = run_kmeans(TWO_GROUPS, 2, max_iterations=1, rng=_FixedInitRng([0, 0], reseed_index=3))
        assert result.iterations == 1
        assert result.converged is False
        assert result.cluster_sizes == [6, 0]
        assert sum(result.cluster_sizes) == len(TWO_GROUPS)
        assert result.centroids[1] == pytest.approx(TWO_GROUPS[3].tolist())

    def test_reseed_blocks_convergence_when_assignments_are_stable(self):
        """A pass with no reassignment but a re-seed does not count as converged."""
        # Both centroids start on, and keep being re-seeded onto, the mean point,
        # so assignments never change after the first pass.
        features = np.array([[0.0, 0.0, 0.0], [2.0, 0.0, 0.0], [4.0, 0.0, 0.0]])
        calls = []
        result = run_kmeans(
            features, 2,
            max_iterations=5,
            rng=_FixedInitRng([1, 1], reseed_index=1),
            on_iteration=lambda it, changed: calls.append((it, changed)),
        )
        assert calls == [(1, 3), (2, 0), (3, 0), (4, 0), (5, 0)]
        assert result.iterations == 5
        assert result.converged is False
        assert result.cluster_sizes == [3, 0]
