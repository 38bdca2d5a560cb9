"""
Tests for the HTTP surface: upload, dataset views, layout/analysis routes and
streaming jobs.
"""

import time

import pytest
from fastapi.testclient import TestClient

import main
from core import storage
from core.config import Settings
from server.orchestrator import JobRunner


XYZ_CSV = b"x,y,z,kind\n1,2,3,a\n4,5,6,b\n7,8,9,a\n2,9,4,c"
SESSION = {"X-Session-Id": "test-session"}


@pytest.fixture
def client():
    storage.clear_all()
    main._preview_cache.clear()
    with TestClient(main.app) as c:
        yield c
    storage.clear_all()


@pytest.fixture
def uploaded(client):
    resp = client.post("/upload", headers=SESSION, files={"file": ("points.csv", XYZ_CSV, "text/csv")})
    assert resp.status_code == 200
    return resp.json()


def _wait_for_job(client, job_id, timeout=10.0):
    deadline = time.time() + timeout
    while time.time() < deadline:
        job = client.get(f"/api/jobs/{job_id}", headers=SESSION).json()
        if job["status"] != "running":
            return job
        time.sleep(0.05)
    raise AssertionError(f"job {job_id} did not finish")


class TestUpload:
    """Tests for file ingestion over HTTP."""

    def test_upload_csv(self, uploaded):
        assert uploaded["ok"] is True
        assert uploaded["dataset"] == "points"
        assert uploaded["rows"] == 4
        assert uploaded["columns"] == ["x", "y", "z", "kind"]
        assert uploaded["summary"]["numeric_columns"] == ["x", "y", "z"]

    def test_upload_json(self, client):
        body = b'[{"a": 1, "tag": "p"}, {"a": 2, "tag": "q"}]'
        resp = client.post("/upload", headers=SESSION, files={"file": ("rows.json", body, "application/json")})
        assert resp.status_code == 200
        assert "_index" in resp.json()["summary"]["derived_columns"]

    def test_duplicate_upload(self, client, uploaded):
        resp = client.post("/upload", headers=SESSION, files={"file": ("again.csv", XYZ_CSV, "text/csv")})
        assert resp.status_code == 409
        assert resp.json()["dataset"] == "points"

    def test_same_name_gets_suffix(self, client, uploaded):
        other = XYZ_CSV + b"\n0,0,0,d"
        resp = client.post("/upload", headers=SESSION, files={"file": ("points.csv", other, "text/csv")})
        assert resp.json()["dataset"] == "points_2"

    @pytest.mark.parametrize("filename,body", [
        ("bad.json", b'{"a": 1}'),
        ("empty.csv", b""),
        ("notes.txt", b"x,y,z\n1,2,3"),
    ])
    def test_unparseable_upload(self, client, filename, body):
        resp = client.post("/upload", headers=SESSION, files={"file": (filename, body, "text/plain")})
        assert resp.status_code == 400

    def test_missing_session_header(self, client):
        resp = client.post("/upload", files={"file": ("points.csv", XYZ_CSV, "text/csv")})
        assert resp.status_code == 400

    def test_oversized_upload(self, client, monkeypatch):
        monkeypatch.setattr(main, "settings", Settings(max_upload_bytes=10))
        resp = client.post("/upload", headers=SESSION, files={"file": ("points.csv", XYZ_CSV, "text/csv")})
        assert resp.status_code == 413


class TestDatasetViews:

    def test_list_datasets(self, client, uploaded):
        resp = client.get("/datasets", headers=SESSION)
        info = resp.json()["datasets"]
        assert [d["name"] for d in info] == ["points"]
        assert info[0]["n_rows"] == 4

    def test_preview_pagination(self, client, uploaded):
        resp = client.get("/datasets/points/preview?offset=1&limit=2", headers=SESSION)
        body = resp.json()
        assert body["returned_rows"] == 2
        assert body["rows"][0] == {"x": "4", "y": "5", "z": "6", "kind": "b"}
        assert body["has_more"] is True
        assert body["next_offset"] == 3

    def test_summary(self, client, uploaded):
        resp = client.get("/api/datasets/points", headers=SESSION)
        assert resp.status_code == 200
        assert resp.json()["stats"]["x"]["max"] == 7.0

    def test_sessions_are_isolated(self, client, uploaded):
        resp = client.get("/api/datasets/points", headers={"X-Session-Id": "someone-else"})
        assert resp.status_code == 404


class TestLayoutRoutes:
    """Tests for synchronous layout and analysis jobs."""

    def test_scatter(self, client, uploaded):
        resp = client.post("/api/datasets/points/layout", headers=SESSION, json={"kind": "scatter"})
        assert resp.status_code == 200
        layout = resp.json()["layout"]
        assert layout["kind"] == "scatter"
        assert len(layout["points"]) == 4
        assert layout["color_column"] == "kind"

    def test_kmeans_with_options(self, client, uploaded):
        body = {"kind": "kmeans", "options": {"clusters": 2, "seed": 7}}
        resp = client.post("/api/datasets/points/layout", headers=SESSION, json=body)
        layout = resp.json()["layout"]
        assert layout["clusters"] == 2
        assert {p["cluster"] for p in layout["points"]} <= {0, 1}

    def test_filtered_grid(self, client, uploaded):
        body = {"kind": "grid", "options": {"filter_column": "kind", "filter_value": "A"}}
        layout = client.post("/api/datasets/points/layout", headers=SESSION, json=body).json()["layout"]
        assert [p["index"] for p in layout["points"]] == [0, 2]

    def test_non_numeric_axis_is_rejected(self, client, uploaded):
        body = {"kind": "scatter", "options": {"x_column": "kind"}}
        resp = client.post("/api/datasets/points/layout", headers=SESSION, json=body)
        assert resp.status_code == 400

    def test_unknown_dataset(self, client, uploaded):
        resp = client.post("/api/datasets/nope/layout", headers=SESSION, json={})
        assert resp.status_code == 404

    def test_outliers(self, client, uploaded):
        resp = client.post("/api/datasets/points/outliers", headers=SESSION, json={"threshold": 1.0})
        body = resp.json()
        ids = body["outliers"]["outlier_ids"] + body["outliers"]["non_outlier_ids"]
        assert sorted(ids) == sorted(p["id"] for p in body["layout"]["points"])

    def test_correlations(self, client, uploaded):
        body = {"column1": "x", "column2": "y", "threshold": 0.5}
        resp = client.post("/api/datasets/points/correlations", headers=SESSION, json=body)
        corr = resp.json()["correlation"]
        assert corr["coefficient"] is not None
        assert corr["column1"] == "x"

    def test_correlation_threshold_validated(self, client, uploaded):
        body = {"column1": "x", "column2": "y", "threshold": 1.5}
        resp = client.post("/api/datasets/points/correlations", headers=SESSION, json=body)
        assert resp.status_code == 422

    def test_correlation_unknown_column(self, client, uploaded):
        body = {"column1": "x", "column2": "nope"}
        resp = client.post("/api/datasets/points/correlations", headers=SESSION, json=body)
        assert resp.status_code == 400

    def test_connections(self, client, uploaded):
        resp = client.post("/api/datasets/points/connections", headers=SESSION, json={})
        body = resp.json()
        assert len(body["links"]) == 4
        ids = {p["id"] for p in body["layout"]["points"]}
        assert len(ids) == 4
        assert all(link["source_id"] in ids and link["target_id"] in ids for link in body["links"])


class TestStreamingJobs:
    """Tests for ?stream=1 jobs and their SSE/result endpoints."""

    def test_stream_job_completes(self, client, uploaded):
        body = {"kind": "kmeans", "options": {"clusters": 2, "seed": 3}}
        resp = client.post("/api/datasets/points/layout?stream=1", headers=SESSION, json=body)
        assert resp.status_code == 200
        job_id = resp.json()["job_id"]

        job = _wait_for_job(client, job_id)
        assert job["status"] == "complete"
        assert len(job["result"]["layout"]["points"]) == 4

        events = client.get(f"/api/jobs/{job_id}/events?session_id=test-session")
        assert "event: job_complete" in events.text

        jobs = client.get("/api/jobs", headers=SESSION).json()
        assert [j["job_id"] for j in jobs["jobs"]] == [job_id]

    def test_stream_job_failure_is_recorded(self, client, uploaded):
        body = {"kind": "scatter", "options": {"x_column": "kind"}}
        job_id = client.post("/api/datasets/points/layout?stream=1", headers=SESSION, json=body).json()["job_id"]
        job = _wait_for_job(client, job_id)
        assert job["status"] == "failed"
        assert "not numeric" in job["error"]

        events = client.get(f"/api/jobs/{job_id}/events?session_id=test-session")
        assert "event: error" in events.text
        assert f"id: {job_id}:" in events.text
        assert "event: job_complete" not in events.text

    def test_unknown_job(self, client):
        assert client.get("/api/jobs/missing", headers=SESSION).status_code == 404


class TestJobRunner:
    """Tests for per-dataset supersession."""

    def test_new_job_cancels_previous(self):
        runner = JobRunner()
        key = ("s", "d")
        first = runner.begin(key)
        second = runner.begin(key)
        assert first.is_set()
        assert not second.is_set()

    def test_finish_only_clears_own_token(self):
        runner = JobRunner()
        key = ("s", "d")
        first = runner.begin(key)
        runner.begin(key)
        runner.finish(key, first)
        assert runner.active(key)
