"""
API tests for the DriveSage FastAPI server.
"""

import time

import pytest
from fastapi.testclient import TestClient

from conftest import snapshot_tree, write_file
from drive_sage.drive_analysis_engine import AppSettings
from drive_sage.drive_sage_server import create_app


@pytest.fixture
def client():
    app = create_app(AppSettings())
    with TestClient(app) as c:
        yield c


def wait_for_job(client, job_id, timeout=10.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        body = client.get(f"/api/v1/jobs/{job_id}/result").json()
        if body["data"]["status"] in {"completed", "failed"}:
            return body["data"]
        time.sleep(0.05)
    raise AssertionError(f"job {job_id} did not finish")


class TestServiceEndpoints:

    def test_healthz(self, client):
        body = client.get("/healthz").json()
        assert body["status"] == "ok"
        assert body["data"]["healthy"] is True

    def test_settings_roundtrip(self, client):
        assert client.get("/api/v1/settings").json()["data"]["dry_run"] is True

        resp = client.put("/api/v1/settings", json={"protected_patterns": ["tax"], "large_file_threshold": "1KB"})

        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["protected_patterns"] == ["tax"]
        assert data["large_file_threshold"] == 1024
        assert client.get("/api/v1/settings").json()["data"]["protected_patterns"] == ["tax"]


class TestAnalysisEndpoints:

    def test_analyze(self, client, drive_tree):
        resp = client.post("/api/v1/analysis/run", json={"drive_path": str(drive_tree)})

        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["file_count"] == 3
        assert data["folder_count"] == 3
        assert [f["name"] for f in data["folders"]] == ["docs", "deep", "media"]

    def test_analyze_missing_path(self, client, tmp_path):
        resp = client.post("/api/v1/analysis/run", json={"drive_path": str(tmp_path / "nope")})

        assert resp.status_code == 404
        body = resp.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "PATH_NOT_FOUND"

    def test_analyze_file_root_is_read_error(self, client, tmp_path):
        target = write_file(tmp_path / "f.txt", 1)
        resp = client.post("/api/v1/analysis/run", json={"drive_path": str(target)})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "READ_ERROR"

    def test_duplicates(self, client, tmp_path):
        write_file(tmp_path / "x" / "photo.jpg", 5)
        write_file(tmp_path / "y" / "photo.jpg", 5)

        body = client.post("/api/v1/analysis/duplicates", json={"drive_path": str(tmp_path)}).json()

        assert body["meta"]["count"] == 1
        assert body["data"][0]["original"] == str(tmp_path / "x" / "photo.jpg")

    def test_background_scan_job(self, client, drive_tree):
        body = client.post("/api/v1/analysis/scans/start", json={"drive_path": str(drive_tree)}).json()
        job_id = body["data"]["job_id"]

        result = wait_for_job(client, job_id)

        assert result["status"] == "completed"
        assert result["result"]["file_count"] == 3
        assert client.get(f"/api/v1/jobs/{job_id}").json()["data"]["job_type"] == "analysis"

    def test_background_scan_missing_path(self, client, tmp_path):
        resp = client.post("/api/v1/analysis/scans/start", json={"drive_path": str(tmp_path / "nope")})
        assert resp.status_code == 404

    def test_unknown_job(self, client):
        assert client.get("/api/v1/jobs/unknown").status_code == 404


class TestOrganizeEndpoints:

    def test_plan_requires_analysis(self, client):
        resp = client.post("/api/v1/organize/plan", json={})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "NO_ANALYSIS"

    def test_plan_uses_last_analysis(self, client, messy_drive):
        client.post("/api/v1/analysis/run", json={"drive_path": str(messy_drive)})

        body = client.post("/api/v1/organize/plan", json={}).json()

        assert body["meta"]["count"] == 4
        types = sorted(op["type"] for op in body["data"]["operations"])
        assert types == ["delete", "move", "move", "move"]

    def test_organize_defaults_to_dry_run(self, client, messy_drive):
        before = snapshot_tree(messy_drive)
        ops = client.post("/api/v1/organize/plan", json={"drive_path": str(messy_drive)}).json()["data"]["operations"]

        body = client.post("/api/v1/organize/run", json={"operations": ops}).json()

        assert body["meta"]["dry_run"] is True
        assert body["data"]["summary"] == {"total": 4, "successful": 4, "failed": 0}
        assert snapshot_tree(messy_drive) == before

    def test_organize_real_with_unsupported_operation(self, client, drive_tree):
        ops = [
            {"type": "move", "source": str(drive_tree / "a.txt"), "destination": str(drive_tree / "Docs" / "a.txt")},
            {"type": "shred", "path": str(drive_tree / "docs")},
        ]

        body = client.post("/api/v1/organize/run", json={"operations": ops, "dry_run": False}).json()

        summary = body["data"]["summary"]
        assert summary == {"total": 2, "successful": 1, "failed": 1}
        assert body["data"]["errors"][0]["operation_type"] == "shred"
        assert (drive_tree / "Docs" / "a.txt").exists()

    def test_delete_missing_file(self, client, tmp_path):
        body = client.post("/api/v1/files/delete", json={"path": str(tmp_path / "missing.txt")}).json()

        assert body["data"]["summary"] == {"total": 1, "successful": 0, "failed": 1}
        assert len(body["data"]["errors"]) == 1

    def test_delete_file(self, client, drive_tree):
        body = client.post("/api/v1/files/delete", json={"path": str(drive_tree / "a.txt")}).json()
        assert body["data"]["deleted"] == [str(drive_tree / "a.txt")]
        assert not (drive_tree / "a.txt").exists()

    def test_concurrent_organize_rejected(self, client, drive_tree):
        state = client.app.state.drive_sage
        state.organize_lock.acquire()
        try:
            resp = client.post("/api/v1/files/delete", json={"path": str(drive_tree / "a.txt")})
        finally:
            state.organize_lock.release()

        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "ORGANIZE_IN_PROGRESS"
        assert (drive_tree / "a.txt").exists()
