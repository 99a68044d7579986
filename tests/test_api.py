from __future__ import annotations

import os
import tempfile
import time
from typing import Any, Callable

import pytest
from fastapi.testclient import TestClient

from src.api.app import create_app
from src.runtime.dispatch import DryRunDispatcher
from src.storage.sqlite_store import SQLiteStore


TERMINAL = {"SUCCESS", "FAILED", "CANCELLED"}


def _poll(fetch: Callable[[], Any], done: Callable[[Any], bool], *, timeout_s: float = 5.0) -> Any:
    deadline = time.monotonic() + timeout_s
    while True:
        value = fetch()
        if done(value):
            return value
        if time.monotonic() >= deadline:
            raise AssertionError(f"timed out waiting, last value: {value!r}")
        time.sleep(0.02)


def _wait_job(client: TestClient, request_id: str) -> dict[str, Any]:
    return _poll(
        lambda: client.get(f"/api/v1/scans/jobs/{request_id}").json()["job"],
        lambda job: job["status"] in TERMINAL,
    )


def _client(db_path: str, *, step_s: float = 0.01) -> TestClient:
    return TestClient(create_app(db_path=db_path, dispatcher=DryRunDispatcher(step_s=step_s)))


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ["SCANQ_CONFIG_PATH", "SCANQ_MAX_CONCURRENT_SCANS", "SCANQ_DISPATCHER", "SCANQ_RECONCILE_ON_STARTUP"]:
        monkeypatch.delenv(name, raising=False)


def test_system_endpoints() -> None:
    with tempfile.TemporaryDirectory() as td:
        with _client(os.path.join(td, "app.db")) as client:
            assert client.get("/api/v1/healthz").json() == {"status": "ok"}

            version = client.get("/api/v1/version").json()
            assert version["service"] == "scanq"
            assert version["schema_version"] == 2

            queue = client.get("/api/v1/system/queue").json()
            assert queue["queue"] == {"queued": 0, "running": 0, "limit": 3}
            assert queue["startup"]["reconciled_stale_scans"] == 0


def test_scan_lifecycle_over_http() -> None:
    with tempfile.TemporaryDirectory() as td:
        with _client(os.path.join(td, "app.db")) as client:
            resp = client.post("/api/v1/scans", json={"image": "nginx", "tag": "1.25"})
            assert resp.status_code == 202
            started = resp.json()
            assert started["queued"] is False
            assert started["queue_position"] is None

            job = _wait_job(client, started["request_id"])
            assert job["status"] == "SUCCESS"
            assert job["progress"] == 100
            assert job["image_name"] == "nginx:1.25"

            scan = client.get(f"/api/v1/scans/{started['scan_id']}").json()["scan"]
            assert scan["status"] == "SUCCESS"
            assert "reports" not in scan
            full = client.get(f"/api/v1/scans/{started['scan_id']}?include_reports=true").json()["scan"]
            assert full["reports"]["metadata"]["scannerVersions"] == {"trivy": "dry-run", "grype": "dry-run"}

            page = client.get("/api/v1/scans?status=SUCCESS").json()
            assert page["total"] == 1
            assert page["has_more"] is False
            assert page["items"][0]["image_name"] == "nginx"

            jobs = client.get("/api/v1/scans/jobs").json()
            assert [j["request_id"] for j in jobs["jobs"]] == [started["request_id"]]
            assert jobs["queued_scans"] == []

            again = client.post(f"/api/v1/scans/jobs/{started['request_id']}/cancel").json()
            assert again == {"request_id": started["request_id"], "cancelled": False, "status": "SUCCESS"}


def test_queued_scan_can_be_cancelled(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SCANQ_MAX_CONCURRENT_SCANS", "1")
    with tempfile.TemporaryDirectory() as td:
        with _client(os.path.join(td, "app.db"), step_s=0.2) as client:
            first = client.post("/api/v1/scans", json={"image": "big", "source": "local"}).json()
            second = client.post("/api/v1/scans", json={"image": "small", "source": "local"}).json()
            assert second["queued"] is True
            assert second["queue_position"] == 1

            detail = client.get(f"/api/v1/scans/jobs/{second['request_id']}").json()
            assert detail["job"]["status"] == "PENDING"
            assert detail["queue_position"] == 1

            out = client.post(f"/api/v1/scans/jobs/{second['request_id']}/cancel").json()
            assert out["cancelled"] is True
            assert out["status"] == "CANCELLED"

            assert _wait_job(client, first["request_id"])["status"] == "SUCCESS"
            scan = client.get(f"/api/v1/scans/{second['scan_id']}").json()["scan"]
            assert scan["status"] == "CANCELLED"


def test_error_envelopes() -> None:
    with tempfile.TemporaryDirectory() as td:
        with _client(os.path.join(td, "app.db")) as client:
            resp = client.post("/api/v1/scans", json={"image": "bundle", "source": "tar"})
            assert resp.status_code == 400
            assert resp.json()["error"]["code"] == "invalid_argument"
            assert resp.json()["error"]["message"] == "Archive scans require tar_path"

            resp = client.post("/api/v1/scans", json={"tag": "1.0"})
            assert resp.status_code == 400
            assert resp.json()["error"]["message"] == "Request validation failed."

            for method, path in [
                ("get", "/api/v1/scans/jobs/missing"),
                ("post", "/api/v1/scans/jobs/missing/cancel"),
                ("get", "/api/v1/scans/scan_missing"),
                ("get", "/api/v1/images/img_missing"),
                ("get", "/api/v1/bulk-scans/bulk-missing"),
                ("get", "/api/v1/scheduled-scans/sched_missing"),
            ]:
                resp = getattr(client, method)(path)
                assert resp.status_code == 404, path
                assert resp.json()["error"]["code"] == "not_found"

            assert client.post("/api/v1/scans/rescan", json={}).status_code == 400
            assert client.post("/api/v1/scans/rescan", json={"scan_id": "scan_missing"}).status_code == 404


def test_images_and_rescan(monkeypatch: pytest.MonkeyPatch) -> None:
    with tempfile.TemporaryDirectory() as td:
        with _client(os.path.join(td, "app.db")) as client:
            resp = client.post("/api/v1/images", json={"name": "redis", "tag": "7", "source": "LOCAL_DOCKER"})
            assert resp.status_code == 201
            image = resp.json()["image"]
            assert image["source"] == "LOCAL_DOCKER"

            listed = client.get("/api/v1/images?name=red").json()["items"]
            assert [i["image_id"] for i in listed] == [image["image_id"]]

            resp = client.post("/api/v1/scans/rescan", json={"image_id": image["image_id"]})
            assert resp.status_code == 202
            first = resp.json()
            assert first["message"] == "Rescan started successfully"
            assert _wait_job(client, first["request_id"])["status"] == "SUCCESS"

            detail = client.get(f"/api/v1/images/{image['image_id']}").json()["image"]
            assert detail["latest_scan"]["scan_id"] == first["scan_id"]
            assert detail["latest_scan"]["source"] == "local"

            resp = client.post("/api/v1/scans/rescan", json={"scan_id": first["scan_id"], "tag": "7.2"})
            assert resp.status_code == 202
            second = resp.json()
            job = _wait_job(client, second["request_id"])
            assert job["image_name"] == "redis:7.2"

            # A scan whose image row is gone is a 404, not a server error.
            monkeypatch.setattr(client.app.state.runtime.store, "get_image", lambda **_kw: None)
            resp = client.post("/api/v1/scans/rescan", json={"scan_id": first["scan_id"]})
            assert resp.status_code == 404
            assert resp.json()["error"] == {"code": "not_found", "message": "Image of the scan not found."}


def test_bulk_scan_endpoints() -> None:
    with tempfile.TemporaryDirectory() as td:
        with _client(os.path.join(td, "app.db")) as client:
            for tag in ["v1", "v2", "latest"]:
                client.post("/api/v1/images", json={"name": "app", "tag": tag})

            resp = client.post(
                "/api/v1/bulk-scans",
                json={"name": "release", "patterns": {"image_pattern": "app", "exclude_tag_pattern": "*:latest"}},
            )
            assert resp.status_code == 202
            created = resp.json()
            assert created["total_images"] == 2
            assert created["skipped"] == 1

            batch = _poll(
                lambda: client.get(f"/api/v1/bulk-scans/{created['batch_id']}").json()["batch"],
                lambda b: b["status"] != "RUNNING" and b["summary"]["completed"] == 2,
            )
            assert batch["status"] == "COMPLETED"
            assert len(batch["items"]) == 2

            history = client.get("/api/v1/bulk-scans").json()["items"]
            assert [b["batch_id"] for b in history] == [created["batch_id"]]
            assert client.get("/api/v1/bulk-scans/active").json()["items"] == []

            resp = client.post(f"/api/v1/bulk-scans/{created['batch_id']}/cancel")
            assert resp.status_code == 409
            assert resp.json()["error"]["code"] == "conflict"
            assert client.post("/api/v1/bulk-scans/bulk-missing/cancel").status_code == 404

            resp = client.post("/api/v1/bulk-scans", json={"patterns": {"image_pattern": "nothing"}})
            assert resp.status_code == 400


def test_scheduled_scan_endpoints() -> None:
    with tempfile.TemporaryDirectory() as td:
        with _client(os.path.join(td, "app.db")) as client:
            image = client.post("/api/v1/images", json={"name": "api", "tag": "3"}).json()["image"]

            resp = client.post(
                "/api/v1/scheduled-scans",
                json={
                    "name": "nightly",
                    "schedule": "0 3 * * *",
                    "image_selection_mode": "SPECIFIC",
                    "selected_image_ids": [image["image_id"]],
                },
            )
            assert resp.status_code == 201
            sid = resp.json()["scheduled_scan_id"]

            resp = client.post(f"/api/v1/scheduled-scans/{sid}/execute", json={"trigger_source": "MANUAL"})
            assert resp.status_code == 202
            execution = resp.json()
            assert execution["status"] == "STARTED"
            assert execution["total_images"] == 1

            history = _poll(
                lambda: client.get(f"/api/v1/scheduled-scans/history?scheduled_scan_id={sid}").json()["history"],
                lambda h: bool(h) and h[0]["status"] not in ("PENDING", "RUNNING"),
            )
            assert history[0]["status"] == "COMPLETED"
            assert history[0]["scan_stats"] == {"success": 1, "failed": 0, "pending": 0}

            listed = client.get("/api/v1/scheduled-scans").json()
            assert listed["pagination"]["total"] == 1
            assert listed["scheduled_scans"][0]["last_execution"]["execution_id"] == execution["execution_id"]

            resp = client.patch(f"/api/v1/scheduled-scans/{sid}", json={"enabled": False})
            assert resp.status_code == 200
            assert resp.json()["enabled"] is False
            resp = client.post(f"/api/v1/scheduled-scans/{sid}/execute")
            assert resp.status_code == 400

            repo = client.post(
                "/api/v1/scheduled-scans",
                json={"name": "by-repo", "image_selection_mode": "REPOSITORY"},
            ).json()
            resp = client.post(f"/api/v1/scheduled-scans/{repo['scheduled_scan_id']}/execute")
            assert resp.status_code == 501
            assert resp.json()["error"]["code"] == "not_implemented"

            assert client.delete(f"/api/v1/scheduled-scans/{sid}").status_code == 204
            assert client.get(f"/api/v1/scheduled-scans/{sid}").status_code == 404


def test_startup_reconciles_stale_scans(monkeypatch: pytest.MonkeyPatch) -> None:
    with tempfile.TemporaryDirectory() as td:
        db_path = os.path.join(td, "app.db")
        store = SQLiteStore(db_path)
        try:
            img = store.upsert_image(name="stale", tag="1")
            scan = store.create_scan(request_id="old-1", image_id=img.image_id, source="registry", tag="1")
            store.update_scan(scan.scan_id, status="RUNNING")
        finally:
            store.close()

        monkeypatch.setenv("SCANQ_RECONCILE_ON_STARTUP", "0")
        with _client(db_path) as client:
            assert client.get("/api/v1/system/queue").json()["startup"]["reconciled_stale_scans"] == 0
            assert client.get(f"/api/v1/scans/{scan.scan_id}").json()["scan"]["status"] == "RUNNING"

        monkeypatch.setenv("SCANQ_RECONCILE_ON_STARTUP", "1")
        with _client(db_path) as client:
            queue = client.get("/api/v1/system/queue").json()
            assert queue["startup"]["reconciled_stale_scans"] == 1
            assert queue["scans_by_status"] == {"FAILED": 1}
            row = client.get(f"/api/v1/scans/{scan.scan_id}").json()["scan"]
            assert row["status"] == "FAILED"
            assert row["error_message"] == "server_restarted"
