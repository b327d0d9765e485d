"""
tests/test_api.py

HTTP surface through FastAPI's TestClient with an in-memory backend.
"""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from app.main import build_backend, create_app
from app.storage.backend import MemoryBackend
from app.storage.file_backend import FileBackend


@pytest.fixture()
def client(config):
    app = create_app(config=config, backend=MemoryBackend())
    with TestClient(app) as client:
        yield client


def _run_one_scrape(client, context_id="ctx-a"):
    assert client.post(f"/api/v1/agent/{context_id}/ping").json() == {"ready": True}
    submitted = client.post(
        "/api/v1/jobs",
        json={"context_id": context_id, "params": {"title": "Engineer", "location": "City A"}},
    )
    assert submitted.status_code == 200
    complete = client.post(
        f"/api/v1/agent/{context_id}/progress",
        json={
            "type": "complete",
            "records": [
                {"jobId": "1", "jobUrl": "u1", "jobTitle": "Backend Engineer", "companyName": "Acme"},
                {"jobId": "2", "jobUrl": "u2", "jobTitle": "Data Engineer", "companyName": "Globex"},
            ],
        },
    )
    assert complete.json() == {"accepted": True}
    return submitted.json()


def test_health(client) -> None:
    body = client.get("/api/v1/health").json()
    assert body["status"] == "healthy"
    assert body["running_jobs"] == 0
    assert body["storage"]["backend"] == "MemoryBackend"


def test_submit_without_agent_conflicts(client) -> None:
    response = client.post(
        "/api/v1/jobs", json={"context_id": "ctx-a", "params": {"title": "Engineer"}}
    )
    assert response.status_code == 409
    assert "No agent connected" in response.json()["detail"]


def test_agent_receives_start_and_stop_signals(client) -> None:
    client.post("/api/v1/agent/ctx-a/ping")
    job = client.post("/api/v1/jobs", json={"context_id": "ctx-a", "params": {"title": "Engineer"}}).json()
    assert job["outcome"] == "admitted"
    assert client.get("/api/v1/jobs/ctx-a").json()["status"] == "running"

    assert client.delete("/api/v1/jobs/ctx-a").json() == {"success": True}
    messages = client.get("/api/v1/agent/ctx-a/outbox").json()["messages"]
    assert [m["kind"] for m in messages] == ["start", "stop"]
    assert messages[0]["job_id"] == job["job_id"]
    assert client.get("/api/v1/jobs/ctx-a").status_code == 404


def test_outbox_for_unknown_agent_is_404(client) -> None:
    assert client.get("/api/v1/agent/ghost/outbox").status_code == 404


def test_completed_scrape_is_listed_searched_and_exported(client) -> None:
    job = _run_one_scrape(client)

    page = client.get("/api/v1/sessions", params={"title": "engineer"}).json()
    assert page["total"] == 1
    assert page["entries"][0]["result_count"] == 2

    session = client.get(f"/api/v1/sessions/{job['job_id']}").json()
    assert session["status"] == "completed"

    hits = client.get("/api/v1/sessions/search", params={"q": "acme"}).json()
    assert [h["record"]["job_id"] for h in hits["results"]] == ["1"]

    exported = client.get("/api/v1/sessions/export", params={"format": "csv"})
    assert exported.status_code == 200
    assert exported.headers["content-type"].startswith("text/csv")
    assert "attachment; filename=" in exported.headers["content-disposition"]
    assert exported.text.startswith('"job_id"')

    stats = client.get("/api/v1/storage/stats").json()
    assert stats["total_sessions"] == 1
    assert stats["total_results"] == 2

    history = client.get("/api/v1/history").json()
    assert history[0]["status"] == "completed"


def test_unsupported_export_format_is_400(client) -> None:
    response = client.get("/api/v1/sessions/export", params={"format": "xlsx"})
    assert response.status_code == 400


def test_missing_session_is_404(client) -> None:
    assert client.get("/api/v1/sessions/nope").status_code == 404
    assert client.delete("/api/v1/sessions/nope").status_code == 404


def test_delete_all_sessions(client) -> None:
    _run_one_scrape(client)
    assert client.delete("/api/v1/sessions", params={"all": True}).json() == {"success": True, "deleted": 1}
    assert client.get("/api/v1/sessions").json()["total"] == 0


def test_settings_patch_applies_and_validates(client) -> None:
    response = client.patch("/api/v1/settings", json={"max_concurrent_scrapes": 4})
    assert response.status_code == 200
    assert response.json()["max_concurrent_scrapes"] == 4
    assert client.get("/api/v1/health").json()["max_concurrent_scrapes"] == 4

    assert client.patch("/api/v1/settings", json={"max_concurrent_scrapes": 0}).status_code == 422


def test_backup_and_restore(client) -> None:
    _run_one_scrape(client)
    backup = client.get("/api/v1/storage/backup").json()
    client.delete("/api/v1/sessions", params={"all": True})

    restored = client.post("/api/v1/storage/restore", json=backup)
    assert restored.status_code == 200
    assert client.get("/api/v1/sessions").json()["total"] == 1

    assert client.post("/api/v1/storage/restore", json={"data": {}}).status_code == 400


def test_storage_quota_failure_is_507(config) -> None:
    app = create_app(config=config, backend=MemoryBackend(quota_bytes=1024))
    with TestClient(app) as client:
        payload = {"version": "1.0", "timestamp": "2024-06-01T12:00:00Z", "data": {"big": "x" * 2048}}
        response = client.post("/api/v1/storage/restore", json=payload)
    assert response.status_code == 507
    assert response.json() == {"detail": "Storage quota exceeded"}


def test_message_endpoint(client) -> None:
    assert client.post("/api/v1/messages/ctx-a", json={"kind": "ping"}).json() == {"ready": True}
    reply = client.post("/api/v1/messages/ctx-a", json={"action": "nope"}).json()
    assert reply == {"error": "Unrecognized message: 'nope'"}


def test_build_backend_selects_implementation(config, tmp_path) -> None:
    assert isinstance(build_backend(config), MemoryBackend)
    file_config = config.model_copy(update={"storage_backend": "file", "data_dir": str(tmp_path)})
    assert isinstance(build_backend(file_config), FileBackend)
    with pytest.raises(ValueError):
        build_backend(config.model_copy(update={"storage_backend": "redis"}))


def test_job_listing(client) -> None:
    for ctx in ("ctx-a", "ctx-b", "ctx-c"):
        client.post(f"/api/v1/agent/{ctx}/ping")
        client.post("/api/v1/jobs", json={"context_id": ctx, "params": {"title": "Engineer"}})
    listing = client.get("/api/v1/jobs").json()
    assert listing["status"] == {"running_count": 2, "queue_length": 1}
    assert [job["context_id"] for job in listing["running"]] == ["ctx-a", "ctx-b"]
    assert [req["context_id"] for req in listing["queued"]] == ["ctx-c"]


def test_supabase_backend_requires_credentials(config) -> None:
    with pytest.raises(RuntimeError):
        build_backend(config.model_copy(update={"storage_backend": "supabase", "supabase_url": ""}))
