import pytest
from fastapi.testclient import TestClient

import dashboard

OWNER = {"owner_id": "owner-1"}


@pytest.fixture
def client(db, monkeypatch):
    monkeypatch.setattr(dashboard, "db", db)
    return TestClient(dashboard.app)


def create(client, **overrides):
    payload = {
        "owner_id": "owner-1",
        "content_ref": "notes/a.m4a",
        "channels": "email",
        "scheduled_for": "2026-01-01T10:00:00Z",
        "recipient_email": "ana@example.com",
        "metadata": {"title": "Hello"},
    }
    payload.update(overrides)
    return client.post("/api/jobs", json=payload)


def test_create_and_fetch(client):
    response = create(client)
    assert response.status_code == 201
    job = response.json()["data"]
    assert job["status"] == "scheduled"

    fetched = client.get(f"/api/jobs/{job['id']}", params=OWNER).json()["data"]
    assert fetched["metadata"] == {"title": "Hello"}
    assert fetched["scheduled_for"].startswith("2026-01-01T10:00:00")


def test_create_validation_error(client):
    response = create(client, channels="sms")
    assert response.status_code == 400
    assert response.json() == {"success": False, "error": "Phone number required for sms delivery"}


def test_list_and_stats(client):
    create(client)
    create(client, owner_id="owner-2")

    listing = client.get("/api/jobs", params={"owner_id": "owner-1"}).json()["data"]
    assert len(listing["jobs"]) == 1
    assert listing["pagination"]["total"] == 1

    stats = client.get("/api/stats", params={"owner_id": "owner-1"}).json()["data"]
    assert stats["scheduled"] == 1


def test_pause_then_cancel_then_conflict(client):
    job_id = create(client).json()["data"]["id"]

    paused = client.patch(f"/api/jobs/{job_id}", params=OWNER, json={"status": "paused"})
    assert paused.status_code == 200
    assert paused.json()["data"]["status"] == "paused"

    assert client.delete(f"/api/jobs/{job_id}", params=OWNER).json()["data"]["status"] == "cancelled"
    assert client.delete(f"/api/jobs/{job_id}", params=OWNER).status_code == 409
    assert client.patch(f"/api/jobs/{job_id}", params=OWNER, json={"status": "scheduled"}).status_code == 409


def test_other_owners_job_is_404(client, db):
    job_id = create(client).json()["data"]["id"]
    stranger = {"owner_id": "owner-2"}

    assert client.get(f"/api/jobs/{job_id}", params=stranger).status_code == 404
    assert client.patch(f"/api/jobs/{job_id}", params=stranger, json={"status": "paused"}).status_code == 404
    assert client.delete(f"/api/jobs/{job_id}", params=stranger).status_code == 404
    assert db.get_job(job_id).status == "scheduled"


def test_single_job_routes_need_an_owner(client):
    job_id = create(client).json()["data"]["id"]
    assert client.get(f"/api/jobs/{job_id}").status_code == 422


def test_unknown_job_is_404(client):
    assert client.get("/api/jobs/missing", params=OWNER).status_code == 404
    assert client.get("/job/missing").status_code == 404


def test_html_pages(client):
    job_id = create(client).json()["data"]["id"]
    client.delete(f"/api/jobs/{job_id}", params=OWNER)

    assert job_id in client.get("/").text
    detail = client.get(f"/job/{job_id}").text
    assert "cancelled" in detail
    assert "History" in detail
    assert client.get("/metrics").status_code == 200
    assert client.get("/failed").status_code == 200
    assert client.get("/config").status_code == 200
    assert client.get("/metrics/json").json()["cancelled"] == 1
