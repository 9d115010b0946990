import pytest
from fastapi.testclient import TestClient

from newtube.api.app import app
from newtube.database import get_db
from newtube.embeddings.services.job_service import JobService


@pytest.fixture
def client(session_factory):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.pop(get_db, None)


def test_enqueue_and_get_job(client):
    response = client.post(
        "/api/v1/embedding-jobs",
        json={"type": "VIDEO_EMBEDDING", "config": {"target_ids": ["a", "b"]}, "batch_size": 2},
    )
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "PENDING"
    assert body["batch_size"] == 2
    assert body["config"] == {"target_ids": ["a", "b"]}

    fetched = client.get(f"/api/v1/embedding-jobs/{body['id']}")
    assert fetched.status_code == 200
    assert fetched.json()["id"] == body["id"]
    assert fetched.json()["progress_percent"] == 0.0


def test_enqueue_deferred_job(client, session_factory):
    response = client.post(
        "/api/v1/embedding-jobs",
        json={"type": "VIDEO_EMBEDDING", "scheduled_at": "2099-01-01T12:00:00+02:00"},
    )
    assert response.status_code == 200
    assert response.json()["scheduled_at"] == "2099-01-01T10:00:00"

    db = session_factory()
    try:
        assert JobService(db).poll_next_job("w1") is None
    finally:
        db.close()


def test_enqueue_rejects_invalid_config(client):
    response = client.post(
        "/api/v1/embedding-jobs", json={"type": "VIDEO_EMBEDDING", "config": {"limit": -1}}
    )
    assert response.status_code == 422
    detail = response.json()["detail"]
    assert detail["code"] == "VALIDATION_ERROR"
    assert detail["details"]["field"] == "config"


def test_enqueue_rejects_unknown_type(client):
    response = client.post("/api/v1/embedding-jobs", json={"type": "AUDIO_EMBEDDING"})
    assert response.status_code == 422
    assert response.json()["detail"]["details"]["field"] == "type"


def test_get_missing_job(client):
    response = client.get("/api/v1/embedding-jobs/does-not-exist")
    assert response.status_code == 404
    assert response.json()["detail"] == "Job not found"


def test_list_and_stats(client):
    client.post("/api/v1/embedding-jobs", json={"type": "VIDEO_EMBEDDING"})
    client.post("/api/v1/embedding-jobs", json={"type": "USER_EMBEDDING"})

    listed = client.get("/api/v1/embedding-jobs", params={"type": "USER_EMBEDDING"})
    assert listed.status_code == 200
    assert [item["type"] for item in listed.json()["items"]] == ["USER_EMBEDDING"]

    stats = client.get("/api/v1/embedding-jobs/stats").json()
    assert stats["pending"] == 2
    assert stats["running"] == 0


def test_cancel_pending_and_running(client, session_factory):
    pending_id = client.post("/api/v1/embedding-jobs", json={"type": "VIDEO_EMBEDDING"}).json()["id"]
    response = client.post(f"/api/v1/embedding-jobs/{pending_id}/cancel")
    assert response.status_code == 200
    assert response.json()["accepted"] is True
    assert response.json()["job"]["status"] == "CANCELLED"

    again = client.post(f"/api/v1/embedding-jobs/{pending_id}/cancel")
    assert again.json()["accepted"] is False

    running_id = client.post("/api/v1/embedding-jobs", json={"type": "VIDEO_EMBEDDING"}).json()["id"]
    db = session_factory()
    try:
        JobService(db).poll_next_job("w1")
    finally:
        db.close()
    response = client.post(f"/api/v1/embedding-jobs/{running_id}/cancel")
    assert response.json()["accepted"] is True
    assert response.json()["job"]["status"] == "RUNNING"
    assert response.json()["job"]["cancel_requested"] is True

    missing = client.post("/api/v1/embedding-jobs/nope/cancel")
    assert missing.status_code == 404
    assert missing.json()["detail"]["code"] == "NOT_FOUND"


def test_health(client):
    response = client.get("/api/v1/health")
    assert response.status_code == 200
    assert response.json()["ok"] is True
    assert response.json()["embedding_model"] == "test-model"
