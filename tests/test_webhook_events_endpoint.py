from fastapi.testclient import TestClient

from src.config import settings
from src.dependencies import get_webhook_event_service
from src.domain.errors import DownstreamProcessingFailure
from src.main import app


def _row(event_id, **overrides):
    row = {
        "id": event_id,
        "gateway": "waha",
        "event_type": "message.received",
        "event_key": None,
        "payload": {"text": "hi"},
        "status": "failed",
        "retry_count": 0,
        "max_retries": 3,
        "organization_id": "org-1",
        "error_message": "provider down",
        "result": None,
        "created_at": "2024-05-01T10:00:00+00:00",
        "updated_at": "2024-05-01T10:00:00+00:00",
        "processed_at": None,
    }
    row.update(overrides)
    return row


def _client(service):
    app.dependency_overrides[get_webhook_event_service] = lambda: service
    return TestClient(app)


def _ok_handler(event):
    return {"handled": event.id}


def test_create_and_get_webhook_event(service):
    client = _client(service)

    created = client.post(
        "/api/webhook-events",
        json={"gateway": "waha", "event_type": "message.received", "payload": {"text": "hi"}},
    )
    assert created.status_code == 201
    body = created.json()
    assert body["message"] == "Webhook event created successfully"
    assert body["data"]["status"] == "pending"
    assert body["data"]["can_retry"] is False
    assert "error" not in body

    fetched = client.get(f"/api/webhook-events/{body['data']['id']}")
    assert fetched.status_code == 200
    assert fetched.json()["data"]["payload"] == {"text": "hi"}
    assert fetched.headers["X-Request-ID"]


def test_create_requires_gateway(service):
    client = _client(service)

    response = client.post("/api/webhook-events", json={"event_type": "message.received"})

    assert response.status_code == 400
    assert response.json() == {"message": "gateway is required", "error": "validation_error"}


def test_unknown_event_is_404_envelope(service):
    client = _client(service)

    response = client.get("/api/webhook-events/missing", headers={"X-Request-ID": "req-123"})

    assert response.status_code == 404
    assert response.json()["message"] == "Webhook event not found"
    assert response.headers["X-Request-ID"] == "req-123"


def test_debug_flag_exposes_error_text(service, monkeypatch):
    monkeypatch.setattr(settings, "app_debug", True)
    client = _client(service)

    response = client.get("/api/webhook-events/missing")

    assert response.json()["error"] == "Webhook event not found"


def test_list_filters_by_status_alias(service, fake_db):
    fake_db.tables["webhook_events"].extend(
        [_row("a"), _row("b", status="completed", error_message=None), _row("c", created_at="2024-05-01T11:00:00+00:00")]
    )
    client = _client(service)

    response = client.get("/api/webhook-events", params={"status": "failed", "sort_order": "asc", "per_page": 1})

    assert response.status_code == 200
    data = response.json()["data"]
    assert [item["id"] for item in data["items"]] == ["a"]
    assert data["total"] == 2
    assert data["last_page"] == 2


def test_list_rejects_unknown_sort_field(service):
    client = _client(service)

    response = client.get("/api/webhook-events", params={"sort_by": "payload"})

    assert response.status_code == 422
    body = response.json()
    assert body["error"] == "validation_error"
    assert body["data"]["errors"][0]["field"] == "sort_by"


def test_retry_endpoint_success_and_ineligible(service, registry, fake_db):
    registry.register("waha", "message.received", _ok_handler)
    fake_db.tables["webhook_events"].append(_row("a"))
    client = _client(service)

    first = client.post("/api/webhook-events/a/retry")
    assert first.status_code == 200
    assert first.json()["message"] == "Webhook event retried successfully"
    assert first.json()["data"]["retry_count"] == 1
    assert first.json()["data"]["status"] == "completed"

    second = client.post("/api/webhook-events/a/retry")
    assert second.status_code == 400
    assert second.json() == {"message": "Webhook event cannot be retried", "error": "retry_not_eligible"}


def test_retry_endpoint_reports_recorded_failure(service, registry, fake_db):
    def failing(event):
        raise DownstreamProcessingFailure("gateway timeout")

    registry.register("waha", "message.received", failing)
    fake_db.tables["webhook_events"].append(_row("a"))
    client = _client(service)

    response = client.post("/api/webhook-events/a/retry")

    assert response.status_code == 200
    body = response.json()
    assert body["message"] == "Webhook event retry failed"
    assert body["data"]["status"] == "failed"
    assert body["data"]["error_message"] == "gateway timeout"


def test_bulk_retry_returns_per_id_map(service, registry, fake_db):
    registry.register("waha", "message.received", _ok_handler)
    fake_db.tables["webhook_events"].extend([_row("a"), _row("b", status="pending"), _row("c")])
    client = _client(service)

    response = client.post("/api/webhook-events/bulk-retry", json={"webhook_event_ids": ["a", "b", "c"]})

    assert response.status_code == 200
    assert response.json()["data"] == {
        "total_requested": 3,
        "successful": 2,
        "failed": 1,
        "results": {"a": True, "b": False, "c": True},
    }


def test_bulk_retry_rejects_empty_request(service):
    client = _client(service)

    response = client.post("/api/webhook-events/bulk-retry", json={"webhook_event_ids": []})

    assert response.status_code == 400


def test_ready_for_retry_and_statistics(service, fake_db):
    fake_db.tables["webhook_events"].extend(
        [_row("a"), _row("b", status="completed", error_message=None), _row("c", retry_count=3, status="dead")]
    )
    client = _client(service)

    ready = client.get("/api/webhook-events/ready-for-retry")
    assert [item["id"] for item in ready.json()["data"]] == ["a"]

    stats = client.get("/api/webhook-events/statistics", params={"gateway": "waha"})
    data = stats.json()["data"]
    assert data["total"] == 3
    assert data["retry_eligible"] == 1
    assert data["success_rate"] == 33.33
    assert data["by_hour"] == {"2024-05-01 10:00:00": 3}


def test_logs_endpoint(service, fake_db):
    fake_db.tables["webhook_events"].append(_row("a", retry_count=1))
    client = _client(service)

    response = client.get("/api/webhook-events/a/logs")

    assert response.status_code == 200
    messages = [entry["message"] for entry in response.json()["data"]["processing_logs"]]
    assert messages == ["Webhook event received", "Retry attempt 1 of 3", "Processing failed"]


def test_update_and_delete(service, fake_db):
    fake_db.tables["webhook_events"].append(_row("a", retry_count=2))
    client = _client(service)

    updated = client.put("/api/webhook-events/a", json={"organization_id": "org-2", "status": "completed"})
    assert updated.status_code == 200
    assert updated.json()["data"]["organization_id"] == "org-2"
    assert updated.json()["data"]["status"] == "failed"

    rejected = client.put("/api/webhook-events/a", json={"max_retries": 1})
    assert rejected.status_code == 400

    deleted = client.delete("/api/webhook-events/a")
    assert deleted.json() == {"message": "Webhook event deleted successfully"}
    assert client.delete("/api/webhook-events/a").status_code == 404


def test_scheduler_endpoints_require_secret(service, monkeypatch):
    client = _client(service)

    monkeypatch.setattr(settings, "internal_scheduler_secret", None)
    assert client.post("/api/webhook-events/process-ready").status_code == 503

    monkeypatch.setattr(settings, "internal_scheduler_secret", "sched-secret")
    denied = client.post("/api/webhook-events/cleanup", headers={"X-Internal-Scheduler-Secret": "wrong"})
    assert denied.status_code == 401
    assert denied.json()["message"] == "invalid scheduler secret"

    garbled = client.post(
        "/api/webhook-events/cleanup",
        headers={"X-Internal-Scheduler-Secret": "sch\xe9d".encode("latin-1")},
    )
    assert garbled.status_code == 401


def test_process_ready_and_cleanup_with_secret(service, registry, fake_db, monkeypatch):
    monkeypatch.setattr(settings, "internal_scheduler_secret", "sched-secret")
    registry.register("waha", "message.received", _ok_handler)
    fake_db.tables["webhook_events"].extend(
        [_row("a"), _row("old", status="completed", error_message=None, created_at="2024-01-01T00:00:00+00:00")]
    )
    client = _client(service)
    headers = {"X-Internal-Scheduler-Secret": "sched-secret"}

    processed = client.post("/api/webhook-events/process-ready", headers=headers)
    assert processed.status_code == 200
    assert processed.json()["data"]["results"] == {"a": True}

    cleaned = client.post("/api/webhook-events/cleanup", headers=headers, json={"days_old": 30})
    assert cleaned.status_code == 200
    assert cleaned.json()["data"] == {"deleted": 1}


def test_unexpected_error_is_hidden_without_debug(service, fake_db, monkeypatch):
    fake_db.fail_with = RuntimeError("connection reset by peer")
    monkeypatch.setattr(settings, "app_debug", False)
    client = TestClient(app, raise_server_exceptions=False)
    app.dependency_overrides[get_webhook_event_service] = lambda: service

    response = client.get("/api/webhook-events/a")

    assert response.status_code == 500
    assert response.json() == {"message": "Internal server error", "error": "Internal server error"}
