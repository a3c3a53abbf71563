"""
HTTP surface: the routers are driven through FastAPI's TestClient with the
sync service swapped for the fixture-built one. The client is used without a
context manager so the application lifespan (database init, scheduler start)
does not run.
"""
import pytest
from fastapi.testclient import TestClient

from bizsync.api.sync import get_data_sync_service
from bizsync.main import app


@pytest.fixture
def client(service):
    app.dependency_overrides[get_data_sync_service] = lambda: service
    yield TestClient(app)
    app.dependency_overrides.clear()


WEBHOOK = {
    "workflowId": "wf-1",
    "workflowName": "Lead Generation Workflow",
    "executionId": "exec-77",
    "eventType": "workflow_completed",
    "status": "completed",
    "startTime": "2024-05-01T10:00:00Z",
    "endTime": "2024-05-01T10:01:00Z",
    "inputData": {"leads": 3},
    "outputData": {"qualified": 1},
}


# ----------------------------------------------------------------------------
# Health
# ----------------------------------------------------------------------------

def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_status_reports_scheduler(client):
    response = client.get("/status")
    assert response.status_code == 200
    assert response.json()["scheduler"]["initialized"] is False


# ----------------------------------------------------------------------------
# Sync configs
# ----------------------------------------------------------------------------

def test_config_crud(client):
    response = client.post("/sync/config", json={
        "business_entity_id": "acme",
        "n8n_sync_enabled": False,
        "retry_config": {"max_retries": 5},
        "alerting": {"enabled": True, "email_recipients": ["ops@acme.test"]},
    })
    assert response.status_code == 201
    created = response.json()
    assert created["n8n_sync_enabled"] is False
    assert created["ga4_sync_schedule"] == "0 2 * * *"
    assert created["retry_config"]["max_retries"] == 5
    assert created["retry_config"]["initial_delay"] == 60000

    fetched = client.get("/sync/config/acme").json()
    assert fetched["id"] == created["id"]
    assert fetched["retry_delays_ms"] == [60000, 120000, 240000, 480000, 960000]

    response = client.put("/sync/config/acme", json={"cleanup_sync_schedule": "15 1 * * 6"})
    assert response.status_code == 200
    assert response.json()["cleanup_sync_schedule"] == "15 1 * * 6"


def test_config_errors(client):
    assert client.get("/sync/config/nobody").status_code == 404
    assert client.put("/sync/config/nobody", json={"ga4_sync_enabled": False}).status_code == 404

    response = client.post("/sync/config", json={"business_entity_id": "acme", "ga4_sync_schedule": "daily"})
    assert response.status_code == 400

    client.post("/sync/config", json={"business_entity_id": "acme"})
    assert client.post("/sync/config", json={"business_entity_id": "acme"}).status_code == 400
    assert client.put("/sync/config/acme", json={"n8n_sync_schedule": "* *"}).status_code == 400


# ----------------------------------------------------------------------------
# Jobs and manual triggers
# ----------------------------------------------------------------------------

def test_manual_sync_and_job_listing(client):
    response = client.post("/sync/manual/acme", json={"job_type": "cleanup"})
    assert response.status_code == 200
    result = response.json()
    assert result["success"] is True
    assert result["message"] == "Manual sync for cleanup completed successfully"

    job = client.get(f"/sync/jobs/{result['sync_job_id']}").json()
    assert job["status"] == "completed"
    assert job["metadata"]["manualTrigger"] is True

    page = client.get("/sync/jobs", params={"business_entity_id": "acme"}).json()
    assert page["total"] == 1
    assert page["limit"] == 50

    stats = client.get("/sync/stats/acme").json()
    assert stats["completed_jobs"] == 1
    assert stats["success_rate"] == 100


def test_manual_sync_rejects_unsupported_type(client):
    result = client.post("/sync/manual/acme", json={"job_type": "manual"}).json()
    assert result == {"success": False, "sync_job_id": None, "message": "Unsupported job type: manual"}


def test_cancel_job(client, service):
    job = service.create_sync_job("acme", "ga4_daily")

    response = client.post(f"/sync/jobs/{job['id']}/cancel")
    assert response.status_code == 200
    assert response.json()["status"] == "cancelled"

    assert client.post(f"/sync/jobs/{job['id']}/cancel").status_code == 400
    assert client.post("/sync/jobs/missing/cancel").status_code == 404
    assert client.get("/sync/jobs/missing").status_code == 404


def test_health_for_entity_without_jobs(client):
    health = client.get("/sync/health/acme").json()
    assert health["status"] == "unhealthy"
    assert health["issues"] == ["Low success rate: 0.0%"]


def test_initialize_registers_cron_jobs(client):
    client.post("/sync/config", json={"business_entity_id": "acme"})

    response = client.post("/sync/initialize")

    assert response.status_code == 200
    assert response.json()["cron_jobs"] == ["acme:cleanup", "acme:ga4", "acme:n8n"]
    listing = client.get("/sync/cron", params={"business_entity_id": "acme"}).json()
    assert listing["initialized"] is True
    assert listing["cron_jobs"][1] == {"key": "acme:ga4", "cron_expression": "0 2 * * *", "next_run_time": None}
    assert len(client.get("/status").json()["scheduler"]["jobs"]) == 4

    assert client.post("/sync/shutdown").json() == {"initialized": False}
    assert client.get("/sync/cron").json()["cron_jobs"] == []


# ----------------------------------------------------------------------------
# n8n
# ----------------------------------------------------------------------------

def test_n8n_webhook_flow(client):
    integration = client.post("/n8n/integrations", json={
        "business_entity_id": "acme",
        "webhook_url": "https://n8n.acme.test/webhook/1",
        "webhook_token": "token",
    })
    assert integration.status_code == 201
    integration_id = integration.json()["id"]

    response = client.post(f"/n8n/webhook/{integration_id}", json=WEBHOOK)
    assert response.status_code == 200
    assert response.json()["success"] is True

    events = client.get(f"/n8n/integrations/{integration_id}/events").json()["events"]
    assert [e["execution_id"] for e in events] == ["exec-77"]

    metrics = client.get(f"/n8n/integrations/{integration_id}/metrics").json()
    assert metrics["total_workflows"] == 1
    assert metrics["average_execution_time"] == 60000


def test_n8n_webhook_rejects_invalid_payload(client):
    integration_id = client.post("/n8n/integrations", json={
        "business_entity_id": "acme",
        "webhook_url": "https://n8n.acme.test/webhook/1",
        "webhook_token": "token",
    }).json()["id"]

    response = client.post(f"/n8n/webhook/{integration_id}", json={**WEBHOOK, "eventType": "nope"})

    assert response.status_code == 400
    assert response.json()["detail"]["errors"] == ["Invalid eventType: nope"]


def test_n8n_unknown_integration(client):
    assert client.get("/n8n/integrations/missing").status_code == 404
    assert client.get("/n8n/integrations/missing/metrics").status_code == 404
