"""
n8n webhook validation, native payload conversion and event storage.
"""
from datetime import datetime, timezone

import pytest

from bizsync.models.integrations import N8nWebhookEvent
from bizsync.services.n8n_service import (
    N8nService,
    convert_n8n_payload,
    event_to_payload,
    parse_timestamp,
    validate_and_normalize_payload,
)


def _payload(**overrides):
    payload = {
        "workflowId": "wf-42",
        "workflowName": "Lead Generation Workflow",
        "executionId": "exec-1",
        "eventType": "workflow_completed",
        "status": "completed",
        "startTime": "2024-01-15T10:00:00Z",
        "endTime": "2024-01-15T10:00:45Z",
        "inputData": {"leads": 12},
        "outputData": {"qualified": 4},
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def n8n(session_factory):
    return N8nService(session_factory)


@pytest.fixture
def integration(n8n):
    return n8n.create_integration("be1", "https://n8n.example.com/webhook/abc", "secret")


# ────────────────────────────────────────────
# VALIDATION
# ────────────────────────────────────────────


class TestValidation:

    def test_valid_payload_passes_without_warnings(self):
        result = validate_and_normalize_payload(_payload())
        assert result.is_valid
        assert result.errors == []
        assert result.warnings == []
        assert result.payload["executionId"] == "exec-1"

    def test_missing_required_fields_are_all_reported(self):
        result = validate_and_normalize_payload({})
        assert not result.is_valid
        assert result.payload is None
        for name in ("workflowId", "workflowName", "executionId", "eventType", "status", "startTime"):
            assert f"{name} is required" in result.errors

    def test_missing_io_data_only_warns(self):
        result = validate_and_normalize_payload(_payload(inputData=None, outputData={}))
        assert result.is_valid
        assert "inputData is missing (optional but recommended)" in result.warnings
        assert "outputData is missing (optional but recommended)" in result.warnings

    @pytest.mark.parametrize("field,value,message", [
        ("eventType", "workflow_exploded", "Invalid eventType: workflow_exploded"),
        ("status", "success", "Invalid status: success"),
        ("startTime", "yesterday-ish", "Invalid startTime format (must be ISO 8601)"),
        ("endTime", "not a time", "Invalid endTime format (must be ISO 8601)"),
    ])
    def test_invalid_values(self, field, value, message):
        result = validate_and_normalize_payload(_payload(**{field: value}))
        assert not result.is_valid
        assert result.errors == [message]

    def test_non_object_payload(self):
        result = validate_and_normalize_payload(["not", "a", "dict"])
        assert not result.is_valid
        assert result.errors == ["Payload must be a JSON object"]

    def test_parse_timestamp_normalizes_to_naive_utc(self):
        assert parse_timestamp("2024-01-15T12:00:00+02:00") == datetime(2024, 1, 15, 10, 0, 0)
        with pytest.raises(ValueError):
            parse_timestamp("soon")


# ────────────────────────────────────────────
# NATIVE N8N FORMAT
# ────────────────────────────────────────────


class TestNativeConversion:

    NATIVE = {
        "ExecutionID": "9001",
        "Status": "success",
        "Timestamp": "2024-03-01T08:30:00Z",
        "LeadsGenerated": 17,
        "IndustryBreakdown": {"saas": 10, "retail": 7},
    }

    def test_native_payload_is_converted_then_validated(self):
        now = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)
        result = validate_and_normalize_payload(dict(self.NATIVE), now=now)

        assert result.is_valid
        assert "Payload converted from n8n format" in result.warnings
        payload = result.payload
        assert payload["status"] == "completed"
        assert payload["eventType"] == "workflow_completed"
        assert payload["executionId"] == "9001"
        assert payload["startTime"] == "2024-03-01T08:30:00Z"
        assert payload["workflowId"] == f"workflow-{int(now.timestamp() * 1000)}"
        assert payload["inputData"]["leadsGenerated"] == 17
        assert payload["outputData"]["industryBreakdown"] == {"saas": 10, "retail": 7}

    def test_unknown_native_status_maps_to_completed(self):
        converted = convert_n8n_payload({**self.NATIVE, "Status": "mystery"})
        assert converted["status"] == "completed"
        assert converted["workflowId"].startswith("workflow-")

    def test_failed_native_status_is_kept(self):
        assert convert_n8n_payload({**self.NATIVE, "Status": "FAILED"})["status"] == "failed"


# ────────────────────────────────────────────
# STORED EVENTS
# ────────────────────────────────────────────


def test_event_to_payload_omits_absent_optional_fields():
    event = N8nWebhookEvent(
        workflow_id="wf", workflow_name="Flow", execution_id="e1",
        event_type="workflow_started", status="running",
        start_time=datetime(2024, 1, 1, 12, 0), input_data=None, output_data=None,
    )
    payload = event_to_payload(event)
    assert "endTime" not in payload
    assert "duration" not in payload
    assert "errorMessage" not in payload
    assert payload["startTime"] == "2024-01-01T12:00:00"
    assert payload["inputData"] == {}


def test_receive_webhook_stores_and_processes(n8n, integration, session_factory):
    result = n8n.receive_webhook(integration["id"], _payload())

    assert result["success"] is True
    assert result["warnings"] == []
    assert result["metrics"]["total_workflows"] == 1
    assert result["metrics"]["successful_workflows"] == 1

    events = n8n.get_webhook_events(integration["id"])
    assert len(events) == 1
    assert events[0]["id"] == result["event_id"]
    assert events[0]["processing_status"] == "processed"
    assert events[0]["duration"] == 45000

    stored = n8n.get_integration(integration["id"])
    assert stored["webhook_count"] == 1
    assert stored["last_webhook_at"] is not None
    assert n8n.get_pending_events(integration["id"]) == []


def test_invalid_webhook_stores_nothing(n8n, integration):
    result = n8n.receive_webhook(integration["id"], _payload(status="exploded"))

    assert result["success"] is False
    assert result["errors"] == ["Invalid status: exploded"]
    assert n8n.get_webhook_events(integration["id"]) == []


def test_webhook_for_inactive_integration_is_rejected(n8n, integration):
    n8n.update_integration(integration["id"], is_active=False)

    result = n8n.receive_webhook(integration["id"], _payload())

    assert result["success"] is False
    assert n8n.get_webhook_events(integration["id"]) == []
    assert n8n.get_integration_by_business_entity("be1") is None


def test_calculate_metrics(n8n, integration):
    n8n.receive_webhook(integration["id"], _payload(executionId="a"))
    n8n.receive_webhook(integration["id"], _payload(
        executionId="b", endTime="2024-01-15T10:00:15Z"
    ))
    n8n.receive_webhook(integration["id"], _payload(
        executionId="c", status="failed", eventType="workflow_failed", errorMessage="node 3 timed out"
    ))

    metrics = n8n.calculate_metrics(integration["id"])

    assert metrics["total_workflows"] == 3
    assert metrics["successful_workflows"] == 2
    assert metrics["failed_workflows"] == 1
    assert metrics["total_time_saved"] == 60000
    assert metrics["average_execution_time"] == pytest.approx(30000)
    assert metrics["success_rate"] == pytest.approx(200 / 3)


def test_calculate_metrics_without_events(n8n, integration):
    metrics = n8n.calculate_metrics(integration["id"])
    assert metrics["total_workflows"] == 0
    assert metrics["success_rate"] == 0
    assert metrics["last_execution_at"] is None


def test_process_without_event_id_creates_row(n8n, integration):
    result = n8n.process_webhook_event(integration["id"], _payload())
    assert result["success"] is True
    assert len(n8n.get_webhook_events(integration["id"])) == 1
