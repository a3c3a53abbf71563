"""
Metric storage and retention cleanup.
"""
from datetime import timedelta

import pytest

from bizsync.models.integrations import N8nIntegration, N8nWebhookEvent
from bizsync.models.metric import DataArchive
from bizsync.services.metrics_service import MetricsService
from bizsync.utils.helpers import utc_now


@pytest.fixture
def metrics(session_factory):
    return MetricsService(session_factory)


def _metric(metrics, business_entity_id="be1", days_ago=0, value=10):
    return metrics.create_metric(
        business_entity_id=business_entity_id,
        metric_type="ga4_session",
        metric_name="sessions",
        metric_value=value,
        source="google_analytics",
        date=utc_now() - timedelta(days=days_ago),
        metric_unit="count",
    )


def _archives(session_factory, **filters):
    db = session_factory()
    try:
        return db.query(DataArchive).filter_by(**filters).all()
    finally:
        db.close()


def test_create_metric_returns_stored_row(metrics):
    metric = metrics.create_metric(
        "be1", "ga4_user", "users", 0, "google_analytics", date=utc_now(),
        metadata={"source": "ga4-api"}, tags=["ga4", "users"],
    )

    assert metric["id"]
    assert metric["metric_value"] == 0
    assert metric["timezone"] == "UTC"
    assert metric["metadata"] == {"source": "ga4-api"}
    assert metric["tags"] == ["ga4", "users"]
    assert metric["is_archived"] is False


def test_get_metrics_filters_by_type(metrics):
    _metric(metrics)
    metrics.create_metric("be1", "ga4_user", "users", 3, "google_analytics", date=utc_now())

    assert len(metrics.get_metrics("be1")) == 2
    assert [m["metric_type"] for m in metrics.get_metrics("be1", metric_type="ga4_user")] == ["ga4_user"]


class TestCleanup:

    def test_archives_only_rows_past_retention(self, metrics, session_factory):
        old = _metric(metrics, days_ago=100)
        _metric(metrics, days_ago=10)

        result = metrics.cleanup_old_data("be1", retention_days=90)

        assert result.archived_metrics == 1
        assert result.archived_webhooks == 0
        assert [m["id"] for m in metrics.get_metrics("be1", include_archived=True) if m["is_archived"]] == [old["id"]]
        assert len(metrics.get_metrics("be1")) == 1

        archives = _archives(session_factory, archive_type="metrics")
        assert len(archives) == 1
        assert archives[0].source_record_id == old["id"]
        assert archives[0].retention_policy == "90_days"
        assert archives[0].archived_data["metric_value"] == 10

    def test_second_run_archives_nothing(self, metrics, session_factory):
        _metric(metrics, days_ago=100)
        metrics.cleanup_old_data("be1", retention_days=90)

        result = metrics.cleanup_old_data("be1", retention_days=90)

        assert result.archived_metrics == 0
        assert len(_archives(session_factory)) == 1

    def test_other_entities_are_untouched(self, metrics):
        _metric(metrics, business_entity_id="be2", days_ago=365)

        metrics.cleanup_old_data("be1", retention_days=30)

        assert metrics.get_metrics("be2")[0]["is_archived"] is False

    def test_archives_old_webhook_events(self, metrics, session_factory):
        db = session_factory()
        try:
            integration = N8nIntegration(business_entity_id="be1", webhook_url="https://n8n.example.com", webhook_token="t")
            db.add(integration)
            db.flush()
            for days_ago in (200, 1):
                db.add(N8nWebhookEvent(
                    n8n_integration_id=integration.id,
                    workflow_id="wf", workflow_name="Flow", execution_id=f"e{days_ago}",
                    event_type="workflow_completed", status="completed",
                    start_time=utc_now() - timedelta(days=days_ago),
                ))
            db.commit()
        finally:
            db.close()

        result = metrics.cleanup_old_data("be1", retention_days=90)

        assert result.archived_webhooks == 1
        archives = _archives(session_factory, archive_type="webhook_events")
        assert archives[0].source_table == "n8n_webhook_events"
        assert archives[0].archived_data["execution_id"] == "e200"

    def test_result_serializes_cutoff(self, metrics):
        data = metrics.cleanup_old_data("be1", retention_days=7).to_dict()
        assert data["archived_metrics"] == 0
        assert isinstance(data["cutoff_date"], str)
