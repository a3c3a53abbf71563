"""
Metrics Service

Writes typed metric rows and archives data past the retention window.
"""
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from bizsync.models.base import SessionLocal, session_scope
from bizsync.models.integrations import N8nIntegration, N8nWebhookEvent
from bizsync.models.metric import Metric, DataArchive
from bizsync.utils.helpers import utc_now
from bizsync.utils.logger import log


@dataclass
class CleanupResult:
    """Counts of records archived by one retention run"""
    archived_metrics: int = 0
    archived_webhooks: int = 0
    cutoff_date: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["cutoff_date"] = self.cutoff_date.isoformat() if self.cutoff_date else None
        return data


class MetricsService:
    """Metric storage and retention"""

    def __init__(self, session_factory=None):
        self.session_factory = session_factory or SessionLocal

    def create_metric(
        self,
        business_entity_id: str,
        metric_type: str,
        metric_name: str,
        metric_value: float,
        source: str,
        date: datetime,
        metric_unit: Optional[str] = None,
        source_id: Optional[str] = None,
        timezone: str = "UTC",
        metadata: Optional[Dict[str, Any]] = None,
        tags: Optional[List[str]] = None
    ) -> Dict[str, Any]:
        """Persist one metric and return it as a dict"""
        with session_scope(self.session_factory) as db:
            metric = Metric(
                business_entity_id=business_entity_id,
                metric_type=metric_type,
                metric_name=metric_name,
                metric_value=metric_value,
                metric_unit=metric_unit,
                source=source,
                source_id=source_id,
                date=date,
                timezone=timezone or "UTC",
                metric_metadata=metadata or {},
                tags=tags or [],
            )
            db.add(metric)
            db.flush()
            return metric.to_dict()

    def get_metrics(
        self,
        business_entity_id: str,
        metric_type: Optional[str] = None,
        include_archived: bool = False
    ) -> List[Dict[str, Any]]:
        with session_scope(self.session_factory) as db:
            query = db.query(Metric).filter(Metric.business_entity_id == business_entity_id)
            if metric_type:
                query = query.filter(Metric.metric_type == metric_type)
            if not include_archived:
                query = query.filter(Metric.is_archived == False)  # noqa: E712
            return [m.to_dict() for m in query.order_by(Metric.date.desc()).all()]

    def cleanup_old_data(self, business_entity_id: str, retention_days: int) -> CleanupResult:
        """
        Archive metrics and n8n webhook events older than the retention window.

        Each archived record is copied into data_archives and flagged
        is_archived on its source row; already archived rows are skipped.
        """
        now = utc_now()
        cutoff = now - timedelta(days=retention_days)
        policy = f"{retention_days}_days"
        result = CleanupResult(cutoff_date=cutoff)

        with session_scope(self.session_factory) as db:
            old_metrics = db.query(Metric).filter(
                Metric.business_entity_id == business_entity_id,
                Metric.date < cutoff,
                Metric.is_archived == False  # noqa: E712
            ).all()

            for metric in old_metrics:
                db.add(DataArchive(
                    business_entity_id=business_entity_id,
                    archive_type="metrics",
                    source_table="metrics",
                    source_record_id=metric.id,
                    archived_data=metric.to_dict(),
                    archive_date=now,
                    retention_policy=policy,
                ))
                metric.is_archived = True
            result.archived_metrics = len(old_metrics)

            old_events = db.query(N8nWebhookEvent).join(N8nIntegration).filter(
                N8nIntegration.business_entity_id == business_entity_id,
                N8nWebhookEvent.start_time < cutoff,
                N8nWebhookEvent.is_archived == False  # noqa: E712
            ).all()

            for event in old_events:
                db.add(DataArchive(
                    business_entity_id=business_entity_id,
                    archive_type="webhook_events",
                    source_table="n8n_webhook_events",
                    source_record_id=event.id,
                    archived_data=event.to_dict(),
                    archive_date=now,
                    retention_policy=policy,
                ))
                event.is_archived = True
            result.archived_webhooks = len(old_events)

        log.info(
            f"Retention cleanup for {business_entity_id}: "
            f"{result.archived_metrics} metrics, {result.archived_webhooks} webhook events "
            f"older than {cutoff.date()} archived"
        )
        return result
