"""
Metric Models

Typed metric rows written by the sync jobs, and the archive table used by
retention cleanup.
"""
import uuid
from sqlalchemy import Column, String, Float, Boolean, DateTime, JSON, Index

from bizsync.models.base import Base
from bizsync.utils.helpers import utc_now


def _new_id() -> str:
    return str(uuid.uuid4())


class Metric(Base):
    """A single metric value for a business entity on a date"""
    __tablename__ = "metrics"

    id = Column(String, primary_key=True, default=_new_id)
    business_entity_id = Column(String, index=True, nullable=False)

    metric_type = Column(String, index=True, nullable=False)  # ga4_session, ga4_user, ga4_pageview
    metric_name = Column(String, nullable=False)
    metric_value = Column(Float, nullable=False)
    metric_unit = Column(String, nullable=True)
    source = Column(String, index=True, nullable=False)  # google_analytics, n8n
    source_id = Column(String, nullable=True)

    date = Column(DateTime, index=True, nullable=False)
    timezone = Column(String, default="UTC")
    metric_metadata = Column("metadata", JSON, default=dict)
    tags = Column(JSON, default=list)

    is_archived = Column(Boolean, default=False, index=True)

    created_at = Column(DateTime, default=utc_now)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        Index("idx_metrics_entity_date", "business_entity_id", "date"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "business_entity_id": self.business_entity_id,
            "metric_type": self.metric_type,
            "metric_name": self.metric_name,
            "metric_value": self.metric_value,
            "metric_unit": self.metric_unit,
            "source": self.source,
            "date": self.date.isoformat() if self.date else None,
            "timezone": self.timezone,
            "metadata": dict(self.metric_metadata or {}),
            "tags": list(self.tags or []),
            "is_archived": self.is_archived,
        }

    def __repr__(self):
        return f"<Metric {self.metric_type}={self.metric_value} {self.date}>"


class DataArchive(Base):
    """Snapshot of a record removed from the live tables by retention cleanup"""
    __tablename__ = "data_archives"

    id = Column(String, primary_key=True, default=_new_id)
    business_entity_id = Column(String, index=True, nullable=False)
    archive_type = Column(String, index=True, nullable=False)  # metrics, webhook_events
    source_table = Column(String, nullable=False)
    source_record_id = Column(String, nullable=False)
    archived_data = Column(JSON, nullable=False)
    archive_date = Column(DateTime, default=utc_now)
    retention_policy = Column(String, nullable=True)  # e.g. "90_days"
