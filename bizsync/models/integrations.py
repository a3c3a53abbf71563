"""
Integration Models

Per-business-entity connections to Google Analytics 4 and n8n, plus the
webhook events received from n8n workflows.
"""
import uuid
from sqlalchemy import Column, Integer, String, Boolean, DateTime, Text, JSON, ForeignKey
from sqlalchemy.orm import relationship

from bizsync.models.base import Base
from bizsync.utils.helpers import utc_now, isoformat_or_none


def _new_id() -> str:
    return str(uuid.uuid4())


class GoogleAnalyticsIntegration(Base):
    """GA4 property connected to a business entity"""
    __tablename__ = "ga4_integrations"

    id = Column(String, primary_key=True, default=_new_id)
    business_entity_id = Column(String, index=True, nullable=False)
    property_id = Column(String, nullable=False)
    is_active = Column(Boolean, default=True, index=True)
    last_sync_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utc_now)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)

    def __repr__(self):
        return f"<GoogleAnalyticsIntegration {self.business_entity_id} property={self.property_id}>"


class N8nIntegration(Base):
    """n8n webhook integration for a business entity"""
    __tablename__ = "n8n_integrations"

    id = Column(String, primary_key=True, default=_new_id)
    business_entity_id = Column(String, index=True, nullable=False)
    webhook_url = Column(String, nullable=False)
    webhook_token = Column(String, nullable=False)
    is_active = Column(Boolean, default=True, index=True)

    # Stats
    last_webhook_at = Column(DateTime, nullable=True)
    webhook_count = Column(Integer, default=0)
    last_error_at = Column(DateTime, nullable=True)
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utc_now)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)

    events = relationship("N8nWebhookEvent", back_populates="integration")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "business_entity_id": self.business_entity_id,
            "webhook_url": self.webhook_url,
            "is_active": self.is_active,
            "last_webhook_at": isoformat_or_none(self.last_webhook_at),
            "webhook_count": self.webhook_count,
            "last_error_at": isoformat_or_none(self.last_error_at),
            "error_message": self.error_message,
            "created_at": isoformat_or_none(self.created_at),
            "updated_at": isoformat_or_none(self.updated_at),
        }


class N8nWebhookEvent(Base):
    """
    One webhook event received from an n8n workflow

    `status` is the workflow status reported by n8n. `processing_status`
    tracks our own handling: pending events are replayed by the n8n
    realtime sync.
    """
    __tablename__ = "n8n_webhook_events"

    id = Column(String, primary_key=True, default=_new_id)
    n8n_integration_id = Column(String, ForeignKey("n8n_integrations.id"), index=True, nullable=False)

    workflow_id = Column(String, index=True, nullable=False)
    workflow_name = Column(String, nullable=False)
    execution_id = Column(String, index=True, nullable=False)
    event_type = Column(String, nullable=False)
    status = Column(String, index=True, nullable=False)

    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=True)
    duration = Column(Integer, nullable=True)  # milliseconds

    input_data = Column(JSON, default=dict)
    output_data = Column(JSON, default=dict)
    error_message = Column(Text, nullable=True)
    event_metadata = Column("metadata", JSON, default=dict)

    processing_status = Column(String, index=True, default="pending")  # pending, processed, failed
    processing_errors = Column(JSON, nullable=True)
    processed_at = Column(DateTime, nullable=True)
    is_archived = Column(Boolean, default=False, index=True)

    created_at = Column(DateTime, default=utc_now, index=True)

    integration = relationship("N8nIntegration", back_populates="events")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "n8n_integration_id": self.n8n_integration_id,
            "workflow_id": self.workflow_id,
            "workflow_name": self.workflow_name,
            "execution_id": self.execution_id,
            "event_type": self.event_type,
            "status": self.status,
            "start_time": isoformat_or_none(self.start_time),
            "end_time": isoformat_or_none(self.end_time),
            "duration": self.duration,
            "error_message": self.error_message,
            "processing_status": self.processing_status,
            "created_at": isoformat_or_none(self.created_at),
        }

    def __repr__(self):
        return f"<N8nWebhookEvent {self.execution_id} {self.event_type}/{self.status}>"
