"""
Data Synchronization Models

Sync job records (one row per execution attempt chain) and the per-tenant
sync configuration that drives cron registration and retry policy.
"""
import uuid
from enum import Enum
from sqlalchemy import Column, Integer, String, Boolean, DateTime, Text, JSON, Index

from bizsync.models.base import Base
from bizsync.utils.helpers import utc_now, isoformat_or_none


class SyncJobType(str, Enum):
    """Kinds of sync job"""
    GA4_DAILY = "ga4_daily"
    N8N_REALTIME = "n8n_realtime"
    MANUAL = "manual"
    CLEANUP = "cleanup"


class SyncJobStatus(str, Enum):
    """Sync job status values"""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


def _new_id() -> str:
    return str(uuid.uuid4())


class SyncJob(Base):
    """
    One sync job for a business entity.

    A failed attempt moves the job back to pending with retry_count and
    next_retry_at set, until retries are exhausted and it becomes failed.
    """
    __tablename__ = "sync_jobs"

    id = Column(String, primary_key=True, default=_new_id)
    business_entity_id = Column(String, index=True, nullable=False)

    job_type = Column(String, index=True, nullable=False)
    status = Column(String, index=True, nullable=False, default=SyncJobStatus.PENDING.value)

    # Timing
    start_time = Column(DateTime, nullable=False, default=utc_now)
    end_time = Column(DateTime, nullable=True)
    duration = Column(Integer, nullable=True)  # milliseconds, set with end_time

    # Errors
    error_message = Column(Text, nullable=True)
    error_code = Column(String, nullable=True)

    # Retry bookkeeping
    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=3)
    next_retry_at = Column(DateTime, nullable=True, index=True)

    job_metadata = Column("metadata", JSON, default=dict)

    # Timestamps
    created_at = Column(DateTime, default=utc_now)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        Index("idx_sync_jobs_entity_status", "business_entity_id", "status"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "business_entity_id": self.business_entity_id,
            "job_type": self.job_type,
            "status": self.status,
            "start_time": isoformat_or_none(self.start_time),
            "end_time": isoformat_or_none(self.end_time),
            "duration": self.duration,
            "error_message": self.error_message,
            "error_code": self.error_code,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "next_retry_at": isoformat_or_none(self.next_retry_at),
            "metadata": dict(self.job_metadata or {}),
            "created_at": isoformat_or_none(self.created_at),
            "updated_at": isoformat_or_none(self.updated_at),
        }

    def __repr__(self):
        return f"<SyncJob {self.id} {self.job_type} {self.status}>"


class SyncConfig(Base):
    """
    Per-business-entity sync configuration

    Cron schedules for the three job families plus retry and alerting policy.
    retry_config: {max_retries, initial_delay, max_delay, backoff_multiplier} (ms)
    alerting: {enabled, email_recipients}
    """
    __tablename__ = "sync_configs"

    id = Column(String, primary_key=True, default=_new_id)
    business_entity_id = Column(String, unique=True, index=True, nullable=False)

    ga4_sync_enabled = Column(Boolean, default=True, nullable=False)
    ga4_sync_schedule = Column(String, nullable=False)
    n8n_sync_enabled = Column(Boolean, default=True, nullable=False)
    n8n_sync_schedule = Column(String, nullable=False)
    cleanup_sync_enabled = Column(Boolean, default=True, nullable=False)
    cleanup_sync_schedule = Column(String, nullable=False)

    retry_config = Column(JSON, nullable=False)
    alerting = Column(JSON, nullable=False)

    created_at = Column(DateTime, default=utc_now)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "business_entity_id": self.business_entity_id,
            "ga4_sync_enabled": self.ga4_sync_enabled,
            "ga4_sync_schedule": self.ga4_sync_schedule,
            "n8n_sync_enabled": self.n8n_sync_enabled,
            "n8n_sync_schedule": self.n8n_sync_schedule,
            "cleanup_sync_enabled": self.cleanup_sync_enabled,
            "cleanup_sync_schedule": self.cleanup_sync_schedule,
            "retry_config": dict(self.retry_config or {}),
            "alerting": dict(self.alerting or {}),
            "created_at": isoformat_or_none(self.created_at),
            "updated_at": isoformat_or_none(self.updated_at),
        }

    def __repr__(self):
        return f"<SyncConfig {self.business_entity_id}>"
