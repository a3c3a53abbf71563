"""
Data Synchronization Service
Schedules and runs per-business-entity sync jobs (GA4 daily pull, n8n realtime
replay, retention cleanup), with retry/backoff and health reporting.

Each business entity has one SyncConfig. Its enabled job families are
registered with the cron scheduler under "{business_entity_id}:{family}".
Every run is recorded as a SyncJob. A failed run goes back to pending with
next_retry_at set, and the retry sweep re-runs it once that time has passed,
until max_retries is exhausted and the job is marked failed.
"""
import asyncio
from dataclasses import dataclass, field, asdict
from datetime import date, datetime, time, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

from dateutil import parser as date_parser

from bizsync.config import Settings, get_settings
from bizsync.connectors.ga4_connector import GA4Connector
from bizsync.models.base import SessionLocal, session_scope
from bizsync.models.integrations import GoogleAnalyticsIntegration
from bizsync.models.sync import SyncJob, SyncConfig, SyncJobType, SyncJobStatus
from bizsync.scheduler import CronScheduler, ScheduledJob, validate_cron
from bizsync.services.alert_service import AlertService, SyncFailureAlert
from bizsync.services.metrics_service import MetricsService
from bizsync.services.n8n_service import N8nService
from bizsync.utils.helpers import utc_now, yesterday_utc, elapsed_ms, isoformat_or_none
from bizsync.utils.logger import log
from bizsync.utils.retry import RetryPolicy

# Cron job families, in registration order
FAMILIES = ("ga4", "n8n", "cleanup")

FAMILY_JOB_TYPES = {
    "ga4": SyncJobType.GA4_DAILY.value,
    "n8n": SyncJobType.N8N_REALTIME.value,
    "cleanup": SyncJobType.CLEANUP.value,
}
JOB_TYPE_FAMILIES = {job_type: family for family, job_type in FAMILY_JOB_TYPES.items()}

# GA4 row key -> (metric_type, metric_name)
GA4_METRICS = (
    ("sessions", "ga4_session"),
    ("users", "ga4_user"),
    ("pageviews", "ga4_pageview"),
)

RETRY_SWEEP_JOB_ID = "sync:retry-sweep"

UPDATABLE_JOB_FIELDS = {
    "status", "start_time", "end_time", "duration", "error_message", "error_code",
    "retry_count", "max_retries", "next_retry_at",
}

CONFIG_SCHEDULE_FIELDS = {
    "ga4_sync_enabled", "ga4_sync_schedule",
    "n8n_sync_enabled", "n8n_sync_schedule",
    "cleanup_sync_enabled", "cleanup_sync_schedule",
}


class SyncJobError(Exception):
    """Sync failure with a machine-readable code stored on the job"""
    code = "SYNC_ERROR"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        if code:
            self.code = code


class IntegrationNotFoundError(SyncJobError):
    code = "INTEGRATION_NOT_FOUND"


class UnsupportedJobTypeError(SyncJobError):
    code = "UNSUPPORTED_JOB_TYPE"


def cron_key(business_entity_id: str, family: str) -> str:
    return f"{business_entity_id}:{family}"


@dataclass
class ManualSyncResult:
    """Response of a manual sync trigger"""
    success: bool
    sync_job_id: Optional[str]
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class SyncJobPage:
    """One page of sync jobs, newest start_time first"""
    sync_jobs: List[Dict[str, Any]] = field(default_factory=list)
    total: int = 0
    limit: int = 50
    offset: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class SyncJobStats:
    """Aggregate job counts for one business entity"""
    total_jobs: int = 0
    completed_jobs: int = 0
    failed_jobs: int = 0
    running_jobs: int = 0
    pending_jobs: int = 0
    cancelled_jobs: int = 0
    average_duration: float = 0.0  # ms, completed jobs only
    success_rate: float = 0.0  # percent
    last_sync_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["last_sync_at"] = isoformat_or_none(self.last_sync_at)
        return data


@dataclass
class SyncHealth:
    """Health verdict for one business entity"""
    status: str = "healthy"  # healthy, degraded, unhealthy
    last_sync_at: Optional[datetime] = None
    active_jobs: int = 0
    failed_jobs: int = 0
    average_sync_time: float = 0.0
    success_rate: float = 0.0
    issues: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["last_sync_at"] = isoformat_or_none(self.last_sync_at)
        return data


class DataSyncService:
    """
    Orchestrates scheduled and manual data syncs for all business entities.

    Collaborators are injected so tests can swap the database, the GA4 client,
    the alert channels and the cron scheduler.
    """

    def __init__(
        self,
        session_factory=None,
        ga4_connector: Optional[GA4Connector] = None,
        n8n_service: Optional[N8nService] = None,
        metrics_service: Optional[MetricsService] = None,
        alert_service: Optional[AlertService] = None,
        cron_scheduler: Optional[CronScheduler] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.session_factory = session_factory or SessionLocal
        self.ga4_connector = ga4_connector or GA4Connector()
        self.n8n_service = n8n_service or N8nService(self.session_factory)
        self.metrics_service = metrics_service or MetricsService(self.session_factory)
        self.alert_service = alert_service or AlertService()
        self.cron_scheduler = cron_scheduler or CronScheduler(self.settings.scheduler_timezone)

        self.cron_jobs: Dict[str, ScheduledJob] = {}
        self._retry_sweep: Optional[ScheduledJob] = None
        self._locks: Dict[str, asyncio.Lock] = {}
        self.is_initialized = False

    # ------------------------------------------------------------------
    # Lifecycle and cron registry
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """
        Register cron jobs for every stored config and start the scheduler.

        Calling it again while initialized is a no-op. Errors loading configs
        propagate to the caller.
        """
        if self.is_initialized:
            return

        configs = self.get_all_sync_configs()
        for config in configs:
            self.start_cron_jobs(config)

        if self.settings.retry_sweep_enabled:
            self._retry_sweep = self.cron_scheduler.schedule(
                self.settings.retry_sweep_schedule,
                self.process_due_retries,
                RETRY_SWEEP_JOB_ID,
            )

        self.cron_scheduler.start()
        self.is_initialized = True
        log.info(f"Data sync service initialized: {len(configs)} configs, {len(self.cron_jobs)} cron jobs")

    def start_cron_jobs(self, config: Dict[str, Any]) -> None:
        """(Re)register the cron jobs of one business entity from its config dict"""
        business_entity_id = config["business_entity_id"]

        for family in FAMILIES:
            key = cron_key(business_entity_id, family)

            existing = self.cron_jobs.pop(key, None)
            if existing is not None:
                existing.stop()

            if not config.get(f"{family}_sync_enabled"):
                continue

            schedule = config[f"{family}_sync_schedule"]
            self.cron_jobs[key] = self.cron_scheduler.schedule(
                schedule,
                self._cron_callback(business_entity_id, family),
                key,
            )
            log.info(f"Started {family} sync cron job for business entity {business_entity_id} ({schedule})")

    def _cron_callback(self, business_entity_id: str, family: str) -> Callable[[], Awaitable[Any]]:
        async def run_scheduled_sync():
            await self._execute(business_entity_id, family, source="cron_scheduled")
        return run_scheduled_sync

    def stop_cron_jobs(self, business_entity_id: str) -> None:
        """Stop every cron job registered for a business entity"""
        prefix = f"{business_entity_id}:"
        for key in [k for k in self.cron_jobs if k.startswith(prefix)]:
            self.cron_jobs.pop(key).stop()
            log.info(f"Stopped cron job: {key}")

    def live_cron_keys(self, business_entity_id: Optional[str] = None) -> List[str]:
        if business_entity_id is None:
            return sorted(self.cron_jobs)
        prefix = f"{business_entity_id}:"
        return sorted(k for k in self.cron_jobs if k.startswith(prefix))

    def describe_cron_jobs(self, business_entity_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Live registrations with their cron expression and next fire time"""
        jobs = []
        for key in self.live_cron_keys(business_entity_id):
            handle = self.cron_jobs[key]
            jobs.append({
                "key": key,
                "cron_expression": handle.cron_expression,
                "next_run_time": isoformat_or_none(handle.next_run_time()),
            })
        return jobs

    def shutdown(self) -> None:
        """Stop all cron jobs and the scheduler. Safe to call repeatedly."""
        for job in list(self.cron_jobs.values()):
            job.stop()
        stopped = len(self.cron_jobs)
        self.cron_jobs.clear()

        if self._retry_sweep is not None:
            self._retry_sweep.stop()
            self._retry_sweep = None

        self.cron_scheduler.shutdown()

        if self.is_initialized:
            log.info(f"Data sync service shut down ({stopped} cron jobs stopped)")
        self.is_initialized = False

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _lock_for(self, business_entity_id: str, family: str) -> asyncio.Lock:
        key = cron_key(business_entity_id, family)
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    def is_running(self, business_entity_id: str, family: str) -> bool:
        return self._lock_for(business_entity_id, family).locked()

    async def execute_ga4_daily_sync(self, business_entity_id: str, source: str = "cron_scheduled",
                                     sync_job_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        return await self._execute(business_entity_id, "ga4", source=source, sync_job_id=sync_job_id)

    async def execute_n8n_sync(self, business_entity_id: str, source: str = "cron_scheduled",
                               sync_job_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        return await self._execute(business_entity_id, "n8n", source=source, sync_job_id=sync_job_id)

    async def execute_cleanup_sync(self, business_entity_id: str, source: str = "cron_scheduled",
                                   sync_job_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        return await self._execute(business_entity_id, "cleanup", source=source, sync_job_id=sync_job_id)

    async def _execute(
        self,
        business_entity_id: str,
        family: str,
        source: str,
        sync_job_id: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        """
        Run one attempt of a job family.

        Creates the job record unless sync_job_id is given (manual trigger or
        retry). Returns the job dict after the attempt, or None when another
        run of the same family for this business entity is still in progress.
        """
        lock = self._lock_for(business_entity_id, family)
        if lock.locked():
            log.warning(f"Skipping {family} sync for {business_entity_id}: previous run still in progress")
            return None

        async with lock:
            job_type = FAMILY_JOB_TYPES[family]

            if sync_job_id is None:
                job = self.create_sync_job(business_entity_id, job_type, metadata={"source": source})
                sync_job_id = job["id"]
            else:
                job = self.get_sync_job_by_id(sync_job_id)
                if job is None or job["status"] != SyncJobStatus.PENDING.value:
                    log.warning(f"Sync job {sync_job_id} is no longer pending, not running it")
                    return job

            # "source" keeps the trigger that created the job
            attempt_metadata = {"last_attempt_source": source}
            if "source" not in job["metadata"]:
                attempt_metadata["source"] = source

            self.update_sync_job(
                sync_job_id,
                status=SyncJobStatus.RUNNING,
                start_time=utc_now(),
                metadata=attempt_metadata,
            )
            log.info(f"Starting {job_type} sync for business entity {business_entity_id} (job {sync_job_id})")

            try:
                work = {
                    "ga4": self._sync_ga4_daily,
                    "n8n": self._sync_n8n_events,
                    "cleanup": self._sync_cleanup,
                }[family]
                result = await work(business_entity_id)
            except Exception as e:
                log.error(f"{job_type} sync failed for business entity {business_entity_id}: {str(e)}")
                await self.handle_sync_job_failure(sync_job_id, e)
                self._release_unhandled_failure(sync_job_id, e)
            else:
                self.update_sync_job(
                    sync_job_id,
                    status=SyncJobStatus.COMPLETED,
                    end_time=utc_now(),
                    next_retry_at=None,
                    metadata={"result": result or {}},
                )
                log.info(f"{job_type} sync completed successfully for business entity {business_entity_id}")

            return self.get_sync_job_by_id(sync_job_id)

    async def _sync_ga4_daily(self, business_entity_id: str) -> Dict[str, Any]:
        """Pull yesterday's GA4 metrics and store one metric per dimension"""
        with session_scope(self.session_factory) as db:
            integration = db.query(GoogleAnalyticsIntegration).filter(
                GoogleAnalyticsIntegration.business_entity_id == business_entity_id,
                GoogleAnalyticsIntegration.is_active == True  # noqa: E712
            ).first()
            if integration is None:
                raise IntegrationNotFoundError("No active GA4 integration found")
            integration_id = integration.id
            property_id = integration.property_id

        day = yesterday_utc()
        rows = await self.ga4_connector.get_basic_metrics(property_id, day, day)

        written = 0
        for row in rows:
            row_date = self._as_datetime(row.get("date") or day)
            for key, metric_type in GA4_METRICS:
                value = row.get(key)
                if value is None:
                    continue
                self.metrics_service.create_metric(
                    business_entity_id=business_entity_id,
                    metric_type=metric_type,
                    metric_name=key,
                    metric_value=value,
                    metric_unit="count",
                    source="google_analytics",
                    date=row_date,
                    timezone="UTC",
                    metadata={"source": "ga4-api", "date": row_date.date().isoformat()},
                    tags=["ga4", key],
                )
                written += 1

        with session_scope(self.session_factory) as db:
            integration = db.query(GoogleAnalyticsIntegration).filter(
                GoogleAnalyticsIntegration.id == integration_id
            ).first()
            if integration:
                integration.last_sync_at = utc_now()

        return {"property_id": property_id, "date": day.isoformat(), "rows": len(rows), "metrics_written": written}

    @staticmethod
    def _as_datetime(value) -> datetime:
        if isinstance(value, datetime):
            return value
        if isinstance(value, date):
            return datetime.combine(value, time.min)
        return date_parser.parse(str(value))

    async def _sync_n8n_events(self, business_entity_id: str) -> Dict[str, Any]:
        """Replay stored webhook events that were never processed"""
        integration = self.n8n_service.get_integration_by_business_entity(business_entity_id)
        if integration is None:
            raise IntegrationNotFoundError("No active n8n integration found")

        pending = self.n8n_service.get_pending_events(integration["id"])

        processed = 0
        failed = 0
        for item in pending:
            result = self.n8n_service.process_webhook_event(
                integration["id"], item["payload"], event_id=item["id"]
            )
            if result.get("success"):
                processed += 1
            else:
                failed += 1
                log.warning(f"n8n event {item['id']} could not be processed: {result.get('errors')}")

        return {
            "integration_id": integration["id"],
            "events_found": len(pending),
            "events_processed": processed,
            "events_failed": failed,
        }

    async def _sync_cleanup(self, business_entity_id: str) -> Dict[str, Any]:
        result = self.metrics_service.cleanup_old_data(business_entity_id, self.settings.data_retention_days)
        return result.to_dict()

    # ------------------------------------------------------------------
    # Failure handling and retries
    # ------------------------------------------------------------------

    async def handle_sync_job_failure(self, sync_job_id: str, error: Exception) -> None:
        """
        Schedule a retry with exponential backoff, or fail the job for good.

        Missing job or config: logged and ignored.
        """
        job = self.get_sync_job_by_id(sync_job_id)
        if job is None:
            log.warning(f"Cannot handle failure of sync job {sync_job_id}: job not found")
            return

        config = self.get_sync_config(job["business_entity_id"])
        if config is None:
            log.warning(
                f"Cannot handle failure of sync job {sync_job_id}: "
                f"no sync config for {job['business_entity_id']}"
            )
            return

        policy = RetryPolicy.from_dict(config["retry_config"])
        attempt = job["retry_count"] + 1
        message = str(error) or type(error).__name__

        if attempt <= policy.max_retries:
            delay = policy.delay_for(attempt)
            next_retry_at = utc_now() + timedelta(milliseconds=delay)

            self.update_sync_job(
                sync_job_id,
                status=SyncJobStatus.PENDING,
                retry_count=attempt,
                max_retries=policy.max_retries,
                next_retry_at=next_retry_at,
                error_message=message,
                error_code=getattr(error, "code", None) or "UNKNOWN_ERROR",
            )
            log.info(
                f"Scheduled retry {attempt}/{policy.max_retries} for job {sync_job_id} "
                f"at {next_retry_at.isoformat()} (in {delay}ms)"
            )
            return

        self.update_sync_job(
            sync_job_id,
            status=SyncJobStatus.FAILED,
            end_time=utc_now(),
            max_retries=policy.max_retries,
            next_retry_at=None,
            error_message=f"Max retries exceeded: {message}",
            error_code="MAX_RETRIES_EXCEEDED",
        )
        log.error(f"Job {sync_job_id} failed after {policy.max_retries} retries")

        alerting = config.get("alerting") or {}
        if alerting.get("enabled"):
            await self._send_failure_alert(job, alerting, message)

    def _release_unhandled_failure(self, sync_job_id: str, error: Exception) -> None:
        """
        Put a job back to pending if the failure handler left it running
        (no sync config). Records the error; retry_count is unchanged, so the
        retry sweep does not pick it up.
        """
        job = self.get_sync_job_by_id(sync_job_id)
        if job is None or job["status"] != SyncJobStatus.RUNNING.value:
            return

        self.update_sync_job(
            sync_job_id,
            status=SyncJobStatus.PENDING,
            error_message=str(error) or type(error).__name__,
            error_code=getattr(error, "code", None) or "UNKNOWN_ERROR",
        )
        log.warning(f"Sync job {sync_job_id} returned to pending without a retry")

    async def _send_failure_alert(self, job: Dict[str, Any], alerting: Dict[str, Any], message: str) -> None:
        alert = SyncFailureAlert(
            business_entity_id=job["business_entity_id"],
            job_type=job["job_type"],
            error=message,
            retry_count=job["retry_count"],
            sync_job_id=job["id"],
            email_recipients=list(alerting.get("email_recipients") or []),
        )
        try:
            await self.alert_service.send_sync_failure_alert(alert)
        except Exception as e:
            log.error(f"Failed to send sync failure alert for job {job['id']}: {str(e)}")

    async def process_due_retries(self, now: Optional[datetime] = None) -> int:
        """
        Re-run pending jobs whose next_retry_at has passed.

        Returns the number of jobs attempted. Jobs whose family is busy are
        left pending for the next sweep.
        """
        now = now or utc_now()
        with session_scope(self.session_factory) as db:
            due = db.query(SyncJob.id, SyncJob.business_entity_id, SyncJob.job_type).filter(
                SyncJob.status == SyncJobStatus.PENDING.value,
                SyncJob.retry_count > 0,
                SyncJob.next_retry_at != None,  # noqa: E711
                SyncJob.next_retry_at <= now
            ).order_by(SyncJob.next_retry_at.asc()).all()

        attempted = 0
        for job_id, business_entity_id, job_type in due:
            family = JOB_TYPE_FAMILIES.get(job_type)
            if family is None:
                log.warning(f"Sync job {job_id} has no executor for type {job_type}, skipping retry")
                continue
            if self.is_running(business_entity_id, family):
                log.info(f"Retry of job {job_id} deferred: {family} sync running for {business_entity_id}")
                continue

            log.info(f"Retrying sync job {job_id} ({job_type}) for {business_entity_id}")
            await self._execute(business_entity_id, family, source="retry", sync_job_id=job_id)
            attempted += 1

        return attempted

    # ------------------------------------------------------------------
    # Sync jobs
    # ------------------------------------------------------------------

    def create_sync_job(
        self,
        business_entity_id: str,
        job_type: str,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """Create a pending job. max_retries comes from the entity's retry config."""
        job_type = getattr(job_type, "value", job_type)
        if job_type not in {t.value for t in SyncJobType}:
            raise UnsupportedJobTypeError(f"Unsupported job type: {job_type}")

        config = self.get_sync_config(business_entity_id)
        if config is not None:
            max_retries = RetryPolicy.from_dict(config["retry_config"]).max_retries
        else:
            max_retries = self.settings.default_max_retries

        with session_scope(self.session_factory) as db:
            job = SyncJob(
                business_entity_id=business_entity_id,
                job_type=job_type,
                status=SyncJobStatus.PENDING.value,
                start_time=utc_now(),
                retry_count=0,
                max_retries=max_retries,
                job_metadata=dict(metadata or {}),
            )
            db.add(job)
            db.flush()
            return job.to_dict()

    def get_sync_job_by_id(self, sync_job_id: str) -> Optional[Dict[str, Any]]:
        with session_scope(self.session_factory) as db:
            job = db.query(SyncJob).filter(SyncJob.id == sync_job_id).first()
            return job.to_dict() if job else None

    def update_sync_job(self, sync_job_id: str, **changes) -> Optional[Dict[str, Any]]:
        """
        Apply field changes to a job.

        `metadata` is merged into the existing metadata. Completing a job with
        an end_time but no explicit duration derives duration from start_time.
        """
        metadata = changes.pop("metadata", None)
        unknown = set(changes) - UPDATABLE_JOB_FIELDS
        if unknown:
            raise ValueError(f"Cannot update sync job fields: {sorted(unknown)}")

        if "status" in changes:
            changes["status"] = getattr(changes["status"], "value", changes["status"])

        with session_scope(self.session_factory) as db:
            job = db.query(SyncJob).filter(SyncJob.id == sync_job_id).first()
            if job is None:
                return None

            for key, value in changes.items():
                setattr(job, key, value)

            if (
                job.status == SyncJobStatus.COMPLETED.value
                and job.end_time is not None
                and "duration" not in changes
                and "end_time" in changes
            ):
                job.duration = elapsed_ms(job.start_time, job.end_time)

            if metadata:
                job.job_metadata = {**(job.job_metadata or {}), **metadata}

            db.flush()
            return job.to_dict()

    def get_sync_jobs(
        self,
        business_entity_id: Optional[str] = None,
        job_type: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0
    ) -> SyncJobPage:
        """Filtered page of jobs ordered by start_time, newest first"""
        with session_scope(self.session_factory) as db:
            query = db.query(SyncJob)
            if business_entity_id:
                query = query.filter(SyncJob.business_entity_id == business_entity_id)
            if job_type:
                query = query.filter(SyncJob.job_type == getattr(job_type, "value", job_type))
            if status:
                query = query.filter(SyncJob.status == getattr(status, "value", status))

            total = query.count()
            jobs = query.order_by(SyncJob.start_time.desc()).offset(offset).limit(limit).all()

            return SyncJobPage(
                sync_jobs=[job.to_dict() for job in jobs],
                total=total,
                limit=limit,
                offset=offset,
            )

    def cancel_sync_job(self, sync_job_id: str) -> Optional[Dict[str, Any]]:
        """
        Cancel a pending job (including one waiting for a retry).

        Raises:
            ValueError: if the job is not pending
        """
        job = self.get_sync_job_by_id(sync_job_id)
        if job is None:
            return None
        if job["status"] != SyncJobStatus.PENDING.value:
            raise ValueError(f"Only pending sync jobs can be cancelled (job is {job['status']})")

        log.info(f"Cancelling sync job {sync_job_id}")
        return self.update_sync_job(
            sync_job_id,
            status=SyncJobStatus.CANCELLED,
            end_time=utc_now(),
            next_retry_at=None,
        )

    # ------------------------------------------------------------------
    # Sync configs
    # ------------------------------------------------------------------

    def _default_retry_config(self) -> Dict[str, Any]:
        return RetryPolicy(
            max_retries=self.settings.default_max_retries,
            initial_delay=self.settings.default_initial_delay_ms,
            max_delay=self.settings.default_max_delay_ms,
            backoff_multiplier=self.settings.default_backoff_multiplier,
        ).to_dict()

    @staticmethod
    def _validate_retry_config(retry_config: Dict[str, Any]) -> Dict[str, Any]:
        policy = RetryPolicy.from_dict(retry_config)
        if policy.max_retries < 0:
            raise ValueError("retry_config.max_retries must be >= 0")
        if policy.initial_delay < 0 or policy.max_delay < 0:
            raise ValueError("retry_config delays must be >= 0")
        if policy.backoff_multiplier < 1:
            raise ValueError("retry_config.backoff_multiplier must be >= 1")
        return policy.to_dict()

    @staticmethod
    def _normalize_alerting(alerting: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "enabled": bool(alerting.get("enabled", False)),
            "email_recipients": list(alerting.get("email_recipients") or []),
        }

    def create_sync_config(self, business_entity_id: str, **options) -> Dict[str, Any]:
        """
        Create the sync config of a business entity, filling defaults.

        Raises:
            ValueError: on an invalid cron expression or retry config, or if
                the entity already has a config
        """
        defaults = {
            "ga4_sync_enabled": True,
            "ga4_sync_schedule": self.settings.default_ga4_sync_schedule,
            "n8n_sync_enabled": True,
            "n8n_sync_schedule": self.settings.default_n8n_sync_schedule,
            "cleanup_sync_enabled": True,
            "cleanup_sync_schedule": self.settings.default_cleanup_sync_schedule,
        }
        values = {k: (options[k] if options.get(k) is not None else v) for k, v in defaults.items()}
        for family in FAMILIES:
            validate_cron(values[f"{family}_sync_schedule"])

        retry_config = self._validate_retry_config(options.get("retry_config") or self._default_retry_config())
        alerting = self._normalize_alerting(options.get("alerting") or {})

        with session_scope(self.session_factory) as db:
            if db.query(SyncConfig).filter(SyncConfig.business_entity_id == business_entity_id).first():
                raise ValueError(f"Sync config already exists for business entity {business_entity_id}")

            config = SyncConfig(
                business_entity_id=business_entity_id,
                retry_config=retry_config,
                alerting=alerting,
                **values,
            )
            db.add(config)
            db.flush()
            created = config.to_dict()

        log.info(f"Created sync config for business entity {business_entity_id}")

        if self.is_initialized:
            self.start_cron_jobs(created)
        return created

    def get_sync_config(self, business_entity_id: str) -> Optional[Dict[str, Any]]:
        with session_scope(self.session_factory) as db:
            config = db.query(SyncConfig).filter(SyncConfig.business_entity_id == business_entity_id).first()
            return config.to_dict() if config else None

    def get_all_sync_configs(self) -> List[Dict[str, Any]]:
        with session_scope(self.session_factory) as db:
            return [c.to_dict() for c in db.query(SyncConfig).all()]

    def update_sync_config(self, business_entity_id: str, **changes) -> Optional[Dict[str, Any]]:
        """
        Update a config. Returns None if the entity has no config.

        Cron jobs are re-registered when a schedule or enable flag changes.
        retry_config and alerting are merged into the stored values.
        """
        changes = {k: v for k, v in changes.items() if v is not None}

        for family in FAMILIES:
            schedule = changes.get(f"{family}_sync_schedule")
            if schedule is not None:
                validate_cron(schedule)

        with session_scope(self.session_factory) as db:
            config = db.query(SyncConfig).filter(SyncConfig.business_entity_id == business_entity_id).first()
            if config is None:
                return None

            for key in CONFIG_SCHEDULE_FIELDS:
                if key in changes:
                    setattr(config, key, changes[key])

            if "retry_config" in changes:
                config.retry_config = self._validate_retry_config(
                    {**(config.retry_config or {}), **changes["retry_config"]}
                )
            if "alerting" in changes:
                config.alerting = self._normalize_alerting(
                    {**(config.alerting or {}), **changes["alerting"]}
                )

            db.flush()
            updated = config.to_dict()

        log.info(f"Updated sync config for business entity {business_entity_id}: {sorted(changes)}")

        if self.is_initialized and CONFIG_SCHEDULE_FIELDS & set(changes):
            self.start_cron_jobs(updated)
        return updated

    # ------------------------------------------------------------------
    # Manual trigger
    # ------------------------------------------------------------------

    async def trigger_manual_sync(
        self,
        business_entity_id: str,
        job_type: str,
        metadata: Optional[Dict[str, Any]] = None
    ) -> ManualSyncResult:
        """
        Run a sync now and wait for the attempt to finish. Never raises.

        Unsupported job types are rejected before any job is created.
        """
        job_type = getattr(job_type, "value", job_type)
        family = JOB_TYPE_FAMILIES.get(job_type)
        if family is None:
            log.warning(f"Rejected manual sync for {business_entity_id}: unsupported job type {job_type}")
            return ManualSyncResult(success=False, sync_job_id=None, message=f"Unsupported job type: {job_type}")

        if self.is_running(business_entity_id, family):
            return ManualSyncResult(
                success=False,
                sync_job_id=None,
                message=f"A {job_type} sync is already running for business entity {business_entity_id}",
            )

        sync_job_id = None
        try:
            job = self.create_sync_job(
                business_entity_id,
                job_type,
                metadata={**(metadata or {}), "source": "manual", "manualTrigger": True},
            )
            sync_job_id = job["id"]
            final = await self._execute(business_entity_id, family, source="manual", sync_job_id=sync_job_id)
        except Exception as e:
            log.error(f"Manual {job_type} sync failed for {business_entity_id}: {str(e)}")
            return ManualSyncResult(success=False, sync_job_id=sync_job_id, message=f"Manual sync failed: {str(e)}")

        if final and final["status"] == SyncJobStatus.COMPLETED.value:
            return ManualSyncResult(
                success=True,
                sync_job_id=sync_job_id,
                message=f"Manual sync for {job_type} completed successfully",
            )

        error = (final or {}).get("error_message") or "sync did not complete"
        return ManualSyncResult(success=False, sync_job_id=sync_job_id, message=f"Manual sync failed: {error}")

    # ------------------------------------------------------------------
    # Stats and health
    # ------------------------------------------------------------------

    def get_sync_job_stats(self, business_entity_id: str) -> SyncJobStats:
        with session_scope(self.session_factory) as db:
            rows = db.query(SyncJob.status, SyncJob.duration, SyncJob.end_time).filter(
                SyncJob.business_entity_id == business_entity_id
            ).all()

        stats = SyncJobStats(total_jobs=len(rows))
        durations = []
        for status, duration, end_time in rows:
            if status == SyncJobStatus.COMPLETED.value:
                stats.completed_jobs += 1
                if duration is not None:
                    durations.append(duration)
                if end_time and (stats.last_sync_at is None or end_time > stats.last_sync_at):
                    stats.last_sync_at = end_time
            elif status == SyncJobStatus.FAILED.value:
                stats.failed_jobs += 1
            elif status == SyncJobStatus.RUNNING.value:
                stats.running_jobs += 1
            elif status == SyncJobStatus.PENDING.value:
                stats.pending_jobs += 1
            elif status == SyncJobStatus.CANCELLED.value:
                stats.cancelled_jobs += 1

        if durations:
            stats.average_duration = sum(durations) / len(durations)
        if stats.total_jobs > 0:
            stats.success_rate = stats.completed_jobs / stats.total_jobs * 100

        return stats

    def get_sync_health(self, business_entity_id: str, check_cron: bool = True) -> SyncHealth:
        """
        Health verdict for a business entity. Never raises.

        degraded: failed jobs, too many running jobs, or fewer live cron jobs
        than enabled families. unhealthy: success rate below the threshold.
        Pass check_cron=False from a process that does not run the scheduler.
        """
        try:
            stats = self.get_sync_job_stats(business_entity_id)
            config = self.get_sync_config(business_entity_id)
        except Exception as e:
            log.error(f"Health check failed for {business_entity_id}: {str(e)}")
            return SyncHealth(status="unhealthy", issues=[f"Health check failed: {str(e)}"])

        issues = []
        status = "healthy"

        if stats.failed_jobs > 0:
            issues.append(f"{stats.failed_jobs} failed sync jobs")
            status = "degraded"

        if stats.running_jobs > self.settings.health_max_running_jobs:
            issues.append("Too many running sync jobs")
            status = "degraded"

        if check_cron and config is not None:
            expected = len([f for f in FAMILIES if config.get(f"{f}_sync_enabled")])
            if len(self.live_cron_keys(business_entity_id)) < expected:
                issues.append("Some cron jobs are not running")
                status = "degraded"

        if stats.success_rate < self.settings.health_min_success_rate:
            issues.append(f"Low success rate: {stats.success_rate:.1f}%")
            status = "unhealthy"

        return SyncHealth(
            status=status,
            last_sync_at=stats.last_sync_at,
            active_jobs=stats.running_jobs,
            failed_jobs=stats.failed_jobs,
            average_sync_time=stats.average_duration,
            success_rate=stats.success_rate,
            issues=issues,
        )
