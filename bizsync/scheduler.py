"""
Cron scheduling primitive for sync jobs

Uses APScheduler's AsyncIOScheduler so job callbacks run as coroutines on the
application's event loop. The sync service only depends on the small
`schedule(cron_expression, callback) -> handle; handle.stop()` surface, so the
registry logic does not care which cron implementation sits underneath.
"""
from typing import Any, Awaitable, Callable, Dict, List, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from bizsync.config import get_settings
from bizsync.utils.logger import log

settings = get_settings()

CronCallback = Callable[[], Awaitable[Any]]


def parse_cron(cron_expression: str, timezone: Optional[str] = None) -> CronTrigger:
    """
    Parse a standard 5-field cron expression (minute hour day month day_of_week).

    Raises:
        ValueError: if the expression is not a valid 5-field cron expression
    """
    parts = (cron_expression or "").strip().split()
    if len(parts) != 5:
        raise ValueError(
            f"Invalid cron expression: {cron_expression!r}. "
            "Expected 5 space-separated fields."
        )
    return CronTrigger.from_crontab(" ".join(parts), timezone=timezone or settings.scheduler_timezone)


def validate_cron(cron_expression: str) -> str:
    """Return the expression unchanged if it parses, else raise ValueError"""
    parse_cron(cron_expression)
    return cron_expression


class ScheduledJob:
    """Handle to a live cron registration"""

    def __init__(self, scheduler: AsyncIOScheduler, job_id: str, cron_expression: str):
        self._scheduler = scheduler
        self.job_id = job_id
        self.cron_expression = cron_expression
        self._stopped = False

    @property
    def stopped(self) -> bool:
        return self._stopped

    def stop(self) -> None:
        """Remove the trigger. Safe to call more than once."""
        if self._stopped:
            return
        try:
            self._scheduler.remove_job(self.job_id)
        except JobLookupError:
            pass  # already removed, e.g. by scheduler shutdown
        self._stopped = True

    def next_run_time(self):
        job = self._scheduler.get_job(self.job_id)
        return job.next_run_time if job else None


class CronScheduler:
    """
    Thin wrapper around AsyncIOScheduler.

    Jobs may be scheduled before start(); they are held by APScheduler until
    the scheduler starts. start() must be called from a running event loop.
    """

    def __init__(self, timezone: Optional[str] = None):
        self.timezone = timezone or settings.scheduler_timezone
        self._scheduler = AsyncIOScheduler(
            timezone=self.timezone,
            job_defaults={
                "coalesce": True,  # Combine missed runs into one
                "max_instances": 1,
                "misfire_grace_time": 300,
            },
        )

    @property
    def running(self) -> bool:
        return self._scheduler.running

    def start(self) -> None:
        if self._scheduler.running:
            return
        self._scheduler.start()
        log.info(f"Cron scheduler started (timezone: {self.timezone})")

    def shutdown(self, wait: bool = False) -> None:
        if not self._scheduler.running:
            return
        self._scheduler.shutdown(wait=wait)
        log.info("Cron scheduler stopped")

    def schedule(self, cron_expression: str, callback: CronCallback, job_id: str) -> ScheduledJob:
        """Register `callback` to fire on `cron_expression`, replacing any job with the same id"""
        trigger = parse_cron(cron_expression, self.timezone)
        self._scheduler.add_job(
            callback,
            trigger=trigger,
            id=job_id,
            name=job_id,
            replace_existing=True,
        )
        return ScheduledJob(self._scheduler, job_id, cron_expression)

    def get_jobs(self) -> List[Dict[str, Any]]:
        """List scheduled jobs"""
        jobs = []
        for job in self._scheduler.get_jobs():
            next_run = getattr(job, "next_run_time", None)
            jobs.append({
                "id": job.id,
                "name": job.name,
                "next_run": next_run.isoformat() if next_run else None,
                "trigger": str(job.trigger),
            })
        return jobs
