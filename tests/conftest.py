"""
Shared fixtures: in-memory database, fake GA4 client, fake alert sink and a
fake cron scheduler that records registrations instead of running them.
"""
import os

# Settings are cached on first import, so configure before importing bizsync
os.environ.setdefault("LOG_TO_FILE", "false")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from bizsync.models.base import init_db
from bizsync.scheduler import validate_cron
from bizsync.services.data_sync_service import DataSyncService


class FakeHandle:
    def __init__(self, scheduler, job_id, cron_expression, callback):
        self.scheduler = scheduler
        self.job_id = job_id
        self.cron_expression = cron_expression
        self.callback = callback
        self.stopped = False

    def stop(self):
        self.stopped = True
        if self.scheduler.jobs.get(self.job_id) is self:
            del self.scheduler.jobs[self.job_id]

    def next_run_time(self):
        return None


class FakeCronScheduler:
    """Stands in for CronScheduler; `fire(job_id)` runs a registered callback"""

    def __init__(self):
        self.jobs = {}
        self.schedule_calls = []
        self.running = False

    def schedule(self, cron_expression, callback, job_id):
        validate_cron(cron_expression)
        handle = FakeHandle(self, job_id, cron_expression, callback)
        self.jobs[job_id] = handle
        self.schedule_calls.append((job_id, cron_expression))
        return handle

    def get_jobs(self):
        return [{"id": job_id, "name": job_id, "next_run": None, "trigger": h.cron_expression} for job_id, h in self.jobs.items()]

    def start(self):
        self.running = True

    def shutdown(self, wait=False):
        self.running = False

    async def fire(self, job_id):
        return await self.jobs[job_id].callback()


class FakeGA4Connector:
    def __init__(self):
        self.rows = []
        self.error = None
        self.calls = []

    async def get_basic_metrics(self, property_id, start_date, end_date):
        self.calls.append((property_id, start_date, end_date))
        if self.error is not None:
            raise self.error
        return list(self.rows)


class FakeAlertService:
    def __init__(self, error=None):
        self.alerts = []
        self.error = error

    async def send_sync_failure_alert(self, alert):
        self.alerts.append(alert)
        if self.error is not None:
            raise self.error
        return {"success": True, "results": {}}


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def fake_cron():
    return FakeCronScheduler()


@pytest.fixture
def fake_ga4():
    return FakeGA4Connector()


@pytest.fixture
def fake_alerts():
    return FakeAlertService()


@pytest.fixture
def service(session_factory, fake_ga4, fake_alerts, fake_cron):
    svc = DataSyncService(
        session_factory=session_factory,
        ga4_connector=fake_ga4,
        alert_service=fake_alerts,
        cron_scheduler=fake_cron,
    )
    yield svc
    svc.shutdown()
