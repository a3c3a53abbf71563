"""
Cron expression parsing and the APScheduler-backed CronScheduler.

AsyncIOScheduler binds to the running event loop on start(), so every test
that starts a scheduler does so inside `_run`.
"""
import asyncio

import pytest
from apscheduler.triggers.cron import CronTrigger

from bizsync.scheduler import CronScheduler, parse_cron, validate_cron


def _run(coro):
    """Run an async coroutine in a sync test."""
    return asyncio.run(coro)


async def _noop():
    return None


# ────────────────────────────────────────────
# PARSING
# ────────────────────────────────────────────


@pytest.mark.parametrize("expression", [
    "0 2 * * *",
    "*/5 * * * *",
    "0 3 * * 0",
    "  30 4 1 * mon-fri  ",
])
def test_valid_expressions_parse(expression):
    assert isinstance(parse_cron(expression, "UTC"), CronTrigger)


@pytest.mark.parametrize("expression", [
    "",
    None,
    "* * * *",
    "0 0 * * * *",
    "61 * * * *",
    "every day",
])
def test_invalid_expressions_raise(expression):
    with pytest.raises(ValueError):
        parse_cron(expression, "UTC")


def test_validate_cron_returns_expression():
    assert validate_cron("*/5 * * * *") == "*/5 * * * *"


# ────────────────────────────────────────────
# SCHEDULER
# ────────────────────────────────────────────


def test_schedule_lists_and_stops_jobs():
    async def scenario():
        cron = CronScheduler("UTC")
        cron.start()
        try:
            handle = cron.schedule("*/5 * * * *", _noop, "be1:n8n")
            listed = [job["id"] for job in cron.get_jobs()]
            next_run = handle.next_run_time()

            handle.stop()
            handle.stop()
            return listed, next_run, handle.stopped, cron.get_jobs()
        finally:
            cron.shutdown()

    listed, next_run, stopped, remaining = _run(scenario())

    assert listed == ["be1:n8n"]
    assert next_run is not None
    assert stopped
    assert remaining == []


def test_schedule_same_id_replaces_trigger():
    async def scenario():
        cron = CronScheduler("UTC")
        cron.start()
        try:
            cron.schedule("0 2 * * *", _noop, "be1:ga4")
            cron.schedule("30 4 * * *", _noop, "be1:ga4")
            return cron.get_jobs()
        finally:
            cron.shutdown()

    jobs = _run(scenario())

    assert len(jobs) == 1
    assert "hour='4'" in jobs[0]["trigger"]
    assert "minute='30'" in jobs[0]["trigger"]


def test_invalid_cron_is_rejected_before_registration():
    async def scenario():
        cron = CronScheduler("UTC")
        cron.start()
        try:
            with pytest.raises(ValueError):
                cron.schedule("not a cron", _noop, "be1:cleanup")
            return cron.get_jobs()
        finally:
            cron.shutdown()

    assert _run(scenario()) == []


def test_start_and_shutdown_are_idempotent():
    async def scenario():
        cron = CronScheduler("UTC")
        cron.start()
        cron.start()
        running = cron.running
        cron.shutdown()
        cron.shutdown()
        return running, cron.running

    assert _run(scenario()) == (True, False)
