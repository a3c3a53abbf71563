#!/usr/bin/env python3
"""
Manual Sync Script

Runs a sync job family for one business entity without the API server,
re-runs due retries, or prints sync stats and health.

Usage:
    python scripts/manual_sync.py [business_entity_id] [--job-type ga4_daily] [--retries] [--status]

Examples:
    # Pull yesterday's GA4 metrics now
    python scripts/manual_sync.py acme --job-type ga4_daily

    # Replay pending n8n webhook events, then show health
    python scripts/manual_sync.py acme --job-type n8n_realtime --status

    # Re-run every job whose retry time has passed
    python scripts/manual_sync.py --retries

--status skips the cron registration check: this script does not run the
scheduler, so cron jobs are never live here.
"""
import asyncio
import sys
import argparse
import json
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from bizsync.models.base import init_db
from bizsync.services.data_sync_service import DataSyncService, JOB_TYPE_FAMILIES
from bizsync.utils.logger import log


async def run(business_entity_id: str = None, job_type: str = None, retries: bool = False, status: bool = False) -> int:
    init_db()
    service = DataSyncService()
    exit_code = 0

    if job_type:
        log.info(f"Running manual {job_type} sync for {business_entity_id}")
        result = await service.trigger_manual_sync(business_entity_id, job_type, metadata={"source_script": "manual_sync"})
        if result.success:
            log.info(f"{result.message} (job {result.sync_job_id})")
        else:
            log.error(f"{result.message} (job {result.sync_job_id})")
            exit_code = 1

    if retries:
        attempted = await service.process_due_retries()
        log.info(f"Re-ran {attempted} due sync jobs")

    if status:
        stats = service.get_sync_job_stats(business_entity_id)
        health = service.get_sync_health(business_entity_id, check_cron=False)
        print(json.dumps({"stats": stats.to_dict(), "health": health.to_dict()}, indent=2))

    return exit_code


def main():
    parser = argparse.ArgumentParser(description="Run BizSync jobs by hand")
    parser.add_argument("business_entity_id", nargs="?", help="Business entity to sync (needed for --job-type and --status)")
    parser.add_argument("--job-type", choices=sorted(JOB_TYPE_FAMILIES), help="Sync job type to run now")
    parser.add_argument("--retries", action="store_true", help="Re-run pending jobs whose retry time has passed")
    parser.add_argument("--status", action="store_true", help="Print sync stats and health")
    args = parser.parse_args()

    if not (args.job_type or args.retries or args.status):
        parser.error("nothing to do: pass --job-type, --retries and/or --status")
    if (args.job_type or args.status) and not args.business_entity_id:
        parser.error("business_entity_id is required with --job-type or --status")

    sys.exit(asyncio.run(run(args.business_entity_id, args.job_type, args.retries, args.status)))


if __name__ == "__main__":
    main()
