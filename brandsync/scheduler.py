"""
In-process scheduler for long-running deployments

Uses APScheduler to drain the job queue on an interval and to run the daily
incremental sync and gap detection. Serverless deployments call the
/cron/* endpoints instead and leave this disabled.
"""
import asyncio
from typing import Optional

import pytz
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from brandsync.config import get_settings
from brandsync.models.base import SessionLocal
from brandsync.services.sync_pipeline import SyncPipeline
from brandsync.utils.logger import log

settings = get_settings()
scheduler = AsyncIOScheduler()


# Scheduled tasks

async def drain_queue(max_jobs: Optional[int] = None) -> dict:
    """Reclaim stuck jobs and work through the queue"""
    db = SessionLocal()
    try:
        summary = await SyncPipeline(db).drain(max_jobs=max_jobs)
        return summary.to_dict()
    except Exception as e:
        log.error(f"Scheduled queue drain failed: {str(e)}")
        return {"success": False, "error": str(e)}
    finally:
        db.close()


async def run_daily_sync() -> dict:
    """Enqueue the incremental refresh for every active connection"""
    db = SessionLocal()
    try:
        result = SyncPipeline(db).run_incremental_all()
        log.info(f"Daily sync enqueued {result['jobs_created']} jobs for {result['connections']} connections")
        return result
    except Exception as e:
        log.error(f"Scheduled daily sync failed: {str(e)}")
        return {"success": False, "error": str(e)}
    finally:
        db.close()


async def run_gap_detection() -> dict:
    """Detect and enqueue repairs for coverage gaps"""
    db = SessionLocal()
    try:
        result = SyncPipeline(db).detect_gaps_all()
        log.info(f"Gap detection found {result['gaps_found']} gaps, enqueued {result['jobs_enqueued']} jobs")
        return result
    except Exception as e:
        log.error(f"Scheduled gap detection failed: {str(e)}")
        return {"success": False, "error": str(e)}
    finally:
        db.close()


def setup_scheduler():
    """
    Register the sync tasks.

    - Queue drain:     every queue_drain_interval_minutes
    - Incremental:     sync_incremental_schedule (crontab, report timezone)
    - Gap detection:   sync_gap_detection_schedule (crontab, report timezone)
    """
    tz = pytz.timezone(settings.report_timezone)

    scheduler.add_job(
        drain_queue,
        trigger=IntervalTrigger(minutes=settings.queue_drain_interval_minutes),
        id='queue_drain',
        name='Sync Queue Drain',
        replace_existing=True,
        max_instances=1
    )
    scheduler.add_job(
        run_daily_sync,
        trigger=CronTrigger.from_crontab(settings.sync_incremental_schedule, timezone=tz),
        id='daily_sync',
        name='Daily Incremental Sync',
        replace_existing=True,
        max_instances=1
    )
    scheduler.add_job(
        run_gap_detection,
        trigger=CronTrigger.from_crontab(settings.sync_gap_detection_schedule, timezone=tz),
        id='gap_detection',
        name='Gap Detection',
        replace_existing=True,
        max_instances=1
    )


def start_scheduler():
    """Start the scheduler"""
    setup_scheduler()
    scheduler.start()
    log.info("Scheduler started")


def stop_scheduler():
    """Stop the scheduler"""
    if scheduler.running:
        scheduler.shutdown()
        log.info("Scheduler stopped")


def get_scheduled_jobs() -> list:
    """List all scheduled jobs"""
    jobs = []

    for job in scheduler.get_jobs():
        next_run = getattr(job, "next_run_time", None)

        jobs.append({
            'id': job.id,
            'name': job.name,
            'next_run': next_run.isoformat() if next_run else None,
            'trigger': str(job.trigger)
        })

    return jobs


async def _run_forever():
    start_scheduler()
    try:
        while True:
            await asyncio.sleep(3600)
    finally:
        stop_scheduler()


# CLI

if __name__ == "__main__":
    import json
    import sys

    if len(sys.argv) < 2:
        print("Usage: python -m brandsync.scheduler <command>")
        print("\nCommands:")
        print("  start    Start the scheduler")
        print("  drain    Drain the job queue once")
        print("  daily    Enqueue the incremental sync once")
        print("  gaps     Run gap detection once")
        print("  list     List scheduled jobs")
        sys.exit(1)

    command = sys.argv[1]

    if command == "start":
        print("Starting scheduler...")
        try:
            asyncio.run(_run_forever())
        except (KeyboardInterrupt, SystemExit):
            print("\nScheduler stopped")

    elif command == "drain":
        print(json.dumps(asyncio.run(drain_queue()), indent=2, default=str))

    elif command == "daily":
        print(json.dumps(asyncio.run(run_daily_sync()), indent=2, default=str))

    elif command == "gaps":
        print(json.dumps(asyncio.run(run_gap_detection()), indent=2, default=str))

    elif command == "list":
        setup_scheduler()
        print("\nScheduled Jobs:")
        print("-" * 80)
        for job in get_scheduled_jobs():
            print(f"\nID:       {job['id']}")
            print(f"Name:     {job['name']}")
            print(f"Next Run: {job['next_run']}")
            print(f"Trigger:  {job['trigger']}")

    else:
        print(f"Unknown command: {command}")
        sys.exit(1)
