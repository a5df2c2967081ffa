"""
Scheduled tasks for the stock pipeline.

Runs inside the FastAPI process:
    - reconciliation sweep every RECONCILE_TICK_SECONDS (single instance, no overlap)
    - expiry sweep of the in-memory TTL caches every CACHE_SWEEP_SECONDS
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED, EVENT_JOB_MAX_INSTANCES
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from stocksync.integrations.setup import SyncPipeline

logger = logging.getLogger(__name__)

# Global scheduler instance
scheduler: Optional[AsyncIOScheduler] = None

RECONCILE_JOB_ID = "reconcile_stock"
CACHE_SWEEP_JOB_ID = "sweep_caches"


def job_listener(event):
    """Listen to job events for logging"""
    if event.code == EVENT_JOB_MAX_INSTANCES:
        logger.info(f"Job {event.job_id} skipped: previous run still in progress")
    elif event.exception:
        logger.error(f"Job {event.job_id} crashed: {event.exception}")
    else:
        logger.debug(f"Job {event.job_id} executed successfully at {datetime.now()}")


def create_scheduler(pipeline: SyncPipeline) -> AsyncIOScheduler:
    """Create and configure the scheduler"""
    global scheduler

    if scheduler is not None:
        return scheduler

    settings = pipeline.settings
    scheduler = AsyncIOScheduler()
    scheduler.add_listener(job_listener, EVENT_JOB_EXECUTED | EVENT_JOB_ERROR | EVENT_JOB_MAX_INSTANCES)

    if settings.RECONCILE_ENABLED:
        scheduler.add_job(
            pipeline.reconciliation.run_sweep,
            IntervalTrigger(seconds=settings.RECONCILE_TICK_SECONDS),
            id=RECONCILE_JOB_ID,
            name="Reconcile Stale Stock",
            replace_existing=True,
            max_instances=1,  # a tick is skipped while the previous sweep runs
            coalesce=True,
            next_run_time=datetime.now() + timedelta(seconds=settings.RECONCILE_FIRST_RUN_DELAY),
        )
        logger.info(f"Reconciliation job added, every {settings.RECONCILE_TICK_SECONDS}s")
    else:
        logger.info("Reconciliation is disabled. Set RECONCILE_ENABLED=true to enable")

    scheduler.add_job(
        pipeline.sweep_caches,
        IntervalTrigger(seconds=settings.CACHE_SWEEP_SECONDS),
        id=CACHE_SWEEP_JOB_ID,
        name="Sweep Expired Cache Entries",
        replace_existing=True,
        max_instances=1,
    )

    return scheduler


async def start_scheduler(pipeline: SyncPipeline):
    """Start the scheduler"""
    global scheduler

    if scheduler is None:
        scheduler = create_scheduler(pipeline)

    if not scheduler.running:
        scheduler.start()
        logger.info("Scheduler started successfully")

        for job in scheduler.get_jobs():
            logger.info(f"  - {job.name}: {job.trigger}")


async def stop_scheduler():
    """Stop the scheduler gracefully"""
    global scheduler

    if scheduler and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped successfully")
    scheduler = None


def get_scheduler_status():
    """Get current scheduler status and job information"""
    if scheduler is None:
        return {"status": "not_initialized", "jobs": []}

    jobs_info = []
    for job in scheduler.get_jobs():
        jobs_info.append({
            "id": job.id,
            "name": job.name,
            "next_run": job.next_run_time.isoformat() if job.next_run_time else None,
            "trigger": str(job.trigger)
        })

    return {
        "status": "running" if scheduler.running else "stopped",
        "jobs": jobs_info
    }
