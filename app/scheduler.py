"""
Scheduled tasks for the marketplace sync service.
This module sets up scheduled tasks that run within the FastAPI application.

Jobs:
- webhook retry pass (always on)
- orphaned sync job sweep (always on, also run once at startup)
- proactive token refresh (always on)
- notification outbox dispatch (always on)
- delta sync per connected account (SYNC_SCHEDULE_ENABLED)
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from app.core.config import get_settings
from app.database import async_session
from app.services.marketplace.token_store import TokenStore
from app.services.notification_service import NotificationDispatcher
from app.services.sync_job_ledger import SyncJobLedger
from app.services.sync_orchestrator import SyncOrchestrator
from app.services.webhook_retry_service import WebhookRetryService

logger = logging.getLogger(__name__)

# Global scheduler instance
scheduler: Optional[AsyncIOScheduler] = None


async def webhook_retry_task():
    """Re-attempt failed payment webhooks that are due"""
    try:
        summary = await WebhookRetryService(async_session).process_failed_events()
        if summary["due"]:
            logger.info(f"Webhook retry pass finished: {summary}")
    except Exception as e:
        logger.exception(f"Error in webhook retry task: {str(e)}")


async def delta_sync_task():
    """Run a delta sync for every connected marketplace account"""
    try:
        logger.info("=== SCHEDULED DELTA SYNC STARTING ===")
        jobs = await SyncOrchestrator(async_session).run_delta_sync_all_accounts()
        for job in jobs:
            logger.info(f"Scheduled delta sync job {job.id} finished {job.status} ({job.processed}/{job.total})")
    except Exception as e:
        logger.exception(f"Error in scheduled delta sync: {str(e)}")


async def token_refresh_task():
    """Refresh access tokens that expire soon"""
    try:
        await TokenStore(async_session).refresh_expiring_tokens()
    except Exception as e:
        logger.exception(f"Error in token refresh task: {str(e)}")


async def orphaned_job_sweep_task():
    """Fail sync jobs that stopped making progress (e.g. the process died mid-run)"""
    try:
        timeout = timedelta(minutes=get_settings().ORPHANED_JOB_TIMEOUT_MINUTES)
        await SyncJobLedger(async_session).fail_orphaned_jobs(timeout)
    except Exception as e:
        logger.exception(f"Error in orphaned job sweep: {str(e)}")


async def notification_dispatch_task():
    """Send queued notification emails"""
    try:
        await NotificationDispatcher(async_session).dispatch_pending()
    except Exception as e:
        logger.exception(f"Error in notification dispatch: {str(e)}")


def job_listener(event):
    """Listen to job events for logging"""
    if event.exception:
        logger.error(f"Job {event.job_id} crashed: {event.exception}")
    else:
        logger.debug(f"Job {event.job_id} executed successfully at {datetime.now()}")


def create_scheduler() -> AsyncIOScheduler:
    """Create and configure the scheduler"""
    global scheduler

    if scheduler is not None:
        return scheduler

    settings = get_settings()
    scheduler = AsyncIOScheduler()

    # Add job event listeners
    scheduler.add_listener(job_listener, EVENT_JOB_EXECUTED | EVENT_JOB_ERROR)

    scheduler.add_job(
        webhook_retry_task,
        IntervalTrigger(minutes=settings.WEBHOOK_RETRY_INTERVAL_MINUTES),
        id="webhook_retry",
        name="Webhook Retry",
        replace_existing=True,
        max_instances=1,
    )
    scheduler.add_job(
        orphaned_job_sweep_task,
        IntervalTrigger(minutes=settings.ORPHANED_JOB_SWEEP_INTERVAL_MINUTES),
        id="orphaned_job_sweep",
        name="Orphaned Sync Job Sweep",
        replace_existing=True,
        max_instances=1,
    )
    scheduler.add_job(
        token_refresh_task,
        IntervalTrigger(minutes=settings.TOKEN_REFRESH_INTERVAL_MINUTES),
        id="token_refresh",
        name="Marketplace Token Refresh",
        replace_existing=True,
        max_instances=1,
    )
    scheduler.add_job(
        notification_dispatch_task,
        IntervalTrigger(seconds=settings.NOTIFICATION_DISPATCH_INTERVAL_SECONDS),
        id="notification_dispatch",
        name="Notification Dispatch",
        replace_existing=True,
        max_instances=1,
    )

    if settings.SYNC_SCHEDULE_ENABLED:
        scheduler.add_job(
            delta_sync_task,
            IntervalTrigger(minutes=settings.DELTA_SYNC_INTERVAL_MINUTES),
            id="delta_sync",
            name="Marketplace Delta Sync",
            replace_existing=True,
            max_instances=1,  # Only one sync at a time
            misfire_grace_time=3600  # 1 hour grace time
        )
        logger.info(f"Scheduled delta sync every {settings.DELTA_SYNC_INTERVAL_MINUTES} minutes")
    else:
        logger.info("Scheduled sync is disabled. Set SYNC_SCHEDULE_ENABLED=true to enable")

    return scheduler


async def start_scheduler():
    """Start the scheduler"""
    global scheduler

    if scheduler is None:
        scheduler = create_scheduler()

    if not scheduler.running:
        scheduler.start()
        logger.info("Scheduler started successfully")

        # Log all scheduled jobs
        jobs = scheduler.get_jobs()
        if jobs:
            logger.info(f"Active scheduled jobs: {len(jobs)}")
            for job in jobs:
                logger.info(f"  - {job.name}: {job.trigger}")
        else:
            logger.info("No scheduled jobs configured")


async def stop_scheduler():
    """Stop the scheduler gracefully"""
    global scheduler

    if scheduler and scheduler.running:
        scheduler.shutdown(wait=True)
        logger.info("Scheduler stopped successfully")
    scheduler = None


async def get_scheduler_status():
    """Get current scheduler status and job information"""
    global scheduler

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
