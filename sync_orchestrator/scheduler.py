"""
Scheduler for periodic sync jobs

Uses APScheduler to enqueue daily syncs and reconcile passes, and to keep
the queue healthy (stalled job recovery, retention purge). The jobs only
enqueue work; the worker pool executes it.
"""
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from sync_orchestrator.config import get_settings
from sync_orchestrator.services.orchestrator import get_orchestrator
from sync_orchestrator.utils.logger import log

settings = get_settings()
scheduler = AsyncIOScheduler()


async def enqueue_daily_syncs():
    """Daily incremental sync for every active connection"""
    try:
        get_orchestrator().enqueue_daily_syncs()
    except Exception as e:
        log.error(f"Daily sync enqueue failed: {str(e)}")


async def enqueue_reconciles():
    """Duplicate cleanup and aggregate refresh per brand"""
    try:
        get_orchestrator().enqueue_reconciles()
    except Exception as e:
        log.error(f"Reconcile enqueue failed: {str(e)}")


async def housekeeping():
    """Requeue stalled jobs and purge old finished ones"""
    try:
        result = get_orchestrator().housekeeping()
        if any(result.values()):
            log.info(f"Queue housekeeping: {result}")
    except Exception as e:
        log.error(f"Queue housekeeping failed: {str(e)}")


def start_scheduler():
    """Register jobs and start the scheduler"""
    scheduler.add_job(
        enqueue_daily_syncs,
        CronTrigger.from_crontab(settings.daily_sync_schedule),
        id="daily_sync",
        name="Enqueue daily syncs",
        replace_existing=True,
    )
    scheduler.add_job(
        enqueue_reconciles,
        CronTrigger.from_crontab(settings.reconcile_schedule),
        id="reconcile",
        name="Enqueue reconcile passes",
        replace_existing=True,
    )
    scheduler.add_job(
        housekeeping,
        IntervalTrigger(minutes=settings.housekeeping_interval_minutes),
        id="queue_housekeeping",
        name="Requeue stalled and purge finished jobs",
        replace_existing=True,
    )

    if not scheduler.running:
        scheduler.start()
    log.info(f"Scheduler started with {len(scheduler.get_jobs())} jobs")


def stop_scheduler():
    """Stop the scheduler"""
    if scheduler.running:
        scheduler.shutdown(wait=False)
        log.info("Scheduler stopped")
