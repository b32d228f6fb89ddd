"""Scheduled subscription reconciliation using APScheduler."""
from __future__ import annotations

import logging
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from src.db.engine import async_session
from config.settings import settings

logger = logging.getLogger(__name__)

scheduler = AsyncIOScheduler()


async def scheduled_reconciliation(engine):
    """Re-validate stored subscriptions and replay failed notifications."""
    logger.info("Scheduled reconciliation starting...")
    try:
        report = await engine.reconciler.run(async_session)
        logger.info(
            f"Scheduled reconciliation complete: {report.total_checked} checked, "
            f"{report.updated} updated, {report.errors} errors"
        )
    except Exception:
        logger.exception("Scheduled reconciliation failed")


def start_scheduler(engine, interval_hours: int | None = None):
    """Start the background scheduler for periodic reconciliation."""
    interval_hours = interval_hours or settings.RECONCILE_INTERVAL_HOURS
    scheduler.add_job(
        scheduled_reconciliation,
        trigger=IntervalTrigger(hours=interval_hours),
        args=[engine],
        id="subscription_reconciliation",
        name="Subscription reconciliation",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.start()
    logger.info(f"Scheduler started: reconciling every {interval_hours}h")


def stop_scheduler():
    """Gracefully shut down the scheduler."""
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
