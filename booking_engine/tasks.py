"""
Celery Tasks
============

Beat schedule for the booking sweeps. Each task builds the engine, runs the
job through the JobRunner (so overlapping runs are skipped) and disposes of
its connections.

Run with:
    celery -A booking_engine.tasks worker --beat
"""

import asyncio

import structlog
from celery import Celery
from celery.schedules import crontab

from .config import settings
from .container import build_engine
from .logging_setup import configure_logging
from .sweeps import AutoCancelSweep, FundReleaseSweep

configure_logging(settings)
logger = structlog.get_logger(__name__)

# =============================================================================
# CELERY CONFIGURATION
# =============================================================================

celery = Celery(
    "booking_engine",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
)

celery.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone=settings.TIMEZONE,
    enable_utc=True,
    task_track_started=True,
    task_time_limit=settings.JOB_LOCK_TTL,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)

celery.conf.beat_schedule = {
    "auto-cancel-bookings": {
        "task": "booking_engine.tasks.auto_cancel_bookings",
        "schedule": crontab(minute=0),  # Every hour
    },
    "release-booking-funds": {
        "task": "booking_engine.tasks.release_booking_funds",
        "schedule": crontab(hour=0, minute=0),  # Midnight, Settings.TIMEZONE
    },
}


async def _run_job(name: str) -> dict:
    engine = build_engine(settings)
    try:
        result = await engine.jobs.run_now(name)
        return result.model_dump(mode="json")
    finally:
        await engine.close()


@celery.task(name="booking_engine.tasks.auto_cancel_bookings")
def auto_cancel_bookings() -> dict:
    """Expire unconfirmed pending bookings and refund their payments."""
    return asyncio.run(_run_job(AutoCancelSweep.name))


@celery.task(name="booking_engine.tasks.release_booking_funds")
def release_booking_funds() -> dict:
    """Release held owner funds for bookings whose check-in date has arrived."""
    return asyncio.run(_run_job(FundReleaseSweep.name))
