"""
Background Tasks
================

Celery worker for notification e-mail delivery.

- Celery 5.x with Redis broker
- ``deliver_notification`` is enqueued right after a booking or payment change
- ``deliver_pending_notifications`` runs on beat and retries anything the
  first attempt missed (broker down, e-mail API errors)
"""

import asyncio
from uuid import UUID

import httpx
import structlog
from celery import Celery
from celery.signals import setup_logging

from . import notifications
from .config import settings
from .database import dispose_engine, get_async_session
from .log import configure_logging

logger = structlog.get_logger(__name__)

# =============================================================================
# CELERY CONFIGURATION
# =============================================================================

celery = Celery(
    "stay_booking",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL
)

celery.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=120,
    task_soft_time_limit=90,
    task_acks_late=True,  # Ack after task completes
    task_reject_on_worker_lost=True,
)

celery.conf.beat_schedule = {
    "deliver-pending-notifications": {
        "task": "stay_booking.tasks.deliver_pending_notifications",
        "schedule": 60.0,  # Every minute
    },
}

EMAIL_TIMEOUT_SECONDS = 10.0


@setup_logging.connect
def configure_worker_logging(**kwargs) -> None:
    configure_logging(settings.LOG_LEVEL, json=settings.LOG_JSON)


# =============================================================================
# TASKS
# =============================================================================

@celery.task(name="stay_booking.tasks.deliver_notification")
def deliver_notification(notification_id: str) -> bool:
    """E-mail one notification. Failures are left for the periodic sweep."""
    return asyncio.run(_deliver_notification(UUID(notification_id)))


async def _deliver_notification(notification_id: UUID) -> bool:
    try:
        async with get_async_session() as session, httpx.AsyncClient(
            timeout=EMAIL_TIMEOUT_SECONDS
        ) as client:
            return await notifications.deliver_notification(session, client, notification_id)
    finally:
        # Each asyncio.run gets a fresh loop; pooled connections can't outlive it
        await dispose_engine()


@celery.task(name="stay_booking.tasks.deliver_pending_notifications")
def deliver_pending_notifications() -> dict:
    """Retry delivery for every notification still missing ``delivered_at``."""
    return asyncio.run(_deliver_pending_notifications())


async def _deliver_pending_notifications() -> dict:
    try:
        async with get_async_session() as session, httpx.AsyncClient(
            timeout=EMAIL_TIMEOUT_SECONDS
        ) as client:
            results = await notifications.deliver_pending_notifications(session, client)
    finally:
        await dispose_engine()

    logger.info("Notification sweep completed", **results)
    return results
