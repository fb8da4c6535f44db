"""
Stripe Webhook Endpoint
=======================

Verifies Stripe signatures and applies payment events exactly once. Event
ids are cached in Redis so Stripe's retries are acknowledged without being
re-applied.
"""

import redis.asyncio as aioredis
import stripe
import structlog
from fastapi import APIRouter, BackgroundTasks, Depends, Request
from prometheus_client import Counter
from sqlalchemy.ext.asyncio import AsyncSession

from .config import settings
from .database import get_db
from .errors import ValidationError
from .notifications import enqueue_delivery
from .payments import handle_stripe_event
from .redis_client import get_redis

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])

STRIPE_WEBHOOKS = Counter(
    "stripe_webhooks_total",
    "Stripe webhook events received",
    ["event_type", "status"]  # status: processed, duplicate, invalid
)


def _event_key(event_id: str) -> str:
    return f"stripe_event:{event_id}"


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    redis: aioredis.Redis = Depends(get_redis),
):
    """
    Handle Stripe webhook events.

    Events handled:
    - payment_intent.succeeded: payment COMPLETED (booking stays as it is)
    - payment_intent.payment_failed: payment FAILED
    - charge.refunded: payment REFUNDED or PARTIAL_REFUND

    Idempotency:
    - Event IDs are cached in Redis to prevent double-processing
    """
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")

    try:
        event = stripe.Webhook.construct_event(
            payload, sig_header, settings.STRIPE_WEBHOOK_SECRET
        )
    except ValueError:
        STRIPE_WEBHOOKS.labels(event_type="unknown", status="invalid").inc()
        raise ValidationError("Invalid payload")
    except stripe.SignatureVerificationError:
        STRIPE_WEBHOOKS.labels(event_type="unknown", status="invalid").inc()
        logger.warning("Stripe signature verification failed")
        raise ValidationError("Invalid signature")

    if await redis.exists(_event_key(event.id)):
        STRIPE_WEBHOOKS.labels(event_type=event.type, status="duplicate").inc()
        return {"status": "already_processed"}

    notifications = await handle_stripe_event(db, event)

    await redis.setex(_event_key(event.id), settings.STRIPE_EVENT_TTL_SECONDS, "processed")
    STRIPE_WEBHOOKS.labels(event_type=event.type, status="processed").inc()

    if notifications:
        background_tasks.add_task(enqueue_delivery, [n.id for n in notifications])

    return {"status": "success"}
