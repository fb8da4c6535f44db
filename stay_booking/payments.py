"""
Payments
========

Thin wrapper around the Stripe SDK: PaymentIntents for a booking's pending
payment, refunds on cancellation, and webhook event handling.

Payment success never confirms a booking by itself; confirmation stays a
host decision in the booking lifecycle.
"""

from decimal import Decimal
from typing import Any, Optional
from uuid import UUID

import stripe
import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from .config import settings
from .errors import AuthorizationError, NotFoundError, PaymentError, ValidationError
from .models import (
    ACTIVE_BOOKING_STATUSES,
    Booking,
    Notification,
    Payment,
    PaymentProvider,
    PaymentStatus,
)
from .notifications import record_payment_notification
from .schemas import CurrentUser, PaymentIntentResponse

logger = structlog.get_logger(__name__)

stripe.api_key = settings.STRIPE_SECRET_KEY


def to_minor_units(amount: Decimal) -> int:
    """Stripe amounts are integers in the currency's smallest unit."""
    return int((Decimal(amount) * 100).quantize(Decimal("1")))


# =============================================================================
# PAYMENT INTENTS
# =============================================================================

async def create_payment_intent(
    db: AsyncSession,
    user: CurrentUser,
    booking_id: UUID,
) -> PaymentIntentResponse:
    """
    Create (or reuse) the Stripe PaymentIntent for a booking's pending payment.

    Only the guest who made the booking may pay for it.
    """
    booking = await db.get(Booking, booking_id)
    if booking is None:
        raise NotFoundError("Booking")

    if booking.guest_id != user.id:
        raise AuthorizationError("This booking does not belong to you")

    if booking.status not in ACTIVE_BOOKING_STATUSES:
        raise ValidationError(f"Booking cannot be paid in status {booking.status}")

    payment = next(
        (p for p in booking.payments if p.status == PaymentStatus.PENDING.value),
        None,
    )
    if payment is None:
        raise ValidationError("No pending payment for this booking")

    try:
        if payment.transaction_id:
            payment_intent = stripe.PaymentIntent.retrieve(payment.transaction_id)
        else:
            payment_intent = stripe.PaymentIntent.create(
                amount=to_minor_units(payment.amount),
                currency=payment.currency.lower(),
                metadata={
                    "booking_id": str(booking.id),
                    "payment_id": str(payment.id),
                    "property_id": str(booking.property_id),
                    "check_in": booking.check_in_date.isoformat(),
                    "check_out": booking.check_out_date.isoformat(),
                },
                automatic_payment_methods={"enabled": True},
                idempotency_key=f"payment-{payment.id}",
            )
    except stripe.StripeError as e:
        logger.error("Stripe PaymentIntent failed", booking_id=str(booking.id), error=str(e))
        raise PaymentError(f"Payment initialization failed: {e.user_message or str(e)}")

    payment.transaction_id = payment_intent.id
    await db.commit()

    logger.info(
        "PaymentIntent ready",
        booking_id=str(booking.id),
        payment_id=str(payment.id),
        payment_intent_id=payment_intent.id,
    )

    return PaymentIntentResponse(
        payment_id=payment.id,
        payment_intent_id=payment_intent.id,
        client_secret=payment_intent.client_secret,
        amount=payment.amount,
        currency=payment.currency,
    )


# =============================================================================
# REFUNDS
# =============================================================================

def release_payment(payment: Payment) -> Optional[str]:
    """
    Undo a payment at Stripe: refund a captured payment, cancel an open intent.

    Returns the Stripe refund id when a refund was issued. Raises
    ``PaymentError`` if Stripe rejects the request.
    """
    if payment.provider != PaymentProvider.STRIPE.value or not payment.transaction_id:
        return None
    if not settings.STRIPE_SECRET_KEY:
        return None

    try:
        if payment.status == PaymentStatus.COMPLETED.value:
            refund = stripe.Refund.create(
                payment_intent=payment.transaction_id,
                amount=to_minor_units(payment.amount),
                idempotency_key=f"refund-{payment.id}",
            )
            return refund.id
        if payment.status == PaymentStatus.PENDING.value:
            stripe.PaymentIntent.cancel(payment.transaction_id)
    except stripe.StripeError as e:
        raise PaymentError(f"Refund failed: {e.user_message or str(e)}")
    return None


# =============================================================================
# WEBHOOK EVENTS
# =============================================================================

async def _payment_by_intent(db: AsyncSession, payment_intent_id: str) -> Optional[Payment]:
    query = (
        select(Payment)
        .where(Payment.transaction_id == payment_intent_id)
        .options(selectinload(Payment.booking))
    )
    result = await db.execute(query)
    return result.scalars().first()


async def handle_stripe_event(db: AsyncSession, event: Any) -> list[Notification]:
    """
    Apply a verified Stripe event to the matching payment.

    Events handled:
    - payment_intent.succeeded: payment COMPLETED
    - payment_intent.payment_failed: payment FAILED
    - charge.refunded: payment REFUNDED (PARTIAL_REFUND when partial)

    Returns the notifications recorded so the caller can enqueue delivery.
    """
    obj = event.data.object

    if event.type == "payment_intent.succeeded":
        payment_intent_id, new_status = obj.id, PaymentStatus.COMPLETED.value
    elif event.type == "payment_intent.payment_failed":
        payment_intent_id, new_status = obj.id, PaymentStatus.FAILED.value
    elif event.type == "charge.refunded":
        payment_intent_id = obj.payment_intent
        new_status = (
            PaymentStatus.REFUNDED.value
            if obj.amount_refunded >= obj.amount
            else PaymentStatus.PARTIAL_REFUND.value
        )
    else:
        logger.info("Ignoring Stripe event", event_type=event.type, event_id=event.id)
        return []

    payment = await _payment_by_intent(db, payment_intent_id) if payment_intent_id else None
    if payment is None:
        logger.warning(
            "No payment for Stripe event",
            event_type=event.type,
            payment_intent_id=payment_intent_id,
        )
        return []

    if payment.status == new_status:
        return []

    # A refund recorded on cancellation must not be reopened by a late success event
    if payment.status == PaymentStatus.REFUNDED.value:
        logger.info(
            "Stripe event for refunded payment",
            event_type=event.type,
            payment_id=str(payment.id),
        )
        return []

    old_status = payment.status
    payment.status = new_status
    notifications = await record_payment_notification(
        db, payment, payment.booking.guest_id, new_status
    )
    await db.commit()

    logger.info(
        "Payment updated from Stripe",
        event_type=event.type,
        payment_id=str(payment.id),
        old_status=old_status,
        new_status=new_status,
    )
    return notifications
