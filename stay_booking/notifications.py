"""
Notifications
=============

In-app notifications for booking and payment updates, plus e-mail delivery.

Notification rows are written in the same transaction as the change they
describe and double as a delivery outbox: a row without ``delivered_at`` is
still owed an e-mail. Recording and enqueueing are best-effort; a failure is
logged and counted but never fails the booking operation that triggered it.
Rows that were recorded but never enqueued are picked up by the periodic
``deliver_pending_notifications`` sweep.
"""

from typing import Iterable, Optional
from uuid import UUID

import httpx
import structlog
from prometheus_client import Counter
from sqlalchemy import and_, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .config import settings
from .errors import AuthorizationError, NotFoundError
from .models import Booking, Notification, NotificationType, Payment, User, utcnow
from .schemas import CurrentUser

logger = structlog.get_logger(__name__)

# =============================================================================
# PROMETHEUS METRICS
# =============================================================================

NOTIFICATION_FAILURES = Counter(
    "notification_failures_total",
    "Notification failures that were logged and skipped",
    ["stage"]  # stage: record, enqueue, deliver
)


# =============================================================================
# RECORDING
# =============================================================================

def booking_status_recipients(booking: Booking, actor_id: Optional[UUID]) -> list[UUID]:
    """The counterparties of a change: guest and host, minus whoever made it."""
    recipients = [booking.guest_id, booking.property.owner_id]
    return [user_id for user_id in dict.fromkeys(recipients) if user_id != actor_id]


def build_booking_status_notifications(
    booking: Booking,
    status: str,
    actor_id: Optional[UUID] = None,
) -> list[Notification]:
    message = f"Booking #{str(booking.id)[:8]} status updated to {status}"
    return [
        Notification(
            user_id=user_id,
            type=NotificationType.BOOKING_UPDATE.value,
            title=f"Booking {status.lower()}",
            message=message,
            data={
                "bookingId": str(booking.id),
                "propertyId": str(booking.property_id),
                "status": status,
            },
        )
        for user_id in booking_status_recipients(booking, actor_id)
    ]


def build_payment_notification(payment: Payment, guest_id: UUID, status: str) -> Notification:
    return Notification(
        user_id=guest_id,
        type=NotificationType.PAYMENT_UPDATE.value,
        title=f"Payment {status.lower()}",
        message=(
            f"Your payment of {payment.amount} {payment.currency} for booking "
            f"#{str(payment.booking_id)[:8]} has been {status.lower()}."
        ),
        data={
            "paymentId": str(payment.id),
            "bookingId": str(payment.booking_id),
            "amount": str(payment.amount),
            "status": status,
        },
    )


async def _record(db: AsyncSession, notifications: list[Notification], **context) -> list[Notification]:
    try:
        async with db.begin_nested():
            db.add_all(notifications)
    except SQLAlchemyError as e:
        NOTIFICATION_FAILURES.labels(stage="record").inc()
        logger.error("Failed to record notifications", error=str(e), **context)
        return []
    return notifications


async def record_booking_status_notifications(
    db: AsyncSession,
    booking: Booking,
    status: str,
    actor_id: Optional[UUID] = None,
) -> list[Notification]:
    """Add status-change notifications to the current transaction. Never raises."""
    # TODO: an e-mail provider outage leaves rows undelivered until the sweep
    # exhausts NOTIFICATION_MAX_ATTEMPTS; surface exhausted rows to admins.
    try:
        notifications = build_booking_status_notifications(booking, status, actor_id)
    except Exception as e:
        NOTIFICATION_FAILURES.labels(stage="record").inc()
        logger.error(
            "Failed to build booking notifications",
            booking_id=str(booking.id),
            error=str(e),
        )
        return []
    return await _record(db, notifications, booking_id=str(booking.id), status=status)


async def record_payment_notification(
    db: AsyncSession,
    payment: Payment,
    guest_id: UUID,
    status: str,
) -> list[Notification]:
    """Add a payment notification for the guest to the current transaction. Never raises."""
    try:
        notification = build_payment_notification(payment, guest_id, status)
    except Exception as e:
        NOTIFICATION_FAILURES.labels(stage="record").inc()
        logger.error("Failed to build payment notification", payment_id=str(payment.id), error=str(e))
        return []
    return await _record(db, [notification], payment_id=str(payment.id), status=status)


# =============================================================================
# DELIVERY
# =============================================================================

def enqueue_delivery(notification_ids: Iterable[UUID]) -> None:
    """Hand notifications to the worker queue. Broker failures are logged and skipped."""
    from .tasks import deliver_notification

    for notification_id in notification_ids:
        try:
            deliver_notification.delay(str(notification_id))
        except Exception as e:
            NOTIFICATION_FAILURES.labels(stage="enqueue").inc()
            logger.warning(
                "Failed to enqueue notification delivery",
                notification_id=str(notification_id),
                error=str(e),
            )


async def send_notification_email(
    client: httpx.AsyncClient,
    recipient: str,
    notification: Notification,
) -> None:
    response = await client.post(
        settings.EMAIL_API_URL,
        headers={"Authorization": f"Bearer {settings.EMAIL_API_KEY}"},
        json={
            "from": settings.EMAIL_FROM,
            "to": recipient,
            "subject": notification.title,
            "text": notification.message,
        },
    )
    response.raise_for_status()


async def deliver_notification(
    db: AsyncSession,
    client: httpx.AsyncClient,
    notification_id: UUID,
) -> bool:
    """
    E-mail one notification and mark it delivered.

    Returns True when the notification is delivered (now or previously).
    Without a configured e-mail API the notification stays in-app only and is
    marked delivered.
    """
    notification = await db.get(Notification, notification_id)
    if notification is None:
        logger.warning("Notification not found", notification_id=str(notification_id))
        return False
    if notification.delivered_at is not None:
        return True

    user = await db.get(User, notification.user_id)

    try:
        if settings.EMAIL_API_URL and user is not None:
            await send_notification_email(client, user.email, notification)
    except httpx.HTTPError as e:
        notification.delivery_attempts += 1
        await db.commit()
        NOTIFICATION_FAILURES.labels(stage="deliver").inc()
        logger.warning(
            "Notification delivery failed",
            notification_id=str(notification_id),
            attempts=notification.delivery_attempts,
            error=str(e),
        )
        return False

    notification.delivery_attempts += 1
    notification.delivered_at = utcnow()
    await db.commit()
    return True


async def deliver_pending_notifications(
    db: AsyncSession,
    client: httpx.AsyncClient,
    batch_size: Optional[int] = None,
) -> dict:
    """Retry every undelivered notification that still has attempts left."""
    query = (
        select(Notification.id)
        .where(
            and_(
                Notification.delivered_at.is_(None),
                Notification.delivery_attempts < settings.NOTIFICATION_MAX_ATTEMPTS,
            )
        )
        .order_by(Notification.created_at)
        .limit(batch_size or settings.NOTIFICATION_BATCH_SIZE)
    )
    result = await db.execute(query)
    pending_ids = list(result.scalars().all())

    results = {"delivered": 0, "failed": 0}
    for notification_id in pending_ids:
        if await deliver_notification(db, client, notification_id):
            results["delivered"] += 1
        else:
            results["failed"] += 1

    if pending_ids:
        logger.info("Pending notifications processed", **results)
    return results


# =============================================================================
# INBOX
# =============================================================================

async def list_notifications(
    db: AsyncSession,
    user: CurrentUser,
    unread_only: bool = False,
    page: int = 1,
    limit: int = 20,
) -> tuple[list[Notification], int, int]:
    """Returns (page of notifications, total matching, unread count)."""
    conditions = [Notification.user_id == user.id]
    if unread_only:
        conditions.append(Notification.is_read.is_(False))

    total = await db.scalar(
        select(func.count()).select_from(Notification).where(and_(*conditions))
    ) or 0
    unread = await db.scalar(
        select(func.count())
        .select_from(Notification)
        .where(and_(Notification.user_id == user.id, Notification.is_read.is_(False)))
    ) or 0

    query = (
        select(Notification)
        .where(and_(*conditions))
        .order_by(Notification.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    result = await db.execute(query)
    return list(result.scalars().all()), total, unread


async def mark_notification(
    db: AsyncSession,
    user: CurrentUser,
    notification_id: UUID,
    is_read: bool = True,
) -> Notification:
    notification = await db.get(Notification, notification_id)
    if notification is None:
        raise NotFoundError("Notification")
    if notification.user_id != user.id:
        raise AuthorizationError("You do not have permission to update this notification")

    notification.is_read = is_read
    await db.commit()
    return notification
