"""
Booking Lifecycle Controller
============================

Creates bookings and moves them through their status lifecycle.

State machine:
```
PENDING   --[owner/manager/admin]-----------------> CONFIRMED
PENDING   --[owner/manager/admin]-----------------> REJECTED
PENDING   --[guest/owner/manager/admin]-----------> CANCELLED
CONFIRMED --[guest/admin]-------------------------> CANCELLED
CONFIRMED --[owner/manager/admin, after checkout]-> COMPLETED
```
CANCELLED, COMPLETED and REJECTED are terminal. Hosts cannot cancel a
confirmed booking; only the guest or an admin can.

Side effects of a status change are applied in the same commit: payments
are refunded on cancellation and notification rows are recorded for the
counterparty. Notification failures never block the transition.
"""

from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Optional
from uuid import UUID

import redis.asyncio as aioredis
import structlog
from prometheus_client import Counter
from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .availability import (
    AVAILABILITY_CONFLICTS,
    calculate_price_breakdown,
    check_availability,
    get_property,
    validate_stay_dates,
)
from .errors import (
    AuthorizationError,
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    PaymentError,
    ValidationError,
)
from .models import (
    Booking,
    BookingStatus,
    Notification,
    Payment,
    PaymentProvider,
    PaymentStatus,
    Property,
    PropertyManager,
    User,
)
from .notifications import record_booking_status_notifications, record_payment_notification
from .payments import release_payment
from .redis_client import property_calendar_lock
from .schemas import BookingCreateRequest, BookingUpdateRequest, CurrentUser

logger = structlog.get_logger(__name__)

# =============================================================================
# PROMETHEUS METRICS
# =============================================================================

BOOKINGS_CREATED = Counter(
    "bookings_created_total",
    "Bookings created in PENDING status",
)

BOOKING_TRANSITIONS = Counter(
    "booking_status_transitions_total",
    "Booking status transitions applied",
    ["from_status", "to_status"]
)


# =============================================================================
# TRANSITION TABLE
# =============================================================================

class ActorRelation(str, Enum):
    """How the caller relates to a booking."""
    GUEST = "guest"
    OWNER = "owner"
    MANAGER = "manager"
    ADMIN = "admin"


_HOSTS = frozenset({ActorRelation.OWNER, ActorRelation.MANAGER, ActorRelation.ADMIN})

ALLOWED_TRANSITIONS: dict[tuple[BookingStatus, BookingStatus], frozenset[ActorRelation]] = {
    (BookingStatus.PENDING, BookingStatus.CONFIRMED): _HOSTS,
    (BookingStatus.PENDING, BookingStatus.REJECTED): _HOSTS,
    (BookingStatus.PENDING, BookingStatus.CANCELLED): _HOSTS | {ActorRelation.GUEST},
    (BookingStatus.CONFIRMED, BookingStatus.CANCELLED): frozenset(
        {ActorRelation.GUEST, ActorRelation.ADMIN}
    ),
    (BookingStatus.CONFIRMED, BookingStatus.COMPLETED): _HOSTS,
}

TERMINAL_STATUSES = frozenset(
    {BookingStatus.CANCELLED, BookingStatus.COMPLETED, BookingStatus.REJECTED}
)

REFUNDABLE_PAYMENT_STATUSES = (PaymentStatus.PENDING.value, PaymentStatus.COMPLETED.value)


def resolve_actor_relations(user: CurrentUser, booking: Booking) -> frozenset[ActorRelation]:
    relations = set()
    if user.is_admin:
        relations.add(ActorRelation.ADMIN)
    if booking.guest_id == user.id:
        relations.add(ActorRelation.GUEST)
    if booking.property.owner_id == user.id:
        relations.add(ActorRelation.OWNER)
    if user.id in booking.property.manager_ids:
        relations.add(ActorRelation.MANAGER)
    return frozenset(relations)


def authorize_transition(
    booking: Booking,
    target: BookingStatus,
    relations: frozenset[ActorRelation],
    today: Optional[date] = None,
) -> None:
    """
    Raise unless ``relations`` may move ``booking`` to ``target``.

    - caller unrelated to the booking: AuthorizationError
    - transition not in the table (terminal states included): InvalidTransitionError
    - transition exists but not for this caller: AuthorizationError
    - completing before the checkout date: InvalidTransitionError
    """
    if not relations:
        raise AuthorizationError("You do not have permission to modify this booking")

    current = BookingStatus(booking.status)
    allowed = ALLOWED_TRANSITIONS.get((current, target))
    if allowed is None:
        raise InvalidTransitionError(current.value, target.value)

    if not relations & allowed:
        raise AuthorizationError(
            f"You cannot change this booking from {current.value} to {target.value}"
        )

    if target == BookingStatus.COMPLETED:
        today = today or date.today()
        if today < booking.check_out_date:
            raise InvalidTransitionError(
                current.value,
                target.value,
                "Cannot mark booking as completed before check-out date",
            )


# =============================================================================
# LOOKUPS
# =============================================================================

async def get_booking(db: AsyncSession, booking_id: UUID) -> Booking:
    booking = await db.get(Booking, booking_id)
    if booking is None:
        raise NotFoundError("Booking")
    return booking


async def get_booking_for_user(db: AsyncSession, user: CurrentUser, booking_id: UUID) -> Booking:
    booking = await get_booking(db, booking_id)
    if not resolve_actor_relations(user, booking):
        raise AuthorizationError("You do not have permission to access this booking")
    return booking


async def list_bookings_for_user(
    db: AsyncSession,
    user: CurrentUser,
    status: Optional[BookingStatus] = None,
    property_id: Optional[UUID] = None,
    page: int = 1,
    limit: int = 10,
) -> tuple[list[Booking], int]:
    """
    Bookings visible to the caller, newest first.

    Admins see every booking. Everyone else sees bookings they made plus
    bookings on properties they own or manage.
    """
    conditions = []

    if not user.is_admin:
        managed = select(PropertyManager.property_id).where(PropertyManager.manager_id == user.id)
        hosted = select(Property.id).where(
            or_(Property.owner_id == user.id, Property.id.in_(managed))
        )
        conditions.append(
            or_(Booking.guest_id == user.id, Booking.property_id.in_(hosted))
        )

    if status is not None:
        conditions.append(Booking.status == status.value)
    if property_id is not None:
        conditions.append(Booking.property_id == property_id)

    total = await db.scalar(select(func.count()).select_from(Booking).where(*conditions)) or 0

    query = (
        select(Booking)
        .where(*conditions)
        .order_by(Booking.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    result = await db.execute(query)
    return list(result.scalars().all()), total


# =============================================================================
# CREATION
# =============================================================================

async def create_booking(
    db: AsyncSession,
    guest: CurrentUser,
    request: BookingCreateRequest,
    redis: Optional[aioredis.Redis] = None,
    today: Optional[date] = None,
) -> Booking:
    """
    Create a new booking in PENDING state with a PENDING payment.

    Flow:
    1. Validate dates, property and guest count
    2. Acquire the property calendar lock (when Redis is available)
    3. Verify availability
    4. Calculate pricing
    5. Persist booking and payment in one commit

    Edge Cases:
    - Dates unavailable: ConflictError (409)
    - Race with a concurrent insert: the database overlap constraint raises
      IntegrityError, reported as ConflictError (409)
    """
    validate_stay_dates(request.check_in_date, request.check_out_date, today)

    if request.number_of_guests <= 0:
        raise ValidationError("Number of guests must be greater than 0")

    prop = await get_property(db, request.property_id)

    if not prop.is_published:
        raise ValidationError("Property is not available for booking")

    if request.number_of_guests > prop.max_guests:
        raise ValidationError(f"Maximum number of guests allowed is {prop.max_guests}")

    guest_user = await db.get(User, guest.id)
    if guest_user is None:
        raise NotFoundError("User")

    async with property_calendar_lock(redis, prop.id):
        await check_availability(
            db, prop.id, request.check_in_date, request.check_out_date, today
        )

        price_breakdown = await calculate_price_breakdown(
            db, prop.id, request.check_in_date, request.check_out_date
        )

        booking = Booking(
            property=prop,
            guest=guest_user,
            check_in_date=request.check_in_date,
            check_out_date=request.check_out_date,
            number_of_guests=request.number_of_guests,
            total_price=price_breakdown.total,
            status=BookingStatus.PENDING.value,
            special_requests=request.special_requests,
        )
        booking.payments.append(Payment(
            amount=price_breakdown.total,
            currency=price_breakdown.currency,
            status=PaymentStatus.PENDING.value,
            provider=PaymentProvider.STRIPE.value,
        ))
        db.add(booking)

        try:
            await db.commit()
        except IntegrityError:
            # Database overlap constraint caught a concurrent booking
            await db.rollback()
            AVAILABILITY_CONFLICTS.labels(reason="constraint").inc()
            raise ConflictError(
                "Property is no longer available for the requested dates",
                details={"reason": "dates_booked"},
            )

    BOOKINGS_CREATED.inc()
    logger.info(
        "Booking created",
        booking_id=str(booking.id),
        property_id=str(prop.id),
        guest_id=str(guest.id),
        nights=booking.num_nights,
        total_price=str(booking.total_price),
    )
    return booking


# =============================================================================
# STATUS CHANGES
# =============================================================================

@dataclass
class BookingChange:
    """A committed booking change and the notifications it produced."""
    booking: Booking
    notifications: list[Notification] = field(default_factory=list)

    @property
    def notification_ids(self) -> list[UUID]:
        return [n.id for n in self.notifications]


async def _refund_payments(db: AsyncSession, booking: Booking) -> list[Notification]:
    notifications = []
    for payment in booking.payments:
        if payment.status not in REFUNDABLE_PAYMENT_STATUSES:
            continue
        try:
            refund_id = release_payment(payment)
        except PaymentError as e:
            logger.error(
                "Stripe refund failed, payment marked refunded for manual follow-up",
                booking_id=str(booking.id),
                payment_id=str(payment.id),
                error=e.message,
            )
        else:
            if refund_id:
                logger.info("Stripe refund issued", payment_id=str(payment.id), refund_id=refund_id)

        payment.status = PaymentStatus.REFUNDED.value
        notifications += await record_payment_notification(
            db, payment, booking.guest_id, PaymentStatus.REFUNDED.value
        )
    return notifications


def _apply_status(
    booking: Booking,
    target: BookingStatus,
    user: CurrentUser,
    today: Optional[date],
) -> BookingStatus:
    relations = resolve_actor_relations(user, booking)
    authorize_transition(booking, target, relations, today)
    previous = BookingStatus(booking.status)
    booking.status = target.value
    return previous


async def _record_status_side_effects(
    db: AsyncSession,
    booking: Booking,
    target: BookingStatus,
    user: CurrentUser,
) -> list[Notification]:
    notifications = []
    if target == BookingStatus.CANCELLED:
        notifications += await _refund_payments(db, booking)
    notifications += await record_booking_status_notifications(
        db, booking, target.value, actor_id=user.id
    )
    return notifications


def _log_transition(booking: Booking, previous: BookingStatus, target: BookingStatus, user: CurrentUser) -> None:
    BOOKING_TRANSITIONS.labels(from_status=previous.value, to_status=target.value).inc()
    logger.info(
        "Booking status changed",
        booking_id=str(booking.id),
        from_status=previous.value,
        to_status=target.value,
        actor_id=str(user.id),
    )


async def change_booking_status(
    db: AsyncSession,
    user: CurrentUser,
    booking_id: UUID,
    target: BookingStatus,
    today: Optional[date] = None,
) -> BookingChange:
    """
    Move a booking to ``target`` if the transition table allows it.

    Raises AuthorizationError or InvalidTransitionError otherwise; the stored
    status is left untouched in that case.
    """
    booking = await get_booking(db, booking_id)
    previous = _apply_status(booking, target, user, today)

    notifications = await _record_status_side_effects(db, booking, target, user)
    await db.commit()

    _log_transition(booking, previous, target, user)
    return BookingChange(booking=booking, notifications=notifications)


async def update_booking(
    db: AsyncSession,
    user: CurrentUser,
    booking_id: UUID,
    request: BookingUpdateRequest,
    today: Optional[date] = None,
) -> BookingChange:
    """
    Apply a status change and/or a special-requests edit.

    Special requests are editable by the guest or an admin.
    """
    if request.status is not None and "special_requests" not in request.model_fields_set:
        return await change_booking_status(db, user, booking_id, request.status, today)

    booking = await get_booking(db, booking_id)
    relations = resolve_actor_relations(user, booking)
    if not relations:
        raise AuthorizationError("You do not have permission to modify this booking")

    previous = None
    if request.status is not None:
        previous = _apply_status(booking, request.status, user, today)

    special_requests_updated = False
    if "special_requests" in request.model_fields_set and relations & {
        ActorRelation.GUEST, ActorRelation.ADMIN
    }:
        booking.special_requests = request.special_requests
        special_requests_updated = True

    if previous is None and not special_requests_updated:
        raise ValidationError("No valid updates provided")

    notifications = []
    if previous is not None:
        notifications = await _record_status_side_effects(db, booking, request.status, user)

    await db.commit()

    if previous is not None:
        _log_transition(booking, previous, request.status, user)
    return BookingChange(booking=booking, notifications=notifications)


async def delete_booking(db: AsyncSession, user: CurrentUser, booking_id: UUID) -> None:
    if not user.is_admin:
        raise AuthorizationError("Only administrators can delete bookings")

    booking = await get_booking(db, booking_id)
    await db.delete(booking)
    await db.commit()

    logger.info("Booking deleted", booking_id=str(booking_id), actor_id=str(user.id))
