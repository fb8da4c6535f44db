"""
Availability & Pricing Engine
=============================

Decides whether a half-open ``[check_in, check_out)`` stay is bookable for a
property and computes what it costs.

A stay occupies every night from check-in up to, but not including, the
checkout date. Two stays overlap when
``existing.check_in < requested.check_out AND existing.check_out > requested.check_in``,
so a checkout and a check-in on the same day never conflict.

Nightly price is the per-date override price when one is set, otherwise the
property's base price. Totals are accumulated in ``Decimal``.
"""

from datetime import date, timedelta
from decimal import Decimal
from typing import Optional
from uuid import UUID

import structlog
from prometheus_client import Counter
from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession

from .config import settings
from .errors import ConflictError, NotFoundError, ValidationError
from .models import ACTIVE_BOOKING_STATUSES, Availability, Booking, Property
from .schemas import (
    AvailabilityCalendarResponse,
    AvailabilityEntry,
    AvailabilityUpdateResult,
    CalendarDay,
    NightlyRate,
    PriceBreakdown,
)

logger = structlog.get_logger(__name__)

MONEY_QUANTUM = Decimal("0.01")

# =============================================================================
# PROMETHEUS METRICS
# =============================================================================

AVAILABILITY_CONFLICTS = Counter(
    "booking_conflicts_total",
    "Availability checks rejected because of a conflict",
    ["reason"]  # reason: dates_booked, dates_blocked, constraint
)


# =============================================================================
# HELPERS
# =============================================================================

def stay_dates(check_in: date, check_out: date) -> list[date]:
    """Every occupied night of a stay; the checkout date is excluded."""
    return [check_in + timedelta(days=i) for i in range((check_out - check_in).days)]


def validate_stay_dates(check_in: date, check_out: date, today: Optional[date] = None) -> None:
    if check_in >= check_out:
        raise ValidationError("Check-out date must be after check-in date")
    if (check_out - check_in).days > settings.MAX_STAY_NIGHTS:
        raise ValidationError(f"Stays are limited to {settings.MAX_STAY_NIGHTS} nights")

    today = today or date.today()
    if check_in < today:
        raise ValidationError("Check-in date cannot be in the past")


async def get_property(db: AsyncSession, property_id: UUID) -> Property:
    prop = await db.get(Property, property_id)
    if prop is None:
        raise NotFoundError("Property")
    return prop


async def find_conflicting_bookings(
    db: AsyncSession,
    property_id: UUID,
    check_in: date,
    check_out: date,
) -> list[Booking]:
    """Active bookings whose occupied nights intersect ``[check_in, check_out)``."""
    query = select(Booking).where(
        and_(
            Booking.property_id == property_id,
            Booking.status.in_(ACTIVE_BOOKING_STATUSES),
            Booking.check_in_date < check_out,
            Booking.check_out_date > check_in,
        )
    )
    result = await db.execute(query)
    return list(result.scalars().all())


async def find_blocked_dates(
    db: AsyncSession,
    property_id: UUID,
    check_in: date,
    check_out: date,
) -> list[date]:
    query = (
        select(Availability.date)
        .where(
            and_(
                Availability.property_id == property_id,
                Availability.date >= check_in,
                Availability.date < check_out,
                Availability.is_available.is_(False),
            )
        )
        .order_by(Availability.date)
    )
    result = await db.execute(query)
    return list(result.scalars().all())


async def get_overrides(
    db: AsyncSession,
    property_id: UUID,
    start: date,
    end: date,
) -> dict[date, Availability]:
    query = select(Availability).where(
        and_(
            Availability.property_id == property_id,
            Availability.date >= start,
            Availability.date < end,
        )
    )
    result = await db.execute(query)
    return {row.date: row for row in result.scalars().all()}


# =============================================================================
# AVAILABILITY CHECK
# =============================================================================

async def check_availability(
    db: AsyncSession,
    property_id: UUID,
    check_in: date,
    check_out: date,
    today: Optional[date] = None,
) -> None:
    """
    Raise ``ConflictError`` unless the stay is bookable right now.

    The result is only valid at the instant of the check; callers that insert
    a booking afterwards must hold the property lock or rely on the database
    overlap constraint.
    """
    validate_stay_dates(check_in, check_out, today)

    conflicting = await find_conflicting_bookings(db, property_id, check_in, check_out)
    if conflicting:
        AVAILABILITY_CONFLICTS.labels(reason="dates_booked").inc()
        raise ConflictError(
            "Property is not available for the requested dates",
            details={"reason": "dates_booked"},
        )

    blocked = await find_blocked_dates(db, property_id, check_in, check_out)
    if blocked:
        AVAILABILITY_CONFLICTS.labels(reason="dates_blocked").inc()
        raise ConflictError(
            "Property is not available for some of the requested dates",
            details={"reason": "dates_blocked", "dates": [d.isoformat() for d in blocked]},
        )


# =============================================================================
# PRICING
# =============================================================================

async def calculate_price_breakdown(
    db: AsyncSession,
    property_id: UUID,
    check_in: date,
    check_out: date,
) -> PriceBreakdown:
    """
    Calculate the complete price breakdown for a stay.

    Includes:
    - Nightly rates (override price or base price)
    - Cleaning fee (flat, 0 when unset)
    - Service fee (flat, 0 when unset)
    """
    if check_in >= check_out:
        raise ValidationError("Check-out date must be after check-in date")
    if (check_out - check_in).days > settings.MAX_STAY_NIGHTS:
        raise ValidationError(f"Stays are limited to {settings.MAX_STAY_NIGHTS} nights")

    prop = await get_property(db, property_id)
    overrides = await get_overrides(db, property_id, check_in, check_out)

    nightly_rates = []
    subtotal = Decimal("0")

    for d in stay_dates(check_in, check_out):
        override = overrides.get(d)
        # An override row may exist only to toggle availability
        price = override.price if override and override.price is not None else prop.price
        price = Decimal(price)
        nightly_rates.append(NightlyRate(date=d, price=price))
        subtotal += price

    cleaning_fee = Decimal(prop.cleaning_fee or 0)
    service_fee = Decimal(prop.service_fee or 0)
    total = subtotal + cleaning_fee + service_fee

    return PriceBreakdown(
        nightly_rates=nightly_rates,
        subtotal=subtotal.quantize(MONEY_QUANTUM),
        cleaning_fee=cleaning_fee.quantize(MONEY_QUANTUM),
        service_fee=service_fee.quantize(MONEY_QUANTUM),
        total=total.quantize(MONEY_QUANTUM),
        currency=prop.currency,
    )


async def compute_price(
    db: AsyncSession,
    property_id: UUID,
    check_in: date,
    check_out: date,
) -> Decimal:
    """Total charge for the stay: nights plus flat fees."""
    breakdown = await calculate_price_breakdown(db, property_id, check_in, check_out)
    return breakdown.total


# =============================================================================
# CALENDAR
# =============================================================================

async def get_availability_calendar(
    db: AsyncSession,
    property_id: UUID,
    start_date: date,
    end_date: date,
) -> AvailabilityCalendarResponse:
    """Per-date availability, price and booking occupancy for ``[start_date, end_date)``."""
    if start_date >= end_date:
        raise ValidationError("End date must be after start date")
    if (end_date - start_date).days > settings.MAX_CALENDAR_DAYS:
        raise ValidationError(f"Calendar range is limited to {settings.MAX_CALENDAR_DAYS} days")

    prop = await get_property(db, property_id)
    overrides = await get_overrides(db, property_id, start_date, end_date)
    bookings = await find_conflicting_bookings(db, property_id, start_date, end_date)

    booked_dates = {}
    for booking in bookings:
        for d in stay_dates(booking.check_in_date, booking.check_out_date):
            booked_dates[d] = booking.id

    calendar = []
    for d in stay_dates(start_date, end_date):
        override = overrides.get(d)
        booking_id = booked_dates.get(d)
        calendar.append(CalendarDay(
            date=d,
            is_available=override.is_available if override else True,
            price=override.price if override and override.price is not None else prop.price,
            is_booked=booking_id is not None,
            booking_id=booking_id,
        ))

    return AvailabilityCalendarResponse(
        property_id=prop.id,
        start_date=start_date,
        end_date=end_date,
        base_price=prop.price,
        availability=calendar,
    )


async def update_availability(
    db: AsyncSession,
    prop: Property,
    entries: list[AvailabilityEntry],
) -> list[AvailabilityUpdateResult]:
    """
    Upsert per-date overrides for a property.

    Each date succeeds or fails on its own. A date occupied by an active
    booking cannot be marked unavailable.
    """
    results = []

    for entry in entries:
        if not entry.is_available:
            occupied = await find_conflicting_bookings(
                db, prop.id, entry.date, entry.date + timedelta(days=1)
            )
            if occupied:
                results.append(AvailabilityUpdateResult(
                    date=entry.date,
                    status="error",
                    message="Cannot mark as unavailable: date has existing bookings",
                ))
                continue

        query = select(Availability).where(
            and_(
                Availability.property_id == prop.id,
                Availability.date == entry.date,
            )
        )
        result = await db.execute(query)
        override = result.scalar_one_or_none()

        if override is None:
            override = Availability(property_id=prop.id, date=entry.date)
            db.add(override)

        override.is_available = entry.is_available
        if "price" in entry.model_fields_set:
            override.price = entry.price

        results.append(AvailabilityUpdateResult(
            date=entry.date,
            status="success",
            is_available=override.is_available,
            price=override.price,
        ))

    await db.commit()

    logger.info(
        "Availability updated",
        property_id=str(prop.id),
        updated=sum(1 for r in results if r.status == "success"),
        failed=sum(1 for r in results if r.status == "error"),
    )

    return results
