"""
Booking Service - API Routes

Properties, availability, bookings, payments and notifications under
``/api/v1``. Handlers stay thin: they parse input, call the service layer
and schedule notification delivery once the response is ready.
"""

import math
from datetime import date
from typing import Optional
from uuid import UUID

import redis.asyncio as aioredis
from fastapi import APIRouter, BackgroundTasks, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from . import bookings as booking_service
from .availability import get_availability_calendar, update_availability
from .availability import get_property as load_property
from .database import get_db
from .models import BookingStatus
from .notifications import enqueue_delivery, list_notifications, mark_notification
from .payments import create_payment_intent
from .properties import create_property, get_managed_property, update_property
from .redis_client import get_redis
from .schemas import (
    AvailabilityCalendarResponse,
    AvailabilityUpdateRequest,
    AvailabilityUpdateResponse,
    BookingCreateRequest,
    BookingListResponse,
    BookingResponse,
    BookingUpdateRequest,
    CurrentUser,
    NotificationListResponse,
    NotificationResponse,
    NotificationUpdateRequest,
    PaginationInfo,
    PaymentIntentRequest,
    PaymentIntentResponse,
    PropertyCreateRequest,
    PropertyResponse,
    PropertyUpdateRequest,
)
from .security import get_current_user

# =============================================================================
# ROUTER
# =============================================================================

router = APIRouter(prefix="/api/v1", tags=["Stay Booking"])


def _pagination(total: int, page: int, limit: int) -> PaginationInfo:
    return PaginationInfo(total=total, page=page, limit=limit, pages=math.ceil(total / limit))


# =============================================================================
# PROPERTY ENDPOINTS
# =============================================================================

@router.post("/properties", response_model=PropertyResponse, status_code=status.HTTP_201_CREATED)
async def create_property_endpoint(
    request: PropertyCreateRequest,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await create_property(db, user, request)


@router.get("/properties/{property_id}", response_model=PropertyResponse)
async def get_property_endpoint(
    property_id: UUID,
    db: AsyncSession = Depends(get_db),
):
    return await load_property(db, property_id)


@router.patch("/properties/{property_id}", response_model=PropertyResponse)
async def update_property_endpoint(
    property_id: UUID,
    request: PropertyUpdateRequest,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await update_property(db, user, property_id, request)


@router.get(
    "/properties/{property_id}/availability",
    response_model=AvailabilityCalendarResponse,
)
async def get_property_availability(
    property_id: UUID,
    start_date: date = Query(..., alias="startDate"),
    end_date: date = Query(..., alias="endDate"),
    db: AsyncSession = Depends(get_db),
):
    """
    Availability calendar for a property.

    One entry per date in ``[startDate, endDate)`` with the effective price
    and the booking occupying it, if any.
    """
    return await get_availability_calendar(db, property_id, start_date, end_date)


@router.post(
    "/properties/{property_id}/availability",
    response_model=AvailabilityUpdateResponse,
)
async def update_property_availability(
    property_id: UUID,
    request: AvailabilityUpdateRequest,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Block/unblock dates and set per-date prices (host, manager or admin)."""
    prop = await get_managed_property(db, user, property_id)
    results = await update_availability(db, prop, request.dates)
    return AvailabilityUpdateResponse(results=results)


# =============================================================================
# BOOKING ENDPOINTS
# =============================================================================

@router.post("/bookings", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
async def create_booking(
    request: BookingCreateRequest,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    redis: aioredis.Redis = Depends(get_redis),
):
    """
    Request a stay. The booking starts PENDING with a PENDING payment.

    Returns 409 when any night is already booked or blocked.
    """
    return await booking_service.create_booking(db, user, request, redis=redis)


@router.get("/bookings", response_model=BookingListResponse)
async def list_bookings(
    status_filter: Optional[BookingStatus] = Query(None, alias="status"),
    property_id: Optional[UUID] = Query(None, alias="propertyId"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    bookings, total = await booking_service.list_bookings_for_user(
        db, user, status=status_filter, property_id=property_id, page=page, limit=limit
    )
    return BookingListResponse(
        bookings=[BookingResponse.model_validate(b) for b in bookings],
        pagination=_pagination(total, page, limit),
    )


@router.get("/bookings/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking_id: UUID,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await booking_service.get_booking_for_user(db, user, booking_id)


@router.put("/bookings/{booking_id}", response_model=BookingResponse)
@router.patch("/bookings/{booking_id}", response_model=BookingResponse)
async def update_booking(
    booking_id: UUID,
    request: BookingUpdateRequest,
    background_tasks: BackgroundTasks,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Change a booking's status and/or special requests.

    Status changes follow the booking lifecycle; notifications for the other
    party are delivered in the background after the change is committed.
    """
    change = await booking_service.update_booking(db, user, booking_id, request)
    if change.notifications:
        background_tasks.add_task(enqueue_delivery, change.notification_ids)
    return change.booking


@router.delete("/bookings/{booking_id}")
async def delete_booking(
    booking_id: UUID,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    await booking_service.delete_booking(db, user, booking_id)
    return {"message": "Booking deleted successfully"}


# =============================================================================
# PAYMENT ENDPOINTS
# =============================================================================

@router.post("/payments/stripe", response_model=PaymentIntentResponse)
async def create_stripe_payment(
    request: PaymentIntentRequest,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Create the Stripe PaymentIntent for a booking; returns the client secret."""
    return await create_payment_intent(db, user, request.booking_id)


# =============================================================================
# NOTIFICATION ENDPOINTS
# =============================================================================

@router.get("/notifications", response_model=NotificationListResponse)
async def get_notifications(
    unread_only: bool = Query(False, alias="unreadOnly"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    notifications, total, unread = await list_notifications(db, user, unread_only, page, limit)
    return NotificationListResponse(
        notifications=[NotificationResponse.model_validate(n) for n in notifications],
        unread_count=unread,
        pagination=_pagination(total, page, limit),
    )


@router.patch("/notifications/{notification_id}", response_model=NotificationResponse)
async def update_notification(
    notification_id: UUID,
    request: NotificationUpdateRequest,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await mark_notification(db, user, notification_id, request.is_read)
