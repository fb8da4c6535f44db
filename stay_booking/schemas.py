"""
Request/Response Schemas
========================

Pydantic v2 models for the public API. Field names are snake_case in Python
and camelCase on the wire.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .models import BookingStatus, PaymentStatus, UserRole


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


# =============================================================================
# AUTH
# =============================================================================

class CurrentUser(BaseModel):
    id: UUID
    role: UserRole

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


# =============================================================================
# PROPERTIES
# =============================================================================

class PropertyCreateRequest(CamelModel):
    title: str = Field(min_length=1, max_length=200)
    description: str = ""
    address: str = ""
    city: str = ""
    country: str = ""
    price: Decimal = Field(ge=0, decimal_places=2)
    cleaning_fee: Optional[Decimal] = Field(default=None, ge=0, decimal_places=2)
    service_fee: Optional[Decimal] = Field(default=None, ge=0, decimal_places=2)
    max_guests: int = Field(ge=1)
    is_published: bool = False
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    manager_ids: list[UUID] = []


class PropertyUpdateRequest(CamelModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = None
    price: Optional[Decimal] = Field(default=None, ge=0, decimal_places=2)
    cleaning_fee: Optional[Decimal] = Field(default=None, ge=0, decimal_places=2)
    service_fee: Optional[Decimal] = Field(default=None, ge=0, decimal_places=2)
    max_guests: Optional[int] = Field(default=None, ge=1)
    is_published: Optional[bool] = None


class PropertyResponse(CamelModel):
    id: UUID
    owner_id: UUID
    title: str
    description: str
    address: str
    city: str
    country: str
    price: Decimal
    cleaning_fee: Optional[Decimal] = None
    service_fee: Optional[Decimal] = None
    max_guests: int
    is_published: bool
    currency: str
    manager_ids: list[UUID] = []

    @field_validator("manager_ids", mode="before")
    @classmethod
    def manager_ids_as_list(cls, v: Any) -> list:
        return sorted(v, key=str) if isinstance(v, set) else v


class PropertySummary(CamelModel):
    id: UUID
    title: str
    address: str
    city: str
    country: str
    owner_id: UUID


# =============================================================================
# AVAILABILITY & PRICING
# =============================================================================

class CalendarDay(CamelModel):
    date: date
    is_available: bool
    price: Decimal
    is_booked: bool
    booking_id: Optional[UUID] = None


class AvailabilityCalendarResponse(CamelModel):
    property_id: UUID
    start_date: date
    end_date: date
    base_price: Decimal
    availability: list[CalendarDay]


class AvailabilityEntry(CamelModel):
    date: date
    is_available: bool = True
    # Omitted: keep the stored override price. Explicit null: clear it.
    price: Optional[Decimal] = Field(default=None, ge=0, decimal_places=2)


class AvailabilityUpdateRequest(CamelModel):
    dates: list[AvailabilityEntry] = Field(min_length=1)


class AvailabilityUpdateResult(CamelModel):
    date: date
    status: str  # 'success' or 'error'
    message: Optional[str] = None
    is_available: Optional[bool] = None
    price: Optional[Decimal] = None


class AvailabilityUpdateResponse(CamelModel):
    results: list[AvailabilityUpdateResult]


class NightlyRate(CamelModel):
    date: date
    price: Decimal


class PriceBreakdown(CamelModel):
    nightly_rates: list[NightlyRate]
    subtotal: Decimal
    cleaning_fee: Decimal
    service_fee: Decimal
    total: Decimal
    currency: str


# =============================================================================
# BOOKINGS
# =============================================================================

class BookingCreateRequest(CamelModel):
    property_id: UUID
    check_in_date: date
    check_out_date: date
    number_of_guests: int = Field(gt=0)
    special_requests: Optional[str] = Field(default=None, max_length=2000)

    @field_validator("check_out_date")
    @classmethod
    def check_out_after_check_in(cls, v: date, info) -> date:
        check_in = info.data.get("check_in_date")
        if check_in and v <= check_in:
            raise ValueError("Check-out date must be after check-in date")
        return v


class BookingUpdateRequest(CamelModel):
    status: Optional[BookingStatus] = None
    special_requests: Optional[str] = Field(default=None, max_length=2000)


class PaymentResponse(CamelModel):
    id: UUID
    amount: Decimal
    currency: str
    status: PaymentStatus
    provider: str
    transaction_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class GuestSummary(CamelModel):
    id: UUID
    name: Optional[str] = None
    email: str


class BookingResponse(CamelModel):
    id: UUID
    property_id: UUID
    guest_id: UUID
    check_in_date: date
    check_out_date: date
    number_of_guests: int
    total_price: Decimal
    status: BookingStatus
    special_requests: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    property: PropertySummary
    guest: GuestSummary
    payments: list[PaymentResponse]


class PaginationInfo(CamelModel):
    total: int
    page: int
    limit: int
    pages: int


class BookingListResponse(CamelModel):
    bookings: list[BookingResponse]
    pagination: PaginationInfo


# =============================================================================
# PAYMENTS
# =============================================================================

class PaymentIntentRequest(CamelModel):
    booking_id: UUID


class PaymentIntentResponse(CamelModel):
    payment_id: UUID
    payment_intent_id: str
    client_secret: str
    amount: Decimal
    currency: str


# =============================================================================
# NOTIFICATIONS
# =============================================================================

class NotificationResponse(CamelModel):
    id: UUID
    type: str
    title: str
    message: str
    data: Optional[dict[str, Any]] = None
    is_read: bool
    created_at: datetime


class NotificationListResponse(CamelModel):
    notifications: list[NotificationResponse]
    unread_count: int
    pagination: PaginationInfo


class NotificationUpdateRequest(CamelModel):
    is_read: bool = True
