"""
Database Models
===============

SQLAlchemy 2.0 ORM models for users, properties, per-date availability
overrides, bookings, payments and notifications.

Double-booking protection is enforced twice: the booking controller checks
for overlaps before inserting, and on PostgreSQL an exclusion constraint over
(property_id, daterange) rejects overlapping active bookings regardless of
application-level races.
"""

import datetime as dt
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    DDL,
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    event,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# ENUMS
# =============================================================================

class UserRole(str, Enum):
    GUEST = "GUEST"
    HOST = "HOST"
    PROPERTY_MANAGER = "PROPERTY_MANAGER"
    ADMIN = "ADMIN"
    INVESTOR = "INVESTOR"


class BookingStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"
    COMPLETED = "COMPLETED"
    REJECTED = "REJECTED"


# Statuses that occupy the calendar
ACTIVE_BOOKING_STATUSES = (BookingStatus.PENDING.value, BookingStatus.CONFIRMED.value)


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"
    PARTIAL_REFUND = "PARTIAL_REFUND"


class PaymentProvider(str, Enum):
    STRIPE = "STRIPE"


class NotificationType(str, Enum):
    BOOKING_UPDATE = "BOOKING_UPDATE"
    PAYMENT_UPDATE = "PAYMENT_UPDATE"


# =============================================================================
# MODELS
# =============================================================================

class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    email: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    name: Mapped[Optional[str]] = mapped_column(String(255), default=None)
    role: Mapped[str] = mapped_column(String(32), default=UserRole.GUEST.value)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class PropertyManager(Base):
    __tablename__ = "property_managers"

    property_id: Mapped[UUID] = mapped_column(
        ForeignKey("properties.id", ondelete="CASCADE"), primary_key=True
    )
    manager_id: Mapped[UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )


class Property(Base):
    __tablename__ = "properties"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    owner_id: Mapped[UUID] = mapped_column(ForeignKey("users.id"), index=True)
    title: Mapped[str] = mapped_column(String(200))
    description: Mapped[str] = mapped_column(Text, default="")
    address: Mapped[str] = mapped_column(String(255), default="")
    city: Mapped[str] = mapped_column(String(120), default="")
    country: Mapped[str] = mapped_column(String(120), default="")
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    cleaning_fee: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), default=None)
    service_fee: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), default=None)
    max_guests: Mapped[int] = mapped_column(Integer)
    is_published: Mapped[bool] = mapped_column(Boolean, default=False)
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    managers: Mapped[list[PropertyManager]] = relationship(
        lazy="selectin", cascade="all, delete-orphan"
    )

    __table_args__ = (
        CheckConstraint("price >= 0", name="ck_properties_price_non_negative"),
        CheckConstraint("max_guests > 0", name="ck_properties_max_guests_positive"),
    )

    @property
    def manager_ids(self) -> set[UUID]:
        return {m.manager_id for m in self.managers}


class Availability(Base):
    """Per-date override of a property's default availability and price."""

    __tablename__ = "availability"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    property_id: Mapped[UUID] = mapped_column(
        ForeignKey("properties.id", ondelete="CASCADE"), index=True
    )
    date: Mapped[dt.date] = mapped_column(Date)
    is_available: Mapped[bool] = mapped_column(Boolean, default=True)
    price: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        UniqueConstraint("property_id", "date", name="uq_availability_property_date"),
    )


class Booking(Base):
    __tablename__ = "bookings"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    property_id: Mapped[UUID] = mapped_column(ForeignKey("properties.id"))
    guest_id: Mapped[UUID] = mapped_column(ForeignKey("users.id"), index=True)
    check_in_date: Mapped[date] = mapped_column(Date)
    # Exclusive: the checkout night is neither occupied nor charged
    check_out_date: Mapped[date] = mapped_column(Date)
    number_of_guests: Mapped[int] = mapped_column(Integer)
    total_price: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    status: Mapped[str] = mapped_column(String(20), default=BookingStatus.PENDING.value)
    special_requests: Mapped[Optional[str]] = mapped_column(Text, default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    # Declared before the `property` relationship, which shadows the builtin below it
    @property
    def num_nights(self) -> int:
        return (self.check_out_date - self.check_in_date).days

    property: Mapped[Property] = relationship(lazy="selectin")
    guest: Mapped[User] = relationship(lazy="selectin")
    payments: Mapped[list["Payment"]] = relationship(
        back_populates="booking",
        lazy="selectin",
        cascade="all, delete-orphan",
        order_by="Payment.created_at",
    )

    __table_args__ = (
        CheckConstraint("check_out_date > check_in_date", name="ck_bookings_date_order"),
        CheckConstraint("number_of_guests > 0", name="ck_bookings_guests_positive"),
        Index("ix_bookings_property_dates", "property_id", "check_in_date", "check_out_date"),
        Index("ix_bookings_status", "status"),
    )


class Payment(Base):
    __tablename__ = "payments"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    booking_id: Mapped[UUID] = mapped_column(
        ForeignKey("bookings.id", ondelete="CASCADE"), index=True
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    status: Mapped[str] = mapped_column(String(20), default=PaymentStatus.PENDING.value)
    provider: Mapped[str] = mapped_column(String(20), default=PaymentProvider.STRIPE.value)
    transaction_id: Mapped[Optional[str]] = mapped_column(String(255), default=None, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    booking: Mapped[Booking] = relationship(back_populates="payments")


class Notification(Base):
    """In-app notification; rows with no ``delivered_at`` are pending e-mail delivery."""

    __tablename__ = "notifications"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), index=True
    )
    type: Mapped[str] = mapped_column(String(32))
    title: Mapped[str] = mapped_column(String(255))
    message: Mapped[str] = mapped_column(Text)
    data: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, default=None)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False)
    delivery_attempts: Mapped[int] = mapped_column(Integer, default=0)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index("ix_notifications_pending", "delivered_at", "delivery_attempts"),
    )


# =============================================================================
# POSTGRESQL OVERLAP CONSTRAINT
# =============================================================================

# daterange '[)' matches the half-open overlap test used by the availability
# check: a checkout on day X does not collide with a check-in on day X.
event.listen(
    Base.metadata,
    "before_create",
    DDL("CREATE EXTENSION IF NOT EXISTS btree_gist").execute_if(dialect="postgresql"),
)
event.listen(
    Booking.__table__,
    "after_create",
    DDL(
        "ALTER TABLE bookings ADD CONSTRAINT bookings_no_overlap "
        "EXCLUDE USING gist ("
        "property_id WITH =, "
        "daterange(check_in_date, check_out_date, '[)') WITH &&"
        ") WHERE (status IN ('PENDING', 'CONFIRMED'))"
    ).execute_if(dialect="postgresql"),
)
