"""
Booking Engine Models
=====================

SQLAlchemy 2.0 declarative models for bookings, fee configuration and the
wallet records that back fund holds. Status columns store the string value
of the enums below.
"""

import uuid
from datetime import date, datetime, time, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Time,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# ENUMS
# =============================================================================

class BookingType(str, Enum):
    SHORTLET = "shortlet"
    RENTAL = "rental"
    SALE_INSPECTION = "sale_inspection"


class BookingStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    REJECTED = "rejected"
    EXPIRED = "expired"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PARTIAL = "partial"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class FeeType(str, Enum):
    SERVICE_FEE = "service_fee"
    TAX = "tax"
    PLATFORM_FEE = "platform_fee"
    AGENCY_FEE = "agency_fee"


class FeeValueType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


class WalletTransactionType(str, Enum):
    CREDIT = "credit"
    DEBIT = "debit"
    REFUND = "refund"
    TRANSFER_IN = "transfer_in"


# Booking types that occupy a date range on the property calendar
DATED_BOOKING_TYPES = (BookingType.SHORTLET.value, BookingType.RENTAL.value)

# Statuses that block the calendar for other requests
ACTIVE_BOOKING_STATUSES = (BookingStatus.PENDING.value, BookingStatus.CONFIRMED.value)

# Payment states holding guest money that must be returned on cancellation
REFUNDABLE_PAYMENT_STATUSES = (PaymentStatus.COMPLETED.value, PaymentStatus.PARTIAL.value)


class Base(DeclarativeBase):
    pass


# =============================================================================
# PROPERTY
# =============================================================================

class Property(Base):
    """Listing reference; only the fields the booking engine reads."""

    __tablename__ = "properties"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    property_type: Mapped[str] = mapped_column(String(50), nullable=False)
    title: Mapped[Optional[str]] = mapped_column(String(255))
    status: Mapped[str] = mapped_column(String(20), default="active")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


# =============================================================================
# BOOKING
# =============================================================================

class Booking(Base):
    """A reservation or inspection request against a property."""

    __tablename__ = "bookings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    property_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("properties.id"), nullable=False
    )
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    owner_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    booking_type: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=BookingStatus.PENDING.value
    )

    # Dates
    check_in_date: Mapped[Optional[date]] = mapped_column(Date)
    check_out_date: Mapped[Optional[date]] = mapped_column(Date)
    inspection_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    inspection_time: Mapped[Optional[time]] = mapped_column(Time)
    number_of_nights: Mapped[Optional[int]] = mapped_column(Integer)
    number_of_guests: Mapped[int] = mapped_column(Integer, default=1)

    # Pricing
    base_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    service_fee: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"))
    tax_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"))
    discount_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"))
    total_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="NGN")
    fee_breakdown: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON)

    # Payment
    payment_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PaymentStatus.PENDING.value
    )
    amount_paid: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    payment_reference: Mapped[Optional[str]] = mapped_column(String(100))

    # Guest details
    guest_name: Mapped[Optional[str]] = mapped_column(String(200))
    guest_phone: Mapped[Optional[str]] = mapped_column(String(20))
    guest_email: Mapped[Optional[str]] = mapped_column(String(255))
    special_requests: Mapped[Optional[str]] = mapped_column(Text)

    # Lifecycle
    owner_notes: Mapped[Optional[str]] = mapped_column(Text)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text)
    cancelled_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    auto_cancelled: Mapped[bool] = mapped_column(Boolean, default=False)
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        Index("ix_bookings_property_status", "property_id", "status"),
        Index("ix_bookings_status_created", "status", "created_at"),
        Index("ix_bookings_check_in", "check_in_date"),
    )

    def __repr__(self) -> str:
        return f"<Booking(id={self.id}, property={self.property_id}, status={self.status})>"


# =============================================================================
# CONFIGURATION TABLES
# =============================================================================

class BookingFeeConfig(Base):
    """One administrator-managed component of the fee breakdown."""

    __tablename__ = "booking_fee_configs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    fee_type: Mapped[str] = mapped_column(String(20), nullable=False)
    # NULL applies to every property type
    property_type: Mapped[Optional[str]] = mapped_column(String(50))
    value_type: Mapped[str] = mapped_column(
        String(20), nullable=False, default=FeeValueType.PERCENTAGE.value
    )
    value: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    description: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        Index("idx_fee_type_active", "fee_type", "is_active"),
    )


class BookingConfig(Base):
    """Key/value settings editable by administrators (e.g. auto_cancel_hours)."""

    __tablename__ = "booking_configs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    key: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    value: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )


# =============================================================================
# WALLET
# =============================================================================

class Wallet(Base):
    __tablename__ = "wallets"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, unique=True)
    available_balance: Mapped[Decimal] = mapped_column(
        Numeric(15, 2), nullable=False, default=Decimal("0")
    )
    # Locked until the booking check-in date
    pending_balance: Mapped[Decimal] = mapped_column(
        Numeric(15, 2), nullable=False, default=Decimal("0")
    )
    currency: Mapped[str] = mapped_column(String(3), default="NGN")
    status: Mapped[str] = mapped_column(String(20), default="active")
    last_transaction_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class WalletTransaction(Base):
    __tablename__ = "wallet_transactions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    wallet_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("wallets.id"), nullable=False, index=True
    )
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    balance_before: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    balance_after: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    # Unique per movement; repeated references are rejected by the database
    reference: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    description: Mapped[Optional[str]] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String(20), default="completed")
    booking_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, index=True)
    details: Mapped[Optional[Dict[str, Any]]] = mapped_column("metadata", JSON)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class WalletHold(Base):
    """Owner funds collected for a booking, held until check-in."""

    __tablename__ = "wallet_holds"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bookings.id"), nullable=False, unique=True
    )
    owner_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    released: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    released_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    refunded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
