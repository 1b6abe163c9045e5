"""
Booking Engine Schemas
======================

Pydantic v2 request/response models shared by the services and the HTTP
router. Monetary values are Decimals quantized to two places.
"""

from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator

from .models import BookingStatus, BookingType, PaymentStatus


# =============================================================================
# FEES
# =============================================================================

class FeeBreakdown(BaseModel):
    service_fee: Decimal
    tax_amount: Decimal
    platform_fee: Decimal
    agency_fee: Decimal
    total_fees: Decimal
    net_amount: Decimal
    gross_amount: Decimal
    # True when the default percentages were used instead of the fee table
    fallback: bool = False


class FeeLine(BaseModel):
    type: str
    description: str
    value_type: str
    value: Decimal
    amount: Decimal


class DetailedFeeBreakdown(FeeBreakdown):
    breakdown: list[FeeLine] = Field(default_factory=list)


class FeeQuoteRequest(BaseModel):
    base_price: Decimal
    property_type: str = Field(min_length=1, max_length=50)


# =============================================================================
# BOOKINGS
# =============================================================================

class BookingRequest(BaseModel):
    property_id: UUID
    booking_type: BookingType
    base_price: Decimal
    check_in_date: Optional[date] = None
    check_out_date: Optional[date] = None
    inspection_date: Optional[datetime] = None
    inspection_time: Optional[time] = None
    number_of_guests: int = Field(default=1, ge=1, le=50)
    discount_amount: Decimal = Decimal("0")
    guest_name: Optional[str] = Field(default=None, max_length=200)
    guest_phone: Optional[str] = Field(default=None, max_length=20)
    guest_email: Optional[EmailStr] = None
    special_requests: Optional[str] = Field(default=None, max_length=1000)

    @field_validator("check_out_date")
    @classmethod
    def check_out_after_check_in(cls, v: Optional[date], info) -> Optional[date]:
        check_in = info.data.get("check_in_date")
        if v and check_in and v <= check_in:
            raise ValueError("Check-out must be after check-in")
        return v

    @field_validator("discount_amount")
    @classmethod
    def discount_not_negative(cls, v: Decimal) -> Decimal:
        if v < 0:
            raise ValueError("Discount cannot be negative")
        return v

    @model_validator(mode="after")
    def dates_match_booking_type(self) -> "BookingRequest":
        if self.booking_type == BookingType.SALE_INSPECTION:
            if self.inspection_date is None:
                raise ValueError("inspection_date is required for sale_inspection bookings")
        elif self.check_in_date is None or self.check_out_date is None:
            raise ValueError("check_in_date and check_out_date are required")
        return self

    @property
    def number_of_nights(self) -> Optional[int]:
        if self.check_in_date and self.check_out_date:
            return (self.check_out_date - self.check_in_date).days
        return None


class RejectRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=1000)


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=1000)


class PaymentRequest(BaseModel):
    amount: Decimal
    reference: Optional[str] = Field(default=None, max_length=100)


class BookingResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    property_id: UUID
    user_id: UUID
    owner_id: UUID
    booking_type: BookingType
    status: BookingStatus
    payment_status: PaymentStatus
    check_in_date: Optional[date] = None
    check_out_date: Optional[date] = None
    inspection_date: Optional[datetime] = None
    inspection_time: Optional[time] = None
    number_of_nights: Optional[int] = None
    number_of_guests: int
    base_price: Decimal
    service_fee: Decimal
    tax_amount: Decimal
    discount_amount: Decimal
    total_price: Decimal
    amount_paid: Decimal = Decimal("0")
    currency: str
    fee_breakdown: Optional[dict[str, Any]] = None
    special_requests: Optional[str] = None
    owner_notes: Optional[str] = None
    cancellation_reason: Optional[str] = None
    cancelled_by: Optional[UUID] = None
    cancelled_at: Optional[datetime] = None
    auto_cancelled: bool = False
    confirmed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime


class CancelResult(BaseModel):
    booking: BookingResponse
    refund_status: Optional[str] = None  # 'refunded', 'failed' or None
    refund_amount: Optional[Decimal] = None
    refund_error: Optional[str] = None


# =============================================================================
# SWEEPS & JOBS
# =============================================================================

class SweepSummary(BaseModel):
    success: bool = True
    cancelled: int = 0
    refunded: int = 0
    released: int = 0
    skipped: int = 0
    failed: int = 0
    errors: list[dict[str, Any]] = Field(default_factory=list)
    error: Optional[str] = None


class JobStatus(BaseModel):
    name: str
    schedule: str
    running: bool
    last_started_at: Optional[datetime] = None
    last_finished_at: Optional[datetime] = None
    last_outcome: Optional[str] = None


class JobRunResult(BaseModel):
    name: str
    outcome: str  # 'completed', 'failed', 'skipped'
    duration_seconds: float = 0.0
    result: Optional[dict[str, Any]] = None
    error: Optional[str] = None
