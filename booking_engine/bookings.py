"""
Booking Service
===============

Booking lifecycle: create, confirm, reject, cancel, complete, expire and
payment recording.

Status changes are written with a conditional update on the status read
before the change, so a user action racing a sweep fails with
ConcurrentModification instead of overwriting it. Validation and
authorization errors are raised before anything is written.
"""

import asyncio
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar
from uuid import UUID
from zoneinfo import ZoneInfo

import structlog
from prometheus_client import Counter

from .config import Settings
from .exceptions import ExternalServiceFailure, Forbidden, InvalidAmount, InvalidTransition, NotFound, PropertyUnavailable
from .fees import FeeCalculator, parse_amount, quantize
from .models import DATED_BOOKING_TYPES, REFUNDABLE_PAYMENT_STATUSES, Booking, BookingStatus, PaymentStatus
from .notifications import NotificationService, NotificationTemplate, notify_safely
from .schemas import BookingRequest, BookingResponse, CancelResult
from .state_machine import assert_transition
from .stores import BookingStore, PropertyStore
from .wallet import WalletService

logger = structlog.get_logger(__name__)

T = TypeVar("T")
Clock = Callable[[], datetime]

BOOKING_TRANSITIONS = Counter(
    "booking_transitions_total",
    "Booking status transitions by target status",
    ["status"],
)


def utc_clock() -> datetime:
    return datetime.now(timezone.utc)


def local_today(now: datetime, tz_name: str) -> date:
    """Calendar date of a moment in the marketplace timezone; naive values are UTC."""
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(ZoneInfo(tz_name)).date()


def refundable_amount(booking: Booking) -> Decimal:
    """What the guest has paid so far and gets back on cancellation."""
    paid = Decimal(booking.amount_paid or 0)
    if paid <= 0 and booking.payment_status == PaymentStatus.COMPLETED.value:
        return Decimal(booking.total_price)
    return paid


def owner_share_of(booking: Booking) -> Decimal:
    """Amount held for the owner: base price less platform and agency fees."""
    breakdown = booking.fee_breakdown or {}
    return (
        Decimal(booking.base_price)
        - Decimal(breakdown.get("platform_fee", "0"))
        - Decimal(breakdown.get("agency_fee", "0"))
    )


async def call_external(
    side_effect: str,
    booking_id: Any,
    call: Awaitable[T],
    timeout: float,
    amount: Optional[Decimal] = None,
) -> T:
    """
    Await a wallet call within timeout.

    Raises:
        ExternalServiceFailure: On any error or timeout, attributed to side_effect
    """
    try:
        return await asyncio.wait_for(call, timeout=timeout)
    except ExternalServiceFailure:
        raise
    except Exception as e:
        raise ExternalServiceFailure(side_effect, booking_id, cause=e, amount=amount) from e


class BookingService:
    def __init__(
        self,
        property_store: PropertyStore,
        booking_store: BookingStore,
        fee_calculator: FeeCalculator,
        wallet: WalletService,
        notifier: NotificationService,
        settings: Settings,
        clock: Clock = utc_clock,
    ):
        self.property_store = property_store
        self.booking_store = booking_store
        self.fee_calculator = fee_calculator
        self.wallet = wallet
        self.notifier = notifier
        self.settings = settings
        self.clock = clock

    # =========================================================================
    # HELPERS
    # =========================================================================

    async def _load(self, booking_id: UUID) -> Booking:
        booking = await self.booking_store.find_by_id(booking_id)
        if booking is None:
            raise NotFound("Booking", booking_id)
        return booking

    async def _notify(self, user_id: UUID, template: NotificationTemplate, booking: Booking, **extra):
        data: Dict[str, Any] = {
            "booking_id": booking.id,
            "property_id": booking.property_id,
            "currency": booking.currency,
            **extra,
        }
        await notify_safely(
            self.notifier, user_id, template, data, timeout=self.settings.EXTERNAL_CALL_TIMEOUT
        )

    def _record(self, booking: Booking, status: BookingStatus, **context):
        BOOKING_TRANSITIONS.labels(status=status.value).inc()
        logger.info(
            f"Booking {status.value}",
            booking_id=str(booking.id),
            property_id=str(booking.property_id),
            **context,
        )

    # =========================================================================
    # CREATE / READ
    # =========================================================================

    async def create_booking(self, user_id: UUID, request: BookingRequest) -> Booking:
        """
        Create a pending booking.

        Flow:
        1. Validate the price and load the property
        2. Reject overlapping pending/confirmed stays
        3. Price the booking through the fee calculator
        4. Persist with status=pending, payment_status=pending (the store
           re-checks the overlap in the same transaction)

        Raises:
            InvalidAmount: Non-positive price or discount larger than the total
            NotFound: Unknown property
            PropertyUnavailable: Dates overlap an active booking
        """
        base_price = quantize(parse_amount(request.base_price))

        prop = await self.property_store.get_property(request.property_id)
        if prop is None:
            raise NotFound("Property", request.property_id)

        if request.booking_type.value in DATED_BOOKING_TYPES:
            conflict = await self.property_store.find_overlapping_booking(
                request.property_id, request.check_in_date, request.check_out_date
            )
            if conflict is not None:
                raise PropertyUnavailable(request.property_id, conflict.id)

        fees = await self.fee_calculator.calculate_fees(base_price, prop.property_type)

        discount = quantize(request.discount_amount)
        total_price = base_price + fees.service_fee + fees.tax_amount - discount
        if total_price < 0:
            raise InvalidAmount(discount, "Discount exceeds the booking total")

        now = self.clock()
        booking = Booking(
            property_id=request.property_id,
            user_id=user_id,
            owner_id=prop.owner_id,
            booking_type=request.booking_type.value,
            status=BookingStatus.PENDING.value,
            payment_status=PaymentStatus.PENDING.value,
            amount_paid=Decimal("0"),
            check_in_date=request.check_in_date,
            check_out_date=request.check_out_date,
            inspection_date=request.inspection_date,
            inspection_time=request.inspection_time,
            number_of_nights=request.number_of_nights,
            number_of_guests=request.number_of_guests,
            base_price=base_price,
            service_fee=fees.service_fee,
            tax_amount=fees.tax_amount,
            discount_amount=discount,
            total_price=total_price,
            currency=self.settings.CURRENCY,
            fee_breakdown={
                "platform_fee": str(fees.platform_fee),
                "agency_fee": str(fees.agency_fee),
                "total_fees": str(fees.total_fees),
                "net_amount": str(fees.net_amount),
                "fallback": fees.fallback,
            },
            guest_name=request.guest_name,
            guest_phone=request.guest_phone,
            guest_email=request.guest_email,
            special_requests=request.special_requests,
            auto_cancelled=False,
            created_at=now,
            updated_at=now,
        )

        booking = await self.booking_store.create(booking)
        self._record(booking, BookingStatus.PENDING, user_id=str(user_id), total_price=str(total_price))
        return booking

    async def get_booking(self, booking_id: UUID, user_id: UUID) -> Booking:
        booking = await self._load(booking_id)
        if user_id not in (booking.user_id, booking.owner_id):
            raise Forbidden(user_id, "view", booking_id)
        return booking

    # =========================================================================
    # OWNER TRANSITIONS
    # =========================================================================

    async def confirm(self, booking_id: UUID, owner_id: UUID) -> Booking:
        booking = await self._load(booking_id)
        if booking.owner_id != owner_id:
            raise Forbidden(owner_id, "confirm", booking_id)
        assert_transition(booking_id, booking.status, BookingStatus.CONFIRMED.value)

        now = self.clock()
        booking = await self.booking_store.conditional_update(
            booking_id,
            BookingStatus.PENDING.value,
            {"status": BookingStatus.CONFIRMED.value, "confirmed_at": now, "updated_at": now},
        )
        self._record(booking, BookingStatus.CONFIRMED, owner_id=str(owner_id))
        await self._notify(booking.user_id, NotificationTemplate.BOOKING_CONFIRMED, booking)
        return booking

    async def reject(self, booking_id: UUID, owner_id: UUID, reason: Optional[str] = None) -> Booking:
        booking = await self._load(booking_id)
        if booking.owner_id != owner_id:
            raise Forbidden(owner_id, "reject", booking_id)
        assert_transition(booking_id, booking.status, BookingStatus.REJECTED.value)

        booking = await self.booking_store.conditional_update(
            booking_id,
            BookingStatus.PENDING.value,
            {"status": BookingStatus.REJECTED.value, "owner_notes": reason, "updated_at": self.clock()},
        )
        self._record(booking, BookingStatus.REJECTED, owner_id=str(owner_id))
        await self._notify(booking.user_id, NotificationTemplate.BOOKING_REJECTED, booking, reason=reason or "")
        return booking

    async def complete(self, booking_id: UUID, owner_id: UUID) -> Booking:
        booking = await self._load(booking_id)
        if booking.owner_id != owner_id:
            raise Forbidden(owner_id, "complete", booking_id)
        assert_transition(booking_id, booking.status, BookingStatus.COMPLETED.value)

        now = self.clock()
        today = local_today(now, self.settings.TIMEZONE)
        end_date = booking.check_out_date
        if end_date is None and booking.inspection_date is not None:
            end_date = local_today(booking.inspection_date, self.settings.TIMEZONE)
        if end_date is None or end_date > today:
            raise InvalidTransition(
                booking_id,
                booking.status,
                BookingStatus.COMPLETED.value,
                f"checkout/inspection date {end_date} has not been reached",
            )

        booking = await self.booking_store.conditional_update(
            booking_id,
            BookingStatus.CONFIRMED.value,
            {"status": BookingStatus.COMPLETED.value, "completed_at": now, "updated_at": now},
        )
        self._record(booking, BookingStatus.COMPLETED, owner_id=str(owner_id))
        await self._notify(booking.user_id, NotificationTemplate.BOOKING_COMPLETED, booking)
        return booking

    # =========================================================================
    # CANCELLATION
    # =========================================================================

    async def cancel(self, booking_id: UUID, user_id: UUID, reason: Optional[str] = None) -> CancelResult:
        """
        Cancel a pending or confirmed booking as its requester or owner.

        The status change is claimed first. Whatever the guest paid (completed
        or partial) is then refunded and payment_status moves to refunded. If
        the refund fails the booking stays cancelled, the result reports the
        failure and the auto-cancel sweep retries it on its next run.
        """
        booking = await self._load(booking_id)
        if user_id not in (booking.user_id, booking.owner_id):
            raise Forbidden(user_id, "cancel", booking_id)
        assert_transition(booking_id, booking.status, BookingStatus.CANCELLED.value)

        now = self.clock()
        booking = await self.booking_store.conditional_update(
            booking_id,
            booking.status,
            {
                "status": BookingStatus.CANCELLED.value,
                "cancellation_reason": reason,
                "cancelled_by": user_id,
                "cancelled_at": now,
                "updated_at": now,
            },
        )
        self._record(booking, BookingStatus.CANCELLED, cancelled_by=str(user_id))

        result = CancelResult(booking=BookingResponse.model_validate(booking))
        if booking.payment_status in REFUNDABLE_PAYMENT_STATUSES:
            result = await self._refund_cancelled(booking, reason or "Booking cancelled")

        counterpart = booking.owner_id if user_id == booking.user_id else booking.user_id
        await self._notify(counterpart, NotificationTemplate.BOOKING_CANCELLED, booking, reason=reason or "")
        return result

    async def _refund_cancelled(self, booking: Booking, reason: str) -> CancelResult:
        amount = refundable_amount(booking)
        try:
            await call_external(
                "refund",
                booking.id,
                self.wallet.refund(booking.id, booking.user_id, amount, reason),
                timeout=self.settings.EXTERNAL_CALL_TIMEOUT,
                amount=amount,
            )
        except ExternalServiceFailure as e:
            logger.error("Refund failed", booking_id=str(booking.id), amount=str(amount), error=e.message)
            return CancelResult(
                booking=BookingResponse.model_validate(booking),
                refund_status="failed",
                refund_amount=amount,
                refund_error=e.message,
            )

        booking = await self.booking_store.conditional_update(
            booking.id,
            BookingStatus.CANCELLED.value,
            {"payment_status": PaymentStatus.REFUNDED.value, "updated_at": self.clock()},
            expected_payment_status=booking.payment_status,
        )
        logger.info("Booking refunded", booking_id=str(booking.id), amount=str(amount))
        await self._notify(booking.user_id, NotificationTemplate.REFUND_PROCESSED, booking, amount=amount)
        return CancelResult(
            booking=BookingResponse.model_validate(booking),
            refund_status="refunded",
            refund_amount=amount,
        )

    # =========================================================================
    # SYSTEM TRANSITIONS
    # =========================================================================

    async def expire(self, booking_id: UUID, reason: Optional[str] = None) -> Booking:
        """
        Move a pending booking to expired (auto-cancel).

        Raises:
            ConcurrentModification: The booking is no longer pending
        """
        now = self.clock()
        booking = await self.booking_store.conditional_update(
            booking_id,
            BookingStatus.PENDING.value,
            {
                "status": BookingStatus.EXPIRED.value,
                "auto_cancelled": True,
                "cancellation_reason": reason,
                "cancelled_at": now,
                "updated_at": now,
            },
        )
        self._record(booking, BookingStatus.EXPIRED)
        return booking

    async def record_payment(self, booking_id: UUID, amount: Any, reference: Optional[str] = None) -> Booking:
        """
        Record a guest payment and hold the owner's share until check-in.

        Payments accumulate in amount_paid. The payment is completed once the
        running total reaches total_price and is partial before that. Calling
        this again on a completed payment only re-attempts the hold, which is
        idempotent.

        Raises:
            InvalidAmount: Non-positive amount
            InvalidTransition: Booking is closed or its payment was refunded/failed
            ConcurrentModification: The payment state changed while recording
            ExternalServiceFailure: The hold could not be placed
        """
        paid = quantize(parse_amount(amount))
        booking = await self._load(booking_id)

        if booking.status not in (BookingStatus.PENDING.value, BookingStatus.CONFIRMED.value):
            raise InvalidTransition(booking_id, booking.status, booking.status, "booking is closed")

        if booking.payment_status != PaymentStatus.COMPLETED.value:
            if booking.payment_status not in (PaymentStatus.PENDING.value, PaymentStatus.PARTIAL.value):
                raise InvalidTransition(
                    booking_id,
                    booking.payment_status,
                    PaymentStatus.COMPLETED.value,
                    "payment cannot be recorded",
                )
            booking = await self.booking_store.add_payment(
                booking_id,
                booking.status,
                booking.payment_status,
                paid,
                {"payment_reference": reference, "updated_at": self.clock()},
            )
            logger.info(
                "Payment recorded",
                booking_id=str(booking_id),
                amount=str(paid),
                amount_paid=str(booking.amount_paid),
                payment_status=booking.payment_status,
            )

        if booking.payment_status == PaymentStatus.COMPLETED.value:
            owner_share = owner_share_of(booking)
            await call_external(
                "hold",
                booking_id,
                self.wallet.hold_funds(booking.id, booking.owner_id, owner_share),
                timeout=self.settings.EXTERNAL_CALL_TIMEOUT,
                amount=owner_share,
            )

        return booking
