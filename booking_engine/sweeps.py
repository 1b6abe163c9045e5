"""
Scheduled Sweeps
================

AutoCancelSweep
    Hourly. Expires pending bookings the owner did not confirm in time and
    refunds whatever the guest paid. Refunds that failed, here or during a
    user cancel, are retried on the next run.

FundReleaseSweep
    Daily. Releases held owner funds once the check-in date is reached.

Each booking is processed independently: a failure is counted and logged
and the sweep moves on. A booking that another process already moved
(ConcurrentModification) is skipped without being counted as a failure.
"""

import time
from datetime import datetime, timedelta
from typing import Optional, Set
from uuid import UUID

import structlog
from prometheus_client import Counter, Histogram

from .bookings import BookingService, Clock, call_external, local_today, owner_share_of, refundable_amount, utc_clock
from .config import Settings
from .exceptions import ConcurrentModification, ExternalServiceFailure
from .models import REFUNDABLE_PAYMENT_STATUSES, Booking, PaymentStatus
from .notifications import NotificationService, NotificationTemplate, notify_safely
from .schemas import SweepSummary
from .stores import BookingConfigStore, BookingStore
from .wallet import WalletService

logger = structlog.get_logger(__name__)


# =============================================================================
# METRICS
# =============================================================================

SWEEP_ITEMS = Counter(
    "booking_sweep_items_total",
    "Bookings processed by sweeps",
    ["sweep", "outcome"],  # outcome: cancelled, refunded, released, skipped, failed
)

SWEEP_DURATION = Histogram(
    "booking_sweep_duration_seconds",
    "Sweep run duration",
    ["sweep"],
    buckets=[0.1, 0.5, 1, 5, 10, 30, 60, 300],
)

AUTO_CANCEL_HOURS_KEY = "auto_cancel_hours"
DEFAULT_AUTO_CANCEL_HOURS = 24.0


# =============================================================================
# AUTO-CANCEL
# =============================================================================

class AutoCancelSweep:
    name = "auto_cancel"

    def __init__(
        self,
        booking_service: BookingService,
        booking_store: BookingStore,
        config_store: BookingConfigStore,
        wallet: WalletService,
        notifier: NotificationService,
        settings: Settings,
        clock: Clock = utc_clock,
    ):
        self.booking_service = booking_service
        self.booking_store = booking_store
        self.config_store = config_store
        self.wallet = wallet
        self.notifier = notifier
        self.settings = settings
        self.clock = clock

    async def resolve_timeout_hours(self) -> float:
        """booking_configs row, then Settings.AUTO_CANCEL_HOURS, then 24."""
        try:
            value = await self.config_store.get_numeric_value(AUTO_CANCEL_HOURS_KEY)
            if value is not None and value > 0:
                return float(value)
        except Exception as e:
            logger.warning("Could not read auto-cancel config, using settings", error=str(e))

        return float(self.settings.AUTO_CANCEL_HOURS or DEFAULT_AUTO_CANCEL_HOURS)

    async def _notify(self, user_id: UUID, template: NotificationTemplate, booking: Booking, **extra):
        data = {"booking_id": booking.id, "property_id": booking.property_id, "currency": booking.currency, **extra}
        await notify_safely(self.notifier, user_id, template, data, timeout=self.settings.EXTERNAL_CALL_TIMEOUT)

    async def _refund(self, booking: Booking, summary: SweepSummary) -> bool:
        amount = refundable_amount(booking)
        reason = "Booking auto-cancelled" if booking.auto_cancelled else "Booking cancelled"
        try:
            await call_external(
                "refund",
                booking.id,
                self.wallet.refund(booking.id, booking.user_id, amount, reason),
                timeout=self.settings.EXTERNAL_CALL_TIMEOUT,
                amount=amount,
            )
            await self.booking_store.conditional_update(
                booking.id,
                booking.status,
                {"payment_status": PaymentStatus.REFUNDED.value, "updated_at": self.clock()},
                expected_payment_status=booking.payment_status,
            )
        except ConcurrentModification:
            summary.skipped += 1
            SWEEP_ITEMS.labels(sweep=self.name, outcome="skipped").inc()
            logger.info("Refund already recorded by another run", booking_id=str(booking.id))
            return False
        except Exception as e:
            summary.failed += 1
            summary.errors.append({"booking_id": str(booking.id), "side_effect": "refund", "error": str(e)})
            SWEEP_ITEMS.labels(sweep=self.name, outcome="failed").inc()
            logger.error("Auto-cancel refund failed", booking_id=str(booking.id), amount=str(amount), error=str(e))
            return False

        summary.refunded += 1
        SWEEP_ITEMS.labels(sweep=self.name, outcome="refunded").inc()
        logger.info("Guest refunded", booking_id=str(booking.id), amount=str(amount))
        await self._notify(booking.user_id, NotificationTemplate.REFUND_PROCESSED, booking, amount=amount)
        return True

    async def _process(self, booking: Booking, hours: float, summary: SweepSummary):
        try:
            expired = await self.booking_service.expire(
                booking.id,
                reason=f"Owner did not confirm within {hours:g} hours",
            )
        except ConcurrentModification as e:
            summary.skipped += 1
            SWEEP_ITEMS.labels(sweep=self.name, outcome="skipped").inc()
            logger.info("Booking already handled, skipping", booking_id=str(booking.id), status=e.current_status)
            return
        except Exception as e:
            summary.failed += 1
            summary.errors.append({"booking_id": str(booking.id), "side_effect": "expire", "error": str(e)})
            SWEEP_ITEMS.labels(sweep=self.name, outcome="failed").inc()
            logger.error("Failed to auto-cancel booking", booking_id=str(booking.id), error=str(e))
            return

        summary.cancelled += 1
        SWEEP_ITEMS.labels(sweep=self.name, outcome="cancelled").inc()

        if expired.payment_status in REFUNDABLE_PAYMENT_STATUSES:
            await self._refund(expired, summary)

        await self._notify(expired.user_id, NotificationTemplate.BOOKING_AUTO_CANCELLED, expired, hours=f"{hours:g}")
        await self._notify(expired.owner_id, NotificationTemplate.BOOKING_MISSED_CONFIRMATION, expired, hours=f"{hours:g}")

    async def run(self) -> SweepSummary:
        started = time.monotonic()
        now = self.clock()
        hours = await self.resolve_timeout_hours()

        logger.info("Auto-cancel sweep started", timeout_hours=hours)

        try:
            bookings = await self.booking_store.find_pending_older_than(timedelta(hours=hours), now)
        except Exception as e:
            logger.error("Auto-cancel lookup failed", error=str(e))
            return SweepSummary(success=False, error=str(e))

        summary = SweepSummary()
        processed: Set[UUID] = set()
        for booking in bookings:
            processed.add(booking.id)
            await self._process(booking, hours, summary)

        # Refunds that failed here or during a user cancel on an earlier run
        try:
            retries = await self.booking_store.find_unrefunded_cancellations()
        except Exception as e:
            logger.error("Refund retry lookup failed", error=str(e))
            retries = []

        for booking in retries:
            if booking.id not in processed:
                await self._refund(booking, summary)

        duration = time.monotonic() - started
        SWEEP_DURATION.labels(sweep=self.name).observe(duration)
        logger.info(
            "Auto-cancel sweep completed",
            found=len(bookings),
            cancelled=summary.cancelled,
            refunded=summary.refunded,
            skipped=summary.skipped,
            failed=summary.failed,
            duration_seconds=round(duration, 3),
        )
        return summary


# =============================================================================
# FUND RELEASE
# =============================================================================

class FundReleaseSweep:
    name = "release_funds"

    def __init__(
        self,
        booking_store: BookingStore,
        wallet: WalletService,
        notifier: NotificationService,
        settings: Settings,
        clock: Clock = utc_clock,
    ):
        self.booking_store = booking_store
        self.wallet = wallet
        self.notifier = notifier
        self.settings = settings
        self.clock = clock

    async def run(self, today: Optional[datetime] = None) -> SweepSummary:
        started = time.monotonic()
        on_date = local_today(today or self.clock(), self.settings.TIMEZONE)

        logger.info("Fund release sweep started", date=on_date.isoformat())

        try:
            bookings = await self.booking_store.find_due_for_release(on_date, self.settings.TIMEZONE)
        except Exception as e:
            logger.error("Fund release lookup failed", error=str(e))
            return SweepSummary(success=False, error=str(e))

        summary = SweepSummary()
        for booking in bookings:
            try:
                moved = await call_external(
                    "release",
                    booking.id,
                    self.wallet.release_hold(booking.id),
                    timeout=self.settings.EXTERNAL_CALL_TIMEOUT,
                )
            except ExternalServiceFailure as e:
                summary.failed += 1
                summary.errors.append({"booking_id": str(booking.id), "side_effect": "release", "error": e.message})
                SWEEP_ITEMS.labels(sweep=self.name, outcome="failed").inc()
                logger.error("Failed to release funds", booking_id=str(booking.id), error=e.message)
                continue

            if not moved:
                summary.skipped += 1
                SWEEP_ITEMS.labels(sweep=self.name, outcome="skipped").inc()
                logger.info("Hold already released", booking_id=str(booking.id))
                continue

            summary.released += 1
            SWEEP_ITEMS.labels(sweep=self.name, outcome="released").inc()
            logger.info("Funds released", booking_id=str(booking.id), owner_id=str(booking.owner_id))
            await notify_safely(
                self.notifier,
                booking.owner_id,
                NotificationTemplate.FUNDS_RELEASED,
                {
                    "booking_id": booking.id,
                    "amount": owner_share_of(booking),
                    "currency": booking.currency,
                },
                timeout=self.settings.EXTERNAL_CALL_TIMEOUT,
            )

        duration = time.monotonic() - started
        SWEEP_DURATION.labels(sweep=self.name).observe(duration)
        logger.info(
            "Fund release sweep completed",
            found=len(bookings),
            released=summary.released,
            skipped=summary.skipped,
            failed=summary.failed,
            duration_seconds=round(duration, 3),
        )
        return summary
