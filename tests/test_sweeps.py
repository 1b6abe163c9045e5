import uuid
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

from booking_engine.models import BookingStatus, BookingType, PaymentStatus
from booking_engine.notifications import NotificationTemplate
from booking_engine.schemas import BookingRequest
from tests.conftest import reload, set_booking_config, stay


async def create_pending(engine, property_id, guest_id, check_in, paid=False):
    booking = await engine.bookings.create_booking(guest_id, stay(property_id, check_in, nights=1))
    if paid:
        await engine.bookings.record_payment(booking.id, booking.total_price)
    return booking


# =============================================================================
# AUTO-CANCEL
# =============================================================================

async def test_expires_stale_pending_bookings(engine, apartment, guest_id, owner_id, clock, notifier):
    booking = await create_pending(engine, apartment.id, guest_id, date(2026, 4, 1))
    clock.advance(hours=25)

    summary = await engine.auto_cancel.run()

    assert summary.success is True
    assert (summary.cancelled, summary.refunded, summary.failed) == (1, 0, 0)
    stored = await reload(engine.db, booking.id)
    assert stored.status == BookingStatus.EXPIRED.value
    assert stored.auto_cancelled is True
    assert stored.cancelled_at is not None
    assert NotificationTemplate.BOOKING_AUTO_CANCELLED in notifier.templates_for(guest_id)
    assert NotificationTemplate.BOOKING_MISSED_CONFIRMATION in notifier.templates_for(owner_id)


async def test_leaves_recent_and_confirmed_bookings(engine, apartment, guest_id, owner_id, clock):
    confirmed = await create_pending(engine, apartment.id, guest_id, date(2026, 4, 1))
    await engine.bookings.confirm(confirmed.id, owner_id)
    clock.advance(hours=23)
    recent = await create_pending(engine, apartment.id, guest_id, date(2026, 4, 5))
    clock.advance(hours=2)

    summary = await engine.auto_cancel.run()

    assert summary.cancelled == 0
    assert (await reload(engine.db, confirmed.id)).status == BookingStatus.CONFIRMED.value
    assert (await reload(engine.db, recent.id)).status == BookingStatus.PENDING.value


async def test_one_refund_failure_does_not_abort_batch(engine, wallet, apartment, guest_id, clock):
    bookings = [
        await create_pending(engine, apartment.id, guest_id, date(2026, 4, 1) + timedelta(days=i), paid=True)
        for i in range(10)
    ]
    wallet.fail_refunds_for.add(bookings[3].id)
    clock.advance(hours=25)

    summary = await engine.auto_cancel.run()

    assert summary.success is True
    assert summary.cancelled == 10
    assert summary.refunded == 9
    assert summary.failed == 1
    assert summary.errors[0]["booking_id"] == str(bookings[3].id)

    failed = await reload(engine.db, bookings[3].id)
    assert failed.status == BookingStatus.EXPIRED.value
    assert failed.payment_status == PaymentStatus.COMPLETED.value
    refunded = await reload(engine.db, bookings[0].id)
    assert refunded.payment_status == PaymentStatus.REFUNDED.value


async def test_failed_refund_is_retried_on_next_run(engine, wallet, apartment, guest_id, clock):
    booking = await create_pending(engine, apartment.id, guest_id, date(2026, 4, 1), paid=True)
    wallet.fail_refunds_for.add(booking.id)
    clock.advance(hours=25)

    first = await engine.auto_cancel.run()
    assert (first.cancelled, first.failed) == (1, 1)

    wallet.fail_refunds_for.clear()
    clock.advance(hours=1)
    second = await engine.auto_cancel.run()

    assert (second.cancelled, second.refunded, second.failed) == (0, 1, 0)
    assert (await reload(engine.db, booking.id)).payment_status == PaymentStatus.REFUNDED.value
    guest_wallet = await engine.wallet.get_wallet(guest_id)
    assert guest_wallet.available_balance == Decimal(booking.total_price)


async def test_refund_reverses_owner_hold(engine, apartment, guest_id, owner_id, clock):
    await create_pending(engine, apartment.id, guest_id, date(2026, 4, 1), paid=True)
    clock.advance(hours=25)

    await engine.auto_cancel.run()

    owner_wallet = await engine.wallet.get_wallet(owner_id)
    assert owner_wallet.pending_balance == Decimal("0.00")
    assert owner_wallet.available_balance == Decimal("0.00")


async def test_rerun_is_a_no_op(engine, apartment, guest_id, clock):
    await create_pending(engine, apartment.id, guest_id, date(2026, 4, 1), paid=True)
    clock.advance(hours=25)

    await engine.auto_cancel.run()
    again = await engine.auto_cancel.run()

    assert (again.cancelled, again.refunded, again.failed) == (0, 0, 0)
    guest_wallet = await engine.wallet.get_wallet(guest_id)
    assert guest_wallet.available_balance == Decimal("107000.00")


async def test_booking_config_overrides_timeout(engine, db, apartment, guest_id, clock):
    await set_booking_config(db, "auto_cancel_hours", "2")
    booking = await create_pending(engine, apartment.id, guest_id, date(2026, 4, 1))
    clock.advance(hours=3)

    assert await engine.auto_cancel.resolve_timeout_hours() == 2.0
    summary = await engine.auto_cancel.run()

    assert summary.cancelled == 1
    assert (await reload(engine.db, booking.id)).cancellation_reason == "Owner did not confirm within 2 hours"


@pytest.mark.parametrize("value", ["0", "-4", "soon"])
async def test_invalid_config_value_falls_back_to_settings(engine, db, value):
    await set_booking_config(db, "auto_cancel_hours", value)

    assert await engine.auto_cancel.resolve_timeout_hours() == 24.0


async def test_lookup_failure_reports_error_without_mutations(engine, apartment, guest_id, clock, monkeypatch):
    booking = await create_pending(engine, apartment.id, guest_id, date(2026, 4, 1))
    clock.advance(hours=25)

    async def broken(*args, **kwargs):
        raise ConnectionError("database unavailable")

    monkeypatch.setattr(engine.auto_cancel.booking_store, "find_pending_older_than", broken)

    summary = await engine.auto_cancel.run()

    assert summary.success is False
    assert "database unavailable" in summary.error
    assert (await reload(engine.db, booking.id)).status == BookingStatus.PENDING.value


async def test_booking_confirmed_mid_sweep_is_skipped(engine, apartment, guest_id, owner_id, clock, monkeypatch):
    booking = await create_pending(engine, apartment.id, guest_id, date(2026, 4, 1))
    clock.advance(hours=25)
    store = engine.auto_cancel.booking_store
    original = store.find_pending_older_than

    async def confirm_after_lookup(*args, **kwargs):
        found = await original(*args, **kwargs)
        await engine.bookings.confirm(booking.id, owner_id)
        return found

    monkeypatch.setattr(store, "find_pending_older_than", confirm_after_lookup)

    summary = await engine.auto_cancel.run()

    assert summary.success is True
    assert (summary.cancelled, summary.skipped, summary.failed) == (0, 1, 0)
    assert (await reload(engine.db, booking.id)).status == BookingStatus.CONFIRMED.value


# =============================================================================
# FUND RELEASE
# =============================================================================

async def confirmed_paid(engine, property_id, guest_id, owner_id, check_in):
    booking = await create_pending(engine, property_id, guest_id, check_in, paid=True)
    return await engine.bookings.confirm(booking.id, owner_id)


async def test_releases_on_check_in_day(engine, apartment, guest_id, owner_id, notifier):
    booking = await confirmed_paid(engine, apartment.id, guest_id, owner_id, date(2026, 3, 10))

    summary = await engine.fund_release.run()

    assert summary.success is True
    assert summary.released == 1
    owner_wallet = await engine.wallet.get_wallet(owner_id)
    assert owner_wallet.available_balance == Decimal("100000.00")
    assert owner_wallet.pending_balance == Decimal("0.00")
    assert NotificationTemplate.FUNDS_RELEASED in notifier.templates_for(owner_id)
    assert booking.id


async def test_running_twice_credits_once(engine, apartment, guest_id, owner_id):
    await confirmed_paid(engine, apartment.id, guest_id, owner_id, date(2026, 3, 9))

    first = await engine.fund_release.run()
    second = await engine.fund_release.run()

    assert first.released == 1
    assert second.released == 0
    owner_wallet = await engine.wallet.get_wallet(owner_id)
    assert owner_wallet.available_balance == Decimal("100000.00")


async def test_future_check_in_is_not_released(engine, apartment, guest_id, owner_id, clock):
    await confirmed_paid(engine, apartment.id, guest_id, owner_id, date(2026, 3, 11))

    assert (await engine.fund_release.run()).released == 0

    clock.advance(days=1)
    assert (await engine.fund_release.run()).released == 1


async def test_pending_and_cancelled_bookings_are_not_released(engine, apartment, guest_id, owner_id):
    await create_pending(engine, apartment.id, guest_id, date(2026, 3, 9), paid=True)
    cancelled = await confirmed_paid(engine, apartment.id, guest_id, owner_id, date(2026, 3, 1))
    await engine.bookings.cancel(cancelled.id, guest_id)

    summary = await engine.fund_release.run()

    assert summary.released == 0
    owner_wallet = await engine.wallet.get_wallet(owner_id)
    assert owner_wallet.available_balance == Decimal("0.00")


async def test_completed_bookings_are_released(engine, apartment, guest_id, owner_id, clock):
    booking = await confirmed_paid(engine, apartment.id, guest_id, owner_id, date(2026, 3, 8))
    await engine.bookings.complete(booking.id, owner_id)

    assert (await engine.fund_release.run()).released == 1


async def test_release_failure_is_isolated_and_retried(engine, wallet, apartment, guest_id, owner_id):
    first = await confirmed_paid(engine, apartment.id, guest_id, owner_id, date(2026, 3, 5))
    second = await confirmed_paid(engine, apartment.id, uuid.uuid4(), owner_id, date(2026, 3, 7))
    wallet.fail_releases_for.add(first.id)

    summary = await engine.fund_release.run()

    assert (summary.released, summary.failed) == (1, 1)
    assert summary.errors[0]["booking_id"] == str(first.id)

    wallet.fail_releases_for.clear()
    retry = await engine.fund_release.run()

    assert (retry.released, retry.failed) == (1, 0)
    owner_wallet = await engine.wallet.get_wallet(owner_id)
    assert owner_wallet.available_balance == Decimal("200000.00")
    assert second.id


async def test_release_lookup_failure(engine, monkeypatch):
    async def broken(*args, **kwargs):
        raise ConnectionError("database unavailable")

    monkeypatch.setattr(engine.fund_release.booking_store, "find_due_for_release", broken)

    summary = await engine.fund_release.run()

    assert summary.success is False


# =============================================================================
# PARTIAL PAYMENTS AND REFUND RETRIES
# =============================================================================

async def test_partial_payment_is_refunded_on_expiry(engine, apartment, guest_id, clock):
    booking = await create_pending(engine, apartment.id, guest_id, date(2026, 4, 1))
    await engine.bookings.record_payment(booking.id, Decimal("50000"))
    clock.advance(hours=25)

    summary = await engine.auto_cancel.run()

    assert (summary.cancelled, summary.refunded, summary.failed) == (1, 1, 0)
    assert (await reload(engine.db, booking.id)).payment_status == PaymentStatus.REFUNDED.value
    guest_wallet = await engine.wallet.get_wallet(guest_id)
    assert guest_wallet.available_balance == Decimal("50000.00")


async def test_failed_cancel_refund_is_retried_by_sweep(engine, wallet, apartment, guest_id, owner_id, clock):
    booking = await create_pending(engine, apartment.id, guest_id, date(2026, 4, 1), paid=True)
    wallet.fail_refunds_for.add(booking.id)

    result = await engine.bookings.cancel(booking.id, guest_id)
    assert result.refund_status == "failed"

    wallet.fail_refunds_for.clear()
    clock.advance(days=30)
    summary = await engine.auto_cancel.run()
    released = await engine.fund_release.run()

    assert (summary.cancelled, summary.refunded, summary.failed) == (0, 1, 0)
    assert released.released == 0
    stored = await reload(engine.db, booking.id)
    assert stored.status == BookingStatus.CANCELLED.value
    assert stored.payment_status == PaymentStatus.REFUNDED.value
    assert (await engine.wallet.get_wallet(guest_id)).available_balance == Decimal("107000.00")
    owner_wallet = await engine.wallet.get_wallet(owner_id)
    assert owner_wallet.pending_balance == Decimal("0.00")
    assert owner_wallet.available_balance == Decimal("0.00")


async def test_inspection_released_on_local_inspection_day(engine, apartment, guest_id, owner_id, clock):
    # 23:30 UTC on the 10th is 00:30 on the 11th in Lagos
    request = BookingRequest(
        property_id=apartment.id,
        booking_type=BookingType.SALE_INSPECTION,
        base_price=Decimal("5000"),
        inspection_date=datetime(2026, 3, 10, 23, 30, tzinfo=timezone.utc),
    )
    booking = await engine.bookings.create_booking(guest_id, request)
    await engine.bookings.record_payment(booking.id, booking.total_price)
    await engine.bookings.confirm(booking.id, owner_id)

    assert (await engine.fund_release.run()).released == 0

    clock.advance(hours=13)
    assert (await engine.fund_release.run()).released == 1
