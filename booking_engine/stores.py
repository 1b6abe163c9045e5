"""
Booking Engine Stores
=====================

Persistence interfaces the booking engine depends on, plus their SQLAlchemy
implementations. Every status change goes through a conditional update that
only matches the row while it still holds the expected status.
"""

from abc import ABC, abstractmethod
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional
from uuid import UUID
from zoneinfo import ZoneInfo

import structlog
from sqlalchemy import and_, case, or_, select, update
from sqlalchemy.exc import IntegrityError

from .database import Database
from .exceptions import ConcurrentModification, NotFound, PropertyUnavailable
from .models import (
    ACTIVE_BOOKING_STATUSES,
    DATED_BOOKING_TYPES,
    REFUNDABLE_PAYMENT_STATUSES,
    Booking,
    BookingConfig,
    BookingFeeConfig,
    BookingStatus,
    PaymentStatus,
    Property,
    WalletHold,
)

logger = structlog.get_logger(__name__)


# =============================================================================
# INTERFACES
# =============================================================================

class PropertyStore(ABC):
    @abstractmethod
    async def get_property(self, property_id: UUID) -> Optional[Property]:
        pass

    @abstractmethod
    async def get_owner_id(self, property_id: UUID) -> UUID:
        """Raises NotFound for an unknown property."""
        pass

    @abstractmethod
    async def find_overlapping_booking(
        self,
        property_id: UUID,
        check_in: date,
        check_out: date,
    ) -> Optional[Booking]:
        """
        Return a pending/confirmed booking whose stay overlaps [check_in, check_out).

        A stay that ends on the day another begins is not an overlap.
        """
        pass


class BookingStore(ABC):
    @abstractmethod
    async def create(self, booking: Booking) -> Booking:
        """Persist a new booking, re-checking availability atomically."""
        pass

    @abstractmethod
    async def find_by_id(self, booking_id: UUID) -> Optional[Booking]:
        pass

    @abstractmethod
    async def conditional_update(
        self,
        booking_id: UUID,
        expected_status: str,
        patch: Dict[str, Any],
        expected_payment_status: Optional[str] = None,
    ) -> Booking:
        """
        Apply patch only while the booking still holds expected_status.

        Raises:
            NotFound: No booking with this id
            ConcurrentModification: The booking moved on before the write
        """
        pass

    @abstractmethod
    async def add_payment(
        self,
        booking_id: UUID,
        expected_status: str,
        expected_payment_status: str,
        amount: Decimal,
        patch: Dict[str, Any],
    ) -> Booking:
        """
        Add amount to amount_paid and settle payment_status in one write.

        payment_status becomes completed once amount_paid reaches total_price
        and partial before that.
        """
        pass

    @abstractmethod
    async def find_pending_older_than(self, timeout: timedelta, now: datetime) -> List[Booking]:
        pass

    @abstractmethod
    async def find_due_for_release(self, on_date: date, tz_name: str = "UTC") -> List[Booking]:
        pass

    @abstractmethod
    async def find_unrefunded_cancellations(self) -> List[Booking]:
        """Cancelled or expired bookings still holding a guest payment."""
        pass


class FeeConfigStore(ABC):
    @abstractmethod
    async def find_active(self, property_type: Optional[str] = None) -> List[BookingFeeConfig]:
        pass


class BookingConfigStore(ABC):
    @abstractmethod
    async def get_numeric_value(self, key: str) -> Optional[Decimal]:
        pass


# =============================================================================
# SQLALCHEMY IMPLEMENTATIONS
# =============================================================================

def _overlap_query(property_id: UUID, check_in: date, check_out: date):
    return (
        select(Booking)
        .where(
            and_(
                Booking.property_id == property_id,
                Booking.booking_type.in_(DATED_BOOKING_TYPES),
                Booking.status.in_(ACTIVE_BOOKING_STATUSES),
                Booking.check_in_date < check_out,
                Booking.check_out_date > check_in,
            )
        )
        .limit(1)
    )


class SQLAlchemyPropertyStore(PropertyStore):
    def __init__(self, db: Database):
        self.db = db

    async def get_property(self, property_id: UUID) -> Optional[Property]:
        async with self.db.session() as session:
            return await session.get(Property, property_id)

    async def get_owner_id(self, property_id: UUID) -> UUID:
        prop = await self.get_property(property_id)
        if prop is None:
            raise NotFound("Property", property_id)
        return prop.owner_id

    async def find_overlapping_booking(
        self,
        property_id: UUID,
        check_in: date,
        check_out: date,
    ) -> Optional[Booking]:
        async with self.db.session() as session:
            result = await session.execute(_overlap_query(property_id, check_in, check_out))
            return result.scalar_one_or_none()


class SQLAlchemyBookingStore(BookingStore):
    def __init__(self, db: Database):
        self.db = db

    async def create(self, booking: Booking) -> Booking:
        async with self.db.session() as session:
            # Serialize creates per property (FOR UPDATE is a no-op on SQLite)
            await session.execute(
                select(Property.id).where(Property.id == booking.property_id).with_for_update()
            )

            if booking.booking_type in DATED_BOOKING_TYPES:
                result = await session.execute(
                    _overlap_query(booking.property_id, booking.check_in_date, booking.check_out_date)
                )
                conflict = result.scalar_one_or_none()
                if conflict is not None:
                    raise PropertyUnavailable(booking.property_id, conflict.id)

            session.add(booking)
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                logger.warning(
                    "Duplicate booking prevented by DB constraint",
                    property_id=str(booking.property_id),
                    error=str(e),
                )
                raise PropertyUnavailable(booking.property_id) from e

            return booking

    async def find_by_id(self, booking_id: UUID) -> Optional[Booking]:
        async with self.db.session() as session:
            return await session.get(Booking, booking_id)

    async def conditional_update(
        self,
        booking_id: UUID,
        expected_status: str,
        patch: Dict[str, Any],
        expected_payment_status: Optional[str] = None,
    ) -> Booking:
        conditions = [Booking.id == booking_id, Booking.status == expected_status]
        if expected_payment_status is not None:
            conditions.append(Booking.payment_status == expected_payment_status)

        async with self.db.session() as session:
            result = await session.execute(
                update(Booking)
                .where(and_(*conditions))
                .values(**patch)
                .execution_options(synchronize_session=False)
            )

            if result.rowcount != 1:
                await session.rollback()
                current = await session.get(Booking, booking_id)
                if current is None:
                    raise NotFound("Booking", booking_id)
                raise ConcurrentModification(booking_id, expected_status, current.status)

            await session.commit()

            refreshed = await session.execute(
                select(Booking)
                .where(Booking.id == booking_id)
                .execution_options(populate_existing=True)
            )
            return refreshed.scalar_one()

    async def add_payment(
        self,
        booking_id: UUID,
        expected_status: str,
        expected_payment_status: str,
        amount: Decimal,
        patch: Dict[str, Any],
    ) -> Booking:
        paid_after = Booking.amount_paid + amount
        settled = case(
            (paid_after >= Booking.total_price, PaymentStatus.COMPLETED.value),
            else_=PaymentStatus.PARTIAL.value,
        )
        return await self.conditional_update(
            booking_id,
            expected_status,
            {**patch, "amount_paid": paid_after, "payment_status": settled},
            expected_payment_status=expected_payment_status,
        )

    async def find_pending_older_than(self, timeout: timedelta, now: datetime) -> List[Booking]:
        cutoff = now - timeout
        async with self.db.session() as session:
            result = await session.execute(
                select(Booking)
                .where(
                    and_(
                        Booking.status == BookingStatus.PENDING.value,
                        Booking.created_at < cutoff,
                    )
                )
                .order_by(Booking.created_at)
            )
            return list(result.scalars().all())

    async def find_due_for_release(self, on_date: date, tz_name: str = "UTC") -> List[Booking]:
        # Inspection bookings have no check-in date; use the local inspection day
        day_end = datetime.combine(on_date + timedelta(days=1), time.min, tzinfo=ZoneInfo(tz_name))
        day_end = day_end.astimezone(timezone.utc)

        async with self.db.session() as session:
            result = await session.execute(
                select(Booking)
                .join(WalletHold, WalletHold.booking_id == Booking.id)
                .where(
                    and_(
                        Booking.status.in_(
                            (BookingStatus.CONFIRMED.value, BookingStatus.COMPLETED.value)
                        ),
                        or_(
                            Booking.check_in_date <= on_date,
                            and_(
                                Booking.check_in_date.is_(None),
                                Booking.inspection_date < day_end,
                            ),
                        ),
                        WalletHold.released.is_(False),
                        WalletHold.refunded_at.is_(None),
                    )
                )
                .order_by(Booking.check_in_date)
            )
            return list(result.scalars().all())

    async def find_unrefunded_cancellations(self) -> List[Booking]:
        async with self.db.session() as session:
            result = await session.execute(
                select(Booking).where(
                    and_(
                        Booking.status.in_(
                            (BookingStatus.EXPIRED.value, BookingStatus.CANCELLED.value)
                        ),
                        Booking.payment_status.in_(REFUNDABLE_PAYMENT_STATUSES),
                    )
                )
            )
            return list(result.scalars().all())


class SQLAlchemyFeeConfigStore(FeeConfigStore):
    def __init__(self, db: Database):
        self.db = db

    async def find_active(self, property_type: Optional[str] = None) -> List[BookingFeeConfig]:
        query = select(BookingFeeConfig).where(BookingFeeConfig.is_active.is_(True))
        if property_type:
            query = query.where(
                or_(
                    BookingFeeConfig.property_type == property_type,
                    BookingFeeConfig.property_type.is_(None),
                )
            )
        query = query.order_by(BookingFeeConfig.fee_type.asc(), BookingFeeConfig.created_at.desc())

        async with self.db.session() as session:
            result = await session.execute(query)
            return list(result.scalars().all())


class SQLAlchemyBookingConfigStore(BookingConfigStore):
    def __init__(self, db: Database):
        self.db = db

    async def get_numeric_value(self, key: str) -> Optional[Decimal]:
        async with self.db.session() as session:
            result = await session.execute(
                select(BookingConfig.value).where(
                    and_(BookingConfig.key == key, BookingConfig.is_active.is_(True))
                )
            )
            raw = result.scalar_one_or_none()

        if raw is None:
            return None
        try:
            return Decimal(str(raw).strip())
        except InvalidOperation:
            logger.warning("Non-numeric booking config value", key=key, value=raw)
            return None
