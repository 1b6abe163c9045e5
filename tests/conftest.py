import uuid
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional, Set

import pytest
from sqlalchemy.pool import NullPool

from booking_engine.config import Settings
from booking_engine.container import build_engine
from booking_engine.database import Database
from booking_engine.locks import LocalJobLock
from booking_engine.models import Booking, BookingConfig, BookingFeeConfig, BookingType, Property
from booking_engine.notifications import NotificationService
from booking_engine.schemas import BookingRequest
from booking_engine.wallet import SQLAlchemyWalletService

# Midday in Lagos
NOW = datetime(2026, 3, 10, 11, 0, tzinfo=timezone.utc)


class FixedClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class RecordingNotifier(NotificationService):
    def __init__(self):
        self.sent = []
        self.fail = False

    async def notify(self, user_id, template, data):
        if self.fail:
            raise RuntimeError("notification service down")
        self.sent.append((user_id, template, data))

    def templates_for(self, user_id):
        return [template for uid, template, _ in self.sent if uid == user_id]


class FlakyWallet(SQLAlchemyWalletService):
    """Real wallet that can be told to fail for chosen bookings."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.fail_refunds_for: Set[uuid.UUID] = set()
        self.fail_releases_for: Set[uuid.UUID] = set()

    async def refund(self, booking_id, user_id, amount, reason="Booking cancelled"):
        if booking_id in self.fail_refunds_for:
            raise RuntimeError("wallet unavailable")
        return await super().refund(booking_id, user_id, amount, reason)

    async def release_hold(self, booking_id):
        if booking_id in self.fail_releases_for:
            raise RuntimeError("wallet unavailable")
        return await super().release_hold(booking_id)


@pytest.fixture
def settings():
    return Settings(
        DATABASE_URL="sqlite+aiosqlite://",
        REDIS_URL="redis://localhost:6379/15",
        EXTERNAL_CALL_TIMEOUT=2,
        AUTO_CANCEL_HOURS=24,
        LOG_JSON=False,
    )


@pytest.fixture
def clock():
    return FixedClock(NOW)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
async def db(tmp_path):
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'bookings.db'}", poolclass=NullPool)
    await database.create_all()
    yield database
    await database.dispose()


@pytest.fixture
def wallet(db, clock):
    return FlakyWallet(db, currency="NGN", clock=clock)


@pytest.fixture
def engine(settings, db, wallet, notifier, clock):
    return build_engine(
        settings,
        db=db,
        wallet=wallet,
        notifier=notifier,
        job_lock=LocalJobLock(),
        clock=clock,
    )


@pytest.fixture
def owner_id():
    return uuid.uuid4()


@pytest.fixture
def guest_id():
    return uuid.uuid4()


@pytest.fixture
async def apartment(db, owner_id):
    prop = Property(owner_id=owner_id, property_type="apartment", title="2 bed apartment, Lekki")
    async with db.session() as session:
        session.add(prop)
        await session.commit()
    return prop


@pytest.fixture
async def standard_fees(db):
    await add_fee_config(db, "service_fee", "5", property_type="apartment")
    await add_fee_config(db, "tax", "2")


async def add_fee_config(
    db: Database,
    fee_type: str,
    value: str,
    value_type: str = "percentage",
    property_type: Optional[str] = None,
    is_active: bool = True,
    description: Optional[str] = None,
) -> BookingFeeConfig:
    config = BookingFeeConfig(
        fee_type=fee_type,
        value=Decimal(value),
        value_type=value_type,
        property_type=property_type,
        is_active=is_active,
        description=description,
    )
    async with db.session() as session:
        session.add(config)
        await session.commit()
    return config


async def set_booking_config(db: Database, key: str, value: str):
    async with db.session() as session:
        session.add(BookingConfig(key=key, value=value))
        await session.commit()


async def reload(db: Database, booking_id) -> Booking:
    async with db.session() as session:
        return await session.get(Booking, booking_id)


def stay(property_id, check_in: date, nights: int = 2, base_price: str = "100000", **kwargs) -> BookingRequest:
    return BookingRequest(
        property_id=property_id,
        booking_type=BookingType.SHORTLET,
        base_price=Decimal(base_price),
        check_in_date=check_in,
        check_out_date=check_in + timedelta(days=nights),
        **kwargs,
    )
