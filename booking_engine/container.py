"""Builds the booking engine from settings, one set of collaborators per process."""

from dataclasses import dataclass
from typing import Optional

from .bookings import BookingService, Clock, utc_clock
from .config import Settings
from .database import Database
from .fees import FeeCalculator
from .locks import JobLock, RedisJobLock
from .notifications import HttpNotificationService, NotificationService
from .scheduler import JobRunner
from .stores import (
    SQLAlchemyBookingConfigStore,
    SQLAlchemyBookingStore,
    SQLAlchemyFeeConfigStore,
    SQLAlchemyPropertyStore,
)
from .sweeps import AutoCancelSweep, FundReleaseSweep
from .wallet import SQLAlchemyWalletService, WalletService


@dataclass
class BookingEngine:
    settings: Settings
    db: Database
    fees: FeeCalculator
    wallet: WalletService
    notifier: NotificationService
    bookings: BookingService
    auto_cancel: AutoCancelSweep
    fund_release: FundReleaseSweep
    jobs: JobRunner

    async def close(self) -> None:
        if isinstance(self.notifier, HttpNotificationService):
            await self.notifier.close()
        if isinstance(self.jobs.lock, RedisJobLock):
            await self.jobs.lock.close()
        await self.db.dispose()


def build_engine(
    settings: Settings,
    db: Optional[Database] = None,
    wallet: Optional[WalletService] = None,
    notifier: Optional[NotificationService] = None,
    job_lock: Optional[JobLock] = None,
    clock: Clock = utc_clock,
) -> BookingEngine:
    db = db or Database(settings.DATABASE_URL)
    wallet = wallet or SQLAlchemyWalletService(db, currency=settings.CURRENCY, clock=clock)
    notifier = notifier or HttpNotificationService(
        settings.NOTIFICATION_SERVICE_URL, timeout=settings.EXTERNAL_CALL_TIMEOUT
    )
    job_lock = job_lock or RedisJobLock(settings.REDIS_URL, ttl=settings.JOB_LOCK_TTL)

    booking_store = SQLAlchemyBookingStore(db)
    fees = FeeCalculator(SQLAlchemyFeeConfigStore(db), settings)
    bookings = BookingService(
        SQLAlchemyPropertyStore(db),
        booking_store,
        fees,
        wallet,
        notifier,
        settings,
        clock=clock,
    )
    auto_cancel = AutoCancelSweep(
        bookings,
        booking_store,
        SQLAlchemyBookingConfigStore(db),
        wallet,
        notifier,
        settings,
        clock=clock,
    )
    fund_release = FundReleaseSweep(booking_store, wallet, notifier, settings, clock=clock)

    jobs = JobRunner(job_lock)
    jobs.register(AutoCancelSweep.name, "hourly at minute 0", auto_cancel.run)
    jobs.register(FundReleaseSweep.name, f"daily at 00:00 {settings.TIMEZONE}", fund_release.run)

    return BookingEngine(
        settings=settings,
        db=db,
        fees=fees,
        wallet=wallet,
        notifier=notifier,
        bookings=bookings,
        auto_cancel=auto_cancel,
        fund_release=fund_release,
        jobs=jobs,
    )
