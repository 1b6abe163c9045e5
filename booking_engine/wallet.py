"""
Wallet Service
==============

Owner and guest wallet movements backing booking payments.

Every movement writes a WalletTransaction whose unique ``reference`` is the
idempotency key for that movement (``refund:<booking>``, ``release:<booking>``,
``hold:<booking>``). Replaying a movement with a reference that already exists
is a no-op.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Optional
from uuid import UUID

import structlog
from sqlalchemy import and_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .database import Database
from .models import Wallet, WalletHold, WalletTransaction, WalletTransactionType

logger = structlog.get_logger(__name__)

Clock = Callable[[], datetime]


def refund_reference(booking_id: UUID) -> str:
    return f"refund:{booking_id}"


def release_reference(booking_id: UUID) -> str:
    return f"release:{booking_id}"


def hold_reference(booking_id: UUID) -> str:
    return f"hold:{booking_id}"


class WalletService(ABC):
    """Interface the booking engine uses to move money."""

    @abstractmethod
    async def hold_funds(self, booking_id: UUID, owner_id: UUID, amount: Decimal) -> WalletHold:
        pass

    @abstractmethod
    async def refund(
        self,
        booking_id: UUID,
        user_id: UUID,
        amount: Decimal,
        reason: str = "Booking cancelled",
    ) -> WalletTransaction:
        pass

    @abstractmethod
    async def release_hold(self, booking_id: UUID) -> bool:
        """Move a held amount to the owner's available balance; False if already moved."""
        pass

    @abstractmethod
    async def credit_owner(
        self,
        owner_id: UUID,
        amount: Decimal,
        idempotency_key: str,
        booking_id: Optional[UUID] = None,
    ) -> bool:
        pass

    @abstractmethod
    async def get_wallet(self, user_id: UUID) -> Optional[Wallet]:
        pass


class SQLAlchemyWalletService(WalletService):
    def __init__(self, db: Database, currency: str = "NGN", clock: Optional[Clock] = None):
        self.db = db
        self.currency = currency
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    async def _get_or_create_wallet(self, session: AsyncSession, user_id: UUID) -> Wallet:
        result = await session.execute(select(Wallet).where(Wallet.user_id == user_id))
        wallet = result.scalar_one_or_none()
        if wallet is not None:
            return wallet

        wallet = Wallet(
            user_id=user_id,
            currency=self.currency,
            available_balance=Decimal("0"),
            pending_balance=Decimal("0"),
        )
        session.add(wallet)
        await session.flush()
        return wallet

    async def _find_transaction(self, session: AsyncSession, reference: str) -> Optional[WalletTransaction]:
        result = await session.execute(
            select(WalletTransaction).where(WalletTransaction.reference == reference)
        )
        return result.scalar_one_or_none()

    async def _move(
        self,
        session: AsyncSession,
        user_id: UUID,
        txn_type: WalletTransactionType,
        amount: Decimal,
        reference: str,
        description: str,
        booking_id: Optional[UUID] = None,
        available_delta: Decimal = Decimal("0"),
        pending_delta: Decimal = Decimal("0"),
        details: Optional[dict] = None,
    ) -> WalletTransaction:
        """Adjust balances in SQL and record the movement."""
        wallet = await self._get_or_create_wallet(session, user_id)
        now = self.clock()

        await session.execute(
            update(Wallet)
            .where(Wallet.id == wallet.id)
            .values(
                available_balance=Wallet.available_balance + available_delta,
                pending_balance=Wallet.pending_balance + pending_delta,
                last_transaction_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        refreshed = await session.execute(
            select(Wallet).where(Wallet.id == wallet.id).execution_options(populate_existing=True)
        )
        wallet = refreshed.scalar_one()

        balance_after = Decimal(wallet.available_balance) + Decimal(wallet.pending_balance)
        txn = WalletTransaction(
            wallet_id=wallet.id,
            user_id=user_id,
            type=txn_type.value,
            amount=amount,
            balance_before=balance_after - available_delta - pending_delta,
            balance_after=balance_after,
            reference=reference,
            description=description,
            booking_id=booking_id,
            details=details,
            created_at=now,
        )
        session.add(txn)
        return txn

    # -------------------------------------------------------------------------
    # Movements
    # -------------------------------------------------------------------------

    async def hold_funds(self, booking_id: UUID, owner_id: UUID, amount: Decimal) -> WalletHold:
        """Credit the owner's pending balance until check-in."""
        async with self.db.session() as session:
            existing = await session.execute(select(WalletHold).where(WalletHold.booking_id == booking_id))
            hold = existing.scalar_one_or_none()
            if hold is not None:
                logger.info("Hold already exists", booking_id=str(booking_id))
                return hold

            hold = WalletHold(booking_id=booking_id, owner_id=owner_id, amount=amount, created_at=self.clock())
            session.add(hold)
            await self._move(
                session,
                owner_id,
                WalletTransactionType.CREDIT,
                amount,
                hold_reference(booking_id),
                f"Booking payment held until check-in for booking {booking_id}",
                booking_id=booking_id,
                pending_delta=amount,
                details={"type": "pending_credit"},
            )
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                result = await session.execute(select(WalletHold).where(WalletHold.booking_id == booking_id))
                return result.scalar_one()

        logger.info("Funds held", booking_id=str(booking_id), owner_id=str(owner_id), amount=str(amount))
        return hold

    async def refund(
        self,
        booking_id: UUID,
        user_id: UUID,
        amount: Decimal,
        reason: str = "Booking cancelled",
    ) -> WalletTransaction:
        """
        Refund a booking payment to the requester's wallet.

        An unreleased hold for the booking is reversed in the same transaction,
        so the owner never keeps funds that were returned to the guest.
        """
        reference = refund_reference(booking_id)

        async with self.db.session() as session:
            existing = await self._find_transaction(session, reference)
            if existing is not None:
                logger.info("Refund already processed", booking_id=str(booking_id), reference=reference)
                return existing

            txn = await self._move(
                session,
                user_id,
                WalletTransactionType.REFUND,
                amount,
                reference,
                reason,
                booking_id=booking_id,
                available_delta=amount,
                details={"type": "booking_refund"},
            )

            reversed_hold = await session.execute(
                update(WalletHold)
                .where(
                    and_(
                        WalletHold.booking_id == booking_id,
                        WalletHold.released.is_(False),
                        WalletHold.refunded_at.is_(None),
                    )
                )
                .values(refunded_at=self.clock())
                .execution_options(synchronize_session=False)
            )
            if reversed_hold.rowcount == 1:
                hold = (
                    await session.execute(select(WalletHold).where(WalletHold.booking_id == booking_id))
                ).scalar_one()
                await self._move(
                    session,
                    hold.owner_id,
                    WalletTransactionType.DEBIT,
                    Decimal(hold.amount),
                    f"hold-reversal:{booking_id}",
                    f"Held funds reversed for refunded booking {booking_id}",
                    booking_id=booking_id,
                    pending_delta=-Decimal(hold.amount),
                    details={"type": "pending_refund", "reason": reason},
                )

            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                existing = await self._find_transaction(session, reference)
                if existing is None:
                    raise
                return existing

        logger.info("Refund processed", booking_id=str(booking_id), user_id=str(user_id), amount=str(amount))
        return txn

    async def release_hold(self, booking_id: UUID) -> bool:
        async with self.db.session() as session:
            result = await session.execute(select(WalletHold).where(WalletHold.booking_id == booking_id))
            hold = result.scalar_one_or_none()

        if hold is None or hold.released or hold.refunded_at is not None:
            return False

        return await self.credit_owner(
            hold.owner_id,
            Decimal(hold.amount),
            release_reference(booking_id),
            booking_id=booking_id,
        )

    async def credit_owner(
        self,
        owner_id: UUID,
        amount: Decimal,
        idempotency_key: str,
        booking_id: Optional[UUID] = None,
    ) -> bool:
        """
        Credit an owner's available balance; False if nothing moved.

        With booking_id the credit releases that booking's hold: the hold flips
        released=false -> true and the amount moves from pending to available
        in the same transaction. A hold that is already released or refunded
        is left alone.
        """
        now = self.clock()

        async with self.db.session() as session:
            if await self._find_transaction(session, idempotency_key) is not None:
                return False

            if booking_id is None:
                await self._move(
                    session,
                    owner_id,
                    WalletTransactionType.CREDIT,
                    amount,
                    idempotency_key,
                    "Owner credit",
                    available_delta=amount,
                )
            else:
                flipped = await session.execute(
                    update(WalletHold)
                    .where(
                        and_(
                            WalletHold.booking_id == booking_id,
                            WalletHold.owner_id == owner_id,
                            WalletHold.released.is_(False),
                            WalletHold.refunded_at.is_(None),
                        )
                    )
                    .values(released=True, released_at=now)
                    .execution_options(synchronize_session=False)
                )
                if flipped.rowcount != 1:
                    await session.rollback()
                    return False

                await self._move(
                    session,
                    owner_id,
                    WalletTransactionType.TRANSFER_IN,
                    amount,
                    idempotency_key,
                    f"Pending funds released for booking {booking_id}",
                    booking_id=booking_id,
                    available_delta=amount,
                    pending_delta=-amount,
                    details={"type": "pending_release"},
                )

            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.info("Credit already recorded", owner_id=str(owner_id), reference=idempotency_key)
                return False

        logger.info(
            "Owner credited",
            owner_id=str(owner_id),
            booking_id=str(booking_id) if booking_id else None,
            amount=str(amount),
        )
        return True

    async def get_wallet(self, user_id: UUID) -> Optional[Wallet]:
        async with self.db.session() as session:
            result = await session.execute(select(Wallet).where(Wallet.user_id == user_id))
            return result.scalar_one_or_none()
