"""
Transaction Ledger
==================

The authoritative record of every tip attempt. All status changes go
through this class so the status DAG is enforced in one place::

    pending --> processing --> completed --> refunded
        |            |
        +------------+-----> failed

``failed`` and ``refunded`` are terminal; a retried tip is a new
transaction. Payout state moves separately
(pending --> processing --> completed | failed) and is claimed with a
conditional UPDATE so at most one caller ever issues the transfer.

The ledger only flushes; the request-scoped session owns the commit.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, AsyncSessionTransaction

from spm_payments.core.exceptions import (
    DuplicateIntentError,
    InvalidTransitionError,
    NotFoundError,
)
from spm_payments.models import (
    PaymentMethod,
    PayoutStatus,
    Transaction,
    TransactionStatus,
)

logger = logging.getLogger(__name__)


# Each key is the current status, and the value is the set of statuses it
# can move to.
VALID_TRANSITIONS: dict[str, set[str]] = {
    TransactionStatus.PENDING.value: {
        TransactionStatus.PROCESSING.value,
        TransactionStatus.COMPLETED.value,
        TransactionStatus.FAILED.value,
    },
    TransactionStatus.PROCESSING.value: {
        TransactionStatus.COMPLETED.value,
        TransactionStatus.FAILED.value,
    },
    TransactionStatus.COMPLETED.value: {
        TransactionStatus.REFUNDED.value,
    },
    TransactionStatus.FAILED.value: set(),
    TransactionStatus.REFUNDED.value: set(),
}


@dataclass(frozen=True)
class EarningsSummary:
    """Aggregate over a performer's completed tips."""
    transaction_count: int
    total_amount_cents: int
    total_net_cents: int
    total_fees_cents: int
    average_amount_cents: int


@dataclass(frozen=True)
class PerformanceSummary:
    """Aggregate over a performance's completed tips."""
    transaction_count: int
    total_amount_cents: int
    average_amount_cents: int


def _average(total: int, count: int) -> int:
    if not count:
        return 0
    return int((Decimal(total) / count).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class TransactionLedger:
    """CRUD and status transitions over ``Transaction`` rows."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    def savepoint(self) -> AsyncSessionTransaction:
        """Open a SAVEPOINT; use as ``async with ledger.savepoint():``."""
        return self.db.begin_nested()

    # ------------------------------------------------------------------
    # Create / lookup
    # ------------------------------------------------------------------

    async def create(
        self,
        *,
        amount_cents: int,
        currency: str,
        processing_fee_cents: int,
        net_amount_cents: int,
        to_user_id: str,
        performance_id: str,
        stripe_payment_intent_id: str,
        platform_fee_cents: int = 0,
        from_user_id: Optional[str] = None,
        destination_account_id: Optional[str] = None,
        is_anonymous: bool = False,
        public_message: Optional[str] = None,
        location: Optional[dict[str, Any]] = None,
    ) -> Transaction:
        """Insert a new ``pending`` transaction.

        Uniqueness of the intent id is left to the database constraint; the
        insert runs in a SAVEPOINT so a violation only undoes this row.

        Raises:
            DuplicateIntentError: If a row already exists for the intent.
        """
        if amount_cents != net_amount_cents + processing_fee_cents + platform_fee_cents:
            raise ValueError(
                f"Fee breakdown does not add up to {amount_cents}: net={net_amount_cents}, "
                f"processing={processing_fee_cents}, platform={platform_fee_cents}"
            )

        tx = Transaction(
            amount_cents=amount_cents,
            currency=currency.upper(),
            processing_fee_cents=processing_fee_cents,
            platform_fee_cents=platform_fee_cents,
            net_amount_cents=net_amount_cents,
            from_user_id=from_user_id,
            to_user_id=to_user_id,
            performance_id=performance_id,
            stripe_payment_intent_id=stripe_payment_intent_id,
            destination_account_id=destination_account_id,
            is_anonymous=is_anonymous,
            public_message=public_message,
            location=location,
            status=TransactionStatus.PENDING.value,
            payout_status=PayoutStatus.PENDING.value,
            retry_count=0,
        )
        try:
            async with self.db.begin_nested():
                self.db.add(tx)
                await self.db.flush()
        except IntegrityError as exc:
            logger.warning(
                "Duplicate ledger entry rejected: intent=%s", stripe_payment_intent_id
            )
            raise DuplicateIntentError(stripe_payment_intent_id) from exc

        logger.info(
            "Transaction created: id=%s, intent=%s, amount=%d %s, performer=%s",
            tx.id,
            stripe_payment_intent_id,
            amount_cents,
            tx.currency,
            to_user_id,
        )
        return tx

    async def get(self, transaction_id: uuid.UUID) -> Optional[Transaction]:
        result = await self.db.execute(
            select(Transaction).where(Transaction.id == transaction_id)
        )
        return result.scalar_one_or_none()

    async def get_or_raise(self, transaction_id: uuid.UUID) -> Transaction:
        tx = await self.get(transaction_id)
        if tx is None:
            raise NotFoundError("Transaction", transaction_id)
        return tx

    async def find_by_intent_id(self, payment_intent_id: str) -> Optional[Transaction]:
        """Reconciliation lookup. ``None`` is an expected outcome."""
        result = await self.db.execute(
            select(Transaction).where(
                Transaction.stripe_payment_intent_id == payment_intent_id
            )
        )
        return result.scalar_one_or_none()

    # ------------------------------------------------------------------
    # Status transitions
    # ------------------------------------------------------------------

    @staticmethod
    def can_transition(current: str, target: str) -> bool:
        return target in VALID_TRANSITIONS.get(current, set())

    def _check_transition(self, tx: Transaction, target: TransactionStatus) -> None:
        if not self.can_transition(tx.status, target.value):
            raise InvalidTransitionError(tx.status, target.value)

    async def mark_processing(self, tx: Transaction) -> Transaction:
        self._check_transition(tx, TransactionStatus.PROCESSING)
        tx.status = TransactionStatus.PROCESSING.value
        await self.db.flush()
        logger.info("Transaction processing: id=%s", tx.id)
        return tx

    async def mark_completed(
        self,
        tx: Transaction,
        charge_id: Optional[str] = None,
        payment_method: Optional[str] = None,
    ) -> Transaction:
        """Move to ``completed`` and store the charge id and payment method.

        Repeating the call on a completed row with the same (or no) charge
        id is a no-op. A different charge id raises. A payment method type
        outside ``PaymentMethod`` leaves the stored value unchanged.
        """
        if tx.status == TransactionStatus.COMPLETED.value:
            if charge_id and tx.stripe_charge_id and charge_id != tx.stripe_charge_id:
                raise InvalidTransitionError(
                    tx.status,
                    TransactionStatus.COMPLETED.value,
                    reason=f"already completed with charge {tx.stripe_charge_id}",
                )
            if charge_id and tx.stripe_charge_id is None:
                tx.stripe_charge_id = charge_id
                await self.db.flush()
            logger.info("Transaction already completed: id=%s", tx.id)
            return tx

        self._check_transition(tx, TransactionStatus.COMPLETED)
        tx.status = TransactionStatus.COMPLETED.value
        tx.stripe_charge_id = charge_id
        tx.failure_reason = None
        if payment_method:
            self._set_payment_method(tx, payment_method)
        await self.db.flush()
        logger.info("Transaction completed: id=%s, charge=%s", tx.id, charge_id)
        return tx

    @staticmethod
    def _set_payment_method(tx: Transaction, payment_method: str) -> None:
        try:
            tx.payment_method = PaymentMethod(payment_method).value
        except ValueError:
            logger.warning(
                "Unrecognised payment method, keeping %s: id=%s, reported=%s",
                tx.payment_method,
                tx.id,
                payment_method,
            )

    async def mark_failed(self, tx: Transaction, reason: str) -> Transaction:
        """Move to ``failed``, record the reason and bump ``retry_count``."""
        self._check_transition(tx, TransactionStatus.FAILED)
        tx.status = TransactionStatus.FAILED.value
        tx.failure_reason = reason
        tx.retry_count = (tx.retry_count or 0) + 1
        await self.db.flush()
        logger.info(
            "Transaction failed: id=%s, reason=%s, retries=%d",
            tx.id,
            reason,
            tx.retry_count,
        )
        return tx

    async def mark_refunded(self, tx: Transaction) -> Transaction:
        self._check_transition(tx, TransactionStatus.REFUNDED)
        tx.status = TransactionStatus.REFUNDED.value
        await self.db.flush()
        logger.info("Transaction refunded: id=%s", tx.id)
        return tx

    # ------------------------------------------------------------------
    # Payout
    # ------------------------------------------------------------------

    async def claim_payout(self, tx: Transaction) -> bool:
        """Atomically move payout ``pending -> processing``.

        Returns True only for the caller whose UPDATE matched the row; that
        caller alone may issue the transfer.
        """
        result = await self.db.execute(
            update(Transaction)
            .where(
                Transaction.id == tx.id,
                Transaction.payout_status == PayoutStatus.PENDING.value,
                Transaction.status == TransactionStatus.COMPLETED.value,
            )
            .values(payout_status=PayoutStatus.PROCESSING.value)
            .execution_options(synchronize_session=False)
        )
        claimed = result.rowcount == 1
        await self.db.refresh(tx)
        if not claimed:
            logger.info(
                "Payout already claimed or not payable: id=%s, payout_status=%s",
                tx.id,
                tx.payout_status,
            )
        return claimed

    async def record_payout_completed(
        self, tx: Transaction, payout_id: Optional[str] = None
    ) -> Transaction:
        tx.payout_status = PayoutStatus.COMPLETED.value
        tx.payout_id = payout_id
        tx.payout_date = datetime.now(timezone.utc)
        await self.db.flush()
        logger.info("Payout completed: id=%s, payout=%s", tx.id, payout_id)
        return tx

    async def record_payout_failed(self, tx: Transaction) -> Transaction:
        tx.payout_status = PayoutStatus.FAILED.value
        tx.payout_date = datetime.now(timezone.utc)
        await self.db.flush()
        logger.info("Payout marked failed: id=%s", tx.id)
        return tx

    # ------------------------------------------------------------------
    # Read side (completed transactions only count toward earnings)
    # ------------------------------------------------------------------

    async def get_performer_summary(
        self,
        performer_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> EarningsSummary:
        stmt = select(
            func.count(Transaction.id),
            func.coalesce(func.sum(Transaction.amount_cents), 0),
            func.coalesce(func.sum(Transaction.net_amount_cents), 0),
            func.coalesce(
                func.sum(Transaction.processing_fee_cents + Transaction.platform_fee_cents),
                0,
            ),
        ).where(
            Transaction.to_user_id == performer_id,
            Transaction.status == TransactionStatus.COMPLETED.value,
        )
        if start is not None:
            stmt = stmt.where(Transaction.created_at >= start)
        if end is not None:
            stmt = stmt.where(Transaction.created_at <= end)

        count, total, net, fees = (await self.db.execute(stmt)).one()
        return EarningsSummary(
            transaction_count=int(count),
            total_amount_cents=int(total),
            total_net_cents=int(net),
            total_fees_cents=int(fees),
            average_amount_cents=_average(int(total), int(count)),
        )

    async def get_performance_summary(self, performance_id: str) -> PerformanceSummary:
        stmt = select(
            func.count(Transaction.id),
            func.coalesce(func.sum(Transaction.amount_cents), 0),
        ).where(
            Transaction.performance_id == performance_id,
            Transaction.status == TransactionStatus.COMPLETED.value,
        )
        count, total = (await self.db.execute(stmt)).one()
        return PerformanceSummary(
            transaction_count=int(count),
            total_amount_cents=int(total),
            average_amount_cents=_average(int(total), int(count)),
        )

    async def list_performer_transactions(
        self,
        performer_id: str,
        status: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> list[Transaction]:
        stmt = select(Transaction).where(Transaction.to_user_id == performer_id)
        if status is not None:
            stmt = stmt.where(Transaction.status == status)
        stmt = stmt.order_by(Transaction.created_at.desc()).limit(limit).offset(offset)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def list_recent_public_tips(
        self, performance_id: str, limit: int = 10
    ) -> list[Transaction]:
        """Completed, non-anonymous tips for a performance, newest first."""
        stmt = (
            select(Transaction)
            .where(
                Transaction.performance_id == performance_id,
                Transaction.status == TransactionStatus.COMPLETED.value,
                Transaction.is_anonymous.is_(False),
            )
            .order_by(Transaction.created_at.desc())
            .limit(limit)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())
