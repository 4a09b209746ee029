"""
SQLAlchemy model for tip transactions.

A ``Transaction`` is the ledger entry for a single tip attempt. Rows are
never deleted; only the status, charge linkage and payout columns change
after creation.
"""

import enum
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import BigInteger, Boolean, DateTime, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, TimestampMixin, UUIDPrimaryKeyMixin

MAX_RETRIES = 3


class TransactionStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class PayoutStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class PaymentMethod(str, enum.Enum):
    CARD = "card"
    APPLE_PAY = "apple_pay"
    GOOGLE_PAY = "google_pay"
    BIZUM = "bizum"
    SOFORT = "sofort"
    GIROPAY = "giropay"
    BANCONTACT = "bancontact"
    IDEAL = "ideal"


class Transaction(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """
    Ledger entry for one tip.

    Amounts are integer minor units (cents). ``net_amount_cents`` is always
    ``amount_cents - processing_fee_cents - platform_fee_cents``.
    """
    __tablename__ = "transactions"
    __table_args__ = (
        Index("ix_transactions_to_user_status", "to_user_id", "status"),
        Index("ix_transactions_performance_status", "performance_id", "status"),
        Index("ix_transactions_from_user", "from_user_id"),
    )

    # Money
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(
        String(3), nullable=False, server_default="EUR"
    )
    processing_fee_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    platform_fee_cents: Mapped[int] = mapped_column(
        BigInteger, nullable=False, default=0, server_default="0"
    )
    net_amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)

    # Parties
    from_user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    to_user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    performance_id: Mapped[str] = mapped_column(String(64), nullable=False)

    # Processor linkage
    stripe_payment_intent_id: Mapped[str] = mapped_column(
        String(255), unique=True, nullable=False
    )
    stripe_charge_id: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True
    )
    destination_account_id: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True
    )
    payment_method: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PaymentMethod.CARD.value,
        server_default="card",
    )

    # Display / privacy
    is_anonymous: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default="false"
    )
    public_message: Mapped[Optional[str]] = mapped_column(
        String(200), nullable=True
    )

    # Lifecycle
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=TransactionStatus.PENDING.value,
        server_default="pending",
    )
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0"
    )

    # Payout
    payout_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PayoutStatus.PENDING.value,
        server_default="pending",
    )
    payout_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    payout_date: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Informational only: {"coordinates": [lng, lat], "city": ..., "country": ...}
    location: Mapped[Optional[dict[str, Any]]] = mapped_column(
        JSONB, nullable=True
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in (
            TransactionStatus.COMPLETED.value,
            TransactionStatus.FAILED.value,
            TransactionStatus.REFUNDED.value,
        )

    def can_retry(self) -> bool:
        """A failed tip may be retried (as a new transaction) up to 3 times."""
        return (
            self.status == TransactionStatus.FAILED.value
            and self.retry_count < MAX_RETRIES
        )

    def display_amount(self) -> str:
        return f"{self.amount_cents / 100:.2f} {self.currency}"

    def __repr__(self) -> str:
        return (
            f"<Transaction(id={self.id}, intent={self.stripe_payment_intent_id}, "
            f"amount={self.amount_cents}, status={self.status}, "
            f"payout={self.payout_status})>"
        )
