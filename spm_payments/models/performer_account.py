"""
SQLAlchemy model for a performer's Stripe Connect account status.

This is the processor-linked subset of the performer profile. The
``connect_account_id`` column, once set, is never cleared by the
application.
"""

import enum
from typing import Optional

from sqlalchemy import Boolean, String
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, TimestampMixin, UUIDPrimaryKeyMixin


class ConnectAccountStatus(str, enum.Enum):
    NOT_CREATED = "not_created"
    PENDING = "pending"
    RESTRICTED = "restricted"
    ACTIVE = "active"


class PerformerPaymentAccount(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    __tablename__ = "performer_payment_accounts"

    performer_id: Mapped[str] = mapped_column(
        String(64), unique=True, nullable=False, index=True
    )
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    country: Mapped[Optional[str]] = mapped_column(String(2), nullable=True)

    # Stripe Connect
    connect_account_id: Mapped[Optional[str]] = mapped_column(
        String(255), unique=True, nullable=True
    )
    charges_enabled: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default="false"
    )
    payouts_enabled: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default="false"
    )
    details_submitted: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default="false"
    )
    account_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ConnectAccountStatus.NOT_CREATED.value,
        server_default="not_created",
    )

    @property
    def can_receive_transfers(self) -> bool:
        return bool(self.connect_account_id)

    def __repr__(self) -> str:
        return (
            f"<PerformerPaymentAccount(performer={self.performer_id}, "
            f"account={self.connect_account_id}, status={self.account_status})>"
        )
