"""
SPM Payments SQLAlchemy Models
==============================

Central import point for all ORM models. Import ``Base`` from here for
the ``create_all`` convenience used by ``init_models`` and the tests.
"""

from .base import Base, TimestampMixin, UUIDPrimaryKeyMixin
from .performer_account import ConnectAccountStatus, PerformerPaymentAccount
from .transaction import (
    MAX_RETRIES,
    PaymentMethod,
    PayoutStatus,
    Transaction,
    TransactionStatus,
)

__all__ = [
    "Base",
    "ConnectAccountStatus",
    "MAX_RETRIES",
    "PaymentMethod",
    "PayoutStatus",
    "PerformerPaymentAccount",
    "TimestampMixin",
    "Transaction",
    "TransactionStatus",
    "UUIDPrimaryKeyMixin",
]
