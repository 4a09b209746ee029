"""
Pydantic v2 schemas for tips and transactions.

Covers:
- Create tip request / response
- Transaction detail output
- Performer earnings and performance summaries
- Webhook acknowledgement
"""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------

class CreateTipRequest(BaseModel):
    """Request body for sending a tip.

    Amount bounds and message length are enforced by the tip service so
    they surface as 400 errors with a readable message.
    """

    amount: Decimal = Field(
        gt=0,
        description="Tip amount in major currency units, e.g. 5.00",
    )
    performance_id: str = Field(min_length=1, max_length=64)
    performer_id: str = Field(min_length=1, max_length=64)
    currency: Optional[str] = Field(
        default=None, min_length=3, max_length=3, description="ISO currency code"
    )
    is_anonymous: bool = False
    public_message: Optional[str] = None


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------

class CreateTipResponse(BaseModel):
    transaction_id: uuid.UUID
    payment_intent_id: str
    client_secret: str
    amount_cents: int
    currency: str
    processing_fee_cents: int
    platform_fee_cents: int
    net_amount_cents: int
    payment_method_types: list[str]


class TransactionResponse(BaseModel):
    """Transaction detail, visible to the tipper and the performer."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    amount_cents: int
    currency: str
    processing_fee_cents: int
    platform_fee_cents: int
    net_amount_cents: int
    from_user_id: Optional[str] = None
    to_user_id: str
    performance_id: str
    payment_method: str
    status: str
    failure_reason: Optional[str] = None
    retry_count: int
    is_anonymous: bool
    public_message: Optional[str] = None
    payout_status: str
    payout_date: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class EarningsResponse(BaseModel):
    """A performer's completed-tip totals plus their latest transactions."""

    transaction_count: int
    total_amount_cents: int
    total_net_cents: int
    total_fees_cents: int
    average_amount_cents: int
    transactions: list[TransactionResponse] = Field(default_factory=list)


class PublicTipResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    transaction_id: uuid.UUID
    amount_cents: int
    currency: str
    public_message: Optional[str] = None
    from_user: str
    created_at: datetime


class PerformanceSummaryResponse(BaseModel):
    performance_id: str
    transaction_count: int
    total_amount_cents: int
    average_amount_cents: int
    recent_tips: list[PublicTipResponse] = Field(default_factory=list)


class WebhookAckResponse(BaseModel):
    received: bool = True
    event_type: str
    processed: bool
