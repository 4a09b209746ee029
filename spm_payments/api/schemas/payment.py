"""
Pydantic v2 schemas for payment configuration and Stripe Connect.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class PaymentConfigResponse(BaseModel):
    """What the tipping UI needs before showing the payment form."""

    currency: str
    supported_currencies: list[str]
    payment_methods: list[str]
    configured: bool
    publishable_key: Optional[str] = None
    min_amount: Decimal
    max_amount: Decimal
    suggested_amounts: list[int]


class CreateConnectAccountRequest(BaseModel):
    email: str = Field(min_length=3, max_length=255)
    country: str = Field(min_length=2, max_length=2, description="ISO country code")
    business_type: Literal["individual", "company"] = "individual"


class ConnectAccountResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    performer_id: str
    connect_account_id: Optional[str] = None
    charges_enabled: bool
    payouts_enabled: bool
    details_submitted: bool
    account_status: str
    onboarding_url: Optional[str] = None


class CreateConnectLinkRequest(BaseModel):
    link_type: Literal["account_onboarding", "account_update"] = "account_onboarding"


class ConnectLinkResponse(BaseModel):
    url: str
