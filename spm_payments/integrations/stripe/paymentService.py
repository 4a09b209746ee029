"""
Stripe Payment Service
======================

Handles the tipper-facing side of the pipeline through Stripe:
- Fee arithmetic (processing fee, platform fee, net payout)
- Tip PaymentIntent creation, with optional destination-charge routing
- Charge lookup for completed intents

All monetary amounts are in cents (integers). Fee rounding is half-up so
the breakdown always sums back to the charged amount.

Every Stripe call receives its credentials as request options
(``api_key``, ``stripe_version``) from ``StripeGateway``; this module never
sets ``stripe.api_key`` globally.
The SDK is synchronous, so calls run in a worker thread via
``asyncio.to_thread``.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Mapping, Optional

import stripe

from spm_payments.core.exceptions import GatewayError

logger = logging.getLogger(__name__)

DEFAULT_PROCESSING_FEE_RATE = Decimal("0.029")
DEFAULT_PROCESSING_FEE_FIXED_CENTS = 30
DEFAULT_PLATFORM_FEE_RATE = Decimal("0.05")

STATEMENT_DESCRIPTOR_SUFFIX = "Street Music"


# ---------------------------------------------------------------------------
# Response dataclasses
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FeeBreakdown:
    """How a tip amount splits between Stripe, the platform and the performer."""
    amount_cents: int
    processing_fee_cents: int
    platform_fee_cents: int
    net_amount_cents: int


@dataclass(frozen=True)
class TipIntentResult:
    """Result of creating a tip PaymentIntent."""
    intent_id: str
    client_secret: str
    status: str
    amount_cents: int
    currency: str
    fees: FeeBreakdown
    destination_account_id: Optional[str] = None

    @property
    def processing_fee_cents(self) -> int:
        return self.fees.processing_fee_cents

    @property
    def net_amount_cents(self) -> int:
        return self.fees.net_amount_cents


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def handle_stripe_error(exc: stripe.StripeError, error_cls: type[GatewayError] = GatewayError) -> GatewayError:
    """Convert a Stripe SDK exception into a ``GatewayError`` (or subclass)."""
    error_body = getattr(exc, "error", None)

    code = getattr(error_body, "code", None) if error_body else None
    error_type = getattr(error_body, "type", None) if error_body else None
    decline_code = getattr(error_body, "decline_code", None) if error_body else None

    logger.error(
        "Stripe API error: %s (code=%s, type=%s, decline_code=%s)",
        str(exc),
        code,
        error_type,
        decline_code,
    )

    return error_cls(
        message=str(exc),
        stripe_error_code=code,
        stripe_error_type=error_type,
        decline_code=decline_code,
    )


# ---------------------------------------------------------------------------
# Fee arithmetic
# ---------------------------------------------------------------------------

def calculate_fees(
    amount_cents: int,
    *,
    include_platform_fee: bool = False,
    processing_fee_rate: Decimal = DEFAULT_PROCESSING_FEE_RATE,
    processing_fee_fixed_cents: int = DEFAULT_PROCESSING_FEE_FIXED_CENTS,
    platform_fee_rate: Decimal = DEFAULT_PLATFORM_FEE_RATE,
) -> FeeBreakdown:
    """Split ``amount_cents`` into processing fee, platform fee and net.

    ``processing = round(amount * rate + fixed)`` and, when the tip is routed
    through a connected account, ``platform = round(amount * platform_rate)``.
    Both round half-up, e.g. 500 cents gives a 45 cent processing fee.

    Raises:
        ValueError: If ``amount_cents`` is non-positive or the fees would
            exceed the amount.
    """
    if amount_cents <= 0:
        raise ValueError(f"Tip amount must be positive, got {amount_cents}")

    amount = Decimal(amount_cents)
    processing_fee = _round_half_up(amount * processing_fee_rate + processing_fee_fixed_cents)
    platform_fee = _round_half_up(amount * platform_fee_rate) if include_platform_fee else 0
    net_amount = amount_cents - processing_fee - platform_fee

    if net_amount < 0:
        raise ValueError(
            f"Fees ({processing_fee} + {platform_fee}) exceed tip amount {amount_cents}"
        )

    return FeeBreakdown(
        amount_cents=amount_cents,
        processing_fee_cents=processing_fee,
        platform_fee_cents=platform_fee,
        net_amount_cents=net_amount,
    )


def build_tip_metadata(
    *,
    performance_id: str,
    performer_id: str,
    tipper_id: Optional[str],
    is_anonymous: bool,
    public_message: Optional[str],
    fees: FeeBreakdown,
) -> dict[str, str]:
    """Metadata attached to the intent so a webhook is self-describing.

    Stripe metadata values must be strings.
    """
    return {
        "type": "tip",
        "performance_id": performance_id,
        "performer_id": performer_id,
        "tipper_id": tipper_id or "anonymous",
        "is_anonymous": "true" if is_anonymous else "false",
        "public_message": public_message or "",
        "processing_fee": str(fees.processing_fee_cents),
        "platform_fee": str(fees.platform_fee_cents),
        "net_amount": str(fees.net_amount_cents),
    }


# ---------------------------------------------------------------------------
# Payment Intent operations
# ---------------------------------------------------------------------------

async def create_tip_intent(
    amount_cents: int,
    currency: str,
    *,
    fees: FeeBreakdown,
    metadata: dict[str, str],
    payment_method_types: list[str],
    destination_account_id: Optional[str] = None,
    **request_options: Any,
) -> TipIntentResult:
    """Create a Stripe PaymentIntent for a tip.

    When ``destination_account_id`` is given the intent is a destination
    charge: Stripe moves the funds to the connected account at settlement
    and keeps ``fees.platform_fee_cents`` as the application fee.

    Args:
        amount_cents: Amount to charge in cents.
        currency: Three-letter ISO currency code.
        fees: Precomputed fee breakdown for ``amount_cents``.
        metadata: Intent metadata (see ``build_tip_metadata``).
        payment_method_types: Stripe payment method types to offer.
        destination_account_id: Optional connected account for a
            destination charge.
        **request_options: Stripe request options (``api_key``,
            ``stripe_version``).

    Returns:
        TipIntentResult with the client secret for client-side confirmation.

    Raises:
        GatewayError: If the Stripe API call fails.
    """
    params: dict[str, Any] = {
        "amount": amount_cents,
        "currency": currency.lower(),
        "payment_method_types": payment_method_types,
        "metadata": metadata,
        "description": f"Tip for street performance {metadata.get('performance_id', '')}",
        "statement_descriptor_suffix": STATEMENT_DESCRIPTOR_SUFFIX,
    }

    if destination_account_id:
        params["application_fee_amount"] = fees.platform_fee_cents
        params["on_behalf_of"] = destination_account_id
        params["transfer_data"] = {"destination": destination_account_id}

    try:
        intent = await asyncio.to_thread(
            stripe.PaymentIntent.create, **params, **request_options
        )
    except stripe.StripeError as exc:
        raise handle_stripe_error(exc) from exc

    logger.info(
        "Tip PaymentIntent created: id=%s, performance=%s, amount=%d %s, destination=%s",
        intent.id,
        metadata.get("performance_id"),
        amount_cents,
        currency,
        destination_account_id,
    )

    return TipIntentResult(
        intent_id=intent.id,
        client_secret=intent.client_secret,
        status=intent.status,
        amount_cents=intent.amount,
        currency=intent.currency,
        fees=fees,
        destination_account_id=destination_account_id,
    )


async def get_latest_charge_id(
    payment_intent_id: str,
    **request_options: Any,
) -> Optional[str]:
    """Return the id of the most recent charge on a PaymentIntent, if any.

    Raises:
        GatewayError: If the retrieval fails.
    """
    try:
        intent = await asyncio.to_thread(
            stripe.PaymentIntent.retrieve, payment_intent_id, **request_options
        )
    except stripe.StripeError as exc:
        raise handle_stripe_error(exc) from exc

    latest_charge = getattr(intent, "latest_charge", None)
    if latest_charge is None:
        return None
    if isinstance(latest_charge, str):
        return latest_charge
    return latest_charge.id


def reported_payment_method(intent: Mapping[str, Any]) -> Optional[str]:
    """Payment method type Stripe reports for a succeeded intent.

    Prefers the expanded charge's ``payment_method_details`` (with card
    wallets reported as ``apple_pay`` / ``google_pay``). Without an expanded
    charge, an intent that offered a single method type reports that type.
    """
    latest_charge = intent.get("latest_charge")
    if isinstance(latest_charge, Mapping):
        details = latest_charge.get("payment_method_details") or {}
        method_type = details.get("type")
        if method_type == "card":
            wallet = (details.get("card") or {}).get("wallet") or {}
            return wallet.get("type") or method_type
        if method_type:
            return method_type

    offered = intent.get("payment_method_types") or []
    if len(offered) == 1:
        return offered[0]
    return None
