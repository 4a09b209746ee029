"""
Stripe Connect Payout Service
=============================

Manages performer payouts through Stripe Connect:
- Express connected-account creation and onboarding links
- Connected-account status retrieval
- Transfers from the platform balance to a performer's account

Transfers are only ever issued from webhook reconciliation, after the
tip payment has been confirmed by Stripe. Each transfer carries an
idempotency key derived from the ledger transaction id, so a repeated
request for the same tip cannot move money twice.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional

import stripe

from spm_payments.core.exceptions import NotFoundError, TransferError

from .paymentService import handle_stripe_error

logger = logging.getLogger(__name__)

ACCOUNT_LINK_TYPES = ("account_onboarding", "account_update")


# ---------------------------------------------------------------------------
# Response dataclasses
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ConnectedAccountResult:
    """Processor-side view of a performer's connected account."""
    account_id: str
    details_submitted: bool
    charges_enabled: bool
    payouts_enabled: bool
    onboarding_url: Optional[str] = None


@dataclass(frozen=True)
class TransferResult:
    """Result of a transfer to a connected account."""
    id: str
    amount_cents: int
    currency: str
    destination_account_id: str
    transfer_group: str


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def onboarding_urls(frontend_url: str, account_id: str) -> tuple[str, str]:
    """Return the (refresh_url, return_url) pair for an account link."""
    base = frontend_url.rstrip("/")
    return f"{base}/connect/refresh/{account_id}", f"{base}/connect/return"


def transfer_idempotency_key(transaction_id: str) -> str:
    return f"tip-transfer-{transaction_id}"


def transfer_group(transaction_id: str) -> str:
    return f"tip_{transaction_id}"


def _to_account_result(account: Any, onboarding_url: Optional[str] = None) -> ConnectedAccountResult:
    return ConnectedAccountResult(
        account_id=account.id,
        details_submitted=bool(account.details_submitted),
        charges_enabled=bool(account.charges_enabled),
        payouts_enabled=bool(account.payouts_enabled),
        onboarding_url=onboarding_url,
    )


def account_from_payload(data: Mapping[str, Any]) -> ConnectedAccountResult:
    """Build a ``ConnectedAccountResult`` from an ``account.updated`` event object."""
    return ConnectedAccountResult(
        account_id=data["id"],
        details_submitted=bool(data.get("details_submitted")),
        charges_enabled=bool(data.get("charges_enabled")),
        payouts_enabled=bool(data.get("payouts_enabled")),
    )


# ---------------------------------------------------------------------------
# Connected Account operations
# ---------------------------------------------------------------------------

async def create_onboarding_link(
    account_id: str,
    *,
    refresh_url: str,
    return_url: str,
    link_type: str = "account_onboarding",
    **request_options: Any,
) -> str:
    """Generate a Stripe onboarding link for a connected account.

    The link expires after a short time, so a fresh one is generated each
    time the performer needs to continue onboarding.

    Raises:
        ValueError: If ``link_type`` is not a Stripe account link type.
        GatewayError: If the API call fails.
    """
    if link_type not in ACCOUNT_LINK_TYPES:
        raise ValueError(f"Unsupported account link type: {link_type}")

    try:
        link = await asyncio.to_thread(
            stripe.AccountLink.create,
            account=account_id,
            refresh_url=refresh_url,
            return_url=return_url,
            type=link_type,
            **request_options,
        )
    except stripe.StripeError as exc:
        raise handle_stripe_error(exc) from exc

    logger.info(
        "Account link created for account %s, expires at %s",
        account_id,
        link.expires_at,
    )

    return link.url


async def create_connected_account(
    performer_id: str,
    email: str,
    *,
    country: str,
    frontend_url: str,
    business_type: str = "individual",
    **request_options: Any,
) -> ConnectedAccountResult:
    """Create a Stripe Connect Express account for a performer.

    Express accounts let Stripe host the onboarding UI and identity
    verification. An onboarding link is created right away so the caller
    can redirect the performer.

    Args:
        performer_id: The SPM performer id. Stored in account metadata.
        email: Performer email address.
        country: Two-letter ISO country code.
        frontend_url: Base URL of the web app hosting the onboarding
            refresh and return pages.
        business_type: ``individual`` or ``company``.

    Returns:
        ConnectedAccountResult including the onboarding URL.

    Raises:
        GatewayError: If the Stripe API call fails.
    """
    try:
        account = await asyncio.to_thread(
            stripe.Account.create,
            type="express",
            country=country.upper(),
            email=email,
            business_type=business_type,
            capabilities={
                "card_payments": {"requested": True},
                "transfers": {"requested": True},
            },
            metadata={
                "performer_id": performer_id,
                "platform": "street_music",
            },
            **request_options,
        )
    except stripe.StripeError as exc:
        raise handle_stripe_error(exc) from exc

    logger.info(
        "Connected account created: account_id=%s, performer_id=%s, country=%s",
        account.id,
        performer_id,
        country,
    )

    refresh_url, return_url = onboarding_urls(frontend_url, account.id)
    onboarding_url = await create_onboarding_link(
        account.id,
        refresh_url=refresh_url,
        return_url=return_url,
        **request_options,
    )
    return _to_account_result(account, onboarding_url=onboarding_url)


async def get_connected_account(
    account_id: str,
    **request_options: Any,
) -> ConnectedAccountResult:
    """Retrieve the current capability flags of a connected account.

    Raises:
        NotFoundError: If Stripe has no such account.
        GatewayError: If the retrieval fails for any other reason.
    """
    try:
        account = await asyncio.to_thread(
            stripe.Account.retrieve, account_id, **request_options
        )
    except stripe.InvalidRequestError as exc:
        if getattr(exc, "code", None) == "resource_missing":
            logger.warning("Connected account not found at Stripe: %s", account_id)
            raise NotFoundError("Connected account", account_id) from exc
        raise handle_stripe_error(exc) from exc
    except stripe.StripeError as exc:
        raise handle_stripe_error(exc) from exc

    return _to_account_result(account)


# ---------------------------------------------------------------------------
# Transfer operations (platform -> connected account)
# ---------------------------------------------------------------------------

async def create_transfer(
    amount_cents: int,
    destination_account_id: str,
    transaction_id: str,
    *,
    currency: str = "eur",
    **request_options: Any,
) -> TransferResult:
    """Transfer a tip's net amount to a performer's connected account.

    The transaction id is used both as the transfer group and, through
    ``transfer_idempotency_key``, as the Stripe idempotency key.

    Raises:
        ValueError: If ``amount_cents`` is non-positive.
        TransferError: If the transfer fails.
    """
    if amount_cents <= 0:
        raise ValueError(f"Transfer amount must be positive, got {amount_cents}")

    group = transfer_group(transaction_id)
    try:
        transfer = await asyncio.to_thread(
            stripe.Transfer.create,
            amount=amount_cents,
            currency=currency.lower(),
            destination=destination_account_id,
            transfer_group=group,
            metadata={
                "type": "performer_payout",
                "transaction_id": transaction_id,
            },
            idempotency_key=transfer_idempotency_key(transaction_id),
            **request_options,
        )
    except stripe.StripeError as exc:
        raise handle_stripe_error(exc, TransferError) from exc

    logger.info(
        "Transfer created: id=%s, transaction=%s, account=%s, amount=%d %s",
        transfer.id,
        transaction_id,
        destination_account_id,
        amount_cents,
        currency,
    )

    return TransferResult(
        id=transfer.id,
        amount_cents=transfer.amount,
        currency=transfer.currency,
        destination_account_id=destination_account_id,
        transfer_group=group,
    )
