"""
Payment gateway interface and its Stripe implementation.

The tip pipeline only ever talks to a ``PaymentGateway``. Which
implementation backs it is decided once at startup by
``get_payment_gateway`` from ``settings.payment_gateway``.
"""

from __future__ import annotations

import logging
from typing import Any, Optional, Protocol

from spm_payments.core.config import Settings

from . import paymentService, payoutService, webhookHandler
from .paymentService import FeeBreakdown, TipIntentResult
from .payoutService import ConnectedAccountResult, TransferResult
from .webhookHandler import WebhookEvent

logger = logging.getLogger(__name__)


class PaymentGateway(Protocol):
    """Everything the pipeline needs from a payment processor."""

    def calculate_fees(self, amount_cents: int, *, include_platform_fee: bool) -> FeeBreakdown:
        ...

    async def create_tip_intent(
        self,
        *,
        amount_cents: int,
        currency: str,
        performance_id: str,
        performer_id: str,
        tipper_id: Optional[str],
        is_anonymous: bool,
        public_message: Optional[str],
        payment_method_types: list[str],
        destination_account_id: Optional[str] = None,
    ) -> TipIntentResult:
        ...

    async def get_latest_charge_id(self, payment_intent_id: str) -> Optional[str]:
        ...

    async def create_connected_account(
        self,
        performer_id: str,
        email: str,
        country: str,
        business_type: str = "individual",
    ) -> ConnectedAccountResult:
        ...

    async def get_connected_account(self, account_id: str) -> ConnectedAccountResult:
        ...

    async def create_onboarding_link(
        self, account_id: str, link_type: str = "account_onboarding"
    ) -> str:
        ...

    async def create_transfer(
        self,
        *,
        amount_cents: int,
        currency: str,
        destination_account_id: str,
        transaction_id: str,
    ) -> TransferResult:
        ...

    def construct_webhook_event(self, payload: bytes, sig_header: Optional[str]) -> WebhookEvent:
        ...


class FeeSchedule:
    """Fee arithmetic bound to the configured rates."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def calculate_fees(self, amount_cents: int, *, include_platform_fee: bool) -> FeeBreakdown:
        return paymentService.calculate_fees(
            amount_cents,
            include_platform_fee=include_platform_fee,
            processing_fee_rate=self.settings.processing_fee_rate,
            processing_fee_fixed_cents=self.settings.processing_fee_fixed_cents,
            platform_fee_rate=self.settings.platform_fee_rate,
        )


class StripeGateway(FeeSchedule):
    """``PaymentGateway`` backed by the Stripe API."""

    def __init__(self, settings: Settings) -> None:
        super().__init__(settings)
        self._request_options: dict[str, Any] = {
            "api_key": settings.stripe_secret_key,
            "stripe_version": settings.stripe_api_version,
        }

    async def create_tip_intent(
        self,
        *,
        amount_cents: int,
        currency: str,
        performance_id: str,
        performer_id: str,
        tipper_id: Optional[str],
        is_anonymous: bool,
        public_message: Optional[str],
        payment_method_types: list[str],
        destination_account_id: Optional[str] = None,
    ) -> TipIntentResult:
        fees = self.calculate_fees(
            amount_cents, include_platform_fee=destination_account_id is not None
        )
        metadata = paymentService.build_tip_metadata(
            performance_id=performance_id,
            performer_id=performer_id,
            tipper_id=tipper_id,
            is_anonymous=is_anonymous,
            public_message=public_message,
            fees=fees,
        )
        return await paymentService.create_tip_intent(
            amount_cents,
            currency,
            fees=fees,
            metadata=metadata,
            payment_method_types=payment_method_types,
            destination_account_id=destination_account_id,
            **self._request_options,
        )

    async def get_latest_charge_id(self, payment_intent_id: str) -> Optional[str]:
        return await paymentService.get_latest_charge_id(
            payment_intent_id, **self._request_options
        )

    async def create_connected_account(
        self,
        performer_id: str,
        email: str,
        country: str,
        business_type: str = "individual",
    ) -> ConnectedAccountResult:
        return await payoutService.create_connected_account(
            performer_id,
            email,
            country=country,
            business_type=business_type,
            frontend_url=self.settings.frontend_url,
            **self._request_options,
        )

    async def get_connected_account(self, account_id: str) -> ConnectedAccountResult:
        return await payoutService.get_connected_account(
            account_id, **self._request_options
        )

    async def create_onboarding_link(
        self, account_id: str, link_type: str = "account_onboarding"
    ) -> str:
        refresh_url, return_url = payoutService.onboarding_urls(
            self.settings.frontend_url, account_id
        )
        return await payoutService.create_onboarding_link(
            account_id,
            refresh_url=refresh_url,
            return_url=return_url,
            link_type=link_type,
            **self._request_options,
        )

    async def create_transfer(
        self,
        *,
        amount_cents: int,
        currency: str,
        destination_account_id: str,
        transaction_id: str,
    ) -> TransferResult:
        return await payoutService.create_transfer(
            amount_cents,
            destination_account_id,
            transaction_id,
            currency=currency,
            **self._request_options,
        )

    def construct_webhook_event(self, payload: bytes, sig_header: Optional[str]) -> WebhookEvent:
        return webhookHandler.construct_webhook_event(
            payload, sig_header, self.settings.stripe_webhook_secret
        )


def get_payment_gateway(settings: Settings) -> PaymentGateway:
    """Build the gateway selected by ``settings.payment_gateway``.

    Raises:
        RuntimeError: If the Stripe gateway is selected without a secret key.
    """
    if settings.payment_gateway == "fake":
        from .fakeGateway import FakeGateway

        logger.warning("Using FakeGateway: no real payments will be processed")
        return FakeGateway(settings)

    if not settings.stripe_secret_key:
        raise RuntimeError(
            "payment_gateway is 'stripe' but STRIPE_SECRET_KEY is not set"
        )
    if not settings.stripe_webhook_secret:
        logger.warning("STRIPE_WEBHOOK_SECRET is not set; all webhooks will be rejected")

    return StripeGateway(settings)
