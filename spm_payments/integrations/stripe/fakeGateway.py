"""
In-process ``PaymentGateway`` for local development and tests.

Ids are deterministic (``pi_fake_1``, ``acct_fake_1``, ``tr_fake_1``...),
every call is recorded in ``calls`` and ``fail_next()`` makes the next
call raise. Webhook signatures are verified with the real Stripe signing
scheme; ``sign_payload()`` produces matching headers.
"""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from spm_payments.core.config import Settings
from spm_payments.core.exceptions import GatewayError, NotFoundError, TransferError

from . import paymentService, payoutService, webhookHandler
from .gateway import FeeSchedule
from .paymentService import TipIntentResult
from .payoutService import ConnectedAccountResult, TransferResult
from .webhookHandler import WebhookEvent

logger = logging.getLogger(__name__)

FAKE_WEBHOOK_SECRET = "whsec_fake"


@dataclass
class FakeCall:
    method: str
    kwargs: dict[str, Any] = field(default_factory=dict)


class FakeGateway(FeeSchedule):
    """Deterministic stand-in for ``StripeGateway``."""

    def __init__(self, settings: Settings) -> None:
        super().__init__(settings)
        self.webhook_secret = settings.stripe_webhook_secret or FAKE_WEBHOOK_SECRET
        self.calls: list[FakeCall] = []
        self.intents: dict[str, dict[str, Any]] = {}
        self.accounts: dict[str, ConnectedAccountResult] = {}
        self.transfers: list[TransferResult] = []
        self._counter = itertools.count(1)
        self._fail_with: Optional[GatewayError] = None

    # -- Test controls --

    def fail_next(self, message: str = "Simulated processor failure") -> None:
        """Make the next gateway call raise ``GatewayError``."""
        self._fail_with = GatewayError(message, stripe_error_code="fake_failure")

    def calls_to(self, method: str) -> list[FakeCall]:
        return [call for call in self.calls if call.method == method]

    def set_account(self, account: ConnectedAccountResult) -> None:
        self.accounts[account.account_id] = account

    def sign_payload(self, payload: bytes, timestamp: Optional[int] = None) -> str:
        return webhookHandler.compute_signature_header(
            payload, self.webhook_secret, timestamp
        )

    def _record(self, method: str, **kwargs: Any) -> None:
        self.calls.append(FakeCall(method=method, kwargs=kwargs))
        if self._fail_with is not None:
            error, self._fail_with = self._fail_with, None
            logger.error("FakeGateway failing %s: %s", method, error.message)
            if method == "create_transfer":
                raise TransferError(error.message, stripe_error_code=error.stripe_error_code)
            raise error

    def _next_id(self, prefix: str) -> str:
        return f"{prefix}_fake_{next(self._counter)}"

    # -- PaymentGateway --

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
        self._record(
            "create_tip_intent",
            amount_cents=amount_cents,
            currency=currency,
            performance_id=performance_id,
            performer_id=performer_id,
            tipper_id=tipper_id,
            payment_method_types=payment_method_types,
            destination_account_id=destination_account_id,
        )
        fees = self.calculate_fees(
            amount_cents, include_platform_fee=destination_account_id is not None
        )
        intent_id = self._next_id("pi")
        self.intents[intent_id] = {
            "id": intent_id,
            "amount": amount_cents,
            "currency": currency.lower(),
            "status": "requires_payment_method",
            "latest_charge": None,
            "metadata": paymentService.build_tip_metadata(
                performance_id=performance_id,
                performer_id=performer_id,
                tipper_id=tipper_id,
                is_anonymous=is_anonymous,
                public_message=public_message,
                fees=fees,
            ),
        }
        return TipIntentResult(
            intent_id=intent_id,
            client_secret=f"{intent_id}_secret_fake",
            status="requires_payment_method",
            amount_cents=amount_cents,
            currency=currency.lower(),
            fees=fees,
            destination_account_id=destination_account_id,
        )

    async def get_latest_charge_id(self, payment_intent_id: str) -> Optional[str]:
        self._record("get_latest_charge_id", payment_intent_id=payment_intent_id)
        intent = self.intents.get(payment_intent_id)
        if intent is None:
            return None
        return intent.get("latest_charge")

    async def create_connected_account(
        self,
        performer_id: str,
        email: str,
        country: str,
        business_type: str = "individual",
    ) -> ConnectedAccountResult:
        self._record(
            "create_connected_account",
            performer_id=performer_id,
            email=email,
            country=country,
            business_type=business_type,
        )
        account_id = self._next_id("acct")
        account = ConnectedAccountResult(
            account_id=account_id,
            details_submitted=False,
            charges_enabled=False,
            payouts_enabled=False,
            onboarding_url=f"https://connect.fake/account_onboarding/{account_id}",
        )
        self.accounts[account_id] = account
        return account

    async def get_connected_account(self, account_id: str) -> ConnectedAccountResult:
        self._record("get_connected_account", account_id=account_id)
        account = self.accounts.get(account_id)
        if account is None:
            raise NotFoundError("Connected account", account_id)
        return account

    async def create_onboarding_link(
        self, account_id: str, link_type: str = "account_onboarding"
    ) -> str:
        self._record("create_onboarding_link", account_id=account_id, link_type=link_type)
        if link_type not in payoutService.ACCOUNT_LINK_TYPES:
            raise ValueError(f"Unsupported account link type: {link_type}")
        return f"https://connect.fake/{link_type}/{account_id}"

    async def create_transfer(
        self,
        *,
        amount_cents: int,
        currency: str,
        destination_account_id: str,
        transaction_id: str,
    ) -> TransferResult:
        self._record(
            "create_transfer",
            amount_cents=amount_cents,
            currency=currency,
            destination_account_id=destination_account_id,
            transaction_id=transaction_id,
        )
        if amount_cents <= 0:
            raise ValueError(f"Transfer amount must be positive, got {amount_cents}")
        transfer = TransferResult(
            id=self._next_id("tr"),
            amount_cents=amount_cents,
            currency=currency.lower(),
            destination_account_id=destination_account_id,
            transfer_group=payoutService.transfer_group(transaction_id),
        )
        self.transfers.append(transfer)
        return transfer

    def construct_webhook_event(self, payload: bytes, sig_header: Optional[str]) -> WebhookEvent:
        return webhookHandler.construct_webhook_event(
            payload, sig_header, self.webhook_secret
        )
