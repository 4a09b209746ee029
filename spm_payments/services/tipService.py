"""
Tip Service
===========

Coordinates the tip pipeline:

1. ``create_tip``: validate the amount, create a PaymentIntent, record a
   ``pending`` ledger row. Rejected amounts never reach Stripe and leave no
   row behind.
2. ``handle_processor_webhook``: verify the Stripe signature, then move
   the transaction forward (completed / failed / refunded...). Only
   webhooks advance a tip; a client claiming success is never trusted.
3. After a completion, pay the performer's net amount to their connected
   account, at most once per transaction.

Each webhook handler runs in its own SAVEPOINT. A handler failure is
logged and acknowledged so Stripe does not retry a business-logic error
forever; only a bad signature is rejected.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional, Union

from sqlalchemy.exc import SQLAlchemyError

from spm_payments.core.config import Settings, settings as default_settings
from spm_payments.core.exceptions import (
    DuplicateIntentError,
    GatewayError,
    NotFoundError,
    TipValidationError,
)
from spm_payments.integrations.stripe import (
    PaymentGateway,
    WebhookEvent,
    WebhookEventKind,
    WebhookResult,
    dispatch_webhook,
)
from spm_payments.integrations.stripe.paymentService import reported_payment_method
from spm_payments.integrations.stripe.payoutService import account_from_payload
from spm_payments.integrations.stripe.webhookHandler import WebhookHandlerFn
from spm_payments.models import Transaction, TransactionStatus
from spm_payments.services.amountValidator import (
    get_payment_method_types,
    validate_tip_amount,
)
from spm_payments.services.auth_service import CallerIdentity
from spm_payments.services.connectedAccountDirectory import ConnectedAccountDirectory
from spm_payments.services.transactionLedger import (
    EarningsSummary,
    PerformanceSummary,
    TransactionLedger,
)

logger = logging.getLogger(__name__)

DEFAULT_FAILURE_REASON = "Payment failed"
CANCELED_REASON = "Payment canceled"


# ---------------------------------------------------------------------------
# Result dataclasses
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TipCreated:
    """What the tipper's client needs to confirm the payment."""
    transaction_id: uuid.UUID
    payment_intent_id: str
    client_secret: str
    amount_cents: int
    currency: str
    processing_fee_cents: int
    platform_fee_cents: int
    net_amount_cents: int
    payment_method_types: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class PublicTip:
    """A tip as shown on a performance page."""
    transaction_id: uuid.UUID
    amount_cents: int
    currency: str
    public_message: Optional[str]
    from_user: str
    created_at: datetime


@dataclass(frozen=True)
class PerformanceOverview:
    summary: PerformanceSummary
    recent_tips: list[PublicTip]


class TipService:
    """Use-case coordinator for tips.

    All collaborators are injected; the service holds no state between
    calls beyond them.
    """

    def __init__(
        self,
        ledger: TransactionLedger,
        directory: ConnectedAccountDirectory,
        gateway: PaymentGateway,
        settings: Settings = default_settings,
    ) -> None:
        self.ledger = ledger
        self.directory = directory
        self.gateway = gateway
        self.settings = settings
        self._webhook_handlers: dict[WebhookEventKind, WebhookHandlerFn] = {
            WebhookEventKind.PAYMENT_SUCCEEDED: self._handle_payment_succeeded,
            WebhookEventKind.PAYMENT_FAILED: self._handle_payment_failed,
            WebhookEventKind.PAYMENT_PROCESSING: self._handle_payment_processing,
            WebhookEventKind.PAYMENT_CANCELED: self._handle_payment_canceled,
            WebhookEventKind.CHARGE_REFUNDED: self._handle_charge_refunded,
            WebhookEventKind.ACCOUNT_UPDATED: self._handle_account_updated,
        }

    # ------------------------------------------------------------------
    # Requested -> IntentCreated
    # ------------------------------------------------------------------

    async def create_tip(
        self,
        *,
        amount: Union[Decimal, int, float, str],
        performance_id: str,
        performer_id: str,
        tipper_id: Optional[str] = None,
        is_anonymous: bool = False,
        public_message: Optional[str] = None,
        currency: Optional[str] = None,
        country: Optional[str] = None,
        city: Optional[str] = None,
    ) -> TipCreated:
        """Start a tip and return the client secret for confirmation.

        Raises:
            TipValidationError: Amount out of bounds or a missing field.
            GatewayError: Stripe refused or could not create the intent.
            DuplicateIntentError: The ledger already holds the intent id.
        """
        if not performance_id:
            raise TipValidationError("performance_id is required", field="performance_id")
        if not performer_id:
            raise TipValidationError("performer_id is required", field="performer_id")
        if public_message is not None:
            public_message = public_message.strip() or None
        if public_message and len(public_message) > self.settings.public_message_max_length:
            raise TipValidationError(
                f"Message cannot exceed {self.settings.public_message_max_length} characters",
                field="public_message",
            )

        validation = validate_tip_amount(amount, currency, self.settings)
        if not validation.accepted:
            logger.info(
                "Tip rejected: performance=%s, amount=%s, reason=%s",
                performance_id,
                amount,
                validation.reason,
            )
            raise TipValidationError(validation.reason or "Invalid amount", field="amount")

        amount_cents = validation.amount_cents
        tip_currency = validation.currency
        payment_method_types = get_payment_method_types(country)
        destination_account_id = await self._destination_for(performer_id)

        intent = await self.gateway.create_tip_intent(
            amount_cents=amount_cents,
            currency=tip_currency,
            performance_id=performance_id,
            performer_id=performer_id,
            tipper_id=tipper_id,
            is_anonymous=is_anonymous,
            public_message=public_message,
            payment_method_types=payment_method_types,
            destination_account_id=destination_account_id,
        )

        location = None
        if country or city:
            location = {"city": city, "country": country.upper() if country else None}

        try:
            tx = await self.ledger.create(
                amount_cents=amount_cents,
                currency=tip_currency,
                processing_fee_cents=intent.fees.processing_fee_cents,
                platform_fee_cents=intent.fees.platform_fee_cents,
                net_amount_cents=intent.fees.net_amount_cents,
                from_user_id=tipper_id,
                to_user_id=performer_id,
                performance_id=performance_id,
                stripe_payment_intent_id=intent.intent_id,
                destination_account_id=destination_account_id,
                is_anonymous=is_anonymous,
                public_message=public_message,
                location=location,
            )
        except (DuplicateIntentError, SQLAlchemyError):
            # The intent exists at Stripe with no local record. It is not
            # cancelled here; an operator has to reconcile it.
            logger.exception(
                "ORPHANED PAYMENT INTENT: intent=%s created at processor but ledger "
                "write failed (performance=%s, performer=%s, amount=%d %s)",
                intent.intent_id,
                performance_id,
                performer_id,
                amount_cents,
                tip_currency,
            )
            raise

        logger.info(
            "Tip created: transaction=%s, intent=%s, amount=%s, net=%d",
            tx.id,
            intent.intent_id,
            tx.display_amount(),
            tx.net_amount_cents,
        )
        return TipCreated(
            transaction_id=tx.id,
            payment_intent_id=intent.intent_id,
            client_secret=intent.client_secret,
            amount_cents=amount_cents,
            currency=tip_currency,
            processing_fee_cents=tx.processing_fee_cents,
            platform_fee_cents=tx.platform_fee_cents,
            net_amount_cents=tx.net_amount_cents,
            payment_method_types=payment_method_types,
        )

    async def _destination_for(self, performer_id: str) -> Optional[str]:
        """Connected account to route a destination charge to, if enabled."""
        if not self.settings.use_destination_charges:
            return None
        account = await self.directory.get(performer_id)
        if account is None or not account.connect_account_id or not account.charges_enabled:
            return None
        return account.connect_account_id

    # ------------------------------------------------------------------
    # Webhook reconciliation
    # ------------------------------------------------------------------

    async def handle_processor_webhook(
        self, raw_body: bytes, signature_header: Optional[str]
    ) -> WebhookResult:
        """Verify and reconcile one Stripe webhook delivery.

        Raises:
            WebhookSignatureError: The signature is missing or invalid.
        """
        event = self.gateway.construct_webhook_event(raw_body, signature_header)
        return await dispatch_webhook(event, self._webhook_handlers)

    async def _transaction_for(self, event: WebhookEvent, intent_id: Optional[str]) -> Optional[Transaction]:
        if not intent_id:
            logger.warning("Webhook without payment intent id: event=%s", event.id)
            return None
        tx = await self.ledger.find_by_intent_id(intent_id)
        if tx is None:
            logger.warning(
                "No transaction for payment intent: intent=%s, event=%s, type=%s",
                intent_id,
                event.id,
                event.type,
            )
        return tx

    async def _handle_payment_succeeded(self, event: WebhookEvent) -> str:
        intent = event.data_object
        async with self.ledger.savepoint():
            tx = await self._transaction_for(event, intent.get("id"))
            if tx is None:
                return "ignored: unknown payment intent"

            charge_id = await self._charge_id_for(intent)
            await self.ledger.mark_completed(
                tx, charge_id, payment_method=reported_payment_method(intent)
            )
            await self._settle_payout(tx)
        return f"transaction {tx.id} completed"

    async def _charge_id_for(self, intent: dict) -> Optional[str]:
        latest_charge = intent.get("latest_charge")
        if isinstance(latest_charge, dict):
            return latest_charge.get("id")
        if latest_charge:
            return latest_charge
        try:
            return await self.gateway.get_latest_charge_id(intent["id"])
        except GatewayError as exc:
            logger.warning(
                "Could not look up charge for intent %s: %s", intent["id"], exc.message
            )
            return None

    async def _handle_payment_failed(self, event: WebhookEvent) -> str:
        intent = event.data_object
        async with self.ledger.savepoint():
            tx = await self._transaction_for(event, intent.get("id"))
            if tx is None:
                return "ignored: unknown payment intent"
            if tx.status == TransactionStatus.FAILED.value:
                logger.info("Duplicate failure event, ignoring: transaction=%s", tx.id)
                return f"transaction {tx.id} already failed"
            error = intent.get("last_payment_error") or {}
            reason = error.get("message") or DEFAULT_FAILURE_REASON
            await self.ledger.mark_failed(tx, reason)
        return f"transaction {tx.id} failed"

    async def _handle_payment_processing(self, event: WebhookEvent) -> str:
        intent = event.data_object
        async with self.ledger.savepoint():
            tx = await self._transaction_for(event, intent.get("id"))
            if tx is None:
                return "ignored: unknown payment intent"
            if tx.status != TransactionStatus.PENDING.value:
                logger.info(
                    "Processing event after status %s, ignoring: transaction=%s",
                    tx.status,
                    tx.id,
                )
                return f"transaction {tx.id} already {tx.status}"
            await self.ledger.mark_processing(tx)
        return f"transaction {tx.id} processing"

    async def _handle_payment_canceled(self, event: WebhookEvent) -> str:
        intent = event.data_object
        async with self.ledger.savepoint():
            tx = await self._transaction_for(event, intent.get("id"))
            if tx is None:
                return "ignored: unknown payment intent"
            if tx.is_terminal:
                return f"transaction {tx.id} already {tx.status}"
            await self.ledger.mark_failed(tx, CANCELED_REASON)
        return f"transaction {tx.id} canceled"

    async def _handle_charge_refunded(self, event: WebhookEvent) -> str:
        charge = event.data_object
        async with self.ledger.savepoint():
            tx = await self._transaction_for(event, charge.get("payment_intent"))
            if tx is None:
                return "ignored: unknown payment intent"
            if not charge.get("refunded"):
                logger.info(
                    "Partial refund, status unchanged: transaction=%s, refunded=%s",
                    tx.id,
                    charge.get("amount_refunded"),
                )
                return f"transaction {tx.id} partially refunded"
            await self.ledger.mark_refunded(tx)
        return f"transaction {tx.id} refunded"

    async def _handle_account_updated(self, event: WebhookEvent) -> str:
        account = account_from_payload(event.data_object)
        async with self.ledger.savepoint():
            record = await self.directory.sync_from_account(account)
        if record is None:
            return f"ignored: unknown account {account.account_id}"
        return f"account {account.account_id} {record.account_status}"

    # ------------------------------------------------------------------
    # Completed -> TransferAttempted
    # ------------------------------------------------------------------

    async def _settle_payout(self, tx: Transaction) -> None:
        """Pay the net amount to the performer, at most once.

        A missing connected account defers the payout. A transfer failure is
        recorded on the payout only; the tip stays completed.
        """
        if tx.destination_account_id:
            # Destination charge: Stripe already routed the funds.
            if await self.ledger.claim_payout(tx):
                await self.ledger.record_payout_completed(tx)
            return

        account = await self.directory.get(tx.to_user_id)
        if account is None or not account.can_receive_transfers:
            logger.info(
                "Payout deferred, performer has no connected account: "
                "transaction=%s, performer=%s",
                tx.id,
                tx.to_user_id,
            )
            return

        if not await self.ledger.claim_payout(tx):
            return

        try:
            transfer = await self.gateway.create_transfer(
                amount_cents=tx.net_amount_cents,
                currency=tx.currency,
                destination_account_id=account.connect_account_id,
                transaction_id=str(tx.id),
            )
        except GatewayError as exc:
            logger.error(
                "Transfer failed: transaction=%s, account=%s, amount=%d, error=%s",
                tx.id,
                account.connect_account_id,
                tx.net_amount_cents,
                exc.message,
            )
            await self.ledger.record_payout_failed(tx)
            return

        await self.ledger.record_payout_completed(tx, transfer.id)

    # ------------------------------------------------------------------
    # Read surface
    # ------------------------------------------------------------------

    async def get_transaction(
        self, transaction_id: uuid.UUID, caller: CallerIdentity
    ) -> Transaction:
        """A transaction, visible only to its tipper or its performer.

        Raises:
            NotFoundError: If it does not exist or the caller is not a party.
        """
        tx = await self.ledger.get(transaction_id)
        if tx is None or caller.user_id not in (tx.from_user_id, tx.to_user_id):
            raise NotFoundError("Transaction", transaction_id)
        return tx

    async def get_performer_summary(
        self,
        performer_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> EarningsSummary:
        return await self.ledger.get_performer_summary(performer_id, start, end)

    async def list_performer_transactions(
        self,
        performer_id: str,
        status: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> list[Transaction]:
        return await self.ledger.list_performer_transactions(
            performer_id, status, limit, offset
        )

    async def list_recent_public_tips(
        self, performance_id: str, limit: Optional[int] = None
    ) -> list[PublicTip]:
        rows = await self.ledger.list_recent_public_tips(
            performance_id, limit or self.settings.recent_tips_limit
        )
        return [
            PublicTip(
                transaction_id=tx.id,
                amount_cents=tx.amount_cents,
                currency=tx.currency,
                public_message=tx.public_message,
                from_user=tx.from_user_id or "Anonymous",
                created_at=tx.created_at,
            )
            for tx in rows
        ]

    async def get_performance_overview(self, performance_id: str) -> PerformanceOverview:
        summary = await self.ledger.get_performance_summary(performance_id)
        recent = await self.list_recent_public_tips(performance_id)
        return PerformanceOverview(summary=summary, recent_tips=recent)
