"""
Payments API Routes
===================

Tip payment endpoints backed by Stripe.

  GET  /api/v1/payments/config                     -- Tipping UI configuration
  POST /api/v1/payments/tip                        -- Start a tip (PaymentIntent)
  POST /api/v1/payments/webhooks/stripe            -- Stripe webhook endpoint
  GET  /api/v1/payments/transactions/{id}          -- Transaction detail
  GET  /api/v1/payments/earnings                   -- Performer earnings
  GET  /api/v1/payments/performance/{id}/summary   -- Public tip summary
  POST /api/v1/payments/connect/account            -- Create a Connect account
  GET  /api/v1/payments/connect/account            -- Connect account status
  POST /api/v1/payments/connect/link               -- Fresh onboarding link
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, Request, status
from sqlalchemy.exc import SQLAlchemyError

from spm_payments.api.deps import (
    AccountDirectory,
    AppSettings,
    CurrentCaller,
    CurrentPerformer,
    GeoHint,
    OptionalCaller,
    TipServiceDep,
)
from spm_payments.api.schemas.payment import (
    ConnectAccountResponse,
    ConnectLinkResponse,
    CreateConnectAccountRequest,
    CreateConnectLinkRequest,
    PaymentConfigResponse,
)
from spm_payments.api.schemas.tip import (
    CreateTipRequest,
    CreateTipResponse,
    EarningsResponse,
    PerformanceSummaryResponse,
    PublicTipResponse,
    TransactionResponse,
    WebhookAckResponse,
)
from spm_payments.core.exceptions import (
    DuplicateIntentError,
    GatewayError,
    NotFoundError,
    TipValidationError,
    WebhookSignatureError,
)
from spm_payments.models import PerformerPaymentAccount, TransactionStatus
from spm_payments.services.amountValidator import get_payment_method_types

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["Payments"])

GENERIC_PAYMENT_FAILURE = "Payment could not be started. Please try again."


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _validation_error_to_http(exc: TipValidationError) -> HTTPException:
    detail: dict = {"message": exc.message}
    if exc.field:
        detail["field"] = exc.field
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


def _account_response(
    record: PerformerPaymentAccount, onboarding_url: Optional[str] = None
) -> ConnectAccountResponse:
    response = ConnectAccountResponse.model_validate(record)
    return response.model_copy(update={"onboarding_url": onboarding_url})


# ---------------------------------------------------------------------------
# GET /payments/config
# ---------------------------------------------------------------------------

@router.get(
    "/config",
    response_model=PaymentConfigResponse,
    summary="Tipping configuration",
    description=(
        "Currency, tip bounds, suggested amounts and the payment methods "
        "available for the caller's country (from the CF-IPCountry header)."
    ),
)
async def get_payment_config(geo: GeoHint, settings: AppSettings) -> PaymentConfigResponse:
    configured = settings.payment_gateway == "fake" or bool(
        settings.stripe_secret_key and settings.stripe_publishable_key
    )
    return PaymentConfigResponse(
        currency=settings.default_currency,
        supported_currencies=settings.supported_currencies,
        payment_methods=get_payment_method_types(geo.country),
        configured=configured,
        publishable_key=settings.stripe_publishable_key or None,
        min_amount=Decimal(settings.min_tip_cents) / 100,
        max_amount=Decimal(settings.max_tip_cents) / 100,
        suggested_amounts=settings.suggested_tip_amounts,
    )


# ---------------------------------------------------------------------------
# POST /payments/tip
# ---------------------------------------------------------------------------

@router.post(
    "/tip",
    response_model=CreateTipResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Start a tip",
    description=(
        "Validates the amount, creates a Stripe PaymentIntent and records a "
        "pending transaction. The client confirms the payment with the "
        "returned client secret; the transaction completes only when Stripe "
        "reports success through the webhook. Authentication is optional."
    ),
)
async def create_tip(
    body: CreateTipRequest,
    tip_service: TipServiceDep,
    caller: OptionalCaller,
    geo: GeoHint,
) -> CreateTipResponse:
    try:
        created = await tip_service.create_tip(
            amount=body.amount,
            performance_id=body.performance_id,
            performer_id=body.performer_id,
            tipper_id=caller.user_id if caller else None,
            is_anonymous=body.is_anonymous,
            public_message=body.public_message,
            currency=body.currency,
            country=geo.country,
            city=geo.city,
        )
    except TipValidationError as exc:
        raise _validation_error_to_http(exc) from exc
    except (GatewayError, DuplicateIntentError, SQLAlchemyError) as exc:
        # Processor and database detail stay in the logs.
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=GENERIC_PAYMENT_FAILURE,
        ) from exc

    return CreateTipResponse(
        transaction_id=created.transaction_id,
        payment_intent_id=created.payment_intent_id,
        client_secret=created.client_secret,
        amount_cents=created.amount_cents,
        currency=created.currency,
        processing_fee_cents=created.processing_fee_cents,
        platform_fee_cents=created.platform_fee_cents,
        net_amount_cents=created.net_amount_cents,
        payment_method_types=created.payment_method_types,
    )


# ---------------------------------------------------------------------------
# POST /payments/webhooks/stripe
# ---------------------------------------------------------------------------

@router.post(
    "/webhooks/stripe",
    response_model=WebhookAckResponse,
    summary="Stripe webhook endpoint",
    description=(
        "Receives Stripe events. The signature is verified against the raw "
        "request body. Events that fail processing are still acknowledged; "
        "only a missing or invalid signature is rejected."
    ),
)
async def stripe_webhook_endpoint(
    request: Request,
    tip_service: TipServiceDep,
) -> WebhookAckResponse:
    payload = await request.body()
    sig_header = request.headers.get("Stripe-Signature")

    try:
        result = await tip_service.handle_processor_webhook(payload, sig_header)
    except WebhookSignatureError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=exc.message,
        ) from exc

    return WebhookAckResponse(
        received=True,
        event_type=result.event_type,
        processed=result.processed,
    )


# ---------------------------------------------------------------------------
# GET /payments/transactions/{transaction_id}
# ---------------------------------------------------------------------------

@router.get(
    "/transactions/{transaction_id}",
    response_model=TransactionResponse,
    summary="Get a transaction",
    description="Visible only to the tipper and the performer of the transaction.",
)
async def get_transaction(
    transaction_id: uuid.UUID,
    tip_service: TipServiceDep,
    caller: CurrentCaller,
) -> TransactionResponse:
    try:
        tx = await tip_service.get_transaction(transaction_id, caller)
    except NotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail=exc.message
        ) from exc
    return TransactionResponse.model_validate(tx)


# ---------------------------------------------------------------------------
# GET /payments/earnings
# ---------------------------------------------------------------------------

@router.get(
    "/earnings",
    response_model=EarningsResponse,
    summary="Performer earnings",
    description="Totals over completed tips plus the performer's latest transactions.",
)
async def get_earnings(
    tip_service: TipServiceDep,
    performer: CurrentPerformer,
    start: Optional[datetime] = Query(default=None),
    end: Optional[datetime] = Query(default=None),
    status_filter: Optional[TransactionStatus] = Query(default=None, alias="status"),
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
) -> EarningsResponse:
    summary = await tip_service.get_performer_summary(performer.user_id, start, end)
    transactions = await tip_service.list_performer_transactions(
        performer.user_id,
        status_filter.value if status_filter else None,
        limit,
        offset,
    )
    return EarningsResponse(
        transaction_count=summary.transaction_count,
        total_amount_cents=summary.total_amount_cents,
        total_net_cents=summary.total_net_cents,
        total_fees_cents=summary.total_fees_cents,
        average_amount_cents=summary.average_amount_cents,
        transactions=[TransactionResponse.model_validate(tx) for tx in transactions],
    )


# ---------------------------------------------------------------------------
# GET /payments/performance/{performance_id}/summary
# ---------------------------------------------------------------------------

@router.get(
    "/performance/{performance_id}/summary",
    response_model=PerformanceSummaryResponse,
    summary="Public tip summary for a performance",
)
async def get_performance_summary(
    performance_id: str,
    tip_service: TipServiceDep,
) -> PerformanceSummaryResponse:
    overview = await tip_service.get_performance_overview(performance_id)
    return PerformanceSummaryResponse(
        performance_id=performance_id,
        transaction_count=overview.summary.transaction_count,
        total_amount_cents=overview.summary.total_amount_cents,
        average_amount_cents=overview.summary.average_amount_cents,
        recent_tips=[PublicTipResponse.model_validate(tip) for tip in overview.recent_tips],
    )


# ---------------------------------------------------------------------------
# Stripe Connect
# ---------------------------------------------------------------------------

@router.post(
    "/connect/account",
    response_model=ConnectAccountResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a Stripe Connect account for the performer",
)
async def create_connect_account(
    body: CreateConnectAccountRequest,
    directory: AccountDirectory,
    performer: CurrentPerformer,
) -> ConnectAccountResponse:
    try:
        result = await directory.onboard(
            performer.user_id, body.email, body.country, body.business_type
        )
    except TipValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT, detail=exc.message
        ) from exc
    except GatewayError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Could not create the connected account",
        ) from exc
    return _account_response(result.account, result.onboarding_url)


@router.get(
    "/connect/account",
    response_model=ConnectAccountResponse,
    summary="Current Stripe Connect status of the performer",
    description="Refreshes the stored status from Stripe before returning it.",
)
async def get_connect_account(
    directory: AccountDirectory,
    performer: CurrentPerformer,
) -> ConnectAccountResponse:
    record = await directory.refresh(performer.user_id)
    if record is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No connected account for this performer",
        )
    return _account_response(record)


@router.post(
    "/connect/link",
    response_model=ConnectLinkResponse,
    summary="Create a fresh onboarding link",
)
async def create_connect_link(
    body: CreateConnectLinkRequest,
    directory: AccountDirectory,
    performer: CurrentPerformer,
) -> ConnectLinkResponse:
    try:
        url = await directory.create_link(performer.user_id, body.link_type)
    except NotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail=exc.message
        ) from exc
    except GatewayError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Could not create the onboarding link",
        ) from exc
    return ConnectLinkResponse(url=url)
