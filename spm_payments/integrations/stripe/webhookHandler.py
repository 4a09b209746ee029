"""
Stripe Webhook Handler
======================

Verifies and routes inbound Stripe webhook events:
- Signature verification against the raw request body, before the
  payload is parsed
- Mapping of Stripe event type strings onto a closed ``WebhookEventKind``
- Dispatch through a handler table with failure isolation

Handled event kinds:
  - payment_intent.succeeded
  - payment_intent.payment_failed
  - payment_intent.processing
  - payment_intent.canceled
  - charge.refunded
  - account.updated

Everything else maps to ``WebhookEventKind.UNHANDLED`` and is acknowledged
without processing. A handler that raises is logged and reported as
unprocessed; the exception never reaches the webhook endpoint, so Stripe
does not keep retrying a delivery that fails for business reasons.
"""

from __future__ import annotations

import enum
import hashlib
import hmac
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping, Optional

import stripe

from spm_payments.core.exceptions import WebhookSignatureError

logger = logging.getLogger(__name__)


class WebhookEventKind(str, enum.Enum):
    PAYMENT_SUCCEEDED = "payment_intent.succeeded"
    PAYMENT_FAILED = "payment_intent.payment_failed"
    PAYMENT_PROCESSING = "payment_intent.processing"
    PAYMENT_CANCELED = "payment_intent.canceled"
    CHARGE_REFUNDED = "charge.refunded"
    ACCOUNT_UPDATED = "account.updated"
    UNHANDLED = "unhandled"

    @classmethod
    def from_type(cls, event_type: str) -> "WebhookEventKind":
        try:
            kind = cls(event_type)
        except ValueError:
            return cls.UNHANDLED
        return kind


# ---------------------------------------------------------------------------
# Dataclasses
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class WebhookEvent:
    """A verified Stripe event, reduced to what the reconciliation needs.

    ``stripe_event`` is the SDK ``stripe.Event`` built from the same body;
    handlers read the plain ``data_object``.
    """
    id: str
    type: str
    kind: WebhookEventKind
    data_object: dict[str, Any] = field(default_factory=dict)
    livemode: bool = False
    created: Optional[int] = None
    stripe_event: Optional[stripe.Event] = field(default=None, repr=False, compare=False)


@dataclass(frozen=True)
class WebhookResult:
    """Result of processing a webhook event."""
    event_id: str
    event_type: str
    processed: bool
    message: str


WebhookHandlerFn = Callable[[WebhookEvent], Awaitable[str]]


# ---------------------------------------------------------------------------
# Verification and parsing
# ---------------------------------------------------------------------------

def compute_signature_header(
    payload: bytes,
    secret: str,
    timestamp: Optional[int] = None,
) -> str:
    """Build a ``Stripe-Signature`` header value for ``payload``.

    Uses Stripe's v1 scheme: HMAC-SHA256 over ``"<timestamp>.<body>"``.
    """
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed_payload = f"{timestamp}.".encode("utf-8") + payload
    signature = hmac.new(
        secret.encode("utf-8"), signed_payload, hashlib.sha256
    ).hexdigest()
    return f"t={timestamp},v1={signature}"


def parse_event(payload: bytes) -> WebhookEvent:
    """Parse an already-verified event body.

    Raises:
        WebhookSignatureError: If the body is not a JSON Stripe event.
    """
    try:
        body = json.loads(payload)
    except ValueError as exc:
        logger.warning("Webhook payload parsing failed: %s", str(exc))
        raise WebhookSignatureError(f"Invalid webhook payload: {exc}") from exc

    if not isinstance(body, dict) or "type" not in body:
        raise WebhookSignatureError("Invalid webhook payload: missing event type")

    event_type = str(body["type"])
    data_object = (body.get("data") or {}).get("object") or {}
    stripe_event = stripe.Event.construct_from(body, None)
    return WebhookEvent(
        id=str(body.get("id", "")),
        type=event_type,
        kind=WebhookEventKind.from_type(event_type),
        data_object=data_object,
        livemode=bool(body.get("livemode", False)),
        created=body.get("created"),
        stripe_event=stripe_event,
    )


def construct_webhook_event(
    payload: bytes,
    sig_header: Optional[str],
    secret: str,
    tolerance: int = stripe.Webhook.DEFAULT_TOLERANCE,
) -> WebhookEvent:
    """Verify the signature over the raw body, then parse it.

    The signature is checked against the exact bytes received; JSON parsing
    only happens once verification succeeds.

    Raises:
        WebhookSignatureError: If the header is missing, the secret is not
            configured, or the signature does not match.
    """
    if not sig_header:
        logger.warning("Webhook rejected: missing Stripe-Signature header")
        raise WebhookSignatureError("Missing Stripe-Signature header")
    if not secret:
        logger.error("Webhook rejected: no webhook secret configured")
        raise WebhookSignatureError("Webhook secret is not configured")

    try:
        stripe.WebhookSignature.verify_header(
            payload.decode("utf-8"), sig_header, secret, tolerance
        )
    except stripe.SignatureVerificationError as exc:
        logger.warning("Webhook signature verification failed: %s", str(exc))
        raise WebhookSignatureError(f"Invalid webhook signature: {exc}") from exc
    except UnicodeDecodeError as exc:
        logger.warning("Webhook payload is not valid UTF-8")
        raise WebhookSignatureError("Invalid webhook payload encoding") from exc

    return parse_event(payload)


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------

async def dispatch_webhook(
    event: WebhookEvent,
    handlers: Mapping[WebhookEventKind, WebhookHandlerFn],
) -> WebhookResult:
    """Route a verified event to its handler.

    Unknown kinds are acknowledged. Handler exceptions are logged and
    reported as ``processed=False``; they are not re-raised.
    """
    handler = handlers.get(event.kind)
    if event.kind is WebhookEventKind.UNHANDLED or handler is None:
        logger.info(
            "Webhook event type not handled: id=%s, type=%s",
            event.id,
            event.type,
        )
        return WebhookResult(
            event_id=event.id,
            event_type=event.type,
            processed=False,
            message=f"Event type '{event.type}' acknowledged but not handled",
        )

    try:
        message = await handler(event)
    except Exception:
        logger.exception(
            "Error processing webhook event: id=%s, type=%s",
            event.id,
            event.type,
        )
        return WebhookResult(
            event_id=event.id,
            event_type=event.type,
            processed=False,
            message=f"Error processing event {event.id}",
        )

    logger.info(
        "Webhook event processed: id=%s, type=%s, result=%s",
        event.id,
        event.type,
        message,
    )
    return WebhookResult(
        event_id=event.id,
        event_type=event.type,
        processed=True,
        message=message,
    )
