"""
Stripe integration for the SPM tip pipeline.

- ``paymentService``: fee arithmetic and tip PaymentIntents
- ``payoutService``: Connect accounts, onboarding links and transfers
- ``webhookHandler``: signature verification and event dispatch
- ``gateway``: the ``PaymentGateway`` interface and ``StripeGateway``
- ``fakeGateway``: deterministic in-process gateway
"""

from .fakeGateway import FakeGateway
from .gateway import PaymentGateway, StripeGateway, get_payment_gateway
from .paymentService import FeeBreakdown, TipIntentResult, calculate_fees
from .payoutService import ConnectedAccountResult, TransferResult
from .webhookHandler import (
    WebhookEvent,
    WebhookEventKind,
    WebhookResult,
    dispatch_webhook,
)
