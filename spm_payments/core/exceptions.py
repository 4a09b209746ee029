"""
Tip Pipeline Exceptions
=======================

Every failure the tip pipeline can raise derives from ``TipPipelineError``
so route handlers can translate them in one place:

- ``TipValidationError``     -- bad client input (HTTP 400)
- ``GatewayError``           -- the payment processor rejected or failed a call
    - ``WebhookSignatureError`` -- inbound webhook failed verification
    - ``TransferError``         -- payout transfer to a connected account failed
- ``NotFoundError``          -- missing transaction / connected account
- ``DuplicateIntentError``   -- ledger uniqueness violation on the intent id
- ``InvalidTransitionError`` -- status change outside the transaction DAG
"""

from __future__ import annotations


class TipPipelineError(Exception):
    """Base class for all tip pipeline errors."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class TipValidationError(TipPipelineError):
    """Raised when a tip request fails validation.

    Attributes:
        message: Human-readable, client-safe description.
        field: Name of the offending request field, if any.
    """

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class GatewayError(TipPipelineError):
    """Raised when a payment processor operation fails.

    Attributes:
        message: Human-readable error description (never shown to tippers).
        stripe_error_code: The Stripe error code, if available.
        stripe_error_type: The Stripe error type, if available.
        decline_code: The decline code from the card issuer, if available.
    """

    def __init__(
        self,
        message: str,
        stripe_error_code: str | None = None,
        stripe_error_type: str | None = None,
        decline_code: str | None = None,
    ) -> None:
        super().__init__(message)
        self.stripe_error_code = stripe_error_code
        self.stripe_error_type = stripe_error_type
        self.decline_code = decline_code

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(message={self.message!r}, "
            f"code={self.stripe_error_code!r}, "
            f"type={self.stripe_error_type!r})"
        )


class WebhookSignatureError(GatewayError):
    """Raised when a webhook payload cannot be verified against the secret."""


class TransferError(GatewayError):
    """Raised when a payout transfer to a connected account fails."""


class NotFoundError(TipPipelineError):
    """Raised when a requested record does not exist."""

    def __init__(self, resource: str, identifier: object) -> None:
        super().__init__(f"{resource} {identifier} not found")
        self.resource = resource
        self.identifier = identifier


class DuplicateIntentError(TipPipelineError):
    """Raised when a ledger entry already exists for a payment intent."""

    def __init__(self, payment_intent_id: str) -> None:
        super().__init__(
            f"A transaction already exists for payment intent {payment_intent_id}"
        )
        self.payment_intent_id = payment_intent_id


class InvalidTransitionError(TipPipelineError):
    """Raised when a transaction status change is not allowed."""

    def __init__(self, current: str, target: str, reason: str | None = None) -> None:
        message = f"Cannot move transaction from '{current}' to '{target}'"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.current = current
        self.target = target
