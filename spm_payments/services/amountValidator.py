"""
Tip Amount Validator
====================

The single place where the tip floor and ceiling are enforced. The API
schema bounds are a convenience; the orchestrator always re-runs
``validate_tip_amount`` before anything reaches the processor.

Also selects the payment-method types offered for a tipper's country.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Optional, Union

from spm_payments.core.config import Settings, settings as default_settings

AmountInput = Union[Decimal, int, float, str]

BASE_PAYMENT_METHODS: tuple[str, ...] = ("card",)

# Additional rails per ISO country code (upper-case).
LOCAL_PAYMENT_METHODS: dict[str, tuple[str, ...]] = {
    "ES": ("bizum",),
    "DE": ("sofort", "giropay"),
    "FR": ("bancontact",),
    "NL": ("ideal",),
}


@dataclass(frozen=True)
class AmountValidation:
    """Outcome of validating a tip amount."""
    accepted: bool
    amount_cents: Optional[int] = None
    currency: Optional[str] = None
    reason: Optional[str] = None


def parse_amount(amount: AmountInput) -> Decimal:
    """Parse a major-unit amount into a finite ``Decimal``.

    Raises:
        ValueError: If ``amount`` is not a finite number.
    """
    try:
        value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    except InvalidOperation as exc:
        raise ValueError(f"Invalid amount: {amount!r}") from exc
    if not value.is_finite():
        raise ValueError(f"Invalid amount: {amount!r}")
    return value


def to_minor_units(amount: AmountInput) -> int:
    """Convert a major-unit amount to cents, rounding half-up."""
    value = parse_amount(amount)
    return int((value * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def validate_tip_amount(
    amount: AmountInput,
    currency: Optional[str] = None,
    settings: Settings = default_settings,
) -> AmountValidation:
    """Check a major-unit tip amount against the configured bounds.

    Bounds are inclusive: with the defaults, 0.50 and 100.00 are accepted
    while 0.49 and 100.01 are rejected.
    """
    currency = (currency or settings.default_currency).upper()
    if currency not in settings.supported_currencies:
        return AmountValidation(
            accepted=False,
            currency=currency,
            reason=f"Unsupported currency: {currency}",
        )

    try:
        value = parse_amount(amount)
    except ValueError:
        return AmountValidation(
            accepted=False, currency=currency, reason="Amount must be a number"
        )

    # Both checks: 0.495 rounds to 50 cents but is still below the floor.
    amount_cents = to_minor_units(value)
    min_cents, max_cents = settings.min_tip_cents, settings.max_tip_cents
    in_bounds = (
        Decimal(min_cents) / 100 <= value <= Decimal(max_cents) / 100
        and min_cents <= amount_cents <= max_cents
    )
    if not in_bounds:
        return AmountValidation(
            accepted=False,
            amount_cents=amount_cents,
            currency=currency,
            reason=(
                f"Tip amount must be between {min_cents / 100:.2f} and "
                f"{max_cents / 100:.2f} {currency}"
            ),
        )

    return AmountValidation(accepted=True, amount_cents=amount_cents, currency=currency)


def get_payment_method_types(country: Optional[str]) -> list[str]:
    """Payment-method types for a tipper's country; unknown falls back to card."""
    extra = LOCAL_PAYMENT_METHODS.get((country or "").strip().upper(), ())
    return [*BASE_PAYMENT_METHODS, *extra]
