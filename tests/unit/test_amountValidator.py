"""
Unit tests for the tip amount validator and payment-method selection.
"""

from decimal import Decimal

import pytest

from spm_payments.services.amountValidator import (
    get_payment_method_types,
    to_minor_units,
    validate_tip_amount,
)


# ---------------------------------------------------------------------------
# Bounds
# ---------------------------------------------------------------------------

class TestTipBounds:

    @pytest.mark.parametrize("amount", ["0.50", "1", "5.00", "99.99", "100.00"])
    def test_amounts_within_bounds_are_accepted(self, amount, test_settings):
        result = validate_tip_amount(Decimal(amount), "EUR", test_settings)
        assert result.accepted is True
        assert result.reason is None

    @pytest.mark.parametrize("amount", ["0", "0.25", "0.49", "0.495", "100.01", "250", "-5"])
    def test_amounts_outside_bounds_are_rejected(self, amount, test_settings):
        result = validate_tip_amount(Decimal(amount), "EUR", test_settings)
        assert result.accepted is False
        assert "between 0.50 and 100.00" in result.reason

    def test_boundaries_convert_to_exact_cents(self, test_settings):
        assert validate_tip_amount("0.50", "EUR", test_settings).amount_cents == 50
        assert validate_tip_amount("100.00", "EUR", test_settings).amount_cents == 10_000

    def test_float_input_is_converted_without_binary_error(self, test_settings):
        result = validate_tip_amount(5.1, "EUR", test_settings)
        assert result.accepted is True
        assert result.amount_cents == 510

    def test_non_numeric_amount_is_rejected(self, test_settings):
        result = validate_tip_amount("abc", "EUR", test_settings)
        assert result.accepted is False
        assert result.reason == "Amount must be a number"

    def test_infinite_amount_is_rejected(self, test_settings):
        result = validate_tip_amount(Decimal("Infinity"), "EUR", test_settings)
        assert result.accepted is False


# ---------------------------------------------------------------------------
# Currency
# ---------------------------------------------------------------------------

class TestCurrency:

    def test_missing_currency_uses_default(self, test_settings):
        result = validate_tip_amount("5.00", None, test_settings)
        assert result.accepted is True
        assert result.currency == "EUR"

    def test_currency_is_normalised_to_upper_case(self, test_settings):
        assert validate_tip_amount("5.00", "gbp", test_settings).currency == "GBP"

    def test_unsupported_currency_is_rejected(self, test_settings):
        result = validate_tip_amount("5.00", "JPY", test_settings)
        assert result.accepted is False
        assert "Unsupported currency" in result.reason


# ---------------------------------------------------------------------------
# Minor units
# ---------------------------------------------------------------------------

class TestMinorUnits:

    def test_rounds_half_up(self):
        assert to_minor_units(Decimal("1.005")) == 101
        assert to_minor_units(Decimal("1.004")) == 100

    def test_invalid_input_raises(self):
        with pytest.raises(ValueError):
            to_minor_units("not-a-number")


# ---------------------------------------------------------------------------
# Payment methods
# ---------------------------------------------------------------------------

class TestPaymentMethods:

    def test_unknown_country_gets_card_only(self):
        assert get_payment_method_types("US") == ["card"]

    def test_missing_country_gets_card_only(self):
        assert get_payment_method_types(None) == ["card"]
        assert get_payment_method_types("") == ["card"]

    def test_spain_adds_bizum(self):
        assert get_payment_method_types("ES") == ["card", "bizum"]

    def test_germany_adds_local_rails(self):
        assert get_payment_method_types("de") == ["card", "sofort", "giropay"]

    def test_netherlands_adds_ideal(self):
        assert get_payment_method_types("NL") == ["card", "ideal"]

    def test_card_is_always_first(self):
        for country in ("ES", "DE", "FR", "NL", "IT"):
            assert get_payment_method_types(country)[0] == "card"
