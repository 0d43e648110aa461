"""Tests for minor-unit money helpers."""

from __future__ import annotations

from decimal import Decimal

import pytest

from milestone_escrow.domain.exceptions import InvalidAmountError, ValidationError
from milestone_escrow.domain.money import (
    MAX_MAJOR_AMOUNT,
    MAX_MINOR_UNITS,
    format_amount,
    normalize_currency,
    to_major,
    to_minor,
)


class TestToMinor:
    def test_usd(self) -> None:
        assert to_minor(Decimal("500"), "USD") == 50_000
        assert to_minor("0.10", "usd") == 10

    def test_zero_exponent_currency(self) -> None:
        assert to_minor(1500, "JPY") == 1500

    def test_three_decimal_currency(self) -> None:
        assert to_minor("1.234", "KWD") == 1234

    def test_excess_precision_rejected(self) -> None:
        with pytest.raises(InvalidAmountError):
            to_minor("10.005", "USD")

    def test_not_a_number(self) -> None:
        with pytest.raises(InvalidAmountError):
            to_minor("ten", "USD")

    def test_infinity_rejected(self) -> None:
        with pytest.raises(InvalidAmountError):
            to_minor(Decimal("Infinity"), "USD")

    def test_beyond_decimal_precision_rejected(self) -> None:
        with pytest.raises(InvalidAmountError, match="too large"):
            to_minor(Decimal("1e30"), "USD")

    def test_beyond_bigint_rejected(self) -> None:
        with pytest.raises(InvalidAmountError, match="too large"):
            to_minor(Decimal("100000000000000000"), "USD")

    def test_largest_api_amount_fits(self) -> None:
        assert to_minor(MAX_MAJOR_AMOUNT, "KWD") <= MAX_MINOR_UNITS

    def test_sums_are_exact(self) -> None:
        # 0.1 + 0.2 drifts as a float; in minor units it cannot.
        assert to_minor("0.1", "USD") + to_minor("0.2", "USD") == to_minor("0.3", "USD")


class TestToMajor:
    def test_usd(self) -> None:
        assert to_major(50_000, "USD") == Decimal("500.00")
        assert str(to_major(5, "USD")) == "0.05"

    def test_jpy(self) -> None:
        assert str(to_major(1500, "JPY")) == "1500"


class TestCurrency:
    def test_normalizes(self) -> None:
        assert normalize_currency(" eur ") == "EUR"

    @pytest.mark.parametrize("code", ["", "US", "USDX", "12$"])
    def test_invalid(self, code: str) -> None:
        with pytest.raises(ValidationError):
            normalize_currency(code)

    def test_format_amount(self) -> None:
        assert format_amount(30_000, "usd") == "300.00 USD"
