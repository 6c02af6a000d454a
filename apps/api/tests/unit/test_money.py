"""Tests for money helpers (2dp decimals, cents conversion, currencies)."""

from decimal import Decimal

import pytest

from resortpay_api.utils import (
    InvalidAmountError,
    UnsupportedCurrencyError,
    format_amount,
    major_to_minor,
    minor_to_major,
    normalize_currency,
    parse_amount,
)


def test_parse_amount_quantizes_to_cents():
    assert parse_amount("10") == Decimal("10.00")
    assert parse_amount("10.005") == Decimal("10.01")
    assert parse_amount(Decimal("0.1")) == Decimal("0.10")


@pytest.mark.parametrize("value", [None, "abc", "-1", "0", "NaN", "Infinity"])
def test_parse_amount_rejects(value):
    with pytest.raises(InvalidAmountError):
        parse_amount(value)


def test_parse_amount_allow_zero():
    assert parse_amount("0", allow_zero=True) == Decimal("0.00")


def test_cents_round_trip_values():
    assert minor_to_major(10000) == Decimal("100.00")
    assert minor_to_major(1) == Decimal("0.01")
    assert major_to_minor(Decimal("19.99")) == 1999
    assert major_to_minor(Decimal("0.005")) == 1


def test_format_amount():
    assert format_amount(Decimal("5")) == "5.00"
    assert format_amount(Decimal("5.675")) == "5.68"


def test_normalize_currency():
    assert normalize_currency("usd") == "USD"
    assert normalize_currency(None) == "EUR"
    with pytest.raises(UnsupportedCurrencyError):
        normalize_currency("JPY")
