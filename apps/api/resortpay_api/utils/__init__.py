"""Utility functions and helpers."""

from resortpay_api.utils.logging import JSONFormatter, configure_json_logging
from resortpay_api.utils.money import (
    InvalidAmountError,
    MoneyError,
    UnsupportedCurrencyError,
    format_amount,
    major_to_minor,
    minor_to_major,
    normalize_currency,
    parse_amount,
)

__all__ = [
    "MoneyError",
    "InvalidAmountError",
    "UnsupportedCurrencyError",
    "format_amount",
    "major_to_minor",
    "minor_to_major",
    "normalize_currency",
    "parse_amount",
    "JSONFormatter",
    "configure_json_logging",
]
