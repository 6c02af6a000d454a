"""Money helpers.

Amounts are persisted as 2dp decimal strings (TEXT columns) and exchanged
with the provider in integer minor units (cents).
"""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Union

SUPPORTED_CURRENCIES: frozenset[str] = frozenset({"EUR", "USD", "GBP"})
DEFAULT_CURRENCY = "EUR"

_CENT = Decimal("0.01")
_HUNDRED = Decimal("100")


class MoneyError(ValueError):
    """Base error for money parsing/validation."""


class InvalidAmountError(MoneyError):
    """Amount is not a valid, positive decimal."""


class UnsupportedCurrencyError(MoneyError):
    """Currency is outside the supported set."""


def parse_amount(value: Union[str, int, float, Decimal, None], *, allow_zero: bool = False) -> Decimal:
    """Parse a major-unit amount into a 2dp Decimal.

    Raises:
        InvalidAmountError: If the value is missing, not numeric or not positive
    """
    if value is None:
        raise InvalidAmountError("Amount is required")
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise InvalidAmountError(f"Invalid amount: {value!r}") from e

    if not amount.is_finite():
        raise InvalidAmountError(f"Invalid amount: {value!r}")
    if amount < 0 or (amount == 0 and not allow_zero):
        raise InvalidAmountError(f"Amount must be positive, got {value!r}")

    return amount.quantize(_CENT, rounding=ROUND_HALF_UP)


def minor_to_major(cents: int) -> Decimal:
    """Convert provider minor units (cents) to a 2dp Decimal."""
    return (Decimal(int(cents)) / _HUNDRED).quantize(_CENT)


def major_to_minor(amount: Decimal) -> int:
    """Convert a Decimal amount to integer cents, rounding to the nearest cent."""
    return int((amount * _HUNDRED).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def format_amount(amount: Decimal) -> str:
    """Format a Decimal as the 2dp string stored in TEXT money columns."""
    return str(amount.quantize(_CENT, rounding=ROUND_HALF_UP))


def normalize_currency(currency: str | None) -> str:
    """Upper-case and validate a currency code, defaulting to EUR."""
    if not currency:
        return DEFAULT_CURRENCY
    code = currency.strip().upper()
    if code not in SUPPORTED_CURRENCIES:
        raise UnsupportedCurrencyError(
            f"Unsupported currency {currency!r}; expected one of {sorted(SUPPORTED_CURRENCIES)}"
        )
    return code
