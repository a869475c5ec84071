"""
Currency unit conversion.

Currency amounts travel through the ledger as integers in base units
(``CURRENCY_DECIMALS`` fractional digits). These helpers convert exactly
between human-readable decimal strings and base units; they never round.
"""

from decimal import Decimal, InvalidOperation
from typing import Union

from .constants import CURRENCY_DECIMALS, CURRENCY_UNIT
from .exceptions import InvalidAmountError


def parse_currency(value: Union[str, int, Decimal]) -> int:
    """
    Convert a decimal currency amount to integer base units.

    ``parse_currency("0.1") == 10**17``. Ints are taken as whole currency
    units. Raises InvalidAmountError for negative values or for more
    fractional digits than base units can hold.
    """
    if isinstance(value, bool) or isinstance(value, float):
        raise InvalidAmountError(f"Unsupported currency value type: {type(value).__name__}")
    try:
        amount = Decimal(str(value).strip())
    except InvalidOperation:
        raise InvalidAmountError(f"Not a decimal amount: {value!r}") from None
    if not amount.is_finite():
        raise InvalidAmountError(f"Not a finite amount: {value!r}")
    if amount < 0:
        raise InvalidAmountError(f"Currency amount cannot be negative: {value}")

    # Integer arithmetic on the digit tuple; Decimal ops would round at 28 digits
    _, digits, exponent = amount.as_tuple()
    digits = list(digits)
    while exponent < -CURRENCY_DECIMALS and len(digits) > 1 and digits[-1] == 0:
        digits.pop()
        exponent += 1
    if exponent < -CURRENCY_DECIMALS and any(digits):
        raise InvalidAmountError(
            f"{value} has more than {CURRENCY_DECIMALS} fractional digits"
        )
    coefficient = int("".join(map(str, digits)))
    if coefficient == 0:
        return 0
    return coefficient * 10 ** (exponent + CURRENCY_DECIMALS)


def format_currency(base_units: int) -> str:
    """Render integer base units as an exact decimal string ("1.05")."""
    require_amount(base_units, "currency amount")
    whole, frac = divmod(base_units, CURRENCY_UNIT)
    if frac == 0:
        return str(whole)
    digits = str(frac).rjust(CURRENCY_DECIMALS, "0").rstrip("0")
    return f"{whole}.{digits}"


def require_amount(value, what: str = "amount") -> int:
    """Validate a non-negative integer amount and return it."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidAmountError(f"{what} must be an integer, got {type(value).__name__}")
    if value < 0:
        raise InvalidAmountError(f"{what} cannot be negative: {value}")
    return value
