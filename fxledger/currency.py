"""
Currency Module

The single enumeration of currencies the ledger accepts, plus the Decimal
helpers every monetary value goes through. NEVER uses float for stored values.
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP, getcontext
from enum import Enum
from typing import Any, Union

from .errors import InvalidAmount

# High precision for intermediate conversion math
getcontext().prec = 28

CENTS = Decimal("0.01")
ZERO = Decimal("0.00")

# Largest amount a NUMERIC(20, 2) column holds
MAX_AMOUNT = Decimal("999999999999999999.99")


class Currency(Enum):
    """Supported currencies with their precision"""
    USD = ("USD", 2)    # US Dollar
    EUR = ("EUR", 2)    # Euro
    USDT = ("USDT", 2)  # Tether, booked with cents like USD
    BRL = ("BRL", 2)    # Brazilian Real

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision

    @classmethod
    def from_code(cls, code: Union[str, "Currency"]) -> "Currency":
        """Resolve a currency from its ISO-style code"""
        if isinstance(code, Currency):
            return code
        try:
            return cls[str(code).strip().upper()]
        except KeyError:
            raise ValueError(f"Unsupported currency: {code}")

    @classmethod
    def codes(cls) -> list:
        return [c.code for c in cls]


def quantize_amount(value: Decimal) -> Decimal:
    """
    Round to the 2 fractional digits used at the persistence boundary.

    Raises:
        InvalidAmount: If the value has too many digits to be rounded
    """
    try:
        return value.quantize(CENTS, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        raise InvalidAmount("Amount is too large", amount=str(value))


def to_decimal(value: Any) -> Decimal:
    """
    Convert a stored or supplied value to Decimal without going through float
    representation error.

    Raises:
        InvalidAmount: If value is not numeric
    """
    if isinstance(value, bool):
        raise InvalidAmount(f"Amount must be numeric, got {value!r}", amount=value)
    if isinstance(value, Decimal):
        return value
    if isinstance(value, (int, float)):
        return Decimal(str(value))
    if isinstance(value, str) and value.strip():
        try:
            return Decimal(value.strip())
        except InvalidOperation:
            pass
    raise InvalidAmount(f"Amount must be numeric, got {value!r}", amount=value)


def parse_amount(value: Any) -> Decimal:
    """
    Validate a caller-supplied monetary amount.

    Args:
        value: Decimal, int, float or numeric string

    Returns:
        The amount as a Decimal rounded to 2 fractional digits

    Raises:
        InvalidAmount: If the amount is non-numeric, non-finite, not positive
            or above MAX_AMOUNT
    """
    amount = to_decimal(value)
    if not amount.is_finite():
        raise InvalidAmount("Amount must be a finite number", amount=str(amount))
    if amount > MAX_AMOUNT:
        raise InvalidAmount("Amount is too large", amount=str(amount), maximum=str(MAX_AMOUNT))
    amount = quantize_amount(amount)
    if amount <= ZERO:
        raise InvalidAmount("Amount must be greater than zero", amount=str(amount))
    return amount
