"""
Module: harvest_kernel.db.types
Responsibility: Annotated type aliases and utility functions for money
    columns and ledger arithmetic.  Centralizes precision and rounding so
    that every model, domain function and service uses identical rules.
Architecture position: Kernel > DB.  May be imported by models/, domain/,
    services/.  MUST NOT import from any of those layers.

Invariants enforced:
    - No floats in ledger arithmetic.  to_money() refuses float input.
    - round_money() is the ONLY sanctioned rounding function for amounts.
    - MONEY_TOLERANCE (half a currency unit) is the single tolerance used
      when comparing a stepped computation against its closed form.

Failure modes:
    - TypeError when a float is passed to to_money().
    - decimal.InvalidOperation on non-numeric strings.
"""

from decimal import ROUND_HALF_UP, Decimal
from typing import Annotated

from sqlalchemy import BigInteger, Numeric, String

# Stored amounts: 18 digits, 2 decimal places (rupees and paise)
Money = Annotated[Decimal, Numeric(18, 2)]

# Monotonic sequence number for ordering
Sequence = Annotated[int, BigInteger]

# SHA-256 hash as hex string (64 characters)
PayloadHash = Annotated[str, String(64)]


MONEY_DECIMAL_PLACES = 2
DEFAULT_ROUNDING = ROUND_HALF_UP
ZERO = Decimal("0.00")

# Half a currency unit
MONEY_TOLERANCE = Decimal("0.5")


def to_money(value: Decimal | int | str) -> Decimal:
    """
    Convert an int, str or Decimal to a rounded money Decimal.

    Raises:
        TypeError: If value is a float.
    """
    if isinstance(value, float):
        raise TypeError("Money amounts must not be floats; pass str or Decimal")
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return round_money(value)


def round_money(
    value: Decimal,
    decimal_places: int = MONEY_DECIMAL_PLACES,
    rounding: str = DEFAULT_ROUNDING,
) -> Decimal:
    """
    Round a monetary value to specified decimal places.

    This is the ONLY sanctioned rounding function for amounts in the
    kernel.

    Example:
        round_money(Decimal("10.555")) -> Decimal("10.56")
    """
    quantize_str = "0." + "0" * decimal_places if decimal_places > 0 else "1"
    return value.quantize(Decimal(quantize_str), rounding=rounding)


def within_tolerance(a: Decimal, b: Decimal, tolerance: Decimal = MONEY_TOLERANCE) -> bool:
    """True when two amounts differ by no more than ``tolerance``."""
    return abs(a - b) <= tolerance
