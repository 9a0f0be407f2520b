"""
Module: costing_kernel.db.types
Responsibility: Annotated column aliases and the sanctioned rounding helpers
    for quantities, unit costs and money amounts.
Architecture position: Kernel > DB.  Imported by models/, engines and
    services.  MUST NOT import from any of those layers.

Invariants enforced:
    - No floats.  Every quantity and cost is a Decimal.
    - round_money() / round_cost() are the only rounding functions; both use
      ROUND_HALF_UP.
"""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Annotated

from sqlalchemy import Numeric, String

# 38 digits total, 9 decimal places
Money = Annotated[Decimal, Numeric(38, 9)]
Quantity = Annotated[Decimal, Numeric(38, 9)]

ShortCode = Annotated[str, String(50)]
Sku = Annotated[str, String(100)]
OrderRef = Annotated[str, String(100)]
LongText = Annotated[str, String(4000)]

# Storage precision for unit costs and quantities
COST_DECIMAL_PLACES = 9
MONEY_DECIMAL_PLACES = 2
DEFAULT_ROUNDING = ROUND_HALF_UP

ZERO = Decimal("0")


def round_money(
    value: Decimal,
    decimal_places: int = MONEY_DECIMAL_PLACES,
    rounding: str = DEFAULT_ROUNDING,
) -> Decimal:
    """
    Round a monetary value for presentation (default 2 places, HALF_UP).

    Ledger rows keep full storage precision; this is for reporting values
    such as the blended unit cost shown to a user.
    """
    quantize_str = "0." + "0" * decimal_places if decimal_places > 0 else "1"
    return value.quantize(Decimal(quantize_str), rounding=rounding)


def round_cost(value: Decimal) -> Decimal:
    """Round a derived unit cost to storage precision."""
    return round_money(value, COST_DECIMAL_PLACES)


def to_decimal(value: object) -> Decimal:
    """
    Coerce int/str/Decimal input to Decimal.

    Floats are rejected: ``Decimal(0.1)`` carries binary noise into the ledger.

    Raises:
        ValueError: for floats, booleans or unparseable input.
    """
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, bool) or isinstance(value, float):
        raise ValueError(f"Refusing to coerce {type(value).__name__} {value!r} to Decimal")
    elif isinstance(value, (int, str)):
        try:
            result = Decimal(value)
        except InvalidOperation as exc:
            raise ValueError(f"Not a decimal: {value!r}") from exc
    else:
        raise ValueError(f"Not a decimal: {value!r}")
    if not result.is_finite():
        raise ValueError(f"Not a finite decimal: {value!r}")
    return result
