from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any

from .errors import ValidationError

CENT = Decimal('0.01')
ZERO = Decimal('0.00')
RATE_PLACES = Decimal('0.000001')


def to_decimal(value: Any, field: str = "amount") -> Decimal:
    """
    Parse a caller-supplied amount into a Decimal.

    Decimal strings, ints and Decimals are accepted. Floats are refused:
    binary floating point must never reach the ledger.
    """
    if isinstance(value, bool) or isinstance(value, float):
        raise ValidationError(errors={field: "Use a decimal string, not a float"})
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, (int, str)):
        try:
            result = Decimal(str(value).strip())
        except InvalidOperation:
            raise ValidationError(errors={field: f"'{value}' is not a valid decimal"})
    else:
        raise ValidationError(errors={field: f"Unsupported amount type {type(value).__name__}"})

    if not result.is_finite():
        raise ValidationError(errors={field: "Amount must be a finite number"})
    return result


def quantize_amount(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def to_amount(value: Any, field: str = "amount") -> Decimal:
    """Parse a ledger amount. Sub-cent precision is refused, not rounded."""
    result = to_decimal(value, field)
    try:
        whole_cents = result == result.quantize(CENT)
    except InvalidOperation:
        raise ValidationError(errors={field: "Amount is too large"})
    if not whole_cents:
        raise ValidationError(errors={field: "Amount cannot have more than 2 decimal places"})
    return quantize_amount(result)


def to_rate(value: Any, field: str = "exchange_rate") -> Decimal:
    rate = to_decimal(value, field).quantize(RATE_PLACES, rounding=ROUND_HALF_UP)
    if rate <= 0:
        raise ValidationError(errors={field: "Exchange rate must be positive"})
    return rate


def format_amount(value: Decimal) -> str:
    return str(quantize_amount(value))
