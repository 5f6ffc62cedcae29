from decimal import ROUND_HALF_DOWN, ROUND_HALF_UP, Decimal
from typing import Union

TWO_PLACES = Decimal("0.01")


def round_money(value: Union[Decimal, float, int, str]) -> Decimal:
    """
    Round monetary value to 2 decimal places.

    Positive values round half up, negative values round half toward zero so
    that a refund and its original charge stay symmetric.

    Examples:
        >>> round_money(10.125)
        Decimal('10.13')
        >>> round_money("-10.125")
        Decimal('-10.12')
    """
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    if value < 0:
        return value.quantize(TWO_PLACES, rounding=ROUND_HALF_DOWN)
    return value.quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def money_str(value: Union[Decimal, float, int, str, None]) -> str | None:
    """Rounded string form used in audit payloads (JSON has no decimal type)."""
    if value is None:
        return None
    return str(round_money(value))


def normalize_currency(code: str) -> str:
    """ISO 4217 code, upper-case, three letters."""
    code = (code or "").strip().upper()
    if len(code) != 3 or not code.isalpha():
        raise ValueError(f"Invalid currency code: {code!r}")
    return code
