"""
Fixed-point conversion helpers.

Financial quantities travel as integers scaled by 10^decimals. Parsing goes
through Decimal so no value ever passes through a float.
"""
from decimal import Decimal, InvalidOperation, localcontext
from typing import Optional

_PRECISION = 96


def parse_fixed(text: str, decimals: int, *, allow_negative: bool = False) -> int:
    """
    Parse a decimal string into a fixed-point integer.

    Args:
        text: Decimal string such as "10", "0.5" or "-3.25"
        decimals: Number of implied decimal places
        allow_negative: Accept a leading minus sign

    Returns:
        Integer equal to text * 10^decimals

    Raises:
        ValueError: If text is not a finite decimal, is negative when not
            allowed, or carries more fractional digits than the scale holds
    """
    raw = (text or "").strip().replace("_", "")
    if not raw:
        raise ValueError("empty number")
    try:
        value = Decimal(raw)
    except InvalidOperation:
        raise ValueError(f"not a number: {text!r}")
    if not value.is_finite():
        raise ValueError(f"not a finite number: {text!r}")
    if value < 0 and not allow_negative:
        raise ValueError(f"negative value not allowed: {text!r}")

    with localcontext() as ctx:
        ctx.prec = _PRECISION
        scaled = value.scaleb(decimals)
    if scaled != scaled.to_integral_value():
        raise ValueError(f"too many decimal places for scale {decimals}: {text!r}")
    return int(scaled)


def to_decimal(value: int, decimals: int) -> Decimal:
    """Convert a fixed-point integer to an exact Decimal."""
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        return Decimal(value).scaleb(-decimals)


def format_fixed(value: Optional[int], decimals: int, places: Optional[int] = None) -> str:
    """
    Render a fixed-point integer for display.

    Args:
        value: Fixed-point integer (None renders as "n/a")
        decimals: Scale of value
        places: Fractional digits to show; None strips trailing zeros
    """
    if value is None:
        return "n/a"
    d = to_decimal(value, decimals)
    if places is not None:
        with localcontext() as ctx:
            ctx.prec = _PRECISION
            return f"{d.quantize(Decimal(1).scaleb(-places)):f}"
    text = f"{d:f}"
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text or "0"


def div_trunc(numerator: int, denominator: int) -> int:
    """Integer division rounding toward zero, as fixed-point contract math does."""
    if denominator == 0:
        raise ZeroDivisionError("fixed-point division by zero")
    q = abs(numerator) // abs(denominator)
    return q if (numerator >= 0) == (denominator > 0) else -q


def rescale(value: int, from_decimals: int, to_decimals: int) -> int:
    """Move a fixed-point integer between scales, truncating toward zero."""
    if to_decimals >= from_decimals:
        return value * 10 ** (to_decimals - from_decimals)
    return div_trunc(value, 10 ** (from_decimals - to_decimals))


def mul_div(a: int, b: int, denominator: int) -> int:
    """Compute a * b / denominator with truncation toward zero."""
    return div_trunc(a * b, denominator)
