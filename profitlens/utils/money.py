"""
Numeric helpers

Safe-number conversion is applied once at ingress; rounding is applied once,
as the final step of metric computation.
"""

import math
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any


def safe_number(value: Any) -> float:
    """
    Convert an untrusted value to a finite float.

    Non-finite numbers, empty or unparsable strings, booleans and any other
    type become 0.
    """
    if isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float, Decimal)):
        number = float(value)
        return number if math.isfinite(number) else 0.0
    if isinstance(value, str):
        trimmed = value.strip()
        if not trimmed:
            return 0.0
        try:
            number = float(trimmed)
        except ValueError:
            return 0.0
        return number if math.isfinite(number) else 0.0
    return 0.0


def safe_int(value: Any) -> int:
    """Integral variant of safe_number, truncating toward zero"""
    return int(safe_number(value))


def round_money(value: Any, precision: int = 2) -> float:
    """
    Round half-up to a fixed number of decimals.

    >>> round_money(10.555)
    10.56
    """
    number = safe_number(value)
    quantum = Decimal(1).scaleb(-precision)
    try:
        rounded = Decimal(repr(number)).quantize(quantum, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        return 0.0
    result = float(rounded)
    return result if result != 0 else 0.0


def safe_divide(numerator: float, denominator: float) -> float:
    """Division that yields 0 instead of NaN/Infinity"""
    if not denominator:
        return 0.0
    result = numerator / denominator
    return result if math.isfinite(result) else 0.0


def percentage_change(current: float, previous: float) -> float:
    """Period-over-period change in percent; +/-100 when the baseline is 0"""
    if not math.isfinite(previous) or previous == 0:
        if current > 0:
            return 100.0
        if current < 0:
            return -100.0
        return 0.0
    change = (current - previous) / abs(previous) * 100
    return change if math.isfinite(change) else 0.0
