from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal


def round_half_up(value: float, digits: int = 0) -> float:
    """
    Round .5 away from zero (3.45 -> 3.5, 2.5 -> 3).

    Python's round() uses banker's rounding, which would report 2.5 as 2;
    published survey figures are expected to round half up. The shortest
    repr of the float is rounded, so 4.35 gives 4.4.
    """
    quantum = Decimal(1).scaleb(-digits)
    return float(Decimal(repr(float(value))).quantize(quantum, rounding=ROUND_HALF_UP))


def round_half_up_int(value: float) -> int:
    return int(round_half_up(value, 0))
