"""Rounding helpers shared by load and heart-rate calculations."""

import math


def round_half_up(value: float, digits: int = 0) -> float:
    """
    Round halves away from zero for positive values (2.5 -> 3).

    Python's round() uses banker's rounding (2.5 -> 2), which makes load
    adjustments drift downward over repeated phase changes.
    """
    factor = 10 ** digits
    rounded = math.floor(value * factor + 0.5) / factor
    return int(rounded) if digits == 0 else rounded
