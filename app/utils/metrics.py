"""Pure metric math helpers used by revenue aggregation & reconciliation summaries."""
from __future__ import annotations


def safe_div(numerator: float | int, denominator: float | int) -> float:
    if denominator in (0, 0.0):
        return 0.0
    return float(numerator) / float(denominator)


def mom_percent(previous: int | float, current: int | float) -> float:
    """Month-over-month change in percent.

    0 when both buckets are empty, 100 when growing from nothing,
    otherwise the relative change rounded to two decimals.
    """
    if previous <= 0:
        return 100.0 if current > 0 else 0.0
    return round(safe_div(current - previous, previous) * 100, 2)


def clamp(value: int, lower: int, upper: int) -> int:
    return max(lower, min(upper, value))


__all__ = ["safe_div", "mom_percent", "clamp"]
