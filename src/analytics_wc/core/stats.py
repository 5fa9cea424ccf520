"""
Small numeric helpers shared by the metric computations.

Rounding is half-up (2.5 -> 3), not Python's round-half-even.
"""
from collections.abc import Iterable
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, TypeVar

K = TypeVar("K")


def round_half_up(value: float, digits: int = 0):
    """Round half away from zero; returns int when digits == 0."""
    quantum = Decimal(1).scaleb(-digits)
    rounded = Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP)
    return int(rounded) if digits == 0 else float(rounded)


def mean(values: Iterable[float]) -> Optional[float]:
    values = list(values)
    if not values:
        return None
    return sum(values) / len(values)


def percentage(part: int, whole: int) -> int:
    """Whole-number percentage; 0 when there is nothing to divide by."""
    if whole <= 0:
        return 0
    return round_half_up(part * 100 / whole)


def percent_change(current: float, previous: float) -> int:
    """Relative change from previous to current, in whole percent.

    A rise from zero counts as 100; zero to zero is 0.
    """
    if previous == 0:
        return 100 if current > 0 else 0
    return round_half_up((current - previous) / previous * 100)


def trend(change: float) -> str:
    if change > 0:
        return "up"
    if change < 0:
        return "down"
    return "stable"


def count_by(keys: Iterable[K]) -> dict[K, int]:
    """Count occurrences, keeping keys in first-seen order."""
    counts: dict[K, int] = {}
    for key in keys:
        counts[key] = counts.get(key, 0) + 1
    return counts


def top_items(counts: dict[K, float], limit: Optional[int] = None) -> list[tuple[K, float]]:
    """Highest values first; ties keep first-seen order."""
    ranked = sorted(counts.items(), key=lambda item: item[1], reverse=True)
    return ranked[:limit] if limit is not None else ranked
