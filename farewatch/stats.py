from __future__ import annotations

import logging
import math
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, List, Optional

from .models import Offer, WatchStats

SANITY_CEILING = 10000.0

logger = logging.getLogger(__name__)


def is_valid_price(value, ceiling: float = SANITY_CEILING) -> bool:
    """Return ``True`` for a finite number in ``(0, ceiling)``."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value) and 0 < value < ceiling


def round2(value: float) -> float:
    """Round to cents, halves away from zero."""
    return float(Decimal(str(value)).quantize(Decimal("0.01"), ROUND_HALF_UP))


def _valid_or_none(value, ceiling: float) -> Optional[float]:
    return float(value) if is_valid_price(value, ceiling) else None


def _counter(value) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        return 0
    return value


def valid_amounts(
    offers: Iterable[Offer], ceiling: float = SANITY_CEILING
) -> List[float]:
    amounts = []
    for off in offers:
        amount = getattr(getattr(off, "price", None), "amount", None)
        if is_valid_price(amount, ceiling):
            amounts.append(float(amount))
    return amounts


def update_stats(
    stats: WatchStats,
    offers: Iterable[Offer],
    ceiling: float = SANITY_CEILING,
) -> WatchStats:
    """Return new running stats after one check that produced *offers*.

    Prices outside ``(0, ceiling)`` or non-finite are ignored, and so are
    stored baselines that fail the same test.
    """
    offers = list(offers)
    amounts = valid_amounts(offers, ceiling)
    logger.debug("Valid prices for stats: %d/%d", len(amounts), len(offers))

    prev_avg = _valid_or_none(stats.average_price, ceiling)
    prev_low = _valid_or_none(stats.lowest_price, ceiling)
    prev_high = _valid_or_none(stats.highest_price, ceiling)

    new = WatchStats(
        total_checks=_counter(stats.total_checks) + 1,
        alerts_sent=_counter(stats.alerts_sent),
        average_price=prev_avg,
        lowest_price=prev_low,
        highest_price=prev_high,
    )
    if not amounts:
        return new

    avg = round2(sum(amounts) / len(amounts))
    # rounding can land exactly on the ceiling
    new.average_price = avg if is_valid_price(avg, ceiling) else prev_avg
    low, high = min(amounts), max(amounts)
    new.lowest_price = low if prev_low is None else min(prev_low, low)
    new.highest_price = high if prev_high is None else max(prev_high, high)
    return new


def clear_price_stats(stats: WatchStats) -> WatchStats:
    """Drop every nullable price field, keeping the counters."""
    return WatchStats(
        total_checks=_counter(stats.total_checks),
        alerts_sent=_counter(stats.alerts_sent),
    )


__all__ = [
    "SANITY_CEILING",
    "is_valid_price",
    "round2",
    "valid_amounts",
    "update_stats",
    "clear_price_stats",
]
