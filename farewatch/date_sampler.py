"""Turn watch date ranges into the concrete dates we query."""

from __future__ import annotations

import logging
from datetime import date, timedelta
from itertools import product
from typing import List, Optional, Tuple

from .models import DateRange, Watch

logger = logging.getLogger(__name__)

DatePair = Tuple[date, Optional[date]]


def sample(date_range: DateRange, max_samples: int) -> List[date]:
    """Return up to *max_samples* dates from *date_range*.

    A fixed range yields its start and, if different, its end. A flexible
    range is walked from ``start`` with a stride of
    ``span // (max_samples - 1)`` days; ``end`` is only included when the
    stride happens to land on it.
    """
    if max_samples < 1:
        raise ValueError("max_samples must be at least 1")

    start, end = date_range.start, date_range.end
    if not date_range.flexible:
        return [start] if start == end else [start, end]

    if max_samples == 1:
        return [start]

    span = (end - start).days
    stride = max(1, span // (max_samples - 1))

    dates: List[date] = []
    offset = 0
    while offset <= span and len(dates) < max_samples:
        dates.append(start + timedelta(days=offset))
        offset += stride
    return dates


def _spread(pairs: List[DatePair], limit: int) -> List[DatePair]:
    """Pick *limit* evenly spaced items, keeping the first and the last."""
    if len(pairs) <= limit:
        return pairs
    if limit == 1:
        return pairs[:1]
    last = len(pairs) - 1
    picked = sorted({round(i * last / (limit - 1)) for i in range(limit)})
    return [pairs[i] for i in picked]


def date_pairs(watch: Watch, max_samples: int, max_pairs: int) -> List[DatePair]:
    """Return the (outbound, inbound) date pairs to query for *watch*.

    One-way watches get ``inbound=None``. Round trips get the
    outbound x inbound product without pairs that return before they
    leave, thinned out to at most *max_pairs* entries.
    """
    outbound = sample(watch.outbound, max_samples)
    if watch.flight_type == "oneway" or watch.inbound is None:
        pairs: List[DatePair] = [(d, None) for d in outbound]
    else:
        inbound = sample(watch.inbound, max_samples)
        pairs = [(out, ret) for out, ret in product(outbound, inbound) if ret >= out]

    capped = _spread(pairs, max_pairs)
    if len(capped) < len(pairs):
        logger.info(
            "Watch %s: %d date pairs capped to %d",
            watch.id,
            len(pairs),
            len(capped),
        )
    return capped


def preview(
    watch: Watch, max_samples: int, max_pairs: int, delay_s: float
) -> dict:
    """Describe what a check of *watch* would query, without querying."""
    outbound = sample(watch.outbound, max_samples)
    inbound = (
        sample(watch.inbound, max_samples)
        if watch.flight_type == "roundtrip" and watch.inbound is not None
        else []
    )
    pairs = date_pairs(watch, max_samples, max_pairs)
    return {
        "outbound_dates": outbound,
        "inbound_dates": inbound,
        "total_combinations": len(pairs),
        "estimated_seconds": max(0, len(pairs) - 1) * delay_s,
    }


__all__ = ["DatePair", "sample", "date_pairs", "preview"]
