from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Optional

from .models import AlertRecord

DEFAULT_SOFT_CAP = 100
DEFAULT_HARD_CAP = 1000
DEFAULT_MAX_AGE = timedelta(hours=24)

logger = logging.getLogger(__name__)


def price_bucket(amount: float) -> int:
    """Nearest multiple of 10, halves rounded up (25 -> 30)."""
    tens = Decimal(str(amount)) / 10
    return int(tens.quantize(Decimal(1), ROUND_HALF_UP)) * 10


def alert_key(
    watch_id,
    origin: str,
    destination: str,
    departure_date: Optional[date],
    amount: float,
) -> str:
    """Signature of one concrete offer as seen by one watch."""
    day = departure_date.isoformat() if departure_date else "unknown"
    return f"{watch_id}_{origin}_{destination}_{day}_{price_bucket(amount)}"


class DedupCache:
    """Process-local memory of alerts already sent.

    Entries are never persisted. Losing them on restart costs at most one
    redundant alert, the persisted watch cooldown still applies.
    """

    def __init__(
        self,
        soft_cap: int = DEFAULT_SOFT_CAP,
        hard_cap: int = DEFAULT_HARD_CAP,
        max_age: timedelta = DEFAULT_MAX_AGE,
    ) -> None:
        self.soft_cap = soft_cap
        self.hard_cap = hard_cap
        self.max_age = max_age
        self._entries: Dict[str, AlertRecord] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def is_duplicate(self, key: str, now: datetime, cooldown: timedelta) -> bool:
        entry = self._entries.get(key)
        if entry is None:
            return False
        return now - entry.last_sent_at < cooldown

    def mark_sent(self, key: str, now: datetime) -> AlertRecord:
        entry = self._entries.get(key)
        if entry is None:
            entry = AlertRecord(key=key, last_sent_at=now, occurrence_count=1)
            self._entries[key] = entry
        else:
            entry.last_sent_at = now
            entry.occurrence_count += 1
        self._evict(now)
        return entry

    def _evict(self, now: datetime) -> None:
        if len(self._entries) > self.soft_cap:
            before = len(self._entries)
            self._entries = {
                k: v
                for k, v in self._entries.items()
                if now - v.last_sent_at <= self.max_age
            }
            logger.info(
                "Pruned alert cache: %d -> %d entries", before, len(self._entries)
            )
        if len(self._entries) > self.hard_cap:
            logger.warning(
                "Alert cache over %d entries, clearing it", self.hard_cap
            )
            self._entries.clear()

    def clear(self) -> None:
        self._entries.clear()

    def snapshot(self, now: datetime) -> dict:
        """Size of the cache plus the entries sent within the last hour."""
        recent_cutoff = now - timedelta(hours=1)
        recent = [
            {
                "key": e.key,
                "last_sent_at": e.last_sent_at,
                "occurrence_count": e.occurrence_count,
            }
            for e in self._entries.values()
            if e.last_sent_at > recent_cutoff
        ]
        return {"total": len(self._entries), "recent": recent}


__all__ = ["DedupCache", "alert_key", "price_bucket"]
