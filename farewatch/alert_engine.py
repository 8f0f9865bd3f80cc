"""Decide whether an offer is worth a notification, and record one that was sent.

The gates run in a fixed order and stop at the first failure:

1. notifications enabled on the watch
2. price at or below the watch threshold
3. owner below the daily alert cap
4. owner outside quiet hours
5. a new low, when the watch only wants new lows
6. watch cooldown elapsed since the last alert
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone

import pytz

from .models import BestPrice, Offer, Owner, Watch
from .stats import SANITY_CEILING, is_valid_price

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class Decision:
    allowed: bool
    reason: str


def _owner_tz(owner: Owner):
    try:
        return pytz.timezone(owner.timezone)
    except pytz.UnknownTimeZoneError:
        logger.warning(
            "Owner %s has unknown timezone %r, using UTC", owner.id, owner.timezone
        )
        return pytz.utc


def _aware(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


def owner_local_now(owner: Owner, now: datetime) -> datetime:
    return _aware(now).astimezone(_owner_tz(owner))


def owner_today(owner: Owner, now: datetime) -> date:
    return owner_local_now(owner, now).date()


def in_quiet_hours(owner: Owner, now: datetime) -> bool:
    """Return ``True`` inside the owner's ``[start, end)`` local window.

    ``start > end`` wraps past midnight; ``start == end`` is an empty window.
    """
    quiet = owner.notification_defaults.quiet_hours
    if not quiet.enabled or quiet.start == quiet.end:
        return False
    local = owner_local_now(owner, now)
    current = time(local.hour, local.minute, local.second)
    if quiet.start < quiet.end:
        return quiet.start <= current < quiet.end
    return current >= quiet.start or current < quiet.end


def resolved_cooldown(watch: Watch, owner: Owner) -> timedelta:
    minutes = watch.notification_policy.cooldown_minutes
    if minutes is None:
        minutes = owner.notification_defaults.cooldown_minutes
    return timedelta(minutes=minutes)


def evaluate(
    watch: Watch,
    offer: Offer,
    owner: Owner,
    now: datetime,
    ceiling: float = SANITY_CEILING,
) -> Decision:
    """Run the gates in order and name the first one that fails."""
    policy = watch.notification_policy
    if not policy.enabled:
        return Decision(False, "notifications_disabled")

    amount = offer.price.amount
    if not is_valid_price(amount, ceiling) or amount > watch.price_threshold:
        return Decision(False, "above_threshold")

    if owner.alerts_sent_on(owner_today(owner, now)) >= owner.daily_alert_cap:
        return Decision(False, "daily_cap_reached")

    if in_quiet_hours(owner, now):
        return Decision(False, "quiet_hours")

    if (
        policy.only_new_lows
        and watch.best_price is not None
        and amount >= watch.best_price.amount
    ):
        return Decision(False, "not_a_new_low")

    if policy.last_sent_at is not None:
        elapsed = _aware(now) - _aware(policy.last_sent_at)
        if elapsed < resolved_cooldown(watch, owner):
            return Decision(False, "cooldown")

    return Decision(True, "ok")


def should_alert(watch: Watch, offer: Offer, owner: Owner, now: datetime) -> bool:
    return evaluate(watch, offer, owner, now).allowed


def record_delivery(watch: Watch, owner: Owner, offer: Offer, now: datetime) -> None:
    """Apply the bookkeeping of a delivered alert to *watch* and *owner*.

    Only call this once the notifier confirmed delivery.
    """
    if watch.best_price is None or offer.price.amount < watch.best_price.amount:
        watch.best_price = BestPrice(
            amount=offer.price.amount,
            currency=offer.price.currency,
            offer_ref=offer.offer_id,
            found_at=now,
        )
    watch.notification_policy.last_sent_at = now
    watch.stats.alerts_sent += 1

    today = owner_today(owner, now)
    owner.daily_alert_count = owner.alerts_sent_on(today) + 1
    owner.daily_alert_count_date = today
    owner.alerts_received += 1


__all__ = [
    "Decision",
    "evaluate",
    "should_alert",
    "record_delivery",
    "in_quiet_hours",
    "resolved_cooldown",
    "owner_today",
]
