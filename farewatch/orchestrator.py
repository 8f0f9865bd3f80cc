"""
Monitoring cycle: pick the watches that are due, check them one by one and
alert owners about qualifying fares.

Per watch the order is fixed: mark checked → sample dates → search each
date pair → store offers → update stats → decide and notify → save watch.
A failing watch is logged and skipped; only a failure while selecting the
due watches aborts a cycle.

Collaborators are injected:

* ``search``   – ``search(origin, destination, departure_date, return_date,
  passengers, filters)`` and ``parse(raw, query)``
* ``store``    – see :class:`farewatch.db.SqliteStore`
  (including ``acquire_lease``/``release_lease``, which keep a second process
  from checking watches at the same time)
* ``notifier`` – ``deliver(offer, watch, owner) -> bool`` and
  ``send_status(stats, summary) -> bool``
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Tuple

from apscheduler.jobstores.base import JobLookupError

from .alert_engine import evaluate, record_delivery, resolved_cooldown
from .config import Settings
from .date_sampler import date_pairs
from .dedup import DedupCache, alert_key
from .errors import FareWatchError, ValidationError
from .models import Offer, SearchQuery, Watch
from .stats import clear_price_stats, is_valid_price, update_stats

logger = logging.getLogger(__name__)

RESETTABLE_FIELDS = ("average_price", "lowest_price", "highest_price", "best_price_amount")


@dataclass
class CheckResult:
    watch_id: Optional[int]
    pairs_queried: int = 0
    failed_pairs: int = 0
    offers_found: int = 0
    offers_stored: int = 0
    candidate: Optional[Offer] = None
    decision: Optional[str] = None
    alert_sent: bool = False
    stats_reset: bool = False


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MonitoringOrchestrator:
    CYCLE_JOB_ID = "monitoring-cycle"
    REPORT_JOB_ID = "daily-report"
    LEASE_NAME = "monitoring"

    def __init__(
        self,
        search,
        store,
        notifier,
        settings: Settings,
        dedup: Optional[DedupCache] = None,
        clock: Optional[Callable[[], datetime]] = None,
        sleep: Optional[Callable[[float], None]] = None,
        summary_source: Optional[Callable[[datetime], List[dict]]] = None,
    ) -> None:
        self.search = search
        self.store = store
        self.notifier = notifier
        self.settings = settings
        self.dedup = dedup or DedupCache(
            soft_cap=settings.dedup_soft_cap,
            hard_cap=settings.dedup_hard_cap,
            max_age=timedelta(hours=settings.dedup_max_age_h),
        )
        self.clock = clock or _utcnow
        self.sleep = sleep or time.sleep
        self.summary_source = summary_source
        self.holder = uuid.uuid4().hex
        # held for a whole cycle or manual check, and by the daily report job
        self._cycle_lock = threading.Lock()
        self._scheduler = None
        self.stats = {
            "checks_today": 0,
            "alerts_today": 0,
            "errors_today": 0,
            "last_run": None,
        }

    @property
    def interval(self) -> timedelta:
        return timedelta(minutes=self.settings.check_interval_minutes)

    @property
    def is_running(self) -> bool:
        return self._cycle_lock.locked()

    # ────────────────────────────────────────────────────────────
    # Lifecycle
    # ────────────────────────────────────────────────────────────

    def start(self, scheduler) -> None:
        """Register the cycle and daily report jobs on *scheduler*."""
        if self._scheduler is not None:
            logger.warning("Monitoring already started")
            return
        first_run = self.clock() + timedelta(seconds=self.settings.initial_delay_s)
        scheduler.add_job(
            self.run_cycle,
            "interval",
            minutes=self.settings.check_interval_minutes,
            id=self.CYCLE_JOB_ID,
            next_run_time=first_run,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        scheduler.add_job(
            self.daily_report_job,
            "cron",
            hour=self.settings.report_hour,
            minute=0,
            timezone=self.settings.report_timezone,
            id=self.REPORT_JOB_ID,
            replace_existing=True,
        )
        self._scheduler = scheduler
        logger.info(
            "Monitoring every %d minutes, first cycle at %s",
            self.settings.check_interval_minutes,
            first_run.isoformat(timespec="seconds"),
        )

    def stop(self) -> None:
        """Stop scheduling cycles. A cycle already running is left to finish."""
        if self._scheduler is None:
            return
        for job_id in (self.CYCLE_JOB_ID, self.REPORT_JOB_ID):
            try:
                self._scheduler.remove_job(job_id)
            except JobLookupError:
                logger.debug("Job %s was not scheduled", job_id)
        self._scheduler = None
        if self.is_running:
            logger.info("Monitoring stopped; the current cycle will complete")
        else:
            logger.info("Monitoring stopped")

    # ────────────────────────────────────────────────────────────
    # Cycle
    # ────────────────────────────────────────────────────────────

    def _take_lease(self) -> bool:
        """Acquire or renew the cross-process monitoring lease."""
        try:
            return bool(
                self.store.acquire_lease(
                    self.LEASE_NAME,
                    self.holder,
                    self.clock(),
                    timedelta(seconds=self.settings.lease_ttl_s),
                )
            )
        except Exception:
            logger.exception("Could not take the monitoring lease")
            return False

    def _release_lease(self) -> None:
        try:
            self.store.release_lease(self.LEASE_NAME, self.holder)
        except Exception:
            logger.exception("Could not release the monitoring lease")

    def run_cycle(self) -> bool:
        """Check every due watch once. Returns ``False`` if skipped or aborted."""
        if not self._cycle_lock.acquire(blocking=False):
            logger.warning("Monitoring cycle still running, skipping this tick")
            return False
        try:
            if not self._take_lease():
                logger.warning("Another worker is checking watches, skipping this tick")
                return False
            try:
                return self._run_cycle()
            finally:
                self._release_lease()
        finally:
            self._cycle_lock.release()

    def _run_cycle(self) -> bool:
        started = time.monotonic()
        logger.info("=== Monitoring cycle start ===")
        try:
            watches = self.store.find_due_watches(self.clock(), self.interval)
        except Exception:
            logger.exception("Selecting due watches failed, cycle aborted")
            self.stats["errors_today"] += 1
            return False

        logger.info("Watches to check: %d", len(watches))
        for idx, watch in enumerate(watches):
            if idx:
                self.sleep(self.settings.watch_delay_s)
                if not self._take_lease():
                    logger.warning("Monitoring lease lost, ending the cycle early")
                    break
            try:
                self.check_watch(watch)
            except Exception:
                logger.exception(
                    "Check failed for watch %s (%s)", watch.id, watch.route
                )
                self.stats["errors_today"] += 1

        self.stats["last_run"] = self.clock()
        logger.info(
            "=== Monitoring cycle end (%.2fs) ===", time.monotonic() - started
        )
        return True

    def check_now(self, watch_id: int) -> Optional[CheckResult]:
        """Check one watch outside the schedule."""
        if not self._cycle_lock.acquire(blocking=False):
            logger.warning("Cycle in progress, manual check of %s refused", watch_id)
            return None
        try:
            if not self._take_lease():
                logger.warning(
                    "Another worker is checking watches, manual check of %s refused",
                    watch_id,
                )
                return None
            try:
                watch = self.store.get_watch(watch_id)
                if watch is None:
                    logger.warning("Watch %s not found", watch_id)
                    return None
                return self.check_watch(watch)
            finally:
                self._release_lease()
        finally:
            self._cycle_lock.release()

    def check_watch(self, watch: Watch) -> CheckResult:
        now = self.clock()
        ceiling = self.settings.sanity_ceiling
        result = CheckResult(watch_id=watch.id)
        logger.info(
            "Checking %s (%s ➔ %s)", watch.name, watch.origin, watch.destination
        )
        self.stats["checks_today"] += 1

        # persisted up front so a crash mid-check does not re-trigger it
        watch.last_checked_at = now
        self.store.mark_checked(watch.id, now)

        pairs = date_pairs(
            watch, self.settings.live_max_samples, self.settings.max_date_pairs
        )
        filters = {"currency": watch.currency, "max_stops": watch.max_stops}
        offers: List[Offer] = []
        candidate: Optional[Offer] = None

        for idx, (out_date, ret_date) in enumerate(pairs):
            if idx:
                self.sleep(self.settings.date_pair_delay_s)
            query = SearchQuery(
                origin=watch.origin,
                destination=watch.destination,
                departure_date=out_date,
                return_date=ret_date,
                passengers=watch.passengers,
                currency=watch.currency,
                max_stops=watch.max_stops,
            )
            result.pairs_queried += 1
            try:
                raw = self.search.search(
                    watch.origin,
                    watch.destination,
                    out_date,
                    ret_date,
                    watch.passengers,
                    filters,
                )
                found = self.search.parse(raw, query)
            except Exception as exc:
                result.failed_pairs += 1
                logger.warning(
                    "  Search failed for %s on %s: %s", watch.route, out_date, exc
                )
                continue

            offers.extend(found)
            for off in found:
                amount = off.price.amount
                if not is_valid_price(amount, ceiling):
                    continue
                if candidate is None or amount < candidate.price.amount:
                    candidate = off

        result.offers_found = len(offers)
        result.candidate = candidate
        if offers:
            result.offers_stored = self.store.insert_offers_if_absent(offers, watch.id)

        watch.stats = update_stats(watch.stats, offers, ceiling)

        if candidate is not None:
            result.alert_sent, result.decision = self._maybe_alert(
                watch, candidate, now
            )

        result.stats_reset = self._save_watch(watch)

        if candidate is not None:
            logger.info(
                "  %s: best %.2f %s%s",
                watch.name,
                candidate.price.amount,
                candidate.price.currency,
                " 🔥" if result.alert_sent else "",
            )
        else:
            logger.info("  %s: no flights found", watch.name)
        return result

    def _maybe_alert(
        self, watch: Watch, offer: Offer, now: datetime
    ) -> Tuple[bool, str]:
        owner = self.store.get_owner(watch.owner_id)
        if owner is None:
            logger.warning(
                "  Watch %s has no owner %r, not alerting", watch.id, watch.owner_id
            )
            return False, "no_owner"

        decision = evaluate(watch, offer, owner, now, self.settings.sanity_ceiling)
        if not decision.allowed:
            logger.info("  No alert for watch %s: %s", watch.id, decision.reason)
            return False, decision.reason

        key = alert_key(
            watch.id,
            offer.origin,
            offer.destination,
            offer.departure_at.date(),
            offer.price.amount,
        )
        if self.dedup.is_duplicate(key, now, resolved_cooldown(watch, owner)):
            logger.info("  Duplicate alert avoided: %s", key)
            return False, "duplicate"

        try:
            delivered = bool(self.notifier.deliver(offer, watch, owner))
        except Exception:
            logger.exception("  Alert delivery failed for watch %s", watch.id)
            delivered = False
        if not delivered:
            logger.warning("  Alert for watch %s was not delivered", watch.id)
            return False, "delivery_failed"

        record_delivery(watch, owner, offer, now)
        self.dedup.mark_sent(key, now)
        self.stats["alerts_today"] += 1
        try:
            self.store.save_owner(owner)
        except FareWatchError:
            logger.exception("  Could not save alert counters for owner %s", owner.id)
        return True, "sent"

    def _save_watch(self, watch: Watch) -> bool:
        """Save *watch*; on a rejected price field clear it and retry once.

        Returns ``True`` when the retry was needed.
        """
        try:
            self.store.save_watch(watch)
            return False
        except ValidationError as exc:
            field = exc.field or next(
                (f for f in RESETTABLE_FIELDS if f in str(exc)), None
            )
            if field not in RESETTABLE_FIELDS:
                raise
            logger.warning(
                "Watch %s rejected by store (%s), clearing price stats and retrying",
                watch.id,
                field,
            )

        watch.stats = clear_price_stats(watch.stats)
        if watch.best_price is not None and (
            field == "best_price_amount"
            or not is_valid_price(watch.best_price.amount, self.settings.sanity_ceiling)
        ):
            watch.best_price = None
        self.store.save_watch(watch)
        return True

    # ────────────────────────────────────────────────────────────
    # Reporting
    # ────────────────────────────────────────────────────────────

    def get_stats(self) -> dict:
        return {
            **self.stats,
            "is_running": self.is_running,
            "scheduled": self._scheduler is not None,
            "alert_cache": self.dedup.snapshot(self.clock()),
        }

    def reset_daily_stats(self) -> None:
        self.stats["checks_today"] = 0
        self.stats["alerts_today"] = 0
        self.stats["errors_today"] = 0

    def send_daily_report(self) -> bool:
        now = self.clock()
        since = now - timedelta(days=1)
        try:
            report = {
                **self.stats,
                "active_watches": self.store.count_active_watches(),
                "offers_found": self.store.count_offers_since(since),
            }
            summary = self.summary_source(since) if self.summary_source else []
        except Exception:
            logger.exception("Could not collect daily report data")
            return False

        try:
            sent = bool(self.notifier.send_status(report, summary))
        except Exception:
            logger.exception("Sending daily report failed")
            return False
        if sent:
            logger.info("Daily report sent")
        else:
            logger.warning("Daily report was not delivered")
        return sent

    def daily_report_job(self) -> None:
        # waits for a running cycle so its counters are not reset mid-cycle
        with self._cycle_lock:
            self.send_daily_report()
            self.reset_daily_stats()


__all__ = ["MonitoringOrchestrator", "CheckResult"]
