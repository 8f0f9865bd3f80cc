import threading
from datetime import date, datetime, timedelta, timezone
from unittest.mock import Mock

import pytest
from apscheduler.jobstores.base import JobLookupError

from farewatch.config import Settings
from farewatch.errors import TransportError, ValidationError
from farewatch.models import DateRange, Offer, Owner, Price, Watch
from farewatch.orchestrator import MonitoringOrchestrator

NOW = datetime(2024, 6, 1, 10, 0, tzinfo=timezone.utc)
JUN1, JUN2, JUN3 = date(2024, 7, 1), date(2024, 7, 2), date(2024, 7, 3)


def make_watch(watch_id=1, **kw) -> Watch:
    params = dict(
        id=watch_id,
        owner_id="alice",
        name=f"watch {watch_id}",
        origin="BER",
        destination="LIS",
        outbound=DateRange(JUN1, JUN3),
        flight_type="oneway",
        price_threshold=150,
    )
    params.update(kw)
    return Watch(**params)


class FakeSearch:
    def __init__(self, prices):
        # departure date -> list of amounts, or an exception to raise
        self.prices = prices
        self.calls = []

    def search(self, origin, destination, departure_date, return_date=None,
               passengers=1, filters=None):
        self.calls.append((departure_date, return_date))
        found = self.prices.get(departure_date, [])
        if isinstance(found, Exception):
            raise found
        return {"amounts": found}

    def parse(self, raw, query):
        return [
            Offer(
                offer_id=f"/{query.departure_date}/{i}",
                price=Price(amount=amount, currency="EUR"),
                origin=query.origin,
                destination=query.destination,
                departure_at=datetime.combine(
                    query.departure_date, datetime.min.time(), timezone.utc
                ),
                arrival_at=None,
                stops=[],
                number_of_stops=0,
                booking_url=f"https://www.aviasales.com/{i}",
                query=query,
            )
            for i, amount in enumerate(raw["amounts"])
        ]


class FakeStore:
    def __init__(self, watches=(), owners=()):
        self.watches = {w.id: w for w in watches}
        self.owners = {o.id: o for o in owners}
        self.offers = {}
        self.saved = []
        self.saved_owners = []
        self.checked = []
        self.save_errors = []
        self.lease_holder = None

    def find_due_watches(self, now, interval):
        return list(self.watches.values())

    def get_watch(self, watch_id):
        return self.watches.get(watch_id)

    def mark_checked(self, watch_id, now):
        self.checked.append(watch_id)

    def insert_offers_if_absent(self, offers, watch_id=None):
        before = len(self.offers)
        for off in offers:
            self.offers.setdefault(off.offer_id, off)
        return len(self.offers) - before

    def save_watch(self, watch):
        if self.save_errors:
            raise self.save_errors.pop(0)
        self.saved.append(watch)
        return watch.id

    def get_owner(self, owner_id):
        return self.owners.get(owner_id)

    def save_owner(self, owner):
        self.saved_owners.append(owner)

    def count_active_watches(self, owner_id=None):
        return len(self.watches)

    def count_offers_since(self, since):
        return len(self.offers)

    def acquire_lease(self, name, holder, now, ttl):
        if self.lease_holder not in (None, holder):
            return False
        self.lease_holder = holder
        return True

    def release_lease(self, name, holder):
        if self.lease_holder == holder:
            self.lease_holder = None


def make_orchestrator(search, store, delivered=True, **kw):
    notifier = Mock()
    notifier.deliver.return_value = delivered
    notifier.send_status.return_value = True
    settings = Settings(
        live_max_samples=3,
        max_date_pairs=12,
        date_pair_delay_s=2.0,
        watch_delay_s=5.0,
    )
    sleep = Mock()
    orch = MonitoringOrchestrator(
        search, store, notifier, settings, clock=lambda: NOW, sleep=sleep, **kw
    )
    return orch, notifier, sleep


def test_check_picks_cheapest_offer_and_alerts():
    watch = make_watch()
    owner = Owner(id="alice", chat_id="1001")
    store = FakeStore([watch], [owner])
    search = FakeSearch({JUN1: [120], JUN2: [95], JUN3: [300]})
    orch, notifier, sleep = make_orchestrator(search, store)

    result = orch.check_watch(watch)

    assert result.pairs_queried == 3
    assert result.offers_found == 3
    assert result.offers_stored == 3
    assert result.candidate.price.amount == 95
    assert result.alert_sent
    assert store.checked == [1]
    assert [c[0] for c in search.calls] == [JUN1, JUN2, JUN3]
    assert sleep.call_count == 2
    sleep.assert_called_with(2.0)

    saved = store.saved[-1]
    assert saved.stats.total_checks == 1
    assert saved.stats.average_price == pytest.approx(171.67)
    assert saved.stats.lowest_price == 95
    assert saved.stats.highest_price == 300
    assert saved.stats.alerts_sent == 1
    assert saved.best_price.amount == 95
    assert saved.last_checked_at == NOW

    notifier.deliver.assert_called_once()
    assert owner.alerts_received == 1
    assert store.saved_owners == [owner]
    assert orch.stats["alerts_today"] == 1
    assert len(orch.dedup) == 1


def test_repeat_check_is_not_realerted():
    watch = make_watch()
    store = FakeStore([watch], [Owner(id="alice", chat_id="1001")])
    search = FakeSearch({JUN1: [120]})
    orch, notifier, _ = make_orchestrator(search, store)

    orch.check_watch(watch)
    second = orch.check_watch(watch)

    assert not second.alert_sent
    assert second.decision == "not_a_new_low"
    assert notifier.deliver.call_count == 1


def test_failed_date_pair_does_not_stop_the_check():
    watch = make_watch()
    store = FakeStore([watch], [Owner(id="alice", chat_id="1001")])
    search = FakeSearch({JUN1: [120], JUN2: TransportError("timeout"), JUN3: [140]})
    orch, _, _ = make_orchestrator(search, store)

    result = orch.check_watch(watch)

    assert result.failed_pairs == 1
    assert result.pairs_queried == 3
    assert result.candidate.price.amount == 120
    assert store.saved[-1].stats.total_checks == 1


def test_failed_delivery_has_no_side_effects():
    watch = make_watch()
    owner = Owner(id="alice", chat_id="1001")
    store = FakeStore([watch], [owner])
    orch, _, _ = make_orchestrator(FakeSearch({JUN1: [95]}), store, delivered=False)

    result = orch.check_watch(watch)

    assert not result.alert_sent
    assert result.decision == "delivery_failed"
    saved = store.saved[-1]
    assert saved.best_price is None
    assert saved.stats.alerts_sent == 0
    assert saved.notification_policy.last_sent_at is None
    assert owner.alerts_received == 0
    assert store.saved_owners == []
    assert len(orch.dedup) == 0


def test_notifier_exception_counts_as_failed_delivery():
    watch = make_watch()
    store = FakeStore([watch], [Owner(id="alice", chat_id="1001")])
    orch, notifier, _ = make_orchestrator(FakeSearch({JUN1: [95]}), store)
    notifier.deliver.side_effect = RuntimeError("boom")

    result = orch.check_watch(watch)
    assert result.decision == "delivery_failed"
    assert store.saved[-1].best_price is None


def test_missing_owner_skips_alert():
    watch = make_watch()
    store = FakeStore([watch])
    orch, notifier, _ = make_orchestrator(FakeSearch({JUN1: [95]}), store)

    result = orch.check_watch(watch)
    assert result.decision == "no_owner"
    notifier.deliver.assert_not_called()
    assert store.saved


def test_rejected_average_is_cleared_and_retried_once():
    watch = make_watch()
    store = FakeStore([watch], [Owner(id="alice", chat_id="1001")])
    store.save_errors.append(
        ValidationError("CHECK constraint failed: ck_average_price", field="average_price")
    )
    orch, _, _ = make_orchestrator(FakeSearch({JUN1: [120]}), store)

    result = orch.check_watch(watch)

    assert result.stats_reset
    saved = store.saved[-1]
    assert len(store.saved) == 1
    assert saved.stats.average_price is None
    assert saved.stats.lowest_price is None
    assert saved.stats.total_checks == 1
    assert saved.stats.alerts_sent == 1


def test_other_validation_errors_propagate():
    watch = make_watch()
    store = FakeStore([watch], [Owner(id="alice", chat_id="1001")])
    store.save_errors.append(
        ValidationError("CHECK constraint failed: ck_passengers", field="passengers")
    )
    orch, _, _ = make_orchestrator(FakeSearch({}), store)

    with pytest.raises(ValidationError):
        orch.check_watch(watch)


def test_retry_that_fails_again_propagates():
    watch = make_watch()
    store = FakeStore([watch])
    err = ValidationError("CHECK constraint failed: ck_lowest_price", field="lowest_price")
    store.save_errors.extend([err, err])
    orch, _, _ = make_orchestrator(FakeSearch({}), store)

    with pytest.raises(ValidationError):
        orch.check_watch(watch)


def test_cycle_isolates_failing_watch():
    first, second = make_watch(1), make_watch(2)
    store = FakeStore([first, second], [Owner(id="alice", chat_id="1001")])
    orig_mark = store.mark_checked

    def mark_checked(watch_id, now):
        if watch_id == 1:
            raise RuntimeError("disk full")
        orig_mark(watch_id, now)

    store.mark_checked = mark_checked
    orch, _, sleep = make_orchestrator(FakeSearch({JUN1: [120]}), store)

    assert orch.run_cycle()
    assert store.checked == [2]
    assert orch.stats["errors_today"] == 1
    assert orch.stats["checks_today"] == 2
    assert orch.stats["last_run"] == NOW
    sleep.assert_any_call(5.0)
    assert not orch.is_running


def test_selection_failure_aborts_cycle():
    store = FakeStore()
    store.find_due_watches = Mock(side_effect=TransportError("database is locked"))
    orch, _, _ = make_orchestrator(FakeSearch({}), store)

    assert not orch.run_cycle()
    assert orch.stats["errors_today"] == 1
    assert orch.stats["last_run"] is None
    assert not orch.is_running


def test_overlapping_cycle_is_skipped():
    store = FakeStore()
    store.find_due_watches = Mock(return_value=[])
    orch, _, _ = make_orchestrator(FakeSearch({}), store)
    orch._cycle_lock.acquire()

    assert orch.is_running
    assert not orch.run_cycle()
    store.find_due_watches.assert_not_called()
    assert orch.check_now(1) is None


def test_check_now():
    watch = make_watch()
    store = FakeStore([watch], [Owner(id="alice", chat_id="1001")])
    orch, _, _ = make_orchestrator(FakeSearch({JUN1: [120]}), store)

    assert orch.check_now(42) is None
    result = orch.check_now(1)
    assert result.watch_id == 1
    assert result.candidate.price.amount == 120
    assert not orch.is_running


def test_start_and_stop_register_jobs():
    orch, _, _ = make_orchestrator(FakeSearch({}), FakeStore())
    scheduler = Mock()
    scheduler.remove_job.side_effect = [None, JobLookupError("daily-report")]

    orch.start(scheduler)
    assert scheduler.add_job.call_count == 2
    cycle_call = scheduler.add_job.call_args_list[0]
    assert cycle_call.kwargs["id"] == "monitoring-cycle"
    assert cycle_call.kwargs["minutes"] == 30
    assert cycle_call.kwargs["next_run_time"] == NOW + timedelta(seconds=60)
    assert cycle_call.kwargs["max_instances"] == 1

    orch.start(scheduler)
    assert scheduler.add_job.call_count == 2

    orch.stop()
    assert scheduler.remove_job.call_count == 2
    assert not orch.get_stats()["scheduled"]


def test_daily_report_sends_and_resets_counters():
    watch = make_watch()
    store = FakeStore([watch], [Owner(id="alice", chat_id="1001")])
    summary = [{"origin": "BER", "destination": "LIS", "min_price": 95.0,
                "mean_price": 171.67}]
    orch, notifier, _ = make_orchestrator(
        FakeSearch({JUN1: [95]}), store, summary_source=lambda since: summary
    )
    orch.run_cycle()

    orch.daily_report_job()

    report, rows = notifier.send_status.call_args.args
    assert report["checks_today"] == 1
    assert report["alerts_today"] == 1
    assert report["active_watches"] == 1
    assert report["offers_found"] == 1
    assert rows == summary
    assert orch.stats["checks_today"] == 0
    assert orch.stats["alerts_today"] == 0
    assert orch.stats["last_run"] == NOW


def test_rejected_best_price_is_dropped_but_send_time_kept():
    watch = make_watch()
    store = FakeStore([watch], [Owner(id="alice", chat_id="1001")])
    store.save_errors.append(
        ValidationError(
            "CHECK constraint failed: ck_best_price_amount", field="best_price_amount"
        )
    )
    orch, _, _ = make_orchestrator(FakeSearch({JUN1: [95]}), store)

    result = orch.check_watch(watch)

    assert result.alert_sent
    assert result.stats_reset
    saved = store.saved[-1]
    assert saved.best_price is None
    assert saved.notification_policy.last_sent_at == NOW
    assert saved.stats.alerts_sent == 1

    again = orch.check_watch(saved)
    assert again.decision == "cooldown"


def test_unsaved_delivery_is_not_sent_twice():
    store = FakeStore([make_watch()], [Owner(id="alice", chat_id="1001")])
    store.save_errors.append(
        ValidationError("CHECK constraint failed: ck_passengers", field="passengers")
    )
    orch, notifier, _ = make_orchestrator(FakeSearch({JUN1: [95]}), store)

    with pytest.raises(ValidationError):
        orch.check_watch(make_watch())
    notifier.deliver.assert_called_once()

    # the store never saw the delivery, so the reloaded watch looks unsent
    result = orch.check_watch(make_watch())

    assert not result.alert_sent
    assert result.decision == "duplicate"
    assert notifier.deliver.call_count == 1


def test_lease_held_by_another_worker_blocks_checks():
    store = FakeStore([make_watch()], [Owner(id="alice", chat_id="1001")])
    store.lease_holder = "other-host"
    search = FakeSearch({JUN1: [95]})
    orch, notifier, _ = make_orchestrator(search, store)

    assert not orch.run_cycle()
    assert orch.check_now(1) is None
    assert search.calls == []
    assert store.checked == []
    notifier.deliver.assert_not_called()
    assert store.lease_holder == "other-host"
    assert orch.stats["checks_today"] == 0


def test_lease_is_released_after_cycle_and_manual_check():
    store = FakeStore([make_watch()], [Owner(id="alice", chat_id="1001")])
    orch, _, _ = make_orchestrator(FakeSearch({JUN1: [120]}), store)

    assert orch.run_cycle()
    assert store.lease_holder is None
    assert orch.check_now(1) is not None
    assert store.lease_holder is None


def test_lost_lease_ends_cycle_early():
    store = FakeStore([make_watch(1), make_watch(2)], [Owner(id="alice", chat_id="1001")])
    grants = iter([True, False])
    store.acquire_lease = Mock(side_effect=lambda *a: next(grants))
    orch, _, _ = make_orchestrator(FakeSearch({JUN1: [120]}), store)

    assert orch.run_cycle()
    assert store.checked == [1]
    assert store.acquire_lease.call_count == 2


def test_daily_report_waits_for_running_cycle():
    store = FakeStore([make_watch()])
    orch, notifier, _ = make_orchestrator(FakeSearch({}), store)
    orch.stats["checks_today"] = 4

    orch._cycle_lock.acquire()
    job = threading.Thread(target=orch.daily_report_job)
    job.start()
    job.join(0.2)
    assert job.is_alive()
    notifier.send_status.assert_not_called()
    assert orch.stats["checks_today"] == 4

    orch._cycle_lock.release()
    job.join(5)
    assert not job.is_alive()
    notifier.send_status.assert_called_once()
    assert orch.stats["checks_today"] == 0
