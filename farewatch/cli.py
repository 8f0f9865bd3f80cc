from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional, Tuple

import click

from . import tasks
from .config import get_settings
from .date_sampler import preview
from .db import SqliteStore
from .models import (
    DateRange,
    NotificationDefaults,
    NotificationPolicy,
    Owner,
    QuietHours,
    SearchQuery,
    Watch,
)

logger = logging.getLogger(__name__)

DAY = click.DateTime(formats=["%Y-%m-%d"])


def configure_logging(log_file: str) -> None:
    logging.basicConfig(
        level=logging.INFO,
        handlers=[logging.FileHandler(log_file), logging.StreamHandler()],
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def _store() -> SqliteStore:
    store = SqliteStore(get_settings().db_path)
    store.migrate()
    return store


def _range(bounds: Tuple[datetime, datetime], flexible: bool) -> DateRange:
    start, end = bounds
    return DateRange(start=start.date(), end=end.date(), flexible=flexible)


def _quiet(value: Optional[str]) -> QuietHours:
    if not value:
        return QuietHours(enabled=False)
    try:
        start_s, end_s = value.split("-")
        start = datetime.strptime(start_s.strip(), "%H:%M").time()
        end = datetime.strptime(end_s.strip(), "%H:%M").time()
    except ValueError as exc:
        raise click.BadParameter("use HH:MM-HH:MM, e.g. 23:00-07:00") from exc
    return QuietHours(enabled=True, start=start, end=end)


def _describe(watch: Watch) -> str:
    state = "active" if watch.is_active else "paused"
    dates = f"{watch.outbound.start}..{watch.outbound.end}"
    if watch.inbound:
        dates += f" / {watch.inbound.start}..{watch.inbound.end}"
    best = (
        f"{watch.best_price.amount:.2f} {watch.best_price.currency}"
        if watch.best_price
        else "-"
    )
    return (
        f"#{watch.id} [{state}] {watch.name}: {watch.origin} ➔ {watch.destination} "
        f"{dates} ≤ {watch.price_threshold:.2f} {watch.currency} "
        f"best={best} checks={watch.stats.total_checks}"
    )


@click.group()
def cli() -> None:
    """Command line interface."""
    configure_logging(get_settings().log_file)


@cli.command("init-db")
def init_db_cmd() -> None:
    """Create or migrate the database."""
    _store()
    click.echo(f"Database ready at {get_settings().db_path}")


@cli.command()
@click.option("--once", is_flag=True, help="Run a single cycle and exit")
def run(once: bool) -> None:
    """Monitor due watches on a schedule."""
    if once:
        orchestrator = tasks.build_orchestrator()
        orchestrator.store.migrate()
        orchestrator.run_cycle()
        click.echo(orchestrator.get_stats())
    else:
        tasks.serve()


@cli.command()
@click.argument("watch_id", type=int)
def check(watch_id: int) -> None:
    """Check one watch right now."""
    orchestrator = tasks.build_orchestrator()
    orchestrator.store.migrate()
    result = orchestrator.check_now(watch_id)
    if result is None:
        raise click.ClickException(
            f"watch {watch_id} could not be checked "
            "(not found, or another worker is checking watches)"
        )
    best = (
        f"{result.candidate.price.amount:.2f} {result.candidate.price.currency}"
        if result.candidate
        else "none"
    )
    click.echo(
        f"pairs={result.pairs_queried} failed={result.failed_pairs} "
        f"offers={result.offers_found} best={best} "
        f"alert={'sent' if result.alert_sent else result.decision or 'none'}"
    )


@cli.command("preview-dates")
@click.option("--out", "outbound", type=(DAY, DAY), required=True)
@click.option("--in", "inbound", type=(DAY, DAY), default=None)
@click.option("--fixed", is_flag=True, help="Dates are not flexible")
def preview_dates(outbound, inbound, fixed: bool) -> None:
    """Show which dates a watch with these ranges would search."""
    settings = get_settings()
    draft = Watch(
        id=None,
        owner_id="preview",
        name="preview",
        origin="XXX",
        destination="YYY",
        outbound=_range(outbound, not fixed),
        inbound=_range(inbound, not fixed) if inbound else None,
        flight_type="roundtrip" if inbound else "oneway",
        price_threshold=1,
    )
    info = preview(
        draft,
        settings.preview_max_samples,
        settings.max_date_pairs,
        settings.date_pair_delay_s,
    )
    click.echo("Outbound: " + ", ".join(d.isoformat() for d in info["outbound_dates"]))
    if info["inbound_dates"]:
        click.echo("Inbound: " + ", ".join(d.isoformat() for d in info["inbound_dates"]))
    click.echo(f"Combinations: {info['total_combinations']}")
    click.echo(f"Estimated search time: ~{info['estimated_seconds']:.0f}s")


@cli.command()
@click.argument("origin")
@click.argument("destination")
@click.option("--date", "departure", type=DAY, required=True)
@click.option("--return-date", "return_date", type=DAY, default=None)
@click.option("--currency", default="EUR")
def fetch(
    origin: str,
    destination: str,
    departure: datetime,
    return_date: Optional[datetime],
    currency: str,
) -> None:
    """Fetch offers only and print them."""
    orchestrator = tasks.build_orchestrator()
    query = SearchQuery(
        origin=origin.upper(),
        destination=destination.upper(),
        departure_date=departure.date(),
        return_date=return_date.date() if return_date else None,
        currency=currency.upper(),
    )
    offers = orchestrator.search.search_offers(query)
    if not offers:
        click.echo("No offers found")
    for off in sorted(offers, key=lambda o: o.price.amount):
        click.echo(
            f"{off.price.amount:.2f} {off.price.currency} "
            f"{off.origin} ➔ {off.destination} {off.departure_at:%Y-%m-%d %H:%M} "
            f"stops={off.number_of_stops} {off.booking_url}"
        )


@cli.command()
def report() -> None:
    """Send the monitoring status report now."""
    orchestrator = tasks.build_orchestrator()
    orchestrator.store.migrate()
    if not orchestrator.send_daily_report():
        raise click.ClickException("report was not delivered")


# ────────────────────────────────────────────────────────────────
# Owners
# ────────────────────────────────────────────────────────────────


@cli.group()
def owner() -> None:
    """Manage owners."""


@owner.command("add")
@click.argument("owner_id")
@click.argument("chat_id")
@click.option("--timezone", "tz", default="Europe/Berlin")
@click.option("--cooldown", type=click.IntRange(15, 480), default=None)
@click.option("--daily-cap", type=click.IntRange(0), default=None)
@click.option("--quiet", default=None, help="Quiet hours, e.g. 23:00-07:00")
@click.option("--watch-limit", type=click.IntRange(0), default=None)
def owner_add(owner_id, chat_id, tz, cooldown, daily_cap, quiet, watch_limit) -> None:
    """Create or update an owner."""
    settings = get_settings()
    store = _store()
    store.save_owner(
        Owner(
            id=owner_id,
            chat_id=chat_id,
            timezone=tz,
            notification_defaults=NotificationDefaults(
                cooldown_minutes=cooldown or settings.default_cooldown_minutes,
                quiet_hours=_quiet(quiet),
            ),
            daily_alert_cap=(
                daily_cap if daily_cap is not None else settings.default_daily_alert_cap
            ),
            watch_limit=(
                watch_limit if watch_limit is not None else settings.default_watch_limit
            ),
        )
    )
    click.echo(f"Owner {owner_id} saved")


# ────────────────────────────────────────────────────────────────
# Watches
# ────────────────────────────────────────────────────────────────


@cli.group()
def watch() -> None:
    """Manage watches."""


@watch.command("add")
@click.argument("owner_id")
@click.argument("origin")
@click.argument("destination")
@click.option("--name", default=None)
@click.option("--out", "outbound", type=(DAY, DAY), required=True)
@click.option("--in", "inbound", type=(DAY, DAY), default=None)
@click.option("--fixed", is_flag=True, help="Dates are not flexible")
@click.option("--threshold", type=float, required=True)
@click.option("--currency", default="EUR")
@click.option("--max-stops", type=click.IntRange(0, 5), default=None)
@click.option("--passengers", type=click.IntRange(1, 9), default=1)
@click.option("--interval", type=click.IntRange(15), default=30)
@click.option("--cooldown", type=click.IntRange(1), default=None)
@click.option("--every-price", is_flag=True, help="Alert on every qualifying price, not only new lows")
def watch_add(
    owner_id,
    origin,
    destination,
    name,
    outbound,
    inbound,
    fixed,
    threshold,
    currency,
    max_stops,
    passengers,
    interval,
    cooldown,
    every_price,
) -> None:
    """Create a watch."""
    store = _store()
    owner_obj = store.get_owner(owner_id)
    if owner_obj is None:
        raise click.ClickException(f"owner {owner_id} does not exist")
    if not owner_obj.can_add_watch():
        raise click.ClickException(
            f"owner {owner_id} already has {owner_obj.active_watch_count} "
            f"active watches (limit {owner_obj.watch_limit})"
        )
    try:
        new = Watch(
            id=None,
            owner_id=owner_id,
            name=name or f"{origin.upper()}-{destination.upper()}",
            origin=origin.upper(),
            destination=destination.upper(),
            outbound=_range(outbound, not fixed),
            inbound=_range(inbound, not fixed) if inbound else None,
            flight_type="roundtrip" if inbound else "oneway",
            price_threshold=threshold,
            currency=currency.upper(),
            max_stops=max_stops,
            passengers=passengers,
            check_interval_minutes=interval,
            notification_policy=NotificationPolicy(
                only_new_lows=not every_price, cooldown_minutes=cooldown
            ),
        )
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc
    store.save_watch(new)
    click.echo(_describe(new))


@watch.command("list")
@click.option("--owner", "owner_id", default=None)
@click.option("--active/--all", "active_only", default=False)
def watch_list(owner_id: Optional[str], active_only: bool) -> None:
    """List watches."""
    watches = _store().list_watches(owner_id, True if active_only else None)
    if not watches:
        click.echo("No watches")
    for w in watches:
        click.echo(_describe(w))


@watch.command("pause")
@click.argument("watch_id", type=int)
def watch_pause(watch_id: int) -> None:
    """Stop checking a watch."""
    if not _store().set_watch_active(watch_id, False):
        raise click.ClickException(f"watch {watch_id} not found")
    click.echo(f"Watch {watch_id} paused")


@watch.command("resume")
@click.argument("watch_id", type=int)
def watch_resume(watch_id: int) -> None:
    """Resume a paused watch."""
    store = _store()
    existing = store.get_watch(watch_id)
    if existing is None:
        raise click.ClickException(f"watch {watch_id} not found")
    owner_obj = store.get_owner(existing.owner_id)
    if not existing.is_active and owner_obj and not owner_obj.can_add_watch():
        raise click.ClickException(
            f"owner {existing.owner_id} is at the active watch limit"
        )
    store.set_watch_active(watch_id, True)
    click.echo(f"Watch {watch_id} resumed")


@watch.command("delete")
@click.argument("watch_id", type=int)
def watch_delete(watch_id: int) -> None:
    """Delete a watch."""
    if not _store().delete_watch(watch_id):
        raise click.ClickException(f"watch {watch_id} not found")
    click.echo(f"Watch {watch_id} deleted")


if __name__ == "__main__":
    cli()
