from __future__ import annotations

import logging
import os
import pathlib
import re
import sqlite3
from contextlib import contextmanager
from datetime import date, datetime, time, timedelta, timezone
from typing import Iterable, Iterator, List, Optional

from .errors import FareWatchError, PermanentError, TransportError, ValidationError
from .models import (
    BestPrice,
    DateRange,
    NotificationDefaults,
    NotificationPolicy,
    Offer,
    Owner,
    QuietHours,
    Watch,
    WatchStats,
)


PACKAGE_DIR = pathlib.Path(__file__).resolve().parent
DB_FILE = os.getenv("FAREWATCH_DB", "farewatch.db")
SCHEMA_FILE = str(PACKAGE_DIR / "schema.sql")
SCHEMA_VERSION = 2
BUSY_TIMEOUT_S = 10.0

logger = logging.getLogger(__name__)

_CONSTRAINT_RE = re.compile(
    r"(?:CHECK|NOT NULL) constraint failed: (?:\w+\.)?(?:ck_)?(\w+)"
)


# ────────────────────────────────────────────────────────────────
# Connection and error mapping
# ────────────────────────────────────────────────────────────────


def _translate(exc: sqlite3.Error) -> FareWatchError:
    msg = str(exc)
    if isinstance(exc, sqlite3.IntegrityError):
        match = _CONSTRAINT_RE.search(msg)
        if match:
            return ValidationError(msg, field=match.group(1))
        return PermanentError(msg)
    if isinstance(exc, sqlite3.OperationalError) and (
        "locked" in msg or "busy" in msg or "unable to open" in msg
    ):
        return TransportError(msg)
    return PermanentError(msg)


@contextmanager
def _connect(db_path: str) -> Iterator[sqlite3.Connection]:
    """Open a connection that commits on success and maps sqlite errors."""
    try:
        conn = sqlite3.connect(db_path, timeout=BUSY_TIMEOUT_S)
    except sqlite3.Error as exc:
        raise TransportError(str(exc)) from exc
    conn.row_factory = sqlite3.Row
    try:
        with conn:
            yield conn
    except sqlite3.Error as exc:
        raise _translate(exc) from exc
    finally:
        conn.close()


def migrate(db_path: str = DB_FILE, schema_path: str = SCHEMA_FILE) -> None:
    """Run pending migrations on the database."""
    logger.info("Running migrations for %s", db_path)
    with _connect(db_path) as conn:
        conn.execute(
            "CREATE TABLE IF NOT EXISTS schema_version "
            "(version INTEGER NOT NULL)"
        )
        row = conn.execute("SELECT version FROM schema_version").fetchone()
        current = row[0] if row else 0
        if current < SCHEMA_VERSION:
            logger.info("Applying schema version %s", SCHEMA_VERSION)
            with open(schema_path, "r", encoding="utf-8") as fh:
                conn.executescript(fh.read())
            if row:
                conn.execute(
                    "UPDATE schema_version SET version=?", (SCHEMA_VERSION,)
                )
            else:
                conn.execute(
                    "INSERT INTO schema_version(version) VALUES (?)",
                    (SCHEMA_VERSION,),
                )


# ────────────────────────────────────────────────────────────────
# Value conversion
# ────────────────────────────────────────────────────────────────


def _ts(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="seconds")


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _day(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_day(value: Optional[str]) -> Optional[date]:
    return date.fromisoformat(value) if value else None


def _hhmm(value: time) -> str:
    return value.strftime("%H:%M")


def _parse_hhmm(value: str) -> time:
    hour, minute = value.split(":")[:2]
    return time(int(hour), int(minute))


def _watch_params(watch: Watch) -> dict:
    best = watch.best_price
    policy = watch.notification_policy
    stats = watch.stats
    return {
        "owner_id": watch.owner_id,
        "name": watch.name,
        "origin": watch.origin,
        "destination": watch.destination,
        "flight_type": watch.flight_type,
        "outbound_start": _day(watch.outbound.start),
        "outbound_end": _day(watch.outbound.end),
        "outbound_flexible": int(watch.outbound.flexible),
        "inbound_start": _day(watch.inbound.start) if watch.inbound else None,
        "inbound_end": _day(watch.inbound.end) if watch.inbound else None,
        "inbound_flexible": int(watch.inbound.flexible) if watch.inbound else 1,
        "price_threshold": watch.price_threshold,
        "currency": watch.currency,
        "max_stops": watch.max_stops,
        "passengers": watch.passengers,
        "is_active": int(watch.is_active),
        "check_interval_minutes": watch.check_interval_minutes,
        "last_checked_at": _ts(watch.last_checked_at),
        "best_price_amount": best.amount if best else None,
        "best_price_currency": best.currency if best else None,
        "best_price_offer_ref": best.offer_ref if best else None,
        "best_price_found_at": _ts(best.found_at) if best else None,
        "notify_enabled": int(policy.enabled),
        "only_new_lows": int(policy.only_new_lows),
        "cooldown_minutes": policy.cooldown_minutes,
        "last_sent_at": _ts(policy.last_sent_at),
        "total_checks": stats.total_checks,
        "alerts_sent": stats.alerts_sent,
        "average_price": stats.average_price,
        "lowest_price": stats.lowest_price,
        "highest_price": stats.highest_price,
    }


_WATCH_COLUMNS = (
    "owner_id",
    "name",
    "origin",
    "destination",
    "flight_type",
    "outbound_start",
    "outbound_end",
    "outbound_flexible",
    "inbound_start",
    "inbound_end",
    "inbound_flexible",
    "price_threshold",
    "currency",
    "max_stops",
    "passengers",
    "is_active",
    "check_interval_minutes",
    "last_checked_at",
    "best_price_amount",
    "best_price_currency",
    "best_price_offer_ref",
    "best_price_found_at",
    "notify_enabled",
    "only_new_lows",
    "cooldown_minutes",
    "last_sent_at",
    "total_checks",
    "alerts_sent",
    "average_price",
    "lowest_price",
    "highest_price",
)


def _row_to_watch(row: sqlite3.Row) -> Watch:
    inbound = None
    if row["inbound_start"]:
        inbound = DateRange(
            start=_parse_day(row["inbound_start"]),
            end=_parse_day(row["inbound_end"]),
            flexible=bool(row["inbound_flexible"]),
        )
    best = None
    if row["best_price_amount"] is not None:
        best = BestPrice(
            amount=row["best_price_amount"],
            currency=row["best_price_currency"] or row["currency"],
            offer_ref=row["best_price_offer_ref"] or "",
            found_at=_parse_ts(row["best_price_found_at"]),
        )
    return Watch(
        id=row["id"],
        owner_id=row["owner_id"],
        name=row["name"],
        origin=row["origin"],
        destination=row["destination"],
        flight_type=row["flight_type"],
        outbound=DateRange(
            start=_parse_day(row["outbound_start"]),
            end=_parse_day(row["outbound_end"]),
            flexible=bool(row["outbound_flexible"]),
        ),
        inbound=inbound,
        price_threshold=row["price_threshold"],
        currency=row["currency"],
        max_stops=row["max_stops"],
        passengers=row["passengers"],
        is_active=bool(row["is_active"]),
        check_interval_minutes=row["check_interval_minutes"],
        last_checked_at=_parse_ts(row["last_checked_at"]),
        best_price=best,
        notification_policy=NotificationPolicy(
            enabled=bool(row["notify_enabled"]),
            only_new_lows=bool(row["only_new_lows"]),
            cooldown_minutes=row["cooldown_minutes"],
            last_sent_at=_parse_ts(row["last_sent_at"]),
        ),
        stats=WatchStats(
            total_checks=row["total_checks"],
            alerts_sent=row["alerts_sent"],
            average_price=row["average_price"],
            lowest_price=row["lowest_price"],
            highest_price=row["highest_price"],
        ),
    )


def _rows_to_watches(rows: Iterable[sqlite3.Row]) -> List[Watch]:
    watches = []
    for row in rows:
        try:
            watches.append(_row_to_watch(row))
        except ValueError as exc:
            logger.error("Skipping unreadable watch %s: %s", row["id"], exc)
    return watches


def _row_to_owner(row: sqlite3.Row, active_watches: int) -> Owner:
    return Owner(
        id=row["id"],
        chat_id=row["chat_id"],
        timezone=row["timezone"],
        notification_defaults=NotificationDefaults(
            cooldown_minutes=row["cooldown_minutes"],
            quiet_hours=QuietHours(
                enabled=bool(row["quiet_enabled"]),
                start=_parse_hhmm(row["quiet_start"]),
                end=_parse_hhmm(row["quiet_end"]),
            ),
        ),
        daily_alert_cap=row["daily_alert_cap"],
        daily_alert_count=row["daily_alert_count"],
        daily_alert_count_date=_parse_day(row["daily_alert_count_date"]),
        alerts_received=row["alerts_received"],
        watch_limit=row["watch_limit"],
        active_watch_count=active_watches,
    )


# ────────────────────────────────────────────────────────────────
# Offers
# ────────────────────────────────────────────────────────────────


def insert_offers_if_absent(
    offers: Iterable[Offer],
    watch_id: Optional[int] = None,
    db_path: str = DB_FILE,
) -> int:
    """Insert *offers* keyed by their natural id; return how many were new."""
    rows = [
        (
            off.offer_id,
            watch_id,
            off.origin,
            off.destination,
            _ts(off.departure_at),
            _ts(off.arrival_at),
            _day(off.return_date),
            off.price.amount,
            off.price.currency,
            off.airline,
            off.number_of_stops,
            ",".join(off.stops),
            off.booking_url,
            _day(off.query.departure_date),
            _day(off.query.return_date),
            off.query.passengers,
            _ts(off.fetched_at or datetime.now(timezone.utc)),
        )
        for off in offers
    ]
    if not rows:
        return 0
    with _connect(db_path) as conn:
        before = conn.total_changes
        conn.executemany(
            """
            INSERT OR IGNORE INTO offers(
                offer_id, watch_id, origin, destination,
                departure_at, arrival_at, return_date,
                price_amount, price_currency, airline,
                number_of_stops, stops, booking_url,
                query_departure_date, query_return_date, passengers,
                fetched_at
            ) VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)
            """,
            rows,
        )
        inserted = conn.total_changes - before
    logger.info("Stored %d new offers (%d seen)", inserted, len(rows))
    return inserted


def count_offers_since(since: datetime, db_path: str = DB_FILE) -> int:
    with _connect(db_path) as conn:
        row = conn.execute(
            "SELECT COUNT(*) FROM offers WHERE fetched_at >= ?", (_ts(since),)
        ).fetchone()
    return int(row[0])


# ────────────────────────────────────────────────────────────────
# Watches
# ────────────────────────────────────────────────────────────────


def save_watch(watch: Watch, db_path: str = DB_FILE) -> int:
    """Insert or update *watch*; assigns ``watch.id`` on insert."""
    params = _watch_params(watch)
    with _connect(db_path) as conn:
        if watch.id is None:
            cols = ", ".join(_WATCH_COLUMNS)
            marks = ", ".join(f":{c}" for c in _WATCH_COLUMNS)
            cur = conn.execute(
                f"INSERT INTO watches ({cols}) VALUES ({marks})", params
            )
            watch.id = cur.lastrowid
            logger.info("Created watch %s (%s)", watch.id, watch.route)
        else:
            assignments = ", ".join(f"{c}=:{c}" for c in _WATCH_COLUMNS)
            params["id"] = watch.id
            cur = conn.execute(
                f"UPDATE watches SET {assignments} WHERE id=:id", params
            )
            if cur.rowcount == 0:
                raise PermanentError(f"watch {watch.id} does not exist")
    return watch.id


def get_watch(watch_id: int, db_path: str = DB_FILE) -> Optional[Watch]:
    with _connect(db_path) as conn:
        row = conn.execute(
            "SELECT * FROM watches WHERE id=?", (watch_id,)
        ).fetchone()
    return _row_to_watch(row) if row else None


def list_watches(
    owner_id: Optional[str] = None,
    active: Optional[bool] = None,
    db_path: str = DB_FILE,
) -> List[Watch]:
    query = "SELECT * FROM watches WHERE 1=1"
    args: list = []
    if owner_id is not None:
        query += " AND owner_id=?"
        args.append(owner_id)
    if active is not None:
        query += " AND is_active=?"
        args.append(int(active))
    query += " ORDER BY id"
    with _connect(db_path) as conn:
        rows = conn.execute(query, args).fetchall()
    return _rows_to_watches(rows)


def find_due_watches(
    now: datetime, interval: timedelta, db_path: str = DB_FILE
) -> List[Watch]:
    """Active watches never checked, or last checked at least *interval* ago."""
    cutoff = _ts(now - interval)
    with _connect(db_path) as conn:
        rows = conn.execute(
            """
            SELECT * FROM watches
             WHERE is_active = 1
               AND (last_checked_at IS NULL OR last_checked_at <= ?)
             ORDER BY last_checked_at IS NOT NULL, last_checked_at, id
            """,
            (cutoff,),
        ).fetchall()
    return _rows_to_watches(rows)


def mark_checked(watch_id: int, now: datetime, db_path: str = DB_FILE) -> None:
    with _connect(db_path) as conn:
        conn.execute(
            "UPDATE watches SET last_checked_at=? WHERE id=?", (_ts(now), watch_id)
        )


def set_watch_active(watch_id: int, active: bool, db_path: str = DB_FILE) -> bool:
    with _connect(db_path) as conn:
        changed = conn.execute(
            "UPDATE watches SET is_active=? WHERE id=?", (int(active), watch_id)
        ).rowcount
    return changed > 0


def delete_watch(watch_id: int, db_path: str = DB_FILE) -> bool:
    with _connect(db_path) as conn:
        changed = conn.execute(
            "DELETE FROM watches WHERE id=?", (watch_id,)
        ).rowcount
    return changed > 0


def count_active_watches(
    owner_id: Optional[str] = None, db_path: str = DB_FILE
) -> int:
    query = "SELECT COUNT(*) FROM watches WHERE is_active = 1"
    args: list = []
    if owner_id is not None:
        query += " AND owner_id=?"
        args.append(owner_id)
    with _connect(db_path) as conn:
        row = conn.execute(query, args).fetchone()
    return int(row[0])


# ────────────────────────────────────────────────────────────────
# Owners
# ────────────────────────────────────────────────────────────────


def save_owner(owner: Owner, db_path: str = DB_FILE) -> None:
    defaults = owner.notification_defaults
    with _connect(db_path) as conn:
        conn.execute(
            """
            INSERT INTO owners (
                id, chat_id, timezone, cooldown_minutes,
                quiet_enabled, quiet_start, quiet_end,
                daily_alert_cap, daily_alert_count, daily_alert_count_date,
                alerts_received, watch_limit
            ) VALUES (?,?,?,?,?,?,?,?,?,?,?,?)
            ON CONFLICT(id) DO UPDATE SET
                chat_id=excluded.chat_id,
                timezone=excluded.timezone,
                cooldown_minutes=excluded.cooldown_minutes,
                quiet_enabled=excluded.quiet_enabled,
                quiet_start=excluded.quiet_start,
                quiet_end=excluded.quiet_end,
                daily_alert_cap=excluded.daily_alert_cap,
                daily_alert_count=excluded.daily_alert_count,
                daily_alert_count_date=excluded.daily_alert_count_date,
                alerts_received=excluded.alerts_received,
                watch_limit=excluded.watch_limit
            """,
            (
                owner.id,
                owner.chat_id,
                owner.timezone,
                defaults.cooldown_minutes,
                int(defaults.quiet_hours.enabled),
                _hhmm(defaults.quiet_hours.start),
                _hhmm(defaults.quiet_hours.end),
                owner.daily_alert_cap,
                owner.daily_alert_count,
                _day(owner.daily_alert_count_date),
                owner.alerts_received,
                owner.watch_limit,
            ),
        )


def get_owner(owner_id: str, db_path: str = DB_FILE) -> Optional[Owner]:
    with _connect(db_path) as conn:
        row = conn.execute("SELECT * FROM owners WHERE id=?", (owner_id,)).fetchone()
        if row is None:
            return None
        active = conn.execute(
            "SELECT COUNT(*) FROM watches WHERE owner_id=? AND is_active=1",
            (owner_id,),
        ).fetchone()[0]
    return _row_to_owner(row, int(active))


# ────────────────────────────────────────────────────────────────
# Leases
# ────────────────────────────────────────────────────────────────


def acquire_lease(
    name: str,
    holder: str,
    now: datetime,
    ttl: timedelta,
    db_path: str = DB_FILE,
) -> bool:
    """Take or renew lease *name* for *holder* until ``now + ttl``.

    Fails while another holder's lease has not expired.
    """
    with _connect(db_path) as conn:
        changed = conn.execute(
            """
            INSERT INTO leases (name, holder, expires_at) VALUES (?, ?, ?)
            ON CONFLICT(name) DO UPDATE SET
                holder=excluded.holder,
                expires_at=excluded.expires_at
             WHERE leases.holder = excluded.holder OR leases.expires_at <= ?
            """,
            (name, holder, _ts(now + ttl), _ts(now)),
        ).rowcount
    return changed > 0


def release_lease(name: str, holder: str, db_path: str = DB_FILE) -> None:
    with _connect(db_path) as conn:
        conn.execute(
            "DELETE FROM leases WHERE name=? AND holder=?", (name, holder)
        )


# ────────────────────────────────────────────────────────────────
# Store collaborator
# ────────────────────────────────────────────────────────────────


class SqliteStore:
    """The functions above bound to one database file."""

    def __init__(self, db_path: str = DB_FILE) -> None:
        self.db_path = db_path

    def migrate(self) -> None:
        migrate(db_path=self.db_path)

    def insert_offers_if_absent(
        self, offers: Iterable[Offer], watch_id: Optional[int] = None
    ) -> int:
        return insert_offers_if_absent(offers, watch_id, db_path=self.db_path)

    def count_offers_since(self, since: datetime) -> int:
        return count_offers_since(since, db_path=self.db_path)

    def save_watch(self, watch: Watch) -> int:
        return save_watch(watch, db_path=self.db_path)

    def get_watch(self, watch_id: int) -> Optional[Watch]:
        return get_watch(watch_id, db_path=self.db_path)

    def list_watches(
        self, owner_id: Optional[str] = None, active: Optional[bool] = None
    ) -> List[Watch]:
        return list_watches(owner_id, active, db_path=self.db_path)

    def find_due_watches(self, now: datetime, interval: timedelta) -> List[Watch]:
        return find_due_watches(now, interval, db_path=self.db_path)

    def mark_checked(self, watch_id: int, now: datetime) -> None:
        mark_checked(watch_id, now, db_path=self.db_path)

    def set_watch_active(self, watch_id: int, active: bool) -> bool:
        return set_watch_active(watch_id, active, db_path=self.db_path)

    def delete_watch(self, watch_id: int) -> bool:
        return delete_watch(watch_id, db_path=self.db_path)

    def count_active_watches(self, owner_id: Optional[str] = None) -> int:
        return count_active_watches(owner_id, db_path=self.db_path)

    def save_owner(self, owner: Owner) -> None:
        save_owner(owner, db_path=self.db_path)

    def get_owner(self, owner_id: str) -> Optional[Owner]:
        return get_owner(owner_id, db_path=self.db_path)

    def acquire_lease(
        self, name: str, holder: str, now: datetime, ttl: timedelta
    ) -> bool:
        return acquire_lease(name, holder, now, ttl, db_path=self.db_path)

    def release_lease(self, name: str, holder: str) -> None:
        release_lease(name, holder, db_path=self.db_path)


__all__ = [
    "migrate",
    "insert_offers_if_absent",
    "count_offers_since",
    "save_watch",
    "get_watch",
    "list_watches",
    "find_due_watches",
    "mark_checked",
    "set_watch_active",
    "delete_watch",
    "count_active_watches",
    "save_owner",
    "get_owner",
    "acquire_lease",
    "release_lease",
    "SqliteStore",
]
