"""Data models used throughout the project."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time
from typing import List, Literal, Optional

FlightType = Literal["oneway", "roundtrip"]

MIN_CHECK_INTERVAL_MINUTES = 15


@dataclass(slots=True)
class DateRange:
    start: date
    end: date
    flexible: bool = True

    def __post_init__(self) -> None:
        if self.end < self.start:
            raise ValueError(
                f"date range ends before it starts: {self.start} > {self.end}"
            )


@dataclass(slots=True)
class Price:
    amount: float
    currency: str


@dataclass(slots=True)
class SearchQuery:
    origin: str
    destination: str
    departure_date: date
    return_date: Optional[date] = None
    passengers: int = 1
    currency: str = "EUR"
    max_stops: Optional[int] = None


@dataclass(slots=True)
class Offer:
    offer_id: str
    price: Price
    origin: str
    destination: str
    departure_at: datetime
    arrival_at: Optional[datetime]
    stops: List[str]
    number_of_stops: int
    booking_url: str
    query: SearchQuery
    return_date: Optional[date] = None
    airline: str = ""
    fetched_at: Optional[datetime] = None

    @property
    def is_direct(self) -> bool:
        return self.number_of_stops == 0


@dataclass(slots=True)
class BestPrice:
    amount: float
    currency: str
    offer_ref: str
    found_at: datetime


@dataclass(slots=True)
class NotificationPolicy:
    enabled: bool = True
    only_new_lows: bool = True
    # None means "use the owner's default"
    cooldown_minutes: Optional[int] = None
    last_sent_at: Optional[datetime] = None


@dataclass(slots=True)
class WatchStats:
    total_checks: int = 0
    alerts_sent: int = 0
    average_price: Optional[float] = None
    lowest_price: Optional[float] = None
    highest_price: Optional[float] = None


@dataclass(slots=True)
class Watch:
    id: Optional[int]
    owner_id: str
    name: str
    origin: str
    destination: str
    outbound: DateRange
    price_threshold: float
    flight_type: FlightType = "roundtrip"
    inbound: Optional[DateRange] = None
    currency: str = "EUR"
    max_stops: Optional[int] = None
    passengers: int = 1
    is_active: bool = True
    check_interval_minutes: int = 30
    last_checked_at: Optional[datetime] = None
    best_price: Optional[BestPrice] = None
    notification_policy: NotificationPolicy = field(
        default_factory=NotificationPolicy
    )
    stats: WatchStats = field(default_factory=WatchStats)

    def __post_init__(self) -> None:
        if self.flight_type not in ("oneway", "roundtrip"):
            raise ValueError(f"unknown flight type {self.flight_type!r}")
        if self.flight_type == "roundtrip" and self.inbound is None:
            raise ValueError("roundtrip watches need an inbound date range")
        if self.flight_type == "oneway" and self.inbound is not None:
            raise ValueError("oneway watches cannot have an inbound range")
        if not self.price_threshold > 0:
            raise ValueError("price_threshold must be greater than 0")
        if self.check_interval_minutes < MIN_CHECK_INTERVAL_MINUTES:
            raise ValueError(
                f"check_interval_minutes must be >= {MIN_CHECK_INTERVAL_MINUTES}"
            )
        if not 1 <= self.passengers <= 9:
            raise ValueError("passengers must be between 1 and 9")
        if self.max_stops is not None and not 0 <= self.max_stops <= 5:
            raise ValueError("max_stops must be between 0 and 5")

    @property
    def route(self) -> str:
        return f"{self.origin}-{self.destination}"


@dataclass(slots=True)
class QuietHours:
    enabled: bool = False
    start: time = time(23, 0)
    end: time = time(7, 0)


@dataclass(slots=True)
class NotificationDefaults:
    cooldown_minutes: int = 60
    quiet_hours: QuietHours = field(default_factory=QuietHours)


@dataclass(slots=True)
class Owner:
    id: str
    chat_id: str
    timezone: str = "Europe/Berlin"
    notification_defaults: NotificationDefaults = field(
        default_factory=NotificationDefaults
    )
    daily_alert_cap: int = 20
    daily_alert_count: int = 0
    daily_alert_count_date: Optional[date] = None
    alerts_received: int = 0
    watch_limit: int = 2
    active_watch_count: int = 0

    def alerts_sent_on(self, today: date) -> int:
        """Return today's alert count; a stale counter date counts as zero."""
        if self.daily_alert_count_date != today:
            return 0
        return self.daily_alert_count

    def can_add_watch(self) -> bool:
        return self.active_watch_count < self.watch_limit


@dataclass(slots=True)
class AlertRecord:
    key: str
    last_sent_at: datetime
    occurrence_count: int = 1


__all__ = [
    "FlightType",
    "DateRange",
    "Price",
    "SearchQuery",
    "Offer",
    "BestPrice",
    "NotificationPolicy",
    "WatchStats",
    "Watch",
    "QuietHours",
    "NotificationDefaults",
    "Owner",
    "AlertRecord",
]
