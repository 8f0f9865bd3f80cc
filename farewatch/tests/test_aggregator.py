import os
from datetime import date, datetime, timedelta, timezone

import pandas as pd
import pytest

from farewatch import aggregator
from farewatch.db import SqliteStore
from farewatch.models import Offer, Price, SearchQuery


def make_offer(offer_id, origin, destination, amount, fetched_at) -> Offer:
    return Offer(
        offer_id=offer_id,
        price=Price(amount=amount, currency="EUR"),
        origin=origin,
        destination=destination,
        departure_at=datetime(2024, 7, 2, 8, 0, tzinfo=timezone.utc),
        arrival_at=None,
        stops=[],
        number_of_stops=0,
        booking_url=f"https://www.aviasales.com{offer_id}",
        query=SearchQuery(origin, destination, date(2024, 7, 2)),
        fetched_at=fetched_at,
    )


def setup_db(tmp_path):
    store = SqliteStore(str(tmp_path / "test.db"))
    store.migrate()
    now = datetime.now(timezone.utc)
    store.insert_offers_if_absent(
        [
            make_offer("/1", "BER", "LIS", 120, now),
            make_offer("/2", "BER", "LIS", 95, now),
            make_offer("/3", "BER", "LIS", 300, now),
            make_offer("/4", "BER", "LIS", 20000, now),
            make_offer("/5", "WAW", "JFK", 450, now),
            make_offer("/6", "WAW", "JFK", 10, now - timedelta(days=3)),
        ]
    )
    return store.db_path


def test_route_price_summary(tmp_path):
    db_path = setup_db(tmp_path)

    df = aggregator.route_price_summary(db_path)

    assert list(df.columns) == aggregator.SUMMARY_COLUMNS
    assert list(df["origin"]) == ["BER", "WAW"]
    ber = df.iloc[0]
    assert ber["offers"] == 3
    assert ber["min_price"] == 95
    assert ber["max_price"] == 300
    assert ber["mean_price"] == pytest.approx(171.67)
    assert df.iloc[1]["min_price"] == 450


def test_summary_window_and_records(tmp_path):
    db_path = setup_db(tmp_path)
    since = datetime.now(timezone.utc) - timedelta(days=7)

    df = aggregator.route_price_summary(db_path, since=since)
    rows = aggregator.summary_records(df, limit=1)

    assert rows == [
        {
            "origin": "WAW",
            "destination": "JFK",
            "offers": 2,
            "min_price": 10.0,
            "mean_price": 230.0,
            "max_price": 450.0,
        }
    ]


def test_empty_database_and_csv_output(tmp_path):
    store = SqliteStore(str(tmp_path / "empty.db"))
    store.migrate()

    df = aggregator.route_price_summary(store.db_path)
    assert df.empty

    path = aggregator.route_price_summary(setup_db(tmp_path), output="csv")
    try:
        loaded = pd.read_csv(path)
        assert list(loaded["origin"]) == ["BER", "WAW"]
    finally:
        os.unlink(path)
