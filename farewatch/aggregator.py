from __future__ import annotations

import logging
import sqlite3
import tempfile
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Union

import pandas as pd

from .db import DB_FILE
from .stats import SANITY_CEILING

logger = logging.getLogger(__name__)

SUMMARY_COLUMNS = ["origin", "destination", "offers", "min_price", "mean_price", "max_price"]


def route_price_summary(
    db_path: str = DB_FILE,
    *,
    since: Optional[datetime] = None,
    ceiling: float = SANITY_CEILING,
    output: Optional[str] = None,
) -> Union[pd.DataFrame, str]:
    """Summarise stored offer prices per route using pandas.

    Parameters
    ----------
    db_path:
        Path to the SQLite database.
    since:
        Only offers fetched at or after this moment (default: last 24 h).
    ceiling:
        Prices outside ``(0, ceiling)`` are left out.
    output:
        ``None``     – return ``pandas.DataFrame`` (default).
        ``"csv"``    – write DataFrame to a temporary CSV and return its path.
    """
    if since is None:
        since = datetime.now(timezone.utc) - timedelta(days=1)
    since_str = since.astimezone(timezone.utc).isoformat(timespec="seconds")

    conn = sqlite3.connect(db_path)
    try:
        df = pd.read_sql_query(
            """
            SELECT origin, destination, price_amount
              FROM offers
             WHERE fetched_at >= ?
            """,
            conn,
            params=(since_str,),
        )
    finally:
        conn.close()

    df["price_amount"] = pd.to_numeric(df["price_amount"], errors="coerce")
    df = df[(df["price_amount"] > 0) & (df["price_amount"] < ceiling)]
    if df.empty:
        result_df = pd.DataFrame(columns=SUMMARY_COLUMNS)
    else:
        result_df = (
            df.groupby(["origin", "destination"])["price_amount"]
            .agg(offers="count", min_price="min", mean_price="mean", max_price="max")
            .reset_index()
            .sort_values("min_price")
            .reset_index(drop=True)
        )
        result_df["mean_price"] = result_df["mean_price"].round(2)
    logger.info("Price summary covers %d routes", len(result_df))

    if output == "csv":
        tmp = tempfile.NamedTemporaryFile(delete=False, suffix=".csv")
        result_df.to_csv(tmp.name, index=False)
        return tmp.name
    return result_df


def summary_records(df: pd.DataFrame, limit: int = 10) -> List[dict]:
    """Cheapest *limit* routes as plain dicts for message formatting."""
    return df.head(limit).to_dict(orient="records")


__all__ = ["route_price_summary", "summary_records"]
