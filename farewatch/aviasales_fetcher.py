from __future__ import annotations

import datetime as dt
import logging
import os
from typing import Any, List, Mapping

import requests
from dotenv import load_dotenv

from .errors import ParseError, TransportError
from .models import Offer, Price, SearchQuery

load_dotenv()

logger = logging.getLogger(__name__)


class AviasalesFetcherError(TransportError):
    """Failure talking to the Travelpayouts API."""


class AviasalesFetcher:
    """
    Client for the Flight Data API v3 (*/aviasales/v3* path).

    ``search`` returns the raw JSON payload and raises on transport or
    provider errors; ``parse`` turns a payload into offers and never raises.
    """

    def __init__(
        self,
        token: str | None = None,
        marker: str | int | None = None,
        base_url: str = "https://api.travelpayouts.com/aviasales/v3",
        domain: str = "https://www.aviasales.com",
        *,
        timeout: float = 30.0,
        limit: int = 30,
    ) -> None:
        self.token = token or os.getenv("TP_TOKEN", "")
        self.marker = marker or os.getenv("TP_MARKER", "")
        self.base_url = base_url.rstrip("/")
        self.domain = domain.rstrip("/")
        self.timeout = timeout
        self.limit = limit

    # ──────────────────────────────────────────────────────────

    def search(
        self,
        origin: str,
        destination: str,
        departure_date: dt.date,
        return_date: dt.date | None = None,
        passengers: int = 1,
        filters: Mapping[str, Any] | None = None,
    ) -> dict:
        """Query prices for one date (or date pair) and return the payload."""
        filters = filters or {}
        params = {
            "origin": origin,
            "destination": destination,
            "departure_at": departure_date.isoformat(),
            "one_way": "false" if return_date else "true",
            "currency": str(filters.get("currency") or "eur").lower(),
            "sorting": "price",
            "limit": self.limit,
            "token": self.token,
        }
        if return_date:
            params["return_at"] = return_date.isoformat()
        if filters.get("max_stops") == 0:
            params["direct"] = "true"
        if self.marker:
            params["marker"] = self.marker

        logger.info(
            "Searching %s ➔ %s on %s%s",
            origin,
            destination,
            departure_date,
            f" / {return_date}" if return_date else " (one way)",
        )
        try:
            resp = requests.get(
                f"{self.base_url}/prices_for_dates",
                params=params,
                timeout=self.timeout,
                headers={"Accept-Encoding": "gzip"},
            )
        except requests.Timeout as exc:
            raise AviasalesFetcherError(
                f"timeout after {self.timeout}s for {origin}-{destination}"
            ) from exc
        except requests.RequestException as exc:
            raise AviasalesFetcherError(str(exc)) from exc

        if resp.status_code != 200:
            raise AviasalesFetcherError(
                f"HTTP {resp.status_code} – {resp.text[:120]}"
            )

        try:
            data = resp.json()
        except ValueError as exc:
            raise AviasalesFetcherError("response is not JSON") from exc
        if not data.get("success"):
            raise AviasalesFetcherError(f"API error: {data.get('error')}")
        return data

    def parse(self, raw: Mapping[str, Any], query: SearchQuery) -> List[Offer]:
        """Map a payload to offers, dropping items that do not parse."""
        items = raw.get("data") if isinstance(raw, Mapping) else None
        if not isinstance(items, list):
            return []

        offers: List[Offer] = []
        for item in items:
            try:
                off = self._to_offer(item, query)
            except ParseError as exc:
                logger.warning("  Skipping offer: %s", exc)
                continue
            if query.max_stops is not None and off.number_of_stops > query.max_stops:
                continue
            offers.append(off)
        return offers

    def search_offers(self, query: SearchQuery) -> List[Offer]:
        raw = self.search(
            query.origin,
            query.destination,
            query.departure_date,
            query.return_date,
            query.passengers,
            {"currency": query.currency, "max_stops": query.max_stops},
        )
        return self.parse(raw, query)

    def _to_offer(self, item: Any, query: SearchQuery) -> Offer:
        """Map one JSON record to an Offer."""
        if not isinstance(item, Mapping):
            raise ParseError(f"unexpected item type {type(item).__name__}")
        link = item.get("link")
        if not link:
            raise ParseError("missing link")

        try:
            amount = float(item["price"])
            departure_at = dt.datetime.fromisoformat(item["departure_at"])
            ret_raw = item.get("return_at")
            return_date = dt.date.fromisoformat(ret_raw[:10]) if ret_raw else None
            stops = int(item.get("transfers", item.get("number_of_changes", 0)))
            duration_to = item.get("duration_to")
            arrival_at = (
                departure_at + dt.timedelta(minutes=int(duration_to))
                if duration_to
                else None
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ParseError(f"malformed item {link}: {exc!r}") from exc

        return Offer(
            offer_id=link,
            price=Price(amount=amount, currency=query.currency.upper()),
            origin=item.get("origin_airport") or item.get("origin") or query.origin,
            destination=(
                item.get("destination_airport")
                or item.get("destination")
                or query.destination
            ),
            departure_at=departure_at,
            arrival_at=arrival_at,
            stops=[],
            number_of_stops=stops,
            booking_url=f"{self.domain}{link}",
            query=query,
            return_date=return_date,
            airline=item.get("airline", ""),
            fetched_at=dt.datetime.now(dt.timezone.utc),
        )


__all__ = ["AviasalesFetcher", "AviasalesFetcherError"]
