"""Amadeus API client — flight search adapter with OAuth2 and a concurrency cap.

Failures surface as ``ProviderError`` so the retry executor can classify
them; retrying is the caller's job. Without credentials the client serves
deterministic mock offers for development.
"""

import asyncio
import hashlib
import logging
import random
from datetime import date, datetime, timedelta, timezone
from typing import Any

import httpx

from farewatch.schemas.pricing import FlightSearchParams
from farewatch.services.providers import (
    KIND_CONNECTION,
    KIND_INVALID,
    KIND_TIMEOUT,
    ProviderError,
    parse_iso_duration,
)

logger = logging.getLogger(__name__)

PROVIDER = "amadeus"

AIRLINE_NAMES = {
    "AA": "American Airlines", "DL": "Delta Air Lines", "UA": "United Airlines",
    "B6": "JetBlue Airways", "AS": "Alaska Airlines", "WN": "Southwest Airlines",
    "NK": "Spirit Airlines", "AC": "Air Canada", "WS": "WestJet",
    "BA": "British Airways", "LH": "Lufthansa", "AF": "Air France", "KL": "KLM",
}

MOCK_HUBS = ["ORD", "DFW", "ATL", "DEN", "JFK", "EWR", "PHX", "SLC"]


class AmadeusClient:
    """Adapter for the Amadeus Self-Service flight offers API."""

    def __init__(
        self,
        client_id: str = "",
        client_secret: str = "",
        base_url: str = "https://test.api.amadeus.com",
        timeout: float = 30.0,
        max_in_flight: int = 10,
    ):
        self._client_id = client_id
        self._client_secret = client_secret
        self._base_url = base_url
        self._timeout = timeout
        self._token: str | None = None
        self._token_expires: datetime | None = None
        self._semaphore = asyncio.Semaphore(max_in_flight)
        self._client: httpx.AsyncClient | None = None
        self.use_mock = not client_id

    @classmethod
    def from_settings(cls, settings) -> "AmadeusClient":
        return cls(settings.amadeus_client_id, settings.amadeus_client_secret, settings.amadeus_base_url)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self._base_url, timeout=self._timeout)
        return self._client

    async def _send(self, method: str, path: str, **kwargs) -> httpx.Response:
        client = await self._get_client()
        try:
            resp = await client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise ProviderError(f"Amadeus {path} timed out", kind=KIND_TIMEOUT, provider=PROVIDER) from e
        except httpx.RequestError as e:
            raise ProviderError(f"Amadeus {path} request failed: {e}", kind=KIND_CONNECTION, provider=PROVIDER) from e

        if resp.status_code == 401:
            self._token = None
        if resp.status_code >= 400:
            raise ProviderError(
                f"Amadeus {path} returned {resp.status_code}",
                status_code=resp.status_code,
                provider=PROVIDER,
            )
        return resp

    async def _ensure_token(self):
        """Get or refresh the OAuth2 client-credentials token."""
        if self._token and self._token_expires and datetime.now(timezone.utc) < self._token_expires:
            return

        resp = await self._send(
            "POST",
            "/v1/security/oauth2/token",
            data={
                "grant_type": "client_credentials",
                "client_id": self._client_id,
                "client_secret": self._client_secret,
            },
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        data = resp.json()
        self._token = data["access_token"]
        self._token_expires = datetime.now(timezone.utc) + timedelta(seconds=data.get("expires_in", 1799) - 60)
        logger.info("Amadeus token refreshed")

    async def search(self, params: dict[str, Any]) -> dict[str, Any]:
        """Search flight offers; returns ``{"offers": [...], "meta": {...}}``."""
        try:
            query = FlightSearchParams.model_validate(params)
        except ValueError as e:
            raise ProviderError(f"Invalid flight search params: {e}", kind=KIND_INVALID, provider=PROVIDER) from e

        if self.use_mock:
            offers = self._generate_mock_offers(query)
            return {"offers": offers, "meta": {"count": len(offers), "source": "mock"}}

        request_params = {
            "originLocationCode": query.origin.upper(),
            "destinationLocationCode": query.destination.upper(),
            "departureDate": query.departure_date,
            "adults": query.adults,
            "max": query.max_results or 50,
        }
        if query.return_date:
            request_params["returnDate"] = query.return_date
        if query.children:
            request_params["children"] = query.children
        if query.infants:
            request_params["infants"] = query.infants
        if query.travel_class:
            request_params["travelClass"] = query.travel_class

        async with self._semaphore:
            await self._ensure_token()
            resp = await self._send(
                "GET",
                "/v2/shopping/flight-offers",
                params=request_params,
                headers={"Authorization": f"Bearer {self._token}"},
            )

        data = resp.json()
        offers = [self._parse_offer(o) for o in data.get("data", [])]
        offers = [o for o in offers if o]
        return {"offers": offers, "meta": {"count": len(offers), "source": PROVIDER}}

    def _parse_offer(self, offer: dict) -> dict:
        """Normalize an Amadeus offer, keeping its itineraries."""
        price = offer.get("price", {})
        itineraries = offer.get("itineraries", [])
        segments = itineraries[0].get("segments", []) if itineraries else []
        if not segments:
            return {}

        first_seg = segments[0]
        last_seg = segments[-1]
        airline_code = first_seg.get("carrierCode", "")

        return {
            "id": str(offer.get("id", "")),
            "price": {
                "total": float(price.get("grandTotal", price.get("total", 0))),
                "currency": price.get("currency", "USD"),
            },
            "itineraries": itineraries,
            "airline_code": airline_code,
            "airline_name": AIRLINE_NAMES.get(airline_code, airline_code),
            "flight_numbers": ", ".join(f"{s['carrierCode']}{s['number']}" for s in segments),
            "origin_airport": first_seg["departure"]["iataCode"],
            "destination_airport": last_seg["arrival"]["iataCode"],
            "departure_time": first_seg["departure"]["at"],
            "arrival_time": last_seg["arrival"]["at"],
            "duration_minutes": sum(parse_iso_duration(i.get("duration", "")) for i in itineraries),
            "stops": len(segments) - 1,
            "seats_remaining": offer.get("numberOfBookableSeats"),
        }

    # --- Mock data generation for demo mode ---

    def _generate_mock_offers(self, query: FlightSearchParams) -> list[dict]:
        """Deterministic mock offers seeded by route, date and cabin."""
        cabin = query.travel_class or "ECONOMY"
        seed_str = f"{query.origin}{query.destination}{query.departure_date}{cabin}"
        rng = random.Random(int(hashlib.md5(seed_str.encode()).hexdigest()[:8], 16))

        base = {"ECONOMY": 300, "PREMIUM_ECONOMY": 540, "BUSINESS": 1050, "FIRST": 1800}[cabin]
        departure_day = date.fromisoformat(query.departure_date)
        airlines = ["AA", "DL", "UA", "B6", "AS", "WN"]
        offers = []
        for i in range(rng.randint(5, 12)):
            airline = rng.choice(airlines)
            stops = rng.choices([0, 1, 2], weights=[60, 30, 10])[0]
            duration = 180 + stops * rng.randint(45, 90)
            dep = datetime(
                departure_day.year, departure_day.month, departure_day.day,
                rng.randint(6, 21), rng.choice([0, 15, 30, 45]), tzinfo=timezone.utc,
            )
            total = round(base * rng.uniform(0.8, 1.8) * query.adults, 2)
            offers.append({
                "id": f"mock-{i + 1}",
                "price": {"total": total, "currency": "USD"},
                "itineraries": [],
                "airline_code": airline,
                "airline_name": AIRLINE_NAMES.get(airline, airline),
                "flight_numbers": f"{airline}{rng.randint(100, 9999)}",
                "origin_airport": query.origin.upper(),
                "destination_airport": query.destination.upper(),
                "departure_time": dep.isoformat(),
                "arrival_time": (dep + timedelta(minutes=duration)).isoformat(),
                "duration_minutes": duration,
                "stops": stops,
                "stop_airports": ", ".join(rng.sample(MOCK_HUBS, stops)) if stops else None,
                "seats_remaining": rng.randint(1, 9) if rng.random() < 0.3 else None,
            })
        return sorted(offers, key=lambda o: o["price"]["total"])

    async def close(self):
        if self._client:
            await self._client.aclose()
            self._client = None
