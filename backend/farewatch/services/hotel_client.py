"""Hotel search adapter — same ``search(params)`` contract and error model as flights."""

import hashlib
import logging
import random
from datetime import date
from typing import Any

import httpx

from farewatch.schemas.pricing import HotelSearchParams
from farewatch.services.providers import KIND_CONNECTION, KIND_INVALID, KIND_TIMEOUT, ProviderError

logger = logging.getLogger(__name__)

PROVIDER = "hotels"

HOTEL_CHAINS = [
    ("Marriott", ["Courtyard by Marriott", "Residence Inn", "Fairfield Inn"]),
    ("Hilton", ["Hilton Garden Inn", "Hampton Inn", "DoubleTree by Hilton"]),
    ("IHG", ["Holiday Inn Express", "Crowne Plaza", "InterContinental"]),
    ("Hyatt", ["Hyatt Place", "Hyatt Regency"]),
    ("Independent", ["City Center Hotel", "The Metropolitan", "Park View Hotel"]),
]

NEIGHBORHOODS = ["Downtown", "Midtown", "Airport Area", "Waterfront", "Convention Center", "Old Town"]


def _nights(check_in: str, check_out: str) -> int:
    return max((date.fromisoformat(check_out) - date.fromisoformat(check_in)).days, 1)


class HotelClient:
    """Adapter for a bearer-token hotel search API."""

    def __init__(self, api_key: str = "", base_url: str = "https://api.booking.com/v1", timeout: float = 30.0):
        self._api_key = api_key
        self._base_url = base_url
        self._timeout = timeout
        self._client: httpx.AsyncClient | None = None
        self.use_mock = not api_key

    @classmethod
    def from_settings(cls, settings) -> "HotelClient":
        return cls(settings.hotel_api_key, settings.hotel_api_base_url)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout,
                headers={"Authorization": f"Bearer {self._api_key}"},
            )
        return self._client

    async def search(self, params: dict[str, Any]) -> dict[str, Any]:
        """Search hotel offers; returns ``{"offers": [...], "meta": {...}}``."""
        try:
            query = HotelSearchParams.model_validate(params)
        except ValueError as e:
            raise ProviderError(f"Invalid hotel search params: {e}", kind=KIND_INVALID, provider=PROVIDER) from e

        if self.use_mock:
            offers = self._generate_mock_offers(query)
            return {"offers": offers, "meta": {"count": len(offers), "source": "mock"}}

        client = await self._get_client()
        try:
            resp = await client.post("/hotels/search", json=query.model_dump(exclude_none=True))
        except httpx.TimeoutException as e:
            raise ProviderError("Hotel search timed out", kind=KIND_TIMEOUT, provider=PROVIDER) from e
        except httpx.RequestError as e:
            raise ProviderError(f"Hotel search request failed: {e}", kind=KIND_CONNECTION, provider=PROVIDER) from e
        if resp.status_code >= 400:
            raise ProviderError(
                f"Hotel search returned {resp.status_code}", status_code=resp.status_code, provider=PROVIDER
            )

        data = resp.json()
        nights = _nights(query.check_in, query.check_out)
        offers = [self._parse_offer(h, nights, query.currency) for h in data.get("data", [])]
        return {"offers": offers, "meta": {"count": len(offers), "source": PROVIDER}}

    @staticmethod
    def _parse_offer(hotel: dict, nights: int, currency: str | None) -> dict:
        price = hotel.get("price", {})
        per_night = float(price.get("perNight", price.get("per_night", 0)) or 0)
        total = float(price.get("total") or per_night * nights)
        return {
            "id": str(hotel.get("id", "")),
            "price": {
                "total": total,
                "per_night": per_night,
                "currency": price.get("currency", currency or "USD"),
            },
            "hotel_name": hotel.get("name"),
            "star_rating": hotel.get("starRating", hotel.get("star_rating")),
            "address": hotel.get("address"),
            "nights": nights,
        }

    def _generate_mock_offers(self, query: HotelSearchParams) -> list[dict]:
        seed_str = f"{query.destination.lower()}{query.check_in}{query.check_out}"
        rng = random.Random(int(hashlib.md5(seed_str.encode()).hexdigest()[:8], 16))
        nights = _nights(query.check_in, query.check_out)
        rooms = query.rooms or 1

        offers = []
        for i in range(rng.randint(8, 15)):
            chain_name, hotel_names = rng.choice(HOTEL_CHAINS)
            star = rng.choice([3.0, 3.5, 4.0, 4.5, 5.0])
            per_night = round(140 * (star / 3.5) * rng.uniform(0.8, 1.3), 2)
            offers.append({
                "id": f"mock-hotel-{i + 1}",
                "price": {
                    "total": round(per_night * nights * rooms, 2),
                    "per_night": per_night,
                    "currency": query.currency or "USD",
                },
                "hotel_name": rng.choice(hotel_names),
                "hotel_chain": chain_name,
                "star_rating": star,
                "neighborhood": rng.choice(NEIGHBORHOODS),
                "nights": nights,
            })
        return sorted(offers, key=lambda o: o["price"]["total"])

    async def close(self):
        if self._client:
            await self._client.aclose()
            self._client = None
