"""Provider contract — search adapters, typed errors, and offer price helpers."""

from typing import Any, Protocol

RETRYABLE_STATUS_CODES = {408, 429}

# ProviderError.kind values
KIND_HTTP = "http"
KIND_TIMEOUT = "timeout"
KIND_CONNECTION = "connection"
KIND_DNS = "dns"
KIND_INVALID = "invalid"
KIND_EMPTY = "empty"

TRANSIENT_KINDS = {KIND_TIMEOUT, KIND_CONNECTION, KIND_DNS}


def is_retryable_status(status_code: int) -> bool:
    return status_code >= 500 or status_code in RETRYABLE_STATUS_CODES


class ProviderError(Exception):
    """Raised by search providers; classifiable by status code or failure kind."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        kind: str = KIND_HTTP,
        provider: str | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.kind = kind
        self.provider = provider

    @property
    def is_transient(self) -> bool:
        if self.kind in TRANSIENT_KINDS:
            return True
        if self.kind == KIND_HTTP and self.status_code is not None:
            return is_retryable_status(self.status_code)
        return False

    def __repr__(self) -> str:
        return (
            f"ProviderError({str(self)!r}, status_code={self.status_code}, "
            f"kind={self.kind!r}, provider={self.provider!r})"
        )


class SearchProvider(Protocol):
    """Flight or hotel search adapter: ``search(params) -> {"offers": [...], "meta": {...}}``."""

    async def search(self, params: dict[str, Any]) -> dict[str, Any]:
        ...


class NotificationSink(Protocol):
    async def create(self, user_id: str, payload: dict[str, Any]) -> None:
        ...


def offer_price(offer: dict) -> float:
    """Total price of an offer, 0.0 when missing or malformed."""
    price = offer.get("price")
    if isinstance(price, dict):
        raw = price.get("total", price.get("grandTotal", 0))
    else:
        raw = price or 0
    try:
        return float(raw)
    except (TypeError, ValueError):
        return 0.0


def offer_currency(offer: dict, default: str = "USD") -> str:
    price = offer.get("price")
    if isinstance(price, dict):
        return price.get("currency") or default
    return offer.get("currency") or default


def offer_stops(offer: dict) -> int:
    if "stops" in offer:
        return int(offer["stops"] or 0)
    itineraries = offer.get("itineraries") or []
    return sum(max(len(i.get("segments", [])) - 1, 0) for i in itineraries)


def offer_duration_minutes(offer: dict) -> int:
    if "duration_minutes" in offer:
        return int(offer["duration_minutes"] or 0)
    itineraries = offer.get("itineraries") or []
    return sum(parse_iso_duration(i.get("duration", "")) for i in itineraries)


def parse_iso_duration(duration_str: str) -> int:
    """Parse ISO 8601 duration (PT2H30M) to minutes."""
    if not duration_str or not duration_str.startswith("PT"):
        return 0
    duration_str = duration_str[2:]
    hours = 0
    minutes = 0
    if "H" in duration_str:
        h_part, duration_str = duration_str.split("H")
        hours = int(h_part)
    if "M" in duration_str:
        m_part = duration_str.replace("M", "")
        if m_part:
            minutes = int(m_part)
    return hours * 60 + minutes


def lowest_offer(offers: list[dict]) -> dict | None:
    """Cheapest priced offer.

    Ties on price go to fewer stops, then shorter total duration, then the
    lexically smaller offer id, so the choice never depends on provider order.
    """
    priced = [o for o in offers if offer_price(o) > 0]
    if not priced:
        return None
    return min(
        priced,
        key=lambda o: (
            offer_price(o),
            offer_stops(o),
            offer_duration_minutes(o),
            str(o.get("id", "")),
        ),
    )


def lowest_price(offers: list[dict]) -> float:
    best = lowest_offer(offers)
    return offer_price(best) if best else 0.0
