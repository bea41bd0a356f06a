from datetime import date
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

SearchKind = Literal["flight", "hotel"]
PriorityTier = Literal["high", "medium", "low"]

# Selection order: lower rank runs first
TIER_RANK = {"high": 0, "medium": 1, "low": 2}


def _check_iso_date(value: str | None) -> str | None:
    if value is not None:
        date.fromisoformat(value)
    return value


class FlightSearchParams(BaseModel):
    origin: str = Field(min_length=3, max_length=3)
    destination: str = Field(min_length=3, max_length=3)
    departure_date: str
    return_date: str | None = None
    adults: int = Field(default=1, ge=1, le=9)
    children: int | None = Field(default=None, ge=0, le=9)
    infants: int | None = Field(default=None, ge=0, le=9)
    travel_class: Literal["ECONOMY", "PREMIUM_ECONOMY", "BUSINESS", "FIRST"] | None = None
    max_results: int | None = Field(default=None, ge=1, le=100)

    @field_validator("departure_date", "return_date")
    @classmethod
    def _iso_date(cls, v: str | None) -> str | None:
        return _check_iso_date(v)


class HotelSearchParams(BaseModel):
    destination: str
    check_in: str
    check_out: str
    adults: int = Field(default=1, ge=1, le=20)
    children: int | None = Field(default=None, ge=0, le=10)
    rooms: int | None = Field(default=None, ge=1, le=10)
    currency: str | None = None
    max_results: int | None = Field(default=None, ge=1, le=100)

    @field_validator("check_in", "check_out")
    @classmethod
    def _iso_date(cls, v: str) -> str:
        return _check_iso_date(v)


def validate_search_params(kind: str, params: dict[str, Any]) -> dict[str, Any]:
    """Validate provider params for ``kind`` and drop unset fields."""
    model = FlightSearchParams if kind == "flight" else HotelSearchParams
    return model.model_validate(params).model_dump(exclude_none=True)


class PriceQuoteSet(BaseModel):
    search_key: str
    kind: SearchKind
    offers: list[dict[str, Any]]
    search_params: dict[str, Any]
    cached_at: float
    expires_at: float


class PriceHistoryPoint(BaseModel):
    search_key: str
    price: float
    currency: str
    timestamp: float
    source: str


class PriceChange(BaseModel):
    old_price: float
    new_price: float
    percent_change: float


class MonitoringJob(BaseModel):
    id: str
    kind: SearchKind
    search_params: dict[str, Any]
    priority_tier: PriorityTier
    owner_user_id: str | None = None
    last_run_at: float | None = None
    next_due_at: float
    consecutive_failures: int = 0
    is_active: bool = True


class PriceAlert(BaseModel):
    id: str
    user_id: str
    kind: SearchKind
    search_params: dict[str, Any]
    target_price: float
    current_price: float | None = None
    is_active: bool = True
    created_at: float
    last_checked_at: float = 0.0
    alerts_sent: int = 0
