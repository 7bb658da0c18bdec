"""
Pydantic schemas for upstream payloads and API responses.

Each upstream payload is validated once, at the client boundary; a payload
that does not fit raises instead of being defaulted deep in business logic.
"""
import json
from typing import Any, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


class UpstreamModel(BaseModel):
    """Base for upstream payloads: camelCase on the wire, extras ignored."""

    class Config:
        alias_generator = to_camel
        populate_by_name = True
        from_attributes = True


def _json_list(value: Any) -> Any:
    """Gamma encodes some arrays as JSON strings."""
    if isinstance(value, str):
        try:
            return json.loads(value)
        except ValueError:
            return value
    return value


def _drop_nulls(data: Any) -> Any:
    """Let field defaults apply when upstream sends explicit nulls."""
    if isinstance(data, dict):
        return {k: v for k, v in data.items() if v is not None}
    return data


# ===== MARKET SCHEMAS =====

class Market(UpstreamModel):
    """A market as returned by the market-metadata API (and embedded in events)."""
    id: str
    title: str = "Unknown Market"
    slug: str = ""
    description: str = ""
    condition_id: str = ""
    image: Optional[str] = None
    outcomes: List[str] = Field(default_factory=lambda: ["Yes", "No"])
    outcome_prices: List[float] = Field(default_factory=lambda: [0.5, 0.5])
    clob_token_ids: List[str] = Field(default_factory=list)
    volume: float = 0.0
    volume_24hr: float = Field(0.0, alias="volume24hr")
    liquidity: float = 0.0
    end_date: Optional[str] = None
    created_at: Optional[str] = None
    closed: bool = False
    active: bool = True
    event_title: Optional[str] = None
    event_slug: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = _drop_nulls(data)
        if "id" not in data and "conditionId" in data:
            data["id"] = data["conditionId"]
        if "conditionId" not in data and "condition_id" not in data and "id" in data:
            data["conditionId"] = data["id"]
        if "title" not in data and "question" in data:
            data["title"] = data["question"]
        if "volume" not in data and "volumeNum" in data:
            data["volume"] = data["volumeNum"]
        if "liquidity" not in data and "liquidityNum" in data:
            data["liquidity"] = data["liquidityNum"]
        return data

    @field_validator("id", "condition_id", mode="before")
    @classmethod
    def _as_str(cls, value: Any) -> Any:
        return str(value) if isinstance(value, int) else value

    @field_validator("outcomes", "outcome_prices", "clob_token_ids", mode="before")
    @classmethod
    def _decode_json_arrays(cls, value: Any) -> Any:
        return _json_list(value)

    @property
    def probability(self) -> float:
        """Price of the first outcome."""
        return self.outcome_prices[0] if self.outcome_prices else 0.5


class MarketEvent(UpstreamModel):
    """An event grouping related markets."""
    id: str
    title: str = ""
    slug: str = ""
    image: Optional[str] = None
    created_at: Optional[str] = None
    markets: List[Market] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data: Any) -> Any:
        return _drop_nulls(data)

    @field_validator("id", mode="before")
    @classmethod
    def _as_str(cls, value: Any) -> Any:
        return str(value) if isinstance(value, int) else value


# ===== ORDER BOOK SCHEMAS =====

class PriceLevel(UpstreamModel):
    price: float
    size: float


class OrderBookSnapshot(UpstreamModel):
    """Order book for one outcome token."""
    asset_id: str
    market: Optional[str] = None
    bids: List[PriceLevel] = Field(default_factory=list)
    asks: List[PriceLevel] = Field(default_factory=list)
    timestamp: Optional[str] = None

    @field_validator("timestamp", mode="before")
    @classmethod
    def _timestamp_str(cls, value: Any) -> Any:
        return str(value) if isinstance(value, (int, float)) else value

    @property
    def best_bid(self) -> Optional[float]:
        return max((level.price for level in self.bids), default=None)

    @property
    def best_ask(self) -> Optional[float]:
        return min((level.price for level in self.asks), default=None)

    @property
    def spread(self) -> Optional[float]:
        if self.best_bid is None or self.best_ask is None:
            return None
        return round(self.best_ask - self.best_bid, 6)


class PriceQuote(UpstreamModel):
    token_id: str
    mid: float


# ===== PORTFOLIO SCHEMAS =====

class Position(UpstreamModel):
    asset: str
    condition_id: Optional[str] = None
    title: Optional[str] = None
    outcome: Optional[str] = None
    size: float = 0.0
    avg_price: float = 0.0
    current_value: float = 0.0
    cash_pnl: float = 0.0
    percent_pnl: float = 0.0

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data: Any) -> Any:
        return _drop_nulls(data)


class Activity(UpstreamModel):
    type: str
    timestamp: int
    condition_id: Optional[str] = None
    title: Optional[str] = None
    side: Optional[str] = None
    price: Optional[float] = None
    size: float = 0.0
    usdc_size: float = 0.0
    transaction_hash: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data: Any) -> Any:
        return _drop_nulls(data)


class Portfolio(UpstreamModel):
    address: str
    positions: List[Position] = Field(default_factory=list)
    total_value: float = 0.0
    total_pnl: float = 0.0


# ===== RESPONSE ENVELOPE =====

class ResponseMeta(BaseModel):
    duration: float  # milliseconds
    cached: bool
    cache_source: Optional[str] = None


class ApiResponse(BaseModel):
    """Envelope for every JSON response of the backend."""
    success: bool
    data: Any = None
    error: Optional[str] = None
    meta: Optional[ResponseMeta] = None
