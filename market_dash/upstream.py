"""
Typed clients for the three upstream REST APIs.

- GammaClient: market discovery and metadata, events
- ClobClient: order books and prices
- DataClient: positions, portfolio and activity of a wallet

Every endpoint decodes its payload in one validated step; a payload that
does not match raises UpstreamDecodeError.
"""
import logging
from typing import Any, Dict, List, Optional, Type, TypeVar

from pydantic import BaseModel, TypeAdapter, ValidationError

from market_dash.errors import UpstreamDecodeError
from market_dash.proxy import ProxyFetchClient
from market_dash.schemas import (
    Activity,
    Market,
    MarketEvent,
    OrderBookSnapshot,
    Portfolio,
    Position,
    PriceQuote,
)

logger = logging.getLogger("upstream")

ModelT = TypeVar("ModelT", bound=BaseModel)


def decode_list(model: Type[ModelT], payload: Any, endpoint: str) -> List[ModelT]:
    """Decode a bare array or a ``{"data": [...]}`` envelope."""
    if isinstance(payload, dict) and isinstance(payload.get("data"), list):
        payload = payload["data"]
    if not isinstance(payload, list):
        raise UpstreamDecodeError(
            f"{endpoint}: expected a list, got {type(payload).__name__}", body=payload
        )
    try:
        return TypeAdapter(List[model]).validate_python(payload)
    except ValidationError as e:
        logger.error(f"{endpoint}: {e.error_count()} validation errors")
        raise UpstreamDecodeError(f"{endpoint}: invalid payload ({e.error_count()} errors)", body=payload) from e


def decode_one(model: Type[ModelT], payload: Any, endpoint: str) -> ModelT:
    """Decode a single object, unwrapping a ``{"data": {...}}`` envelope."""
    if isinstance(payload, dict) and isinstance(payload.get("data"), dict):
        payload = payload["data"]
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        logger.error(f"{endpoint}: {e.error_count()} validation errors")
        raise UpstreamDecodeError(f"{endpoint}: invalid payload ({e.error_count()} errors)", body=payload) from e


def _params(**kwargs) -> Dict[str, Any]:
    return {k: v for k, v in kwargs.items() if v is not None}


class GammaClient:
    """Market discovery, browsing and metadata."""

    def __init__(self, fetcher: ProxyFetchClient):
        self.fetcher = fetcher

    def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return self.fetcher.fetch_upstream("gamma", path, params).data

    def list_markets(
        self,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
        order: Optional[str] = None,
        ascending: Optional[bool] = None,
        active: Optional[bool] = None,
        closed: Optional[bool] = None,
        tag: Optional[str] = None,
    ) -> List[Market]:
        params = _params(
            limit=limit, offset=offset, order=order, ascending=ascending,
            active=active, closed=closed, tag=tag,
        )
        return decode_list(Market, self._get("/markets", params), "gamma /markets")

    def get_market(self, market_id: str) -> Market:
        if not market_id:
            raise ValueError("market_id is required")
        return decode_one(Market, self._get(f"/markets/{market_id}"), "gamma /markets/{id}")

    def search_markets(
        self,
        query: str,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
        active: Optional[bool] = None,
    ) -> List[Market]:
        if not query:
            raise ValueError("query is required")
        params = _params(q=query, limit=limit, offset=offset, active=active)
        return decode_list(Market, self._get("/markets/search", params), "gamma /markets/search")

    def list_events(
        self,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
        closed: Optional[bool] = None,
    ) -> List[MarketEvent]:
        params = _params(limit=limit, offset=offset, closed=closed)
        return decode_list(MarketEvent, self._get("/events", params), "gamma /events")

    def get_trending_markets(self, limit: int = 20) -> List[Market]:
        """Active markets ordered by 24h volume."""
        return self.list_markets(limit=limit, order="volume24hr", ascending=False, active=True, closed=False)

    def get_top_markets(self, limit: int = 10) -> List[Market]:
        """Active markets ordered by total volume."""
        return self.list_markets(limit=limit, order="volume", ascending=False, active=True, closed=False)


class ClobClient:
    """Order books and prices."""

    def __init__(self, fetcher: ProxyFetchClient):
        self.fetcher = fetcher

    def get_order_book(self, token_id: str) -> OrderBookSnapshot:
        if not token_id:
            raise ValueError("token_id is required")
        payload = self.fetcher.fetch_upstream("clob", "/book", {"token_id": token_id}).data
        return decode_one(OrderBookSnapshot, payload, "clob /book")

    def get_price_quote(self, token_id: str) -> PriceQuote:
        if not token_id:
            raise ValueError("token_id is required")
        payload = self.fetcher.fetch_upstream("clob", "/midpoint", {"token_id": token_id}).data
        if isinstance(payload, dict):
            payload = {"token_id": token_id, **payload}
        return decode_one(PriceQuote, payload, "clob /midpoint")


class DataClient:
    """Wallet positions, portfolio and activity."""

    def __init__(self, fetcher: ProxyFetchClient):
        self.fetcher = fetcher

    def get_positions(self, address: str) -> List[Position]:
        if not address:
            raise ValueError("address is required")
        payload = self.fetcher.fetch_upstream("data", "/positions", {"user": address}).data
        return decode_list(Position, payload, "data /positions")

    def get_portfolio(self, address: str) -> Portfolio:
        """Positions of ``address`` with totals."""
        positions = self.get_positions(address)
        return Portfolio(
            address=address,
            positions=positions,
            total_value=sum(p.current_value for p in positions),
            total_pnl=sum(p.cash_pnl for p in positions),
        )

    def get_activity(
        self,
        address: str,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> List[Activity]:
        if not address:
            raise ValueError("address is required")
        params = _params(user=address, limit=limit, offset=offset)
        payload = self.fetcher.fetch_upstream("data", "/activity", params).data
        return decode_list(Activity, payload, "data /activity")
