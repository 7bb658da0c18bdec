"""
TTL configuration per data category and canonical cache-key builders.
"""
from typing import Any, Dict, Mapping, Tuple

from .core import DataCategory


# TTL configuration by category (in seconds)
TTL_CONFIG: Dict[DataCategory, Dict[str, Any]] = {
    DataCategory.MARKET_LIST: {
        "stale_ttl": 120,     # 2 minutes until stale
        "max_ttl": 600,       # 10 minutes until expired
        "max_size": 50,
    },
    DataCategory.MARKET_METADATA: {
        "stale_ttl": 180,     # 3 minutes until stale
        "max_ttl": 900,       # 15 minutes until expired
        "max_size": 500,
    },
    DataCategory.EVENTS: {
        "stale_ttl": 120,
        "max_ttl": 600,
        "max_size": 100,
    },
    DataCategory.ORDER_BOOK: {
        "stale_ttl": 5,       # Order books move fast
        "max_ttl": 15,
        "max_size": 200,
    },
    DataCategory.PORTFOLIO: {
        "stale_ttl": 30,
        "max_ttl": 300,
        "max_size": 200,
    },
}


def get_ttl_for_category(category: DataCategory) -> Tuple[float, float, int]:
    """
    Get cache configuration for a data category.

    Returns:
        (stale_ttl, max_ttl, max_size)
    """
    config = TTL_CONFIG.get(category, TTL_CONFIG[DataCategory.MARKET_LIST])
    return config["stale_ttl"], config["max_ttl"], config["max_size"]


def _sorted_params(params: Mapping[str, Any]) -> str:
    return "&".join(
        f"{k}={params[k]}" for k in sorted(params) if params[k] is not None
    )


def market_list_key(params: Mapping[str, Any]) -> str:
    return f"markets:list:{_sorted_params(params)}"


def market_detail_key(market_id: str) -> str:
    return f"markets:detail:{market_id}"


def market_search_key(query: str, params: Mapping[str, Any]) -> str:
    return f"markets:search:{query}:{_sorted_params(params)}"


def event_list_key(params: Mapping[str, Any]) -> str:
    return f"events:{_sorted_params(params)}"


def order_book_key(token_id: str) -> str:
    return f"orderbook:{token_id}"


def price_key(token_id: str) -> str:
    return f"price:{token_id}"


def portfolio_key(address: str) -> str:
    return f"portfolio:{address.lower()}"


def activity_key(address: str, params: Mapping[str, Any]) -> str:
    return f"activity:{address.lower()}:{_sorted_params(params)}"
