"""
Market Dashboard backend - FastAPI application.

Thin HTTP layer over MarketDataService. Every response uses the envelope
``{success, data?, error?, meta?: {duration, cached}}``.
"""
import time
import logging
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from market_dash import __version__
from market_dash.cache import CacheMeta
from market_dash.errors import NotFoundError, RateLimitError, UpstreamError
from market_dash.schemas import ApiResponse, ResponseMeta
from market_dash.services import MarketDataService
from config.settings import settings

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("api")

APP_NAME = "Market Dashboard API"
SHUTDOWN_DRAIN_SECONDS = 10.0


@asynccontextmanager
async def lifespan(app: FastAPI):
    if getattr(app.state, "service", None) is None:
        app.state.service = MarketDataService.from_settings(settings)
    service: MarketDataService = app.state.service
    logger.info(f"{APP_NAME} {__version__} started ({service.fetcher.pool.proxy_count} proxies)")
    yield
    if not service.drain(SHUTDOWN_DRAIN_SECONDS):
        logger.warning("Background revalidations still running at shutdown")
    service.shutdown()


app = FastAPI(
    title=APP_NAME,
    description="Cached access to prediction-market data",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)


def get_service(request: Request) -> MarketDataService:
    return request.app.state.service


def envelope(data: Any, started: float, meta: Optional[CacheMeta] = None) -> JSONResponse:
    """Success response with timing and cache metadata."""
    body = ApiResponse(
        success=True,
        data=jsonable_encoder(data),
        meta=ResponseMeta(
            duration=round((time.perf_counter() - started) * 1000, 1),
            cached=meta.cached if meta else False,
            cache_source=meta.cache_source if meta else None,
        ),
    )
    return JSONResponse(body.model_dump(exclude_none=True))


def error_response(status_code: int, message: str, headers: Optional[dict] = None) -> JSONResponse:
    body = ApiResponse(success=False, error=message)
    return JSONResponse(body.model_dump(exclude_none=True), status_code=status_code, headers=headers)


# ===== ERROR HANDLERS =====

@app.exception_handler(NotFoundError)
def handle_not_found(request: Request, exc: NotFoundError):
    return error_response(404, str(exc))


@app.exception_handler(RateLimitError)
def handle_rate_limited(request: Request, exc: RateLimitError):
    logger.warning(f"{request.url.path}: upstream rate limited")
    headers = None
    if exc.retry_after is not None:
        headers = {"Retry-After": str(int(round(exc.retry_after)))}
    return error_response(429, str(exc), headers)


@app.exception_handler(UpstreamError)
def handle_upstream_error(request: Request, exc: UpstreamError):
    logger.error(f"{request.url.path}: upstream error: {exc}")
    return error_response(502, str(exc))


@app.exception_handler(ValueError)
def handle_bad_request(request: Request, exc: ValueError):
    return error_response(400, str(exc))


@app.exception_handler(Exception)
def handle_unexpected(request: Request, exc: Exception):
    logger.exception(f"{request.url.path}: unhandled error")
    return error_response(500, "Internal server error")


# ===== ROUTES =====

@app.get("/health")
def health_check():
    """Health check endpoint."""
    return {"status": "ok", "version": __version__}


@app.get("/api/markets")
def list_markets(
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    order: Optional[str] = Query(None, description="Sort field, e.g. volume24hr"),
    active: bool = True,
    closed: bool = False,
    refresh: bool = Query(False, description="Bypass the cache"),
    service: MarketDataService = Depends(get_service),
):
    started = time.perf_counter()
    markets, meta = service.list_markets(
        limit=limit, offset=offset, order=order, active=active, closed=closed, force_refresh=refresh,
    )
    return envelope(markets, started, meta)


@app.get("/api/markets/events")
def list_events(
    limit: int = Query(20, ge=1, le=500),
    offset: int = Query(0, ge=0),
    closed: bool = False,
    service: MarketDataService = Depends(get_service),
):
    started = time.perf_counter()
    events, meta = service.list_events(limit=limit, offset=offset, closed=closed)
    return envelope(events, started, meta)


@app.get("/api/markets/search")
def search_markets(
    q: str = Query(..., min_length=1),
    limit: int = Query(20, ge=1, le=100),
    service: MarketDataService = Depends(get_service),
):
    started = time.perf_counter()
    markets, meta = service.search_markets(q, limit=limit)
    return envelope(markets, started, meta)


@app.get("/api/markets/trending")
def trending_markets(
    limit: int = Query(20, ge=1, le=100),
    service: MarketDataService = Depends(get_service),
):
    """Active markets by 24h volume."""
    started = time.perf_counter()
    markets, meta = service.get_trending_markets(limit=limit)
    return envelope(markets, started, meta)


@app.get("/api/markets/top")
def top_markets(
    limit: int = Query(10, ge=1, le=100),
    service: MarketDataService = Depends(get_service),
):
    started = time.perf_counter()
    markets, meta = service.get_top_markets(limit=limit)
    return envelope(markets, started, meta)


@app.get("/api/markets/{market_id}")
def get_market(
    market_id: str,
    refresh: bool = False,
    service: MarketDataService = Depends(get_service),
):
    started = time.perf_counter()
    market, meta = service.get_market(market_id, force_refresh=refresh)
    return envelope(market, started, meta)


@app.get("/api/markets/{market_id}/orderbook")
def get_order_book(
    market_id: str,
    token_id: Optional[str] = Query(None, alias="tokenId"),
    service: MarketDataService = Depends(get_service),
):
    """Order book for ``tokenId``, or for the market's first outcome token."""
    started = time.perf_counter()
    if not token_id:
        market, _ = service.get_market(market_id)
        if not market.clob_token_ids:
            return error_response(404, f"Market {market_id} has no order book tokens")
        token_id = market.clob_token_ids[0]
    book, meta = service.get_order_book(token_id)
    return envelope(book, started, meta)


@app.get("/api/trading/prices/{asset_id}")
def get_price(asset_id: str, service: MarketDataService = Depends(get_service)):
    started = time.perf_counter()
    quote, meta = service.get_price_quote(asset_id)
    return envelope(quote, started, meta)


@app.get("/api/portfolio/{address}")
def get_portfolio(address: str, service: MarketDataService = Depends(get_service)):
    started = time.perf_counter()
    portfolio, meta = service.get_portfolio(address)
    return envelope(portfolio, started, meta)


@app.get("/api/portfolio/{address}/activity")
def get_activity(
    address: str,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    service: MarketDataService = Depends(get_service),
):
    started = time.perf_counter()
    activity, meta = service.get_activity(address, limit=limit, offset=offset)
    return envelope(activity, started, meta)


# ===== ADMIN =====

@app.get("/api/cache/stats")
def cache_stats(service: MarketDataService = Depends(get_service)):
    """Get cache statistics."""
    started = time.perf_counter()
    return envelope(service.get_cache_stats(), started)


@app.delete("/api/cache")
def clear_cache(
    pattern: Optional[str] = Query(None, description="Only clear keys containing this text"),
    service: MarketDataService = Depends(get_service),
):
    started = time.perf_counter()
    cleared = service.clear_cache(pattern)
    return envelope({"cleared": cleared}, started)


@app.get("/api/proxies/stats")
def proxy_stats(service: MarketDataService = Depends(get_service)):
    started = time.perf_counter()
    return envelope(service.get_proxy_stats(), started)


@app.post("/api/proxies/reset")
def reset_proxies(service: MarketDataService = Depends(get_service)):
    started = time.perf_counter()
    service.reset_proxies()
    return envelope({"reset": True}, started)
