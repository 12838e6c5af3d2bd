"""
FastAPI Application - Kimchi Premium Market Data API

Aggregates domestic (KRW) and foreign (USDT) exchange data into a
cross-market premium series and relays live premium ticks.

Supported Exchanges:
    - Domestic: Upbit, Bithumb
    - Foreign: Binance, Bybit, OKX

Features:
    - Premium candles built from concurrent multi-exchange fetches (pull)
    - Live premium ticks over server-sent events (push)
    - Domestic / foreign ticker pair for a coin
    - Exchange API key verification and position lookup

Usage:
    uvicorn app.main:app --reload --host 0.0.0.0 --port 8000

Docs:
    - Swagger: http://localhost:8000/docs
    - ReDoc: http://localhost:8000/redoc
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from app.dependencies import (
    get_aggregator,
    get_broker,
    get_credentials_lookup,
    require_user,
)
from core.adapter_factory import (
    create_adapter,
    describe_exchanges,
    health_check_all,
    list_exchanges,
    resolve_exchange_id,
)
from core.collaborators import AuthenticatedUser, CredentialsLookup
from core.config import settings, validate_configuration
from core.exceptions import (
    ConfigurationError,
    ExchangeError,
    SymbolNotFound,
    UnsupportedOperation,
    UpstreamAuthError,
)
from core.logging import logger
from core.schemas import (
    ConnectionTestRequest,
    ConnectionTestResult,
    KlineResponse,
    PairPrice,
    PositionInfo,
)
from services.broker import BrokerConnection
from services.premium_aggregator import PremiumAggregator
from services.premium_stream import PremiumStreamRelay
from services.response_shaper import to_kline_response


SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


# ============================================
# Lifespan Management
# ============================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle application startup and shutdown."""
    # Startup
    logger.info("=== Application Starting ===")
    try:
        validate_configuration()
        app.state.broker = BrokerConnection(settings.redis_dsn)
        app.state.aggregator = PremiumAggregator()
        if not await app.state.broker.ping():
            logger.warning("Broker unreachable at startup; premium streams will report errors")
        logger.info("=== Started Successfully ===")
    except Exception as e:
        logger.error(f"Startup failed: {e}")
        raise

    yield

    # Shutdown
    logger.info("=== Shutting Down ===")
    try:
        await app.state.broker.close()
        logger.info("=== Shutdown Complete ===")
    except Exception as e:
        logger.error(f"Shutdown error: {e}")


# ============================================
# FastAPI Application
# ============================================

app = FastAPI(
    title="Kimchi Premium Market Data API",
    description=(
        "Cross-market premium data for KRW and USDT cryptocurrency markets.\n\n"
        "**Domestic:** Upbit, Bithumb  \n"
        "**Foreign:** Binance, Bybit, OKX\n\n"
        "## REST Endpoints\n"
        "- `GET /api/kline` - Premium candles (domestic / foreign) with volume series\n"
        "- `GET /api/proxy/position/price` - Domestic and foreign ticker for one coin\n"
        "- `POST /api/exchanges/test` - Verify an exchange API key (session required)\n"
        "- `GET /api/positions/{exchange}/{symbol}` - Open position (session required)\n"
        "- `GET /exchanges` - List supported exchanges\n"
        "- `GET /health` - Health check\n\n"
        "## Server-Sent Events\n"
        "- `GET /api/premium/stream?channel=kimchi:premium` - Live premium ticks\n"
        "  - Events: `subscribed`, `tick`, `error`; comments `:ok` and `:hb <ms>`\n"
        "  - Heartbeat every ~20 seconds; the stream ends only when the client disconnects\n"
    ),
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc"
)

# CORS (allow your frontend origins)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"]
)


# ============================================
# System Endpoints
# ============================================

@app.get("/", tags=["System"])
async def root():
    """API information and available exchanges."""
    return {
        "name": "Kimchi Premium Market Data API",
        "version": "1.0.0",
        "status": "operational",
        "docs": "/docs",
        "exchanges": list_exchanges()
    }


@app.get("/health", tags=["System"])
async def health_check(
    deep: bool = Query(default=False, description="Also probe every exchange's public API"),
    broker: BrokerConnection = Depends(get_broker)
):
    """Health check - broker connectivity, optionally exchange connectivity."""
    checks = {"broker": await broker.ping()}
    body = {}
    if deep:
        exchanges = await health_check_all()
        checks.update(exchanges)
        body["exchanges"] = exchanges

    return {
        "status": "healthy" if all(checks.values()) else "degraded",
        "broker": checks["broker"],
        **body
    }


@app.get("/exchanges", tags=["System"])
async def list_supported_exchanges():
    """List all supported exchanges, their market group and capabilities."""
    exchanges = describe_exchanges()
    return {"exchanges": exchanges, "count": len(exchanges)}


# ============================================
# Premium Candles
# ============================================

@app.get(
    "/api/kline",
    response_model=KlineResponse,
    response_model_exclude_none=True,
    tags=["Premium"]
)
async def get_kline(
    exchanges: str = Query(default="", description="Comma-separated exchanges (e.g., upbit,binance)"),
    symbol: str = Query(default="BTC", description="Base asset"),
    interval: str = Query(default="1m", description="1m, 5m, 15m, 30m, 1h, 4h, 1d, 1w, 1M"),
    to: int = Query(default=0, ge=0, description="End time in epoch seconds (0 = now)"),
    aggregator: PremiumAggregator = Depends(get_aggregator)
):
    """
    Premium candles for a symbol across the requested exchanges.

    Domestic and foreign candles are fetched concurrently; exchanges that fail
    are left out. Timestamps present on only one side are dropped.
    """
    names = [name.strip() for name in exchanges.split(",") if name.strip()]

    try:
        result = await aggregator.aggregate(names, symbol, interval, to)
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Kline error for {symbol}/{interval} ({exchanges}): {e}")
        return JSONResponse(status_code=500, content={"error": "Failed to fetch kline data"})

    return to_kline_response(result)


# ============================================
# Live Premium Stream
# ============================================

@app.get("/api/premium/stream", tags=["Premium"])
async def premium_stream(
    channel: Optional[str] = Query(default=None, description="Broker channel (default: configured premium channel)"),
    broker: BrokerConnection = Depends(get_broker)
):
    """
    Server-sent event stream of live premium ticks.

    Each connection gets its own broker subscription and heartbeat; both are
    released when the client disconnects.
    """
    channel = channel or settings.premium_channel
    relay = PremiumStreamRelay(broker.create_subscriber(), channel)
    logger.info(f"SSE connected: premium stream on {channel}")

    return StreamingResponse(relay.frames(), media_type="text/event-stream", headers=SSE_HEADERS)


# ============================================
# Ticker Pair
# ============================================

@app.get("/api/proxy/position/price", response_model=PairPrice, tags=["Market Data"])
async def get_pair_price(
    kr_exchange: Optional[str] = Query(default=None, alias="krExchange"),
    fr_exchange: Optional[str] = Query(default=None, alias="frExchange"),
    coin_symbol: Optional[str] = Query(default=None, alias="coinSymbol")
):
    """Domestic and foreign last price for one coin, fetched concurrently."""
    if not kr_exchange or not fr_exchange or not coin_symbol:
        raise HTTPException(status_code=400, detail="krExchange, frExchange and coinSymbol are required")

    try:
        domestic = create_adapter(kr_exchange)
        foreign = create_adapter(fr_exchange)
        symbol = domestic.normalize_symbol(coin_symbol)
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    try:
        async with domestic, foreign:
            kr_ticker, fr_ticker = await asyncio.gather(
                domestic.get_ticker(symbol),
                foreign.get_ticker(symbol)
            )
    except SymbolNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ExchangeError as e:
        logger.error(f"Ticker pair error for {symbol} ({kr_exchange}/{fr_exchange}): {e}")
        raise HTTPException(status_code=502, detail="Failed to fetch ticker prices")

    return PairPrice(
        coin_symbol=symbol,
        kr_price=kr_ticker.price,
        fr_price=fr_ticker.price,
        kr_timestamp=kr_ticker.timestamp,
        fr_timestamp=fr_ticker.timestamp
    )


# ============================================
# Account Endpoints
# ============================================

@app.post("/api/exchanges/test", response_model=ConnectionTestResult, tags=["Account"])
async def test_exchange_connection(
    request: ConnectionTestRequest,
    user: AuthenticatedUser = Depends(require_user)
):
    """
    Verify exchange API credentials by reading the account balance.

    The credentials are used for this single call and are not stored.
    """
    try:
        adapter = create_adapter(request.exchange_name, request.to_credentials())
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    async with adapter:
        balance = await adapter.get_balance()

    if balance.error:
        logger.info(f"API key check failed for user {user.id} on {adapter.name}")
        return ConnectionTestResult(
            success=False,
            exchange_name=adapter.name,
            message=balance.error,
            data=balance
        )

    logger.info(f"API key check passed for user {user.id} on {adapter.name}")
    return ConnectionTestResult(
        success=True,
        exchange_name=adapter.name,
        message=f"Connected to {adapter.display_name}",
        data=balance
    )


@app.get("/api/positions/{exchange}/{symbol}", response_model=PositionInfo, tags=["Account"])
async def get_position(
    exchange: str,
    symbol: str,
    user: AuthenticatedUser = Depends(require_user),
    lookup: CredentialsLookup = Depends(get_credentials_lookup)
):
    """Open perpetual position for the caller's stored API key."""
    try:
        exchange_id = resolve_exchange_id(exchange)
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    credentials = await lookup.get_credentials(user.id, exchange_id)
    if credentials is None:
        raise HTTPException(status_code=404, detail=f"No API key registered for {exchange_id}")

    adapter = create_adapter(exchange_id, credentials)
    try:
        async with adapter:
            return await adapter.get_position_info(symbol)
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except UnsupportedOperation as e:
        raise HTTPException(status_code=400, detail=str(e))
    except UpstreamAuthError:
        raise HTTPException(status_code=403, detail=f"{adapter.display_name} rejected the stored API key")
    except SymbolNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ExchangeError as e:
        logger.error(f"Position lookup error for {exchange_id}/{symbol}: {e}")
        raise HTTPException(status_code=502, detail="Failed to fetch position")


# ============================================
# Error Handlers
# ============================================

@app.exception_handler(404)
async def not_found_handler(request, exc):
    """Handle 404 errors."""
    detail = getattr(exc, "detail", None) or "Not found"
    return JSONResponse(status_code=404, content={"detail": detail, "path": str(request.url)})


@app.exception_handler(500)
async def internal_error_handler(request, exc):
    """Handle 500 errors."""
    logger.error(f"Internal error: {exc}")
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})
