"""
Bybit REST API Adapter

Foreign (USDT) exchange using the Bybit v5 unified API, linear perpetuals.

API Documentation:
    https://bybit-exchange.github.io/docs/v5/intro

Endpoints Used:
    Public:
        - GET /v5/market/kline?category=linear
        - GET /v5/market/tickers?category=linear
    Private (X-BAPI-* HMAC headers):
        - GET /v5/account/wallet-balance?accountType=UNIFIED
        - GET /v5/position/list?category=linear

Response Envelope:
    Every response is HTTP 200 with {"retCode": 0, "retMsg": "OK", "result": {...}}.
    A non-zero retCode is an error even though the HTTP status is 200; the
    adapter maps it to the same exception types as HTTP errors.

Usage:
    async with BybitAdapter() as bybit:
        candles = await bybit.get_ticker_candles("BTC", "15m")
"""

import hashlib
import hmac
from typing import Any, Dict, List, Optional, Tuple

from core.config import settings
from core.exceptions import ExchangeAPIError, SymbolNotFound, UpstreamAuthError, UpstreamUnavailable
from core.exchange_interface import ExchangeAdapter
from core.schemas import Candle, PositionInfo, TickerSnapshot
from core.utils.time import current_utc_timestamp, to_epoch_seconds


CANDLE_LIMIT = 1000
RECV_WINDOW = "5000"

# retCode families
PARAMS_ERROR = 10001
AUTH_ERRORS = {10003, 10004, 10005, 10007, 10010, 33004}
RATE_LIMIT_ERRORS = {10006, 10018}


class BybitAdapter(ExchangeAdapter):
    """
    Adapter for Bybit linear (USDT) perpetuals.

    Example:
        >>> async with BybitAdapter() as bybit:
        ...     ticker = await bybit.get_ticker("ETH")
    """

    name = "bybit"
    display_name = "Bybit"
    market = "foreign"
    BASE_URL = settings.bybit_base_url

    INTERVALS = {
        "1m": "1",
        "5m": "5",
        "15m": "15",
        "30m": "30",
        "1h": "60",
        "4h": "240",
        "1d": "D",
        "1w": "W",
        "1M": "M",
    }

    capabilities = {
        "ticker": True,
        "candles": True,
        "balance": True,
        "positions": True
    }

    def pair(self, symbol: str) -> str:
        return f"{self.normalize_symbol(symbol)}USDT"

    # ============================================
    # Market Data
    # ============================================

    async def get_ticker(self, symbol: str) -> TickerSnapshot:
        """
        Fetch the last traded price.

        Bybit Endpoint:
            GET /v5/market/tickers?category=linear&symbol=BTCUSDT

        Response Format (result):
            {"category": "linear", "list": [{"symbol": "BTCUSDT", "lastPrice": "67000.5", ...}]}
        """
        result = await self._request(
            "GET",
            "/v5/market/tickers",
            {"category": "linear", "symbol": self.pair(symbol)},
            symbol=symbol
        )

        items = result.get("list") or []
        if not items:
            raise SymbolNotFound(symbol, self.name)

        return TickerSnapshot(
            exchange=self.name,
            symbol=self.normalize_symbol(symbol),
            price=float(items[0]["lastPrice"]),
            timestamp=current_utc_timestamp(milliseconds=True)
        )

    async def get_ticker_candles(
        self,
        symbol: str,
        interval: str,
        to_timestamp: int = 0,
        count: Optional[int] = None
    ) -> List[Candle]:
        """
        Fetch linear perpetual candles.

        Bybit Endpoint:
            GET /v5/market/kline?category=linear&symbol=BTCUSDT&interval=60&limit=200&end=1704110400000

        Response Format (result.list, newest first):
            [["1704110400000", "42000.1", "42100.0", "41900.0", "42050.0", "123.45", "5190000.0"], ...]
             startTime(ms)     open       high       low        close      volume    turnover
        """
        params: Dict[str, Any] = {
            "category": "linear",
            "symbol": self.pair(symbol),
            "interval": self.map_interval(interval),
            "limit": min(count or settings.candle_count, CANDLE_LIMIT)
        }
        if to_timestamp:
            params["end"] = to_timestamp * 1000

        self.logger.info(f"Fetching candles: {params['symbol']} {interval} (to={to_timestamp or 'now'})")
        result = await self._request("GET", "/v5/market/kline", params, symbol=symbol)

        candles = [
            Candle(
                timestamp=to_epoch_seconds(item[0]),
                open=float(item[1]),
                high=float(item[2]),
                low=float(item[3]),
                close=float(item[4]),
                volume=float(item[5])
            )
            for item in result.get("list") or []
        ]
        candles.sort(key=lambda c: c.timestamp)

        self.logger.info(f"Fetched {len(candles)} candles for {params['symbol']}")
        return candles

    # ============================================
    # Account
    # ============================================

    async def _fetch_balance(self) -> float:
        """
        Available USDT in the unified trading account.

        Bybit Endpoint:
            GET /v5/account/wallet-balance?accountType=UNIFIED&coin=USDT  (signed)
        """
        result = await self._request(
            "GET",
            "/v5/account/wallet-balance",
            {"accountType": "UNIFIED", "coin": "USDT"},
            signed=True
        )
        accounts = result.get("list") or []
        if not accounts:
            return 0.0
        return float(accounts[0].get("totalAvailableBalance") or 0)

    async def get_position_info(self, symbol: str) -> PositionInfo:
        """
        Open linear position for a symbol.

        Bybit Endpoint:
            GET /v5/position/list?category=linear&symbol=BTCUSDT  (signed)

        Response Format (result.list):
            [{"symbol": "BTCUSDT", "side": "Buy", "size": "0.01", "avgPrice": "67000",
              "markPrice": "67100", "leverage": "10", "unrealisedPnl": "1.0",
              "cumRealisedPnl": "-0.3", "liqPrice": "60000", "tradeMode": 0}]

        tradeMode 0 is cross margin, 1 is isolated.
        """
        result = await self._request(
            "GET",
            "/v5/position/list",
            {"category": "linear", "symbol": self.pair(symbol)},
            signed=True,
            symbol=symbol
        )

        entries = [p for p in result.get("list") or [] if float(p.get("size") or 0) > 0]
        if not entries:
            return PositionInfo(exchange=self.name, symbol=self.normalize_symbol(symbol))

        position = entries[0]
        liquidation = float(position.get("liqPrice") or 0)

        return PositionInfo(
            exchange=self.name,
            symbol=self.normalize_symbol(symbol),
            side="long" if position.get("side") == "Buy" else "short",
            size=float(position["size"]),
            entry_price=float(position.get("avgPrice") or 0),
            mark_price=float(position.get("markPrice") or 0),
            leverage=float(position.get("leverage") or 0),
            unrealized_pnl=float(position.get("unrealisedPnl") or 0),
            realized_pnl=float(position.get("cumRealisedPnl") or 0),
            liquidation_price=liquidation or None,
            margin_mode="isolated" if str(position.get("tradeMode")) == "1" else "cross"
        )

    # ============================================
    # Signing & Envelope
    # ============================================

    def _sign(self, method: str, path: str, query: str) -> Tuple[str, Dict[str, str]]:
        """Sign timestamp + api_key + recv_window + query with HMAC-SHA256."""
        api_key = self._credential("api_key")
        timestamp = str(current_utc_timestamp(milliseconds=True))

        signature = hmac.new(
            self._credential("api_secret").encode("utf-8"),
            f"{timestamp}{api_key}{RECV_WINDOW}{query}".encode("utf-8"),
            hashlib.sha256
        ).hexdigest()

        return query, {
            "X-BAPI-API-KEY": api_key,
            "X-BAPI-TIMESTAMP": timestamp,
            "X-BAPI-RECV-WINDOW": RECV_WINDOW,
            "X-BAPI-SIGN": signature,
            "X-BAPI-SIGN-TYPE": "2",
        }

    def _check_payload(self, payload: Any, path: str, symbol: Optional[str]) -> Any:
        if not isinstance(payload, dict):
            raise ExchangeAPIError(f"Unexpected Bybit payload on {path}", self.name, payload=payload)

        code = payload.get("retCode")
        if code == 0:
            return payload.get("result") or {}

        message = payload.get("retMsg", "Unknown error")
        if code in AUTH_ERRORS:
            raise UpstreamAuthError(f"Bybit API error {code}: {message}", self.name)
        if code in RATE_LIMIT_ERRORS:
            raise UpstreamUnavailable(f"Bybit API error {code}: {message}", self.name)
        if symbol and code == PARAMS_ERROR and "symbol" in str(message).lower():
            raise SymbolNotFound(symbol, self.name)

        self.logger.error(f"Bybit API error on {path}: {code} {message}")
        raise ExchangeAPIError(f"Bybit API error {code}: {message}", self.name, payload=payload)
