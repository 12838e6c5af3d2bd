"""
Upbit REST API Adapter

Upbit is the largest KRW exchange and the domestic side of the premium.
Markets are named "KRW-{SYMBOL}" and all prices are in KRW.

API Documentation:
    https://global-docs.upbit.com/reference

Endpoints Used:
    Public:
        - GET /v1/candles/minutes/{unit}  (unit = 1, 5, 15, 30, 60, 240)
        - GET /v1/candles/days | weeks | months
        - GET /v1/ticker?markets=KRW-BTC
    Private (JWT bearer token):
        - GET /v1/accounts

Candles:
    Upbit returns at most 200 candles, newest first. The `to` parameter is an
    exclusive upper bound given as an ISO-8601 UTC string. Each candle carries
    both candle_date_time_utc and candle_date_time_kst; we key candles on the
    UTC field so they align with foreign exchanges.

Authentication:
    JWT signed with the secret key (HS512) carrying access_key and a random
    nonce. Requests with a query string also carry query_hash, the SHA-512 of
    the unescaped query string.

Usage:
    async with UpbitAdapter() as upbit:
        candles = await upbit.get_ticker_candles("BTC", "1m")
        usdt = await upbit.get_ticker_candles("USDT", "1m")
"""

import hashlib
import uuid
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import unquote

import jwt

from core.config import settings
from core.exceptions import ExchangeAPIError
from core.exchange_interface import ExchangeAdapter
from core.schemas import Candle, TickerSnapshot
from core.utils.time import current_utc_timestamp, format_utc_iso, parse_utc_iso


CANDLE_LIMIT = 200


class UpbitAdapter(ExchangeAdapter):
    """
    Adapter for the Upbit KRW spot market.

    Example:
        >>> async with UpbitAdapter() as upbit:
        ...     ticker = await upbit.get_ticker("BTC")
        ...     print(f"BTC: {ticker.price:,.0f} KRW")
    """

    name = "upbit"
    display_name = "Upbit"
    market = "domestic"
    BASE_URL = settings.upbit_base_url

    QUOTE = "KRW"
    JWT_ALGORITHM = "HS512"

    INTERVALS = {
        "1m": "/v1/candles/minutes/1",
        "5m": "/v1/candles/minutes/5",
        "15m": "/v1/candles/minutes/15",
        "30m": "/v1/candles/minutes/30",
        "1h": "/v1/candles/minutes/60",
        "4h": "/v1/candles/minutes/240",
        "1d": "/v1/candles/days",
        "1w": "/v1/candles/weeks",
        "1M": "/v1/candles/months",
    }

    capabilities = {
        "ticker": True,
        "candles": True,
        "balance": True,
        "positions": False
    }

    def market_code(self, symbol: str) -> str:
        """Market code for a symbol, e.g. "BTC" -> "KRW-BTC"."""
        return f"{self.QUOTE}-{self.normalize_symbol(symbol)}"

    # ============================================
    # Market Data
    # ============================================

    async def get_ticker(self, symbol: str) -> TickerSnapshot:
        """
        Fetch the last KRW trade price.

        Upbit Endpoint:
            GET /v1/ticker?markets=KRW-BTC

        Response Format:
            [{"market": "KRW-BTC", "trade_price": 95000000.0, "timestamp": 1704110400123, ...}]
        """
        code = self.market_code(symbol)
        data = await self._request("GET", "/v1/ticker", {"markets": code}, symbol=symbol)

        if not isinstance(data, list) or not data:
            raise ExchangeAPIError(f"{self.display_name} returned no ticker for {code}", self.name, payload=data)

        item = data[0]
        return TickerSnapshot(
            exchange=self.name,
            symbol=self.normalize_symbol(symbol),
            price=float(item["trade_price"]),
            timestamp=int(item.get("timestamp") or current_utc_timestamp(milliseconds=True))
        )

    async def get_ticker_candles(
        self,
        symbol: str,
        interval: str,
        to_timestamp: int = 0,
        count: Optional[int] = None
    ) -> List[Candle]:
        """
        Fetch KRW candles opening at or before `to_timestamp`.

        Upbit Endpoint:
            GET /v1/candles/minutes/{unit}?market=KRW-BTC&count=200&to=2024-01-01T12:00:01Z

        `to` is exclusive, so one second is added to keep a candle opening
        exactly at `to_timestamp`.

        Response Format (newest first):
            [
              {
                "market": "KRW-BTC",
                "candle_date_time_utc": "2024-01-01T12:00:00",
                "candle_date_time_kst": "2024-01-01T21:00:00",
                "opening_price": 95000000.0,
                "high_price": 95100000.0,
                "low_price": 94900000.0,
                "trade_price": 95050000.0,
                "candle_acc_trade_volume": 3.21,
                ...
              }
            ]

        Returns:
            Candles sorted ascending, timestamps in epoch seconds (UTC)
        """
        path = self.map_interval(interval)
        code = self.market_code(symbol)

        params: Dict[str, Any] = {
            "market": code,
            "count": min(count or settings.candle_count, CANDLE_LIMIT)
        }
        if to_timestamp:
            params["to"] = format_utc_iso(to_timestamp + 1)

        self.logger.info(f"Fetching candles: {code} {interval} (to={to_timestamp or 'now'})")
        data = await self._request("GET", path, params, symbol=symbol)

        candles = [self._parse_candle(item) for item in data or []]
        candles.sort(key=lambda c: c.timestamp)

        self.logger.info(f"Fetched {len(candles)} candles for {code}")
        return candles

    @staticmethod
    def _parse_candle(item: Dict[str, Any]) -> Candle:
        return Candle(
            timestamp=parse_utc_iso(item["candle_date_time_utc"]),
            open=float(item["opening_price"]),
            high=float(item["high_price"]),
            low=float(item["low_price"]),
            close=float(item["trade_price"]),
            volume=float(item["candle_acc_trade_volume"])
        )

    # ============================================
    # Account
    # ============================================

    async def _fetch_balance(self) -> float:
        """
        Available KRW cash.

        Upbit Endpoint:
            GET /v1/accounts  (signed)

        Response Format:
            [{"currency": "KRW", "balance": "1000000.0", "locked": "0.0", ...}, ...]
        """
        data = await self._request("GET", "/v1/accounts", signed=True)

        for account in self._accounts(data):
            if account.get("currency") == self.QUOTE:
                return float(account.get("balance", 0))
        return 0.0

    def _accounts(self, payload: Any) -> List[Dict[str, Any]]:
        if isinstance(payload, list):
            return payload
        raise ExchangeAPIError(f"Unexpected {self.display_name} accounts payload", self.name, payload=payload)

    # ============================================
    # Signing
    # ============================================

    def _jwt_claims(self) -> Dict[str, Any]:
        return {
            "access_key": self._credential("api_key"),
            "nonce": str(uuid.uuid4()),
        }

    def _sign(self, method: str, path: str, query: str) -> Tuple[str, Dict[str, str]]:
        """
        Build the JWT bearer header.

        The query hash is computed over the unescaped query string, matching
        how the exchange reconstructs it server-side.
        """
        claims = self._jwt_claims()
        if query:
            claims["query_hash"] = hashlib.sha512(unquote(query).encode("utf-8")).hexdigest()
            claims["query_hash_alg"] = "SHA512"

        token = jwt.encode(claims, self._credential("api_secret"), algorithm=self.JWT_ALGORITHM)
        return query, {"Authorization": f"Bearer {token}"}

    def _is_unknown_symbol(self, status: int, payload: Any) -> bool:
        """
        Upbit answers unknown markets with 404 "Code not found"
        (older deployments used 400 with the same message).
        """
        if status == 404:
            return True
        if isinstance(payload, dict):
            error = payload.get("error") or {}
            message = str(error.get("message", "")) if isinstance(error, dict) else str(error)
            return "not found" in message.lower()
        return False
