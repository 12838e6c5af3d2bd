"""
Binance REST API Adapter

Binance is one of the foreign (USDT) legs of the premium. Candles, balances
and positions come from USD-M Futures; the ticker comes from Spot.

API Documentation:
    https://binance-docs.github.io/apidocs/futures/en/

Endpoints Used:
    Public:
        - GET /fapi/v1/klines            (futures base URL)
        - GET /api/v3/ticker/price       (spot base URL)
    Private (HMAC-SHA256 query signature, X-MBX-APIKEY header):
        - GET /fapi/v2/balance
        - GET /fapi/v2/positionRisk

Errors:
    An unknown symbol is reported as HTTP 400 with {"code": -1121, "msg": "Invalid symbol."}

Usage:
    async with BinanceAdapter() as binance:
        candles = await binance.get_ticker_candles("BTC", "1h")
"""

import hashlib
import hmac
from typing import Any, Dict, List, Optional, Tuple

from core.config import settings
from core.exceptions import ExchangeAPIError
from core.exchange_interface import ExchangeAdapter
from core.schemas import Candle, PositionInfo, TickerSnapshot
from core.utils.time import current_utc_timestamp, to_epoch_seconds


CANDLE_LIMIT = 1500
INVALID_SYMBOL_CODE = -1121
RECV_WINDOW = 5000


class BinanceAdapter(ExchangeAdapter):
    """
    Adapter for Binance USD-M Futures (with Spot ticker prices).

    Example:
        >>> async with BinanceAdapter() as binance:
        ...     ticker = await binance.get_ticker("BTC")
        ...     print(f"BTC: ${ticker.price:,.2f}")
    """

    name = "binance"
    display_name = "Binance"
    market = "foreign"
    BASE_URL = settings.binance_base_url
    SPOT_BASE_URL = settings.binance_spot_base_url

    # Binance uses our interval vocabulary verbatim
    INTERVALS = {i: i for i in ("1m", "5m", "15m", "30m", "1h", "4h", "1d", "1w", "1M")}

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
        Fetch the last spot price.

        Binance Endpoint:
            GET /api/v3/ticker/price?symbol=BTCUSDT

        Response Format:
            {"symbol": "BTCUSDT", "price": "67000.10"}
        """
        data = await self._request(
            "GET",
            "/api/v3/ticker/price",
            {"symbol": self.pair(symbol)},
            base_url=self.SPOT_BASE_URL,
            symbol=symbol
        )
        return TickerSnapshot(
            exchange=self.name,
            symbol=self.normalize_symbol(symbol),
            price=float(data["price"]),
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
        Fetch USD-M perpetual candles.

        Binance Endpoint:
            GET /fapi/v1/klines?symbol=BTCUSDT&interval=1h&limit=200&endTime=1704110400000

        Response Format (oldest first):
            [
              [
                1499040000000,      // Open time (ms)
                "0.01634000",       // Open
                "0.80000000",       // High
                "0.01575800",       // Low
                "0.01577100",       // Close
                "148976.11427815",  // Volume
                ...
              ]
            ]
        """
        params: Dict[str, Any] = {
            "symbol": self.pair(symbol),
            "interval": self.map_interval(interval),
            "limit": min(count or settings.candle_count, CANDLE_LIMIT)
        }
        if to_timestamp:
            params["endTime"] = to_timestamp * 1000

        self.logger.info(f"Fetching candles: {params['symbol']} {interval} (to={to_timestamp or 'now'})")
        data = await self._request("GET", "/fapi/v1/klines", params, symbol=symbol)

        candles = [
            Candle(
                timestamp=to_epoch_seconds(item[0]),
                open=float(item[1]),
                high=float(item[2]),
                low=float(item[3]),
                close=float(item[4]),
                volume=float(item[5])
            )
            for item in data or []
        ]
        candles.sort(key=lambda c: c.timestamp)

        self.logger.info(f"Fetched {len(candles)} candles for {params['symbol']}")
        return candles

    # ============================================
    # Account
    # ============================================

    async def _fetch_balance(self) -> float:
        """
        USDT futures wallet balance.

        Binance Endpoint:
            GET /fapi/v2/balance  (signed)

        Response Format:
            [{"asset": "USDT", "balance": "1000.0", "availableBalance": "950.0", ...}]
        """
        data = await self._request("GET", "/fapi/v2/balance", signed=True)
        if not isinstance(data, list):
            raise ExchangeAPIError("Unexpected Binance balance payload", self.name, payload=data)

        for asset in data:
            if asset.get("asset") == "USDT":
                return float(asset.get("balance", 0))
        return 0.0

    async def get_position_info(self, symbol: str) -> PositionInfo:
        """
        Open USD-M position for a symbol.

        Binance Endpoint:
            GET /fapi/v2/positionRisk?symbol=BTCUSDT  (signed)

        Response Format:
            [{"symbol": "BTCUSDT", "positionAmt": "-0.010", "entryPrice": "67000.0",
              "markPrice": "66900.0", "leverage": "10", "unRealizedProfit": "1.0",
              "liquidationPrice": "72000.0", "marginType": "cross", ...}]

        A negative positionAmt is a short. Hedge-mode accounts return one entry
        per side; the first non-empty entry is reported.
        """
        pair = self.pair(symbol)
        data = await self._request("GET", "/fapi/v2/positionRisk", {"symbol": pair}, signed=True, symbol=symbol)

        entries = [p for p in data or [] if float(p.get("positionAmt", 0)) != 0]
        if not entries:
            return PositionInfo(exchange=self.name, symbol=self.normalize_symbol(symbol))

        position = entries[0]
        amount = float(position["positionAmt"])
        liquidation = float(position.get("liquidationPrice") or 0)

        return PositionInfo(
            exchange=self.name,
            symbol=self.normalize_symbol(symbol),
            side="long" if amount > 0 else "short",
            size=abs(amount),
            entry_price=float(position.get("entryPrice", 0)),
            mark_price=float(position.get("markPrice", 0)),
            leverage=float(position.get("leverage", 0)),
            unrealized_pnl=float(position.get("unRealizedProfit", 0)),
            realized_pnl=0.0,
            liquidation_price=liquidation or None,
            margin_mode=position.get("marginType")
        )

    # ============================================
    # Signing
    # ============================================

    def _sign(self, method: str, path: str, query: str) -> Tuple[str, Dict[str, str]]:
        """Append timestamp, recvWindow and the HMAC-SHA256 signature to the query."""
        stamp = f"timestamp={current_utc_timestamp(milliseconds=True)}&recvWindow={RECV_WINDOW}"
        signed_query = f"{query}&{stamp}" if query else stamp

        signature = hmac.new(
            self._credential("api_secret").encode("utf-8"),
            signed_query.encode("utf-8"),
            hashlib.sha256
        ).hexdigest()

        return f"{signed_query}&signature={signature}", {"X-MBX-APIKEY": self._credential("api_key")}

    def _is_unknown_symbol(self, status: int, payload: Any) -> bool:
        return isinstance(payload, dict) and payload.get("code") == INVALID_SYMBOL_CODE
