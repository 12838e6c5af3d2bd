"""
OKX REST API Adapter

Foreign (USDT) exchange using the OKX v5 API. Candles and positions come from
USDT-margined perpetual swaps ("BTC-USDT-SWAP"); the ticker comes from spot
("BTC-USDT").

API Documentation:
    https://www.okx.com/docs-v5/en/

Endpoints Used:
    Public:
        - GET /api/v5/market/candles
        - GET /api/v5/market/ticker
    Private (OK-ACCESS-* headers, base64 HMAC-SHA256, passphrase required):
        - GET /api/v5/account/balance
        - GET /api/v5/account/positions

Response Envelope:
    {"code": "0", "msg": "", "data": [...]}; any other code is an error.

Candle alignment:
    OKX daily and longer bars default to Hong Kong time. The "utc" bar variants
    are requested so that every exchange keys candles on the same UTC clock.
"""

import base64
import hashlib
import hmac
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from core.config import settings
from core.exceptions import ExchangeAPIError, SymbolNotFound, UpstreamAuthError, UpstreamUnavailable
from core.exchange_interface import ExchangeAdapter
from core.schemas import Candle, PositionInfo, TickerSnapshot
from core.utils.time import current_utc_timestamp, to_epoch_seconds


CANDLE_LIMIT = 300
INSTRUMENT_NOT_FOUND = {"51001"}
AUTH_ERRORS = {"50100", "50101", "50102", "50103", "50104", "50105", "50110", "50111", "50112", "50113", "50114"}
UNAVAILABLE_ERRORS = {"50001", "50004", "50011", "50013", "50026"}


class OKXAdapter(ExchangeAdapter):
    """
    Adapter for OKX USDT-margined perpetual swaps.

    Credentials must include a passphrase for private endpoints.
    """

    name = "okx"
    display_name = "OKX"
    market = "foreign"
    BASE_URL = settings.okx_base_url

    INTERVALS = {
        "1m": "1m",
        "5m": "5m",
        "15m": "15m",
        "30m": "30m",
        "1h": "1H",
        "4h": "4H",
        "1d": "1Dutc",
        "1w": "1Wutc",
        "1M": "1Mutc",
    }

    capabilities = {
        "ticker": True,
        "candles": True,
        "balance": True,
        "positions": True
    }

    def spot_inst_id(self, symbol: str) -> str:
        return f"{self.normalize_symbol(symbol)}-USDT"

    def swap_inst_id(self, symbol: str) -> str:
        return f"{self.normalize_symbol(symbol)}-USDT-SWAP"

    # ============================================
    # Market Data
    # ============================================

    async def get_ticker(self, symbol: str) -> TickerSnapshot:
        """
        Fetch the last spot trade.

        OKX Endpoint:
            GET /api/v5/market/ticker?instId=BTC-USDT

        Response Format (data):
            [{"instId": "BTC-USDT", "last": "67000.1", "ts": "1704110400123", ...}]
        """
        data = await self._request(
            "GET",
            "/api/v5/market/ticker",
            {"instId": self.spot_inst_id(symbol)},
            symbol=symbol
        )
        if not data:
            raise SymbolNotFound(symbol, self.name)

        item = data[0]
        return TickerSnapshot(
            exchange=self.name,
            symbol=self.normalize_symbol(symbol),
            price=float(item["last"]),
            timestamp=int(item.get("ts") or current_utc_timestamp(milliseconds=True))
        )

    async def get_ticker_candles(
        self,
        symbol: str,
        interval: str,
        to_timestamp: int = 0,
        count: Optional[int] = None
    ) -> List[Candle]:
        """
        Fetch perpetual swap candles.

        OKX Endpoint:
            GET /api/v5/market/candles?instId=BTC-USDT-SWAP&bar=1H&limit=200&after=1704110401000

        `after` returns records strictly older than the given ms timestamp, so
        one second is added to keep a candle opening exactly at `to_timestamp`.

        Response Format (data, newest first):
            [["1704110400000", "o", "h", "l", "c", "vol(contracts)", "volCcy(base)", "volCcyQuote", "confirm"], ...]
        """
        params: Dict[str, Any] = {
            "instId": self.swap_inst_id(symbol),
            "bar": self.map_interval(interval),
            "limit": min(count or settings.candle_count, CANDLE_LIMIT)
        }
        if to_timestamp:
            params["after"] = (to_timestamp + 1) * 1000

        self.logger.info(f"Fetching candles: {params['instId']} {interval} (to={to_timestamp or 'now'})")
        data = await self._request("GET", "/api/v5/market/candles", params, symbol=symbol)

        candles = [
            Candle(
                timestamp=to_epoch_seconds(item[0]),
                open=float(item[1]),
                high=float(item[2]),
                low=float(item[3]),
                close=float(item[4]),
                # volCcy is in base currency; vol is in contracts
                volume=float(item[6] if len(item) > 6 else item[5])
            )
            for item in data or []
        ]
        candles.sort(key=lambda c: c.timestamp)

        self.logger.info(f"Fetched {len(candles)} candles for {params['instId']}")
        return candles

    # ============================================
    # Account
    # ============================================

    async def _fetch_balance(self) -> float:
        """
        Available USDT in the trading account.

        OKX Endpoint:
            GET /api/v5/account/balance?ccy=USDT  (signed)

        Response Format (data):
            [{"details": [{"ccy": "USDT", "availBal": "1000.0", ...}], ...}]
        """
        data = await self._request("GET", "/api/v5/account/balance", {"ccy": "USDT"}, signed=True)
        for account in data or []:
            for detail in account.get("details") or []:
                if detail.get("ccy") == "USDT":
                    return float(detail.get("availBal") or 0)
        return 0.0

    async def get_position_info(self, symbol: str) -> PositionInfo:
        """
        Open swap position for a symbol.

        OKX Endpoint:
            GET /api/v5/account/positions?instType=SWAP&instId=BTC-USDT-SWAP  (signed)

        posSide is "long" / "short" in hedge mode and "net" in one-way mode,
        where the sign of `pos` gives the direction.
        """
        data = await self._request(
            "GET",
            "/api/v5/account/positions",
            {"instType": "SWAP", "instId": self.swap_inst_id(symbol)},
            signed=True,
            symbol=symbol
        )

        entries = [p for p in data or [] if float(p.get("pos") or 0) != 0]
        if not entries:
            return PositionInfo(exchange=self.name, symbol=self.normalize_symbol(symbol), margin_mode="cross")

        position = entries[0]
        size = float(position["pos"])
        pos_side = position.get("posSide")
        if pos_side in ("long", "short"):
            side = pos_side
        else:
            side = "long" if size > 0 else "short"
        liquidation = float(position.get("liqPx") or 0)

        return PositionInfo(
            exchange=self.name,
            symbol=self.normalize_symbol(symbol),
            side=side,
            size=abs(size),
            entry_price=float(position.get("avgPx") or 0),
            mark_price=float(position.get("markPx") or 0),
            leverage=float(position.get("lever") or 0),
            unrealized_pnl=float(position.get("upl") or 0),
            realized_pnl=float(position.get("realizedPnl") or 0),
            liquidation_price=liquidation or None,
            margin_mode=position.get("mgnMode")
        )

    # ============================================
    # Signing & Envelope
    # ============================================

    def _sign(self, method: str, path: str, query: str) -> Tuple[str, Dict[str, str]]:
        """Sign timestamp + METHOD + path?query with base64(HMAC-SHA256)."""
        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"
        request_path = f"{path}?{query}" if query else path

        digest = hmac.new(
            self._credential("api_secret").encode("utf-8"),
            f"{timestamp}{method.upper()}{request_path}".encode("utf-8"),
            hashlib.sha256
        ).digest()

        return query, {
            "OK-ACCESS-KEY": self._credential("api_key"),
            "OK-ACCESS-SIGN": base64.b64encode(digest).decode("ascii"),
            "OK-ACCESS-TIMESTAMP": timestamp,
            "OK-ACCESS-PASSPHRASE": self._credential("passphrase"),
        }

    def _is_unknown_symbol(self, status: int, payload: Any) -> bool:
        return isinstance(payload, dict) and str(payload.get("code")) in INSTRUMENT_NOT_FOUND

    def _check_payload(self, payload: Any, path: str, symbol: Optional[str]) -> Any:
        if not isinstance(payload, dict):
            raise ExchangeAPIError(f"Unexpected OKX payload on {path}", self.name, payload=payload)

        code = str(payload.get("code"))
        if code == "0":
            return payload.get("data") or []

        message = payload.get("msg", "Unknown error")
        if code in AUTH_ERRORS:
            raise UpstreamAuthError(f"OKX API error {code}: {message}", self.name)
        if code in UNAVAILABLE_ERRORS:
            raise UpstreamUnavailable(f"OKX API error {code}: {message}", self.name)
        if symbol and code in INSTRUMENT_NOT_FOUND:
            raise SymbolNotFound(symbol, self.name)

        self.logger.error(f"OKX API error on {path}: {code} {message}")
        raise ExchangeAPIError(f"OKX API error {code}: {message}", self.name, payload=payload)
