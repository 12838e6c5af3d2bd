"""
Normalized Data Schemas

This module defines Pydantic models for all market data types.
These schemas provide a unified, exchange-agnostic data format.

Key Principle:
    Regardless of which exchange the data comes from (Upbit, Bithumb, Binance,
    Bybit, OKX), it gets normalized into these standardized schemas. Candle
    timestamps are always epoch SECONDS of the candle open in UTC, so series
    from different exchanges line up on the same keys.

Models:
    Exchange data:
        - Candle: OHLCV bar for one interval
        - TickerSnapshot: Last traded price
        - ExchangeCredentials: API key material passed through to an adapter
        - Balance: Available balance or a human-readable error
        - PositionInfo: Open derivatives position (foreign exchanges only)

    Premium data:
        - PremiumCandle: Domestic / foreign price ratio per timestamp
        - ExchangeRate / PremiumTick: Live premium payloads from the broker
        - AggregatedCandles: Aggregator output (premium + group series + reference)

    Wire formats:
        - CandlePoint / ValuePoint / KlineResponse: /api/kline payload
        - PairPrice: /api/proxy/position/price payload
        - ConnectionTestRequest / ConnectionTestResult: credential check
"""

from typing import Dict, List, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator, model_validator


# ============================================
# Candle Schema
# ============================================

class Candle(BaseModel):
    """
    One OHLCV bar.

    Attributes:
        timestamp: Candle open time in epoch seconds (UTC)
        open: Opening price
        high: Highest price during the interval
        low: Lowest price during the interval
        close: Closing price
        volume: Traded volume in base asset

    Invariants:
        low <= open <= high, low <= close <= high, volume >= 0

    Example:
        >>> Candle(timestamp=1704110400, open=100.0, high=110.0, low=95.0, close=105.0, volume=3.2)
    """

    timestamp: int = Field(..., ge=0, description="Candle open time, epoch seconds (UTC)")
    open: float = Field(..., ge=0, description="Opening price")
    high: float = Field(..., ge=0, description="Highest price during the interval")
    low: float = Field(..., ge=0, description="Lowest price during the interval")
    close: float = Field(..., ge=0, description="Closing price")
    volume: float = Field(..., ge=0, description="Traded volume in base asset")

    model_config = ConfigDict(frozen=True)

    @model_validator(mode="after")
    def check_price_bounds(self) -> "Candle":
        """Ensure open and close sit inside the [low, high] range"""
        if self.low > self.high:
            raise ValueError(f"low ({self.low}) must not exceed high ({self.high})")
        if not (self.low <= self.open <= self.high):
            raise ValueError(f"open ({self.open}) outside [{self.low}, {self.high}]")
        if not (self.low <= self.close <= self.high):
            raise ValueError(f"close ({self.close}) outside [{self.low}, {self.high}]")
        return self


class TickerSnapshot(BaseModel):
    """Last traded price of a symbol on one exchange."""

    exchange: str = Field(..., description="Canonical exchange id")
    symbol: str = Field(..., description="Base asset symbol (e.g., BTC)")
    price: float = Field(..., ge=0, description="Last traded price in the market's quote currency")
    timestamp: int = Field(..., description="Snapshot time, epoch milliseconds")

    @field_validator("symbol")
    @classmethod
    def validate_symbol(cls, v: str) -> str:
        """Ensure symbol is uppercase"""
        return v.upper()


# ============================================
# Account Schemas
# ============================================

class ExchangeCredentials(BaseModel):
    """
    API key material for one exchange account.

    Secrets are SecretStr so they never appear in repr() or log output.
    Adapters read them with get_secret_value() only when signing a request.
    """

    api_key: SecretStr
    api_secret: SecretStr
    passphrase: Optional[SecretStr] = None


class Balance(BaseModel):
    """
    Available balance, or the reason it could not be read.

    get_balance() never raises for upstream failures; it returns
    Balance(balance=0, error="...") instead so the caller can show the message.
    """

    balance: float = 0.0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class PositionInfo(BaseModel):
    """Open perpetual-futures position, normalized across foreign exchanges."""

    exchange: str
    symbol: str
    side: Literal["long", "short", "none"] = "none"
    size: float = 0.0
    entry_price: float = 0.0
    mark_price: float = 0.0
    leverage: float = 0.0
    unrealized_pnl: float = 0.0
    realized_pnl: float = 0.0
    liquidation_price: Optional[float] = None
    margin_mode: Optional[str] = None

    @property
    def has_position(self) -> bool:
        return self.side != "none" and self.size > 0


# ============================================
# Premium Schemas
# ============================================

class PremiumCandle(BaseModel):
    """
    Synthetic premium bar: domestic price divided by foreign price.

    No OHLC ordering invariant applies; the ratio of two highs is not
    necessarily the highest ratio. volume is domestic + foreign volume.
    """

    timestamp: int
    open: float
    high: float
    low: float
    close: float
    volume: float

    model_config = ConfigDict(frozen=True)


class ExchangeRate(BaseModel):
    """One exchange's premium rate inside a live tick."""

    exchange: Optional[str] = None
    rate: Optional[float] = None

    @field_validator("exchange", mode="before")
    @classmethod
    def coerce_exchange(cls, v):
        """Workers may send numeric identifiers"""
        return None if v is None else str(v)


class PremiumTick(BaseModel):
    """
    Live premium entry for one symbol, as relayed to stream clients.

    Serialized with camelCase keys (by_alias=True).
    """

    symbol: Optional[str] = None
    premium: Optional[float] = None
    domestic_exchange: Optional[str] = Field(default=None, alias="domesticExchange")
    foreign_exchange: Optional[str] = Field(default=None, alias="foreignExchange")
    per_exchange_rates: List[ExchangeRate] = Field(default_factory=list, alias="perExchangeRates")

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("symbol", "domestic_exchange", "foreign_exchange", mode="before")
    @classmethod
    def coerce_identifiers(cls, v):
        """Workers may send numeric identifiers"""
        return None if v is None else str(v)


class AggregatedCandles(BaseModel):
    """
    Output of the candle aggregator.

    Attributes:
        premium: Premium series over timestamps present on both sides, ascending
        domestic: Merged domestic group series, ascending
        foreign: Merged foreign group series, ascending
        reference: Reference asset candles (e.g., KRW-USDT), empty if unavailable
        failures: Exchange id -> error message for fetches that did not succeed
    """

    premium: List[PremiumCandle] = Field(default_factory=list)
    domestic: List[Candle] = Field(default_factory=list)
    foreign: List[Candle] = Field(default_factory=list)
    reference: List[Candle] = Field(default_factory=list)
    failures: Dict[str, str] = Field(default_factory=dict)


# ============================================
# Wire Schemas
# ============================================

class CandlePoint(BaseModel):
    """Chart candle point: {time, open, high, low, close}."""

    time: int
    open: float
    high: float
    low: float
    close: float


class ValuePoint(BaseModel):
    """Chart value point: {time, value}."""

    time: int
    value: float


class KlineResponse(BaseModel):
    """
    /api/kline response body.

    candleData and volumeData are always present. The optional series are
    omitted from the JSON (not null) when their source produced nothing.
    """

    candle_data: List[CandlePoint] = Field(default_factory=list, alias="candleData")
    volume_data: List[ValuePoint] = Field(default_factory=list, alias="volumeData")
    ex1_volume_data: Optional[List[ValuePoint]] = Field(default=None, alias="ex1VolumeData")
    ex2_volume_data: Optional[List[ValuePoint]] = Field(default=None, alias="ex2VolumeData")
    usdt_candle_data: Optional[List[ValuePoint]] = Field(default=None, alias="usdtCandleData")

    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={
            "example": {
                "candleData": [
                    {"time": 1704110400, "open": 1.031, "high": 1.034, "low": 1.029, "close": 1.032}
                ],
                "volumeData": [{"time": 1704110400, "value": 12.5}],
                "ex1VolumeData": [{"time": 1704110400, "value": 4.1}],
                "ex2VolumeData": [{"time": 1704110400, "value": 8.4}],
                "usdtCandleData": [{"time": 1704110400, "value": 1342.0}]
            }
        }
    )


class PairPrice(BaseModel):
    """Domestic and foreign ticker prices for the same coin."""

    coin_symbol: str = Field(..., alias="coinSymbol")
    kr_price: float = Field(..., alias="krPrice")
    fr_price: float = Field(..., alias="frPrice")
    kr_timestamp: int = Field(..., alias="krTimestamp")
    fr_timestamp: int = Field(..., alias="frTimestamp")

    model_config = ConfigDict(populate_by_name=True)


class ConnectionTestRequest(BaseModel):
    """Credentials posted by a user to verify an exchange API key."""

    exchange_name: str = Field(..., alias="exchangeName", min_length=1)
    api_key: SecretStr = Field(..., alias="apiKey")
    api_secret: SecretStr = Field(..., alias="apiSecret")
    passphrase: Optional[SecretStr] = None

    model_config = ConfigDict(populate_by_name=True)

    def to_credentials(self) -> ExchangeCredentials:
        return ExchangeCredentials(
            api_key=self.api_key,
            api_secret=self.api_secret,
            passphrase=self.passphrase,
        )


class ConnectionTestResult(BaseModel):
    """Outcome of a credential check."""

    success: bool
    exchange_name: str = Field(..., alias="exchangeName")
    message: str
    data: Optional[Balance] = None

    model_config = ConfigDict(populate_by_name=True)
