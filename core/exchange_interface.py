"""
Exchange Adapter — Abstract Contract for All Exchanges

This module defines the abstract base class that every exchange adapter implements.
By enforcing a consistent interface, the candle aggregator, the pair-price proxy
and the account endpoints work with ExchangeAdapter rather than with a concrete
exchange, so adding an exchange never touches them.

Contract:
    get_ticker(symbol)                          -> TickerSnapshot
    get_ticker_candles(symbol, interval, to)    -> List[Candle]   (ascending)
    get_balance()                               -> Balance        (never raises)
    get_position_info(symbol)                   -> PositionInfo   (foreign only)

Market groups:
    Each adapter declares `market = "domestic"` (KRW-quoted: Upbit, Bithumb) or
    `market = "foreign"` (USDT-quoted: Binance, Bybit, OKX). The aggregator
    partitions exchanges by this attribute.

HTTP:
    Adapters own one aiohttp ClientSession for their lifetime and are used as
    async context managers. Every request is bounded by
    aiohttp.ClientTimeout(total=settings.request_timeout). There is no retry and
    no caching: a failed call is reported to the caller immediately.

Error mapping (see core/exceptions.py):
    timeout / connection error / 5xx / 429  -> UpstreamUnavailable
    401 / 403                               -> UpstreamAuthError
    exchange "unknown market" response      -> SymbolNotFound
    any other 4xx                           -> ExchangeAPIError

Example:
    async with create_adapter("upbit") as upbit:
        candles = await upbit.get_ticker_candles("BTC", "1m")
"""

import asyncio
import json
import re
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlencode

import aiohttp

from core.config import settings
from core.exceptions import (
    ExchangeAPIError,
    ExchangeError,
    InvalidInterval,
    InvalidSymbol,
    SymbolNotFound,
    UnsupportedOperation,
    UpstreamAuthError,
    UpstreamUnavailable,
)
from core.logging import get_logger, log_api_request, log_api_response
from core.schemas import Balance, Candle, ExchangeCredentials, PositionInfo, TickerSnapshot


SYMBOL_PATTERN = re.compile(r"^[A-Z0-9]{1,20}$")


class ExchangeAdapter(ABC):
    """
    Abstract Base Class for Exchange Adapters

    Class Attributes:
        name: Canonical exchange id (lowercase, e.g., "upbit", "bybit")
        display_name: Human-readable name used in user-facing messages
        market: "domestic" or "foreign"
        BASE_URL: Default REST base URL (overridable per instance)
        INTERVALS: Mapping from our interval vocabulary to the exchange's own
        capabilities: Dictionary indicating which operations this exchange supports

    Subclasses implement:
        - get_ticker
        - get_ticker_candles
        - _fetch_balance (get_balance wraps it and converts errors into Balance.error)
        - _sign (only if the exchange has private endpoints)
    """

    # ============================================
    # Class Attributes (set by subclasses)
    # ============================================

    name: str
    display_name: str
    market: str
    BASE_URL: str = ""

    INTERVALS: Dict[str, str] = {}

    capabilities: Dict[str, bool] = {
        "ticker": False,
        "candles": False,
        "balance": False,
        "positions": False
    }

    def __init__(
        self,
        credentials: Optional[ExchangeCredentials] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None
    ):
        """
        Args:
            credentials: API key material for private endpoints (optional)
            base_url: Override for BASE_URL (used by tests and proxies)
            timeout: Per-request timeout in seconds (defaults to settings.request_timeout)
        """
        self.credentials = credentials
        self.base_url = (base_url or self.BASE_URL).rstrip("/")
        self.timeout = timeout or settings.request_timeout
        self.logger = get_logger(f"exchanges.{self.name}")
        self.session: Optional[aiohttp.ClientSession] = None

    # ============================================
    # Context Manager for Session Management
    # ============================================

    async def __aenter__(self):
        """Create the HTTP session."""
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession()
            self.logger.debug(f"{self.display_name} session created")
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Close the HTTP session."""
        await self.close()

    async def close(self) -> None:
        if self.session and not self.session.closed:
            await self.session.close()
            self.logger.debug(f"{self.display_name} session closed")
        self.session = None

    # ============================================
    # Public Operations
    # ============================================

    @abstractmethod
    async def get_ticker(self, symbol: str) -> TickerSnapshot:
        """
        Fetch the last traded price of a symbol.

        Args:
            symbol: Base asset (e.g., "BTC"); the adapter appends its quote currency

        Returns:
            TickerSnapshot with the price in the market's quote currency (KRW or USDT)

        Raises:
            UpstreamUnavailable: Network failure, timeout, 5xx or rate limit
            SymbolNotFound: The exchange has no market for the symbol
        """
        ...

    @abstractmethod
    async def get_ticker_candles(
        self,
        symbol: str,
        interval: str,
        to_timestamp: int = 0,
        count: Optional[int] = None
    ) -> List[Candle]:
        """
        Fetch historical candles ending at or before `to_timestamp`.

        Args:
            symbol: Base asset (e.g., "BTC")
            interval: One of 1m, 5m, 15m, 30m, 1h, 4h, 1d, 1w, 1M
            to_timestamp: Upper bound in epoch seconds (0 = now)
            count: Number of candles (defaults to settings.candle_count)

        Returns:
            List[Candle] sorted ascending by timestamp (epoch seconds, UTC)

        Raises:
            InvalidInterval: Interval cannot be expressed on this exchange
            UpstreamUnavailable: Network failure, timeout, 5xx or rate limit
            SymbolNotFound: The exchange has no market for the symbol
        """
        ...

    async def get_balance(self) -> Balance:
        """
        Read the available account balance.

        Never raises for upstream failures. Authentication problems produce an
        actionable message pointing at the API key and IP whitelist; anything
        else produces a generic lookup error.

        Returns:
            Balance(balance=<amount>) on success, Balance(error=<message>) otherwise
        """
        if not self.supports("balance"):
            return Balance(error=f"{self.display_name} does not support balance lookup")

        if self.credentials is None:
            return Balance(error=f"{self.display_name} API credentials are not configured")

        try:
            amount = await self._fetch_balance()
        except UpstreamAuthError as e:
            self.logger.warning(f"{self.display_name} rejected credentials: {e}")
            return Balance(error=(
                f"{self.display_name} rejected the API key. Check that the key and secret are "
                f"correct and that this server's IP is registered in the API key settings."
            ))
        except (ExchangeError, KeyError, TypeError, ValueError) as e:
            self.logger.error(f"{self.display_name} balance lookup failed: {e}")
            return Balance(error=f"{self.display_name} balance lookup error: {e}")

        return Balance(balance=amount)

    async def get_position_info(self, symbol: str) -> PositionInfo:
        """
        Read the open perpetual position for a symbol.

        Raises:
            UnsupportedOperation: Domestic (spot) exchanges have no positions
        """
        raise UnsupportedOperation(
            f"{self.display_name} does not support position lookup", self.name
        )

    async def health_check(self) -> bool:
        """
        Check that the exchange answers a lightweight public request.

        Returns:
            bool: True if a BTC ticker could be fetched, False otherwise
        """
        try:
            await self.get_ticker("BTC")
            return True
        except ExchangeError as e:
            self.logger.warning(f"{self.display_name} health check failed: {e}")
            return False

    # ============================================
    # Hooks for Subclasses
    # ============================================

    async def _fetch_balance(self) -> float:
        """Return the available balance; errors propagate to get_balance()."""
        raise UnsupportedOperation(f"{self.display_name} does not support balance lookup", self.name)

    def _sign(self, method: str, path: str, query: str) -> Tuple[str, Dict[str, str]]:
        """
        Authenticate a private request.

        Args:
            method: HTTP method
            path: Request path
            query: URL-encoded query string (may be empty)

        Returns:
            (query, headers) to send; the query may gain signature parameters
        """
        raise UnsupportedOperation(f"{self.display_name} has no private endpoints", self.name)

    def _check_payload(self, payload: Any, path: str, symbol: Optional[str]) -> Any:
        """
        Inspect a 2xx payload for exchange-level errors.

        Exchanges that report errors inside a 200 envelope (Bybit retCode,
        OKX code) override this. Returns the (possibly unwrapped) payload.
        """
        return payload

    def _is_unknown_symbol(self, status: int, payload: Any) -> bool:
        """True if a 4xx response means the market does not exist."""
        return False

    # ============================================
    # Helpers
    # ============================================

    @staticmethod
    def normalize_symbol(symbol: str) -> str:
        """
        Uppercase and validate a base asset symbol.

        Raises:
            InvalidSymbol: Empty or containing characters other than A-Z / 0-9
        """
        normalized = (symbol or "").strip().upper()
        if not SYMBOL_PATTERN.match(normalized):
            raise InvalidSymbol(symbol)
        return normalized

    def map_interval(self, interval: str) -> str:
        """
        Translate our interval vocabulary to the exchange's.

        Raises:
            InvalidInterval: If the exchange has no equivalent
        """
        try:
            return self.INTERVALS[interval]
        except KeyError:
            raise InvalidInterval(interval, self.name)

    def _credential(self, field: str) -> str:
        """Plain-text secret for signing. Never log the return value."""
        if self.credentials is None:
            raise UpstreamAuthError(f"{self.display_name} API credentials are not configured", self.name)
        secret = getattr(self.credentials, field)
        if secret is None:
            raise UpstreamAuthError(f"{self.display_name} requires '{field}'", self.name)
        return secret.get_secret_value()

    # ============================================
    # HTTP Request Handler
    # ============================================

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        signed: bool = False,
        base_url: Optional[str] = None,
        symbol: Optional[str] = None
    ) -> Any:
        """
        Send one request and decode the JSON body.

        The query string is built here (not by aiohttp) so that signatures are
        computed over exactly the bytes that are sent.

        Args:
            method: HTTP method ("GET")
            path: Endpoint path (e.g., "/v1/ticker")
            params: Query parameters; insertion order is preserved
            signed: Authenticate the request with the adapter's credentials
            base_url: Override for self.base_url (e.g., Binance spot vs futures)
            symbol: Symbol being queried, used to report SymbolNotFound

        Returns:
            Decoded JSON payload

        Raises:
            RuntimeError: If called outside "async with"
            UpstreamUnavailable / UpstreamAuthError / SymbolNotFound / ExchangeAPIError
        """
        if not self.session:
            raise RuntimeError("Client session not initialized. Use 'async with' statement.")

        query = urlencode(params or {})
        headers = {"Accept": "application/json"}

        if signed:
            query, auth_headers = self._sign(method, path, query)
            headers.update(auth_headers)

        url = f"{base_url or self.base_url}{path}"
        if query:
            url = f"{url}?{query}"

        log_api_request(self.name, path, params)
        started = time.monotonic()

        try:
            async with self.session.request(
                method,
                url,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            ) as resp:
                status = resp.status
                text = await resp.text()
        except asyncio.TimeoutError as e:
            self.logger.warning(f"Timeout on {self.name} {path} after {self.timeout}s")
            raise UpstreamUnavailable(f"{self.display_name} request timed out", self.name) from e
        except aiohttp.ClientError as e:
            self.logger.warning(f"Request failed on {self.name} {path}: {e}")
            raise UpstreamUnavailable(f"{self.display_name} request failed: {e}", self.name) from e

        log_api_response(self.name, path, status, time.monotonic() - started)
        payload = self._decode(text)

        if status == 429 or status >= 500:
            raise UpstreamUnavailable(
                f"{self.display_name} returned HTTP {status}", self.name, status_code=status
            )
        if status in (401, 403):
            raise UpstreamAuthError(
                f"{self.display_name} returned HTTP {status}: {_short(text)}", self.name, status_code=status
            )
        if status >= 400:
            if symbol and self._is_unknown_symbol(status, payload):
                raise SymbolNotFound(symbol, self.name)
            self.logger.error(f"HTTP {status} on {self.name} {path}: {_short(text)}")
            raise ExchangeAPIError(
                f"{self.display_name} returned HTTP {status}", self.name, status_code=status, payload=payload
            )

        return self._check_payload(payload, path, symbol)

    def _decode(self, text: str) -> Any:
        if not text:
            return None
        try:
            return json.loads(text)
        except ValueError:
            return text

    def supports(self, feature: str) -> bool:
        """
        Check if this exchange supports a specific operation.

        Args:
            feature: "ticker", "candles", "balance" or "positions"
        """
        return self.capabilities.get(feature, False)

    def __repr__(self) -> str:
        """String representation without credentials."""
        return f"<{self.__class__.__name__}(name='{self.name}', market='{self.market}')>"


def _short(text: str, limit: int = 200) -> str:
    return text if len(text) <= limit else text[:limit] + "..."
