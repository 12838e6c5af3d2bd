"""
Exception Hierarchy

Two families of errors cross the adapter boundary:

    ExchangeError          - something went wrong talking to an exchange
    ├── UpstreamUnavailable   network failure, timeout, HTTP 5xx / 429
    ├── UpstreamAuthError     credentials rejected (HTTP 401 / 403)
    ├── SymbolNotFound        the exchange lists no market for the symbol
    ├── ExchangeAPIError      any other non-success response
    └── UnsupportedOperation  the adapter does not offer the operation

    ConfigurationError     - the request itself is malformed
    ├── UnsupportedExchange   unknown exchange identifier
    ├── InvalidInterval       interval outside the supported vocabulary
    └── InvalidSymbol         malformed symbol

Transient upstream errors are absorbed by the candle aggregator (the exchange
simply contributes nothing); configuration errors surface as HTTP 400.
"""

from typing import Any, Optional


class ExchangeError(Exception):
    """Base class for failures while talking to an exchange."""

    def __init__(self, message: str, exchange: Optional[str] = None) -> None:
        super().__init__(message)
        self.exchange = exchange


class UpstreamUnavailable(ExchangeError):
    """Network failure, timeout, rate limit or 5xx from the exchange."""

    def __init__(
        self,
        message: str,
        exchange: Optional[str] = None,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message, exchange)
        self.status_code = status_code


class UpstreamAuthError(ExchangeError):
    """The exchange rejected the supplied credentials."""

    def __init__(
        self,
        message: str,
        exchange: Optional[str] = None,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message, exchange)
        self.status_code = status_code


class SymbolNotFound(ExchangeError):
    """The exchange has no market for the requested symbol."""

    def __init__(self, symbol: str, exchange: Optional[str] = None) -> None:
        super().__init__(f"{exchange or 'exchange'} has no market for '{symbol}'", exchange)
        self.symbol = symbol


class ExchangeAPIError(ExchangeError):
    """Non-success response that fits no more specific category."""

    def __init__(
        self,
        message: str,
        exchange: Optional[str] = None,
        status_code: Optional[int] = None,
        payload: Any = None,
    ) -> None:
        super().__init__(message, exchange)
        self.status_code = status_code
        self.payload = payload


class UnsupportedOperation(ExchangeError):
    """Operation is not offered by this adapter (e.g. positions on a spot exchange)."""

    pass


class ConfigurationError(Exception):
    """The caller asked for something the service cannot express."""

    pass


class UnsupportedExchange(ConfigurationError):
    """Exchange identifier did not resolve to a registered adapter."""

    def __init__(self, exchange_id: str) -> None:
        super().__init__(f"Unsupported exchange: '{exchange_id}'")
        self.exchange_id = exchange_id


class InvalidInterval(ConfigurationError):
    """Candle interval is outside the supported vocabulary."""

    def __init__(self, interval: str, exchange: Optional[str] = None) -> None:
        where = f" on {exchange}" if exchange else ""
        super().__init__(f"Unsupported interval '{interval}'{where}")
        self.interval = interval
        self.exchange = exchange


class InvalidSymbol(ConfigurationError):
    """Symbol is empty or contains characters no exchange accepts."""

    def __init__(self, symbol: str) -> None:
        super().__init__(f"Invalid symbol: '{symbol}'")
        self.symbol = symbol
