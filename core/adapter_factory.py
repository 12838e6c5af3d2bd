"""
Adapter Factory — Central Registry for Exchange Adapters

This module is the single place that knows which exchanges exist. It maps every
accepted spelling of an exchange name to a canonical id and builds adapter
instances on demand.

Accepted spellings:
    Korean      업비트, 빗썸, 바이낸스, 바이빗, OKX
    Uppercase   UPBIT, BITHUMB, BINANCE, BYBIT, OKX
    Lowercase   upbit, bithumb, binance, bybit, okx

An unrecognized id ALWAYS raises UnsupportedExchange. Call sites that want to
skip unknown exchanges catch the error explicitly:

    try:
        adapter = create_adapter(name)
    except UnsupportedExchange:
        logger.warning(f"Skipping unknown exchange {name}")

Adapters are constructed fresh per call (cheap, no I/O) because credentials
are per-request and adapters hold an HTTP session bound to one event loop.
"""

from typing import Dict, List, Optional, Type

from core.exceptions import UnsupportedExchange
from core.exchange_interface import ExchangeAdapter
from core.logging import logger
from core.schemas import ExchangeCredentials


# Korean display names used by the frontend and stored account records
KOREAN_NAMES: Dict[str, str] = {
    "업비트": "upbit",
    "빗썸": "bithumb",
    "바이낸스": "binance",
    "바이빗": "bybit",
}

_registry: Optional[Dict[str, Type[ExchangeAdapter]]] = None


def _get_registry() -> Dict[str, Type[ExchangeAdapter]]:
    """
    Build the id -> adapter class registry on first use.

    Imported lazily because each exchange module imports from core.
    """
    global _registry
    if _registry is None:
        from exchanges.upbit import UpbitAdapter
        from exchanges.bithumb import BithumbAdapter
        from exchanges.binance import BinanceAdapter
        from exchanges.bybit import BybitAdapter
        from exchanges.okx import OKXAdapter

        _registry = {
            cls.name: cls
            for cls in (UpbitAdapter, BithumbAdapter, BinanceAdapter, BybitAdapter, OKXAdapter)
        }
        logger.debug(f"Adapter registry loaded: {', '.join(_registry)}")
    return _registry


# ============================================
# Name Resolution
# ============================================

def resolve_exchange_id(exchange_id: str) -> str:
    """
    Map any accepted spelling to the canonical lowercase id.

    Args:
        exchange_id: "업비트", "UPBIT", "upbit", " Upbit " ...

    Returns:
        str: Canonical id (e.g., "upbit")

    Raises:
        UnsupportedExchange: If the name matches no registered exchange

    Example:
        >>> resolve_exchange_id("바이빗")
        'bybit'
    """
    raw = (exchange_id or "").strip()
    if raw in KOREAN_NAMES:
        return KOREAN_NAMES[raw]

    candidate = raw.lower()
    if candidate in _get_registry():
        return candidate

    raise UnsupportedExchange(exchange_id)


def create_adapter(
    exchange_id: str,
    credentials: Optional[ExchangeCredentials] = None
) -> ExchangeAdapter:
    """
    Build an adapter for the named exchange.

    Args:
        exchange_id: Exchange name in any accepted spelling
        credentials: API key material for private endpoints (optional)

    Returns:
        ExchangeAdapter: A new, unopened adapter (use it with "async with")

    Raises:
        UnsupportedExchange: If the name matches no registered exchange

    Example:
        >>> async with create_adapter("업비트") as upbit:
        ...     ticker = await upbit.get_ticker("BTC")
    """
    canonical = resolve_exchange_id(exchange_id)
    adapter_cls = _get_registry()[canonical]
    return adapter_cls(credentials=credentials)


def is_domestic(exchange_id: str) -> bool:
    """True if the exchange quotes in KRW (Upbit, Bithumb)."""
    return _get_registry()[resolve_exchange_id(exchange_id)].market == "domestic"


def domestic_exchanges() -> List[str]:
    """Canonical ids of the domestic (KRW) market group."""
    return [name for name, cls in _get_registry().items() if cls.market == "domestic"]


def list_exchanges() -> List[str]:
    """
    Canonical ids of all registered exchanges.

    Example:
        >>> list_exchanges()
        ['upbit', 'bithumb', 'binance', 'bybit', 'okx']
    """
    return list(_get_registry().keys())


def get_exchange_capabilities(exchange_id: str) -> Dict[str, bool]:
    """
    Operations supported by an exchange.

    Raises:
        UnsupportedExchange: If the name matches no registered exchange
    """
    return dict(_get_registry()[resolve_exchange_id(exchange_id)].capabilities)


def describe_exchanges() -> List[Dict[str, object]]:
    """Id, display name, market group and capabilities of every exchange."""
    return [
        {
            "id": name,
            "name": cls.display_name,
            "market": cls.market,
            "capabilities": dict(cls.capabilities),
        }
        for name, cls in _get_registry().items()
    ]


async def health_check_all() -> Dict[str, bool]:
    """
    Check that every exchange answers a public ticker request.

    Returns:
        Dict[str, bool]: Exchange id -> reachable
    """
    health_status = {}
    for name in list_exchanges():
        async with create_adapter(name) as adapter:
            health_status[name] = await adapter.health_check()
    return health_status
