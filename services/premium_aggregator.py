"""
Premium Candle Aggregator

Builds the kimchi-premium candle series for /api/kline.

Flow:
    1. Resolve each requested exchange through the adapter factory. Unknown
       names are logged and skipped; duplicates collapse to one fetch.
    2. Launch one candle fetch per exchange plus one reference fetch
       (KRW-USDT on Upbit by default), all concurrently.
    3. Wait for every fetch. A failed fetch is logged and recorded in
       `failures`; it never aborts the request.
    4. Pool the candles of each market group (domestic / foreign) and merge
       candles sharing a timestamp:
           open, close -> arithmetic mean
           high        -> max
           low         -> min
           volume      -> sum
    5. For every timestamp present in BOTH groups emit
           premium.X = domestic.X / foreign.X   (X in open, high, low, close)
           premium.volume = domestic.volume + foreign.volume
       A timestamp with a zero foreign price is skipped (ratio undefined).

The merge uses math.fsum, so the result does not depend on the order in
which exchanges answered.

Usage:
    aggregator = PremiumAggregator()
    result = await aggregator.aggregate(["upbit", "binance"], "BTC", "1m")
    print(result.premium[-1].close)
"""

import asyncio
import math
from collections import defaultdict
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from core.adapter_factory import create_adapter
from core.config import settings
from core.exceptions import InvalidInterval, UnsupportedExchange
from core.exchange_interface import ExchangeAdapter
from core.logging import get_logger
from core.schemas import AggregatedCandles, Candle, PremiumCandle


logger = get_logger(__name__)

AdapterFactory = Callable[[str], ExchangeAdapter]


# ============================================
# Pure Helpers
# ============================================

def merge_candle_pool(pool: Iterable[Candle]) -> Dict[int, Candle]:
    """
    Merge candles that share a timestamp.

    Args:
        pool: Candles from any number of exchanges, in any order

    Returns:
        Dict[int, Candle]: timestamp -> merged candle

    Example:
        >>> a = Candle(timestamp=60, open=100, high=110, low=90, close=105, volume=1)
        >>> b = Candle(timestamp=60, open=104, high=120, low=95, close=101, volume=3)
        >>> merged = merge_candle_pool([a, b])[60]
        >>> merged.open, merged.high, merged.low, merged.volume
        (102.0, 120.0, 90.0, 4.0)
    """
    groups: Dict[int, List[Candle]] = defaultdict(list)
    for candle in pool:
        groups[candle.timestamp].append(candle)

    merged: Dict[int, Candle] = {}
    for timestamp, candles in groups.items():
        if len(candles) == 1:
            merged[timestamp] = candles[0]
            continue

        n = len(candles)
        high = max(c.high for c in candles)
        low = min(c.low for c in candles)
        # a mean of in-range values can round just outside [low, high]
        open_ = min(max(math.fsum(c.open for c in candles) / n, low), high)
        close = min(max(math.fsum(c.close for c in candles) / n, low), high)

        merged[timestamp] = Candle(
            timestamp=timestamp,
            open=open_,
            high=high,
            low=low,
            close=close,
            volume=math.fsum(c.volume for c in candles)
        )

    return merged


def synthesize_premium(
    domestic: Dict[int, Candle],
    foreign: Dict[int, Candle]
) -> List[PremiumCandle]:
    """
    Divide domestic prices by foreign prices over the shared timestamps.

    Returns:
        List[PremiumCandle] sorted ascending; empty if either side is empty
    """
    if not domestic or not foreign:
        return []

    premium: List[PremiumCandle] = []
    for timestamp in sorted(domestic.keys() & foreign.keys()):
        d = domestic[timestamp]
        f = foreign[timestamp]

        if not (f.open and f.high and f.low and f.close):
            logger.debug(f"Skipping premium at {timestamp}: zero foreign price")
            continue

        premium.append(PremiumCandle(
            timestamp=timestamp,
            open=d.open / f.open,
            high=d.high / f.high,
            low=d.low / f.low,
            close=d.close / f.close,
            volume=d.volume + f.volume
        ))

    return premium


def _sorted_series(merged: Dict[int, Candle]) -> List[Candle]:
    return [merged[ts] for ts in sorted(merged)]


# ============================================
# Aggregator
# ============================================

class PremiumAggregator:
    """
    Concurrent candle fan-out and premium synthesis.

    Attributes:
        adapter_factory: Callable building an adapter from an exchange name
        reference_exchange: Exchange queried for the reference series
        reference_symbol: Reference asset (USDT)
        candle_count: Candles requested per exchange

    Example:
        >>> aggregator = PremiumAggregator()
        >>> result = await aggregator.aggregate(["upbit", "bybit"], "BTC", "5m")
        >>> len(result.premium), result.failures
        (200, {})
    """

    def __init__(
        self,
        adapter_factory: AdapterFactory = create_adapter,
        reference_exchange: Optional[str] = None,
        reference_symbol: Optional[str] = None,
        candle_count: Optional[int] = None
    ):
        self.adapter_factory = adapter_factory
        self.reference_exchange = reference_exchange or settings.reference_exchange
        self.reference_symbol = reference_symbol or settings.reference_symbol
        self.candle_count = candle_count or settings.candle_count

    async def aggregate(
        self,
        exchanges: Sequence[str],
        symbol: str,
        interval: str,
        to_timestamp: int = 0
    ) -> AggregatedCandles:
        """
        Fetch, merge and divide.

        Args:
            exchanges: Exchange names in any accepted spelling
            symbol: Base asset (e.g., "BTC")
            interval: One of settings.intervals_list
            to_timestamp: Upper bound in epoch seconds (0 = now), passed verbatim

        Returns:
            AggregatedCandles

        Raises:
            InvalidSymbol: Malformed symbol (before any fetch starts)
            InvalidInterval: Interval outside the supported vocabulary
        """
        symbol = ExchangeAdapter.normalize_symbol(symbol)
        if interval not in settings.intervals_list:
            raise InvalidInterval(interval)

        failures: Dict[str, str] = {}
        adapters: Dict[str, ExchangeAdapter] = {}

        for name in exchanges:
            try:
                adapter = self.adapter_factory(name)
            except UnsupportedExchange as e:
                logger.warning(f"Skipping exchange: {e}")
                failures[name] = str(e)
                continue
            adapters.setdefault(adapter.name, adapter)

        names = list(adapters)
        outcomes = await asyncio.gather(
            *(self._fetch_candles(adapters[name], symbol, interval, to_timestamp) for name in names),
            self._fetch_reference(interval, to_timestamp),
            return_exceptions=True
        )
        *candle_outcomes, reference_outcome = outcomes

        results: Dict[str, List[Candle]] = {}
        for name, outcome in zip(names, candle_outcomes):
            if isinstance(outcome, BaseException):
                logger.warning(f"{name} candles failed for {symbol}/{interval}, dropped from aggregate: {outcome}")
                failures[name] = str(outcome) or outcome.__class__.__name__
            else:
                results[name] = outcome

        reference: List[Candle] = []
        reference_key = f"{self.reference_exchange}:{self.reference_symbol}"
        if isinstance(reference_outcome, BaseException):
            logger.warning(f"Reference series {reference_key} unavailable: {reference_outcome}")
            failures[reference_key] = str(reference_outcome) or reference_outcome.__class__.__name__
        else:
            reference = reference_outcome

        domestic_pool = [c for name, candles in results.items() if adapters[name].market == "domestic" for c in candles]
        foreign_pool = [c for name, candles in results.items() if adapters[name].market == "foreign" for c in candles]

        domestic = merge_candle_pool(domestic_pool)
        foreign = merge_candle_pool(foreign_pool)
        premium = synthesize_premium(domestic, foreign)

        logger.info(
            f"Aggregated {symbol}/{interval}: {len(premium)} premium candles "
            f"(domestic={len(domestic)}, foreign={len(foreign)}, failed={list(failures) or 'none'})"
        )

        return AggregatedCandles(
            premium=premium,
            domestic=_sorted_series(domestic),
            foreign=_sorted_series(foreign),
            reference=reference,
            failures=failures
        )

    async def _fetch_candles(
        self,
        adapter: ExchangeAdapter,
        symbol: str,
        interval: str,
        to_timestamp: int
    ) -> List[Candle]:
        async with adapter:
            return await adapter.get_ticker_candles(symbol, interval, to_timestamp, self.candle_count)

    async def _fetch_reference(self, interval: str, to_timestamp: int) -> List[Candle]:
        adapter = self.adapter_factory(self.reference_exchange)
        return await self._fetch_candles(adapter, self.reference_symbol, interval, to_timestamp)
