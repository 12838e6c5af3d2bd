"""
Binance Exchange Adapter

Foreign (USDT) exchange: USD-M Futures candles, balances and positions,
Spot ticker prices.
"""

from .api_client import BinanceAdapter

__all__ = ["BinanceAdapter"]
