"""
Bybit Exchange Adapter

Foreign (USDT) exchange: v5 linear perpetual candles, tickers, unified
account balance and positions.
"""

from .api_client import BybitAdapter

__all__ = ["BybitAdapter"]
