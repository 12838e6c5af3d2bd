"""
OKX Exchange Adapter

Foreign (USDT) exchange: perpetual swap candles and positions, spot ticker.
"""

from .api_client import OKXAdapter

__all__ = ["OKXAdapter"]
