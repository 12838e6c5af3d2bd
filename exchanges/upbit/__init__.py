"""
Upbit Exchange Adapter

Domestic (KRW) spot exchange. Also provides the KRW-USDT reference series
used by /api/kline.
"""

from .api_client import UpbitAdapter

__all__ = ["UpbitAdapter"]
