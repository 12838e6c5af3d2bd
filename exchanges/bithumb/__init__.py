"""
Bithumb Exchange Adapter

Domestic (KRW) spot exchange with an Upbit-compatible v1 API.
"""

from .api_client import BithumbAdapter

__all__ = ["BithumbAdapter"]
