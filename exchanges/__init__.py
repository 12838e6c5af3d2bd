"""
Exchange Adapters Package

This package contains one adapter per exchange. Each exchange has its own
subfolder with:
- api_client.py: REST calls, signing and normalization to core.schemas
- __init__.py: exports the adapter class

Domestic (KRW): upbit, bithumb
Foreign (USDT): binance, bybit, okx

Adapters are created through core.adapter_factory.create_adapter().
"""
