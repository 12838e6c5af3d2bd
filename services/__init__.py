"""
Services Package

Request-independent building blocks behind the API routes:
- premium_aggregator: concurrent candle fan-out and premium synthesis
- response_shaper: /api/kline chart payload
- broker: Redis pub/sub connection and per-stream subscribers
- premium_stream: per-connection SSE relay state machine
"""
