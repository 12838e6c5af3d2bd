"""
Test Suite

Contains unit tests for the backend system.

Structure:
- tests/unit/: Tests for individual components (schemas, adapters, aggregation,
  the live stream relay and the HTTP routes). Exchange and broker traffic is
  replaced with in-memory fakes; no test touches the network.

Uses pytest with pytest-asyncio for testing async functionality.
"""
