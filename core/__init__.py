"""
Core Package

Contains the exchange-agnostic core logic including:
- ExchangeAdapter: Abstract base class defining the contract for all exchanges
- Adapter factory: Resolves exchange names (Korean or Latin) to adapter instances
- Schemas: Pydantic models for normalized data (Candle, Balance, PremiumCandle, ...)
- Exceptions: Typed errors shared by adapters, services and routes

This layer ensures all exchanges follow the same interface, making the system modular and scalable.
"""
