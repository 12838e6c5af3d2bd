"""
FastAPI Application Package

This package contains the main FastAPI application, its routes and the
per-request dependencies. It serves as the entry point for the backend API,
providing REST endpoints for premium candles and ticker pairs and a
server-sent-events stream of live premium ticks.
"""
