"""
Unified Logging Configuration

This module sets up a centralized logging system for the entire application.
All modules should import and use the logger from this module instead of
using print() statements.

Usage:
    from core.logging import logger, get_logger

    logger.info("Application started")

    log = get_logger(__name__)
    log.warning("Upbit candles unavailable, continuing without them")

Log Levels (from most to least verbose):
    DEBUG    - Request/response tracing (e.g., "API Request: upbit /v1/candles/minutes/1")
    INFO     - Lifecycle messages (e.g., "Premium stream subscribed to kimchi:premium")
    WARNING  - Degraded operation (e.g., "bybit candles failed, dropped from aggregate")
    ERROR    - Failures surfaced to a client (e.g., "Failed to fetch kline data")
    CRITICAL - Startup cannot continue

Configuration:
    Log level is controlled by the LOG_LEVEL setting in .env file.

Credentials:
    Never pass API keys or secrets into these helpers. Request params are logged
    at DEBUG level, so signed parameters are stripped by the adapters first.
"""

import logging
import sys
from typing import Optional


def setup_logging(
    log_level: str = "INFO",
    log_format: Optional[str] = None,
    include_timestamp: bool = True,
    include_module: bool = True
) -> logging.Logger:
    """
    Configure and return the application logger.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: Custom log format string (uses default if None)
        include_timestamp: Include timestamp in log messages
        include_module: Include logger name in log messages

    Returns:
        logging.Logger: Configured root application logger ("kimpbackend")

    Example:
        >>> logger = setup_logging(log_level="DEBUG")
        >>> logger.info("Application started")
        2024-01-01 12:00:00 [INFO] kimpbackend: Application started
    """
    if log_format is None:
        format_parts = []

        if include_timestamp:
            format_parts.append("%(asctime)s")

        format_parts.append("[%(levelname)s]")

        if include_module:
            format_parts.append("%(name)s:")

        format_parts.append("%(message)s")

        log_format = " ".join(format_parts)

    level = getattr(logging, log_level.upper(), logging.INFO)

    logging.basicConfig(
        level=level,
        format=log_format,
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stdout,
        force=True  # Override any existing configuration (uvicorn installs its own)
    )

    app_logger = logging.getLogger("kimpbackend")
    app_logger.setLevel(level)

    return app_logger


# ============================================
# Initialize Logger with Settings
# ============================================

from core.config import settings

# Create the global logger instance
logger = setup_logging(log_level=settings.log_level)


# ============================================
# Convenience Functions
# ============================================

def get_logger(name: str) -> logging.Logger:
    """
    Get a child logger for a specific module or component.

    Args:
        name: Name for the logger (typically __name__)

    Returns:
        logging.Logger: Logger named "kimpbackend.<name>"

    Example:
        # In exchanges/upbit/api_client.py:
        from core.logging import get_logger
        logger = get_logger(__name__)  # "kimpbackend.exchanges.upbit.api_client"
    """
    return logging.getLogger(f"kimpbackend.{name}")


# ============================================
# Log Helper Functions
# ============================================

def log_api_request(exchange: str, endpoint: str, params: dict = None) -> None:
    """
    Log an outbound exchange request.

    Args:
        exchange: Exchange name (e.g., "upbit")
        endpoint: API endpoint being called
        params: Request parameters (optional, must not contain secrets)

    Example:
        >>> log_api_request("upbit", "/v1/candles/minutes/1", {"market": "KRW-BTC"})
        [DEBUG] API Request: upbit /v1/candles/minutes/1 | Params: {'market': 'KRW-BTC'}
    """
    if params:
        logger.debug(f"API Request: {exchange} {endpoint} | Params: {params}")
    else:
        logger.debug(f"API Request: {exchange} {endpoint}")


def log_api_response(exchange: str, endpoint: str, status: int, response_time: float = None) -> None:
    """
    Log an exchange response with status and timing information.

    Args:
        exchange: Exchange name
        endpoint: API endpoint
        status: HTTP status code
        response_time: Response time in seconds (optional)

    Example:
        >>> log_api_response("bybit", "/v5/market/kline", 200, 0.342)
        [DEBUG] API Response: bybit /v5/market/kline | Status: 200 | Time: 0.342s
    """
    time_str = f" | Time: {response_time:.3f}s" if response_time else ""
    logger.debug(f"API Response: {exchange} {endpoint} | Status: {status}{time_str}")


def log_stream_event(channel: str, event: str, details: str = None) -> None:
    """
    Log a live premium stream lifecycle event.

    Args:
        channel: Broker channel the connection is bound to
        event: Event type (e.g., "subscribed", "closed", "dropped", "error")
        details: Additional details (optional)

    Example:
        >>> log_stream_event("kimchi:premium", "subscribed", "count=1")
        [INFO] Stream: kimchi:premium subscribed | count=1

        >>> log_stream_event("kimchi:premium", "error", "Connection refused")
        [ERROR] Stream: kimchi:premium error | Connection refused
    """
    details_str = f" | {details}" if details else ""

    if event == "error":
        level = logging.ERROR
    elif event == "dropped":
        level = logging.WARNING
    else:
        level = logging.INFO
    logger.log(level, f"Stream: {channel} {event}{details_str}")


logger.debug("Logging system initialized")
