"""
Configuration Management Module

This module handles loading, validating, and providing access to application configuration
from environment variables (.env file).

Uses Pydantic Settings for automatic validation and type conversion.

Key Features:
- Loads configuration from .env file
- Per-exchange REST base URLs (Upbit, Bithumb, Binance, Bybit, OKX)
- Broker (Redis) connection settings for the live premium stream
- Converts comma-separated strings to lists (intervals, CORS origins)
- Handles optional settings with sensible defaults

Usage:
    from core.config import settings

    # Access configuration values
    print(settings.upbit_base_url)
    print(settings.intervals_list)  # Returns a list of strings
"""

from typing import List
from urllib.parse import quote
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import AliasChoices, Field


VALID_INTERVALS = ["1m", "5m", "15m", "30m", "1h", "4h", "1d", "1w", "1M"]
VALID_RATE_STRATEGIES = ["first", "mean"]


class Settings(BaseSettings):
    """
    Application Settings

    This class defines all configuration parameters for the application.
    Values are automatically loaded from environment variables or .env file.

    Attributes:
        upbit_base_url: Base URL for the Upbit REST API
        bithumb_base_url: Base URL for the Bithumb REST API
        binance_base_url: Base URL for Binance USD-M Futures
        binance_spot_base_url: Base URL for Binance Spot (ticker prices)
        bybit_base_url: Base URL for the Bybit v5 API
        okx_base_url: Base URL for the OKX v5 API
        request_timeout: Timeout for each exchange HTTP request in seconds
        candle_count: Number of candles requested per exchange
        supported_intervals: Comma-separated candle intervals accepted by /api/kline
        reference_exchange: Exchange queried for the reference asset series
        reference_symbol: Reference asset (the domestic USDT price)
        redis_url: Full broker URL (takes precedence over host/port/db/password)
        premium_channel: Default broker channel relayed by the premium stream
        sse_heartbeat_interval: Seconds between SSE heartbeat comments
        sse_queue_size: Maximum buffered frames per SSE connection
        premium_rate_strategy: How a tick's headline premium is chosen ("first" or "mean")
    """

    # ============================================
    # Exchange API Configuration
    # ============================================

    upbit_base_url: str = Field(
        default="https://api.upbit.com",
        description="Upbit REST API base URL"
    )

    bithumb_base_url: str = Field(
        default="https://api.bithumb.com",
        description="Bithumb REST API base URL"
    )

    binance_base_url: str = Field(
        default="https://fapi.binance.com",
        description="Binance Futures API base URL"
    )

    binance_spot_base_url: str = Field(
        default="https://api.binance.com",
        description="Binance Spot API base URL (ticker prices)"
    )

    bybit_base_url: str = Field(
        default="https://api.bybit.com",
        description="Bybit v5 API base URL"
    )

    okx_base_url: str = Field(
        default="https://www.okx.com",
        description="OKX v5 API base URL"
    )

    # ============================================
    # Candle Aggregation Configuration
    # ============================================

    supported_intervals: str = Field(
        default="1m,5m,15m,30m,1h,4h,1d,1w,1M",
        description="Comma-separated list of candlestick intervals"
    )

    candle_count: int = Field(
        default=200,
        description="Number of candles fetched per exchange"
    )

    reference_exchange: str = Field(
        default="upbit",
        description="Exchange providing the reference asset series"
    )

    reference_symbol: str = Field(
        default="USDT",
        description="Reference asset symbol (domestic stablecoin price)"
    )

    # ============================================
    # Application Configuration
    # ============================================

    app_host: str = Field(
        default="0.0.0.0",
        description="FastAPI server host address"
    )

    app_port: int = Field(
        default=8000,
        description="FastAPI server port"
    )

    environment: str = Field(
        default="development",
        description="Application environment (development, production)"
    )

    debug: bool = Field(
        default=True,
        description="Enable debug mode"
    )

    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )

    # ============================================
    # Performance
    # ============================================

    request_timeout: int = Field(
        default=10,
        description="HTTP request timeout in seconds"
    )

    # ============================================
    # CORS Configuration
    # ============================================

    cors_origins: str = Field(
        default="http://localhost:3000,http://localhost:5173",
        description="Comma-separated list of allowed CORS origins"
    )

    # ============================================
    # Broker (Redis) Configuration
    # ============================================

    redis_url: str = Field(
        default="",
        description="Full Redis URL (overrides host/port/db/password when set)"
    )

    redis_host: str = Field(
        default="127.0.0.1",
        description="Redis server host"
    )

    redis_port: int = Field(
        default=6379,
        description="Redis server port"
    )

    redis_db: int = Field(
        default=0,
        description="Redis database number"
    )

    redis_password: str = Field(
        default="",
        description="Redis password (optional)"
    )

    premium_channel: str = Field(
        default="kimchi:premium",
        validation_alias=AliasChoices("redis_kimchi_channel", "redis_channel", "premium_channel"),
        description="Default pub/sub channel carrying premium ticks"
    )

    # ============================================
    # Live Stream Configuration
    # ============================================

    sse_heartbeat_interval: float = Field(
        default=20.0,
        description="Seconds between SSE heartbeat comment frames"
    )

    sse_queue_size: int = Field(
        default=1000,
        description="Maximum number of frames buffered per SSE connection"
    )

    premium_rate_strategy: str = Field(
        default="first",
        description="Headline premium selection for ticks: 'first' rate or 'mean' of all rates"
    )

    # ============================================
    # Pydantic Settings Configuration
    # ============================================

    model_config = SettingsConfigDict(
        # Look for .env file in the project root
        env_file=".env",
        # Ignore extra fields in .env that aren't defined here
        extra="ignore",
        # Case-insensitive environment variable matching
        case_sensitive=False,
        populate_by_name=True
    )

    # ============================================
    # Custom Properties
    # ============================================

    @property
    def intervals_list(self) -> List[str]:
        """
        Convert comma-separated intervals string to a list.

        Case is preserved because "1m" (minute) and "1M" (month) differ.

        Returns:
            List of interval strings (e.g., ["1m", "5m", "1h"])

        Example:
            >>> settings.intervals_list
            ['1m', '5m', '15m', '30m', '1h', '4h', '1d', '1w', '1M']
        """
        return [i.strip() for i in self.supported_intervals.split(",") if i.strip()]

    @property
    def cors_origins_list(self) -> List[str]:
        """
        Convert comma-separated CORS origins string to a list.

        Returns:
            List of allowed origin URLs (e.g., ["http://localhost:3000", "https://myapp.com"])
        """
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def redis_dsn(self) -> str:
        """
        Resolve the broker connection URL.

        REDIS_URL wins when set; otherwise the URL is assembled from
        REDIS_HOST, REDIS_PORT, REDIS_DB and REDIS_PASSWORD.

        Example:
            >>> settings.redis_dsn
            'redis://127.0.0.1:6379/0'
        """
        if self.redis_url:
            return self.redis_url

        auth = f":{quote(self.redis_password, safe='')}@" if self.redis_password else ""
        return f"redis://{auth}{self.redis_host}:{self.redis_port}/{self.redis_db}"


# ============================================
# Global Settings Instance
# ============================================

# Create a single instance of settings to be imported throughout the application
settings = Settings()


# ============================================
# Configuration Validation
# ============================================

def validate_configuration() -> None:
    """
    Validate critical configuration settings on application startup.

    Raises:
        ValueError: If required configuration is missing or invalid

    This function is called during application initialization to ensure
    the configuration is valid before starting the server.
    """
    # Import logger here to avoid circular import
    # (logging.py imports config.py, so we can't import at module level)
    from core.logging import logger

    if not settings.intervals_list:
        raise ValueError("SUPPORTED_INTERVALS must contain at least one interval")

    for interval in settings.intervals_list:
        if interval not in VALID_INTERVALS:
            raise ValueError(
                f"Invalid interval: '{interval}'. "
                f"Must be one of: {', '.join(VALID_INTERVALS)}"
            )

    if settings.request_timeout <= 0:
        raise ValueError(f"REQUEST_TIMEOUT must be positive, got {settings.request_timeout}")

    if settings.candle_count <= 0:
        raise ValueError(f"CANDLE_COUNT must be positive, got {settings.candle_count}")

    if settings.sse_heartbeat_interval <= 0:
        raise ValueError(
            f"SSE_HEARTBEAT_INTERVAL must be positive, got {settings.sse_heartbeat_interval}"
        )

    if settings.sse_queue_size <= 0:
        raise ValueError(f"SSE_QUEUE_SIZE must be positive, got {settings.sse_queue_size}")

    if settings.premium_rate_strategy not in VALID_RATE_STRATEGIES:
        raise ValueError(
            f"Invalid PREMIUM_RATE_STRATEGY: '{settings.premium_rate_strategy}'. "
            f"Must be one of: {', '.join(VALID_RATE_STRATEGIES)}"
        )

    # Validate port number
    if not (1 <= settings.app_port <= 65535):
        raise ValueError(f"Invalid port number: {settings.app_port}. Must be between 1 and 65535")

    # Validate log level
    valid_log_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
    if settings.log_level.upper() not in valid_log_levels:
        raise ValueError(
            f"Invalid LOG_LEVEL: '{settings.log_level}'. "
            f"Must be one of: {', '.join(valid_log_levels)}"
        )

    # Log successful validation
    logger.info("Configuration validated successfully")
    logger.info(f"Using intervals: {', '.join(settings.intervals_list)}")
    logger.info(f"Reference series: {settings.reference_symbol} on {settings.reference_exchange}")
    logger.info(f"Premium channel: {settings.premium_channel}")
    logger.info(f"Server: {settings.app_host}:{settings.app_port}")
    logger.info(f"Log level: {settings.log_level.upper()}")
