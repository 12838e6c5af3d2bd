"""
Time Utilities

Exchanges disagree on how they express time:
- Binance, Bybit, OKX: milliseconds since epoch (e.g., 1704110400000)
- Upbit, Bithumb: ISO-8601 strings without offset (e.g., "2024-01-01T12:00:00")
- Our candles: seconds since epoch, UTC

The helpers here convert everything into epoch seconds so candle series from
different exchanges share the same keys.
"""

from datetime import datetime, timezone
from typing import Union


def to_epoch_seconds(timestamp: Union[int, float, str]) -> int:
    """
    Normalize a numeric timestamp (seconds or milliseconds) to epoch seconds.

    Detection Logic:
        - If timestamp > 1e12 (1 trillion): assumed to be milliseconds
        - Otherwise: assumed to be seconds

    Args:
        timestamp: Unix timestamp in seconds or milliseconds (numeric strings accepted)

    Returns:
        int: Epoch seconds

    Raises:
        ValueError: If timestamp is negative or not numeric

    Examples:
        >>> to_epoch_seconds(1704110400000)
        1704110400
        >>> to_epoch_seconds("1704110400000")
        1704110400
        >>> to_epoch_seconds(1704110400)
        1704110400
    """
    try:
        value = float(timestamp)
    except (TypeError, ValueError):
        raise ValueError(f"Invalid timestamp: {timestamp!r}")

    if value < 0:
        raise ValueError(f"Timestamp cannot be negative: {timestamp}")

    if value > 1e12:
        value = value / 1000.0

    return int(value)


def parse_utc_iso(value: str) -> int:
    """
    Parse an ISO-8601 date-time into epoch seconds.

    Strings without an offset are interpreted as UTC; Upbit's
    candle_date_time_utc field is such a string.

    Examples:
        >>> parse_utc_iso("2024-01-01T12:00:00")
        1704110400
        >>> parse_utc_iso("2024-01-01T21:00:00+09:00")
        1704110400
    """
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"

    dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp())


def format_utc_iso(seconds: int) -> str:
    """
    Format epoch seconds as "YYYY-MM-DDTHH:MM:SSZ".

    Example:
        >>> format_utc_iso(1704110400)
        '2024-01-01T12:00:00Z'
    """
    return datetime.fromtimestamp(seconds, tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def current_utc_timestamp(milliseconds: bool = False) -> int:
    """
    Get current UTC timestamp.

    Args:
        milliseconds: If True, return milliseconds; if False, return seconds

    Examples:
        >>> current_utc_timestamp()
        1704110400
        >>> current_utc_timestamp(milliseconds=True)
        1704110400000
    """
    now = datetime.now(timezone.utc).timestamp()
    return int(now * 1000) if milliseconds else int(now)
