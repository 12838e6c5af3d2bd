"""
Core Utilities Package

This package contains utility functions and helpers used throughout the application.

Modules:
    - time: Timestamp conversion and normalization utilities
"""

from core.utils.time import (
    current_utc_timestamp,
    format_utc_iso,
    parse_utc_iso,
    to_epoch_seconds,
)

__all__ = ["current_utc_timestamp", "format_utc_iso", "parse_utc_iso", "to_epoch_seconds"]
