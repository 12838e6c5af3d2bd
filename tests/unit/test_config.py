"""
Unit Tests for Configuration Module

These tests verify that the configuration system works correctly:
- Default values are applied when nothing is configured
- Comma-separated settings are parsed into lists
- The broker URL is assembled from its parts
- Validation catches invalid configurations

Run with:
    pytest tests/unit/test_config.py -v
"""

import pytest

import core.config as config_module
from core.config import Settings, VALID_INTERVALS, settings, validate_configuration


class TestConfigurationLoading:
    """Test that configuration loads correctly"""

    def test_exchange_base_urls_loaded(self):
        """Verify every exchange has an http(s) base URL"""
        for url in (
            settings.upbit_base_url,
            settings.bithumb_base_url,
            settings.binance_base_url,
            settings.binance_spot_base_url,
            settings.bybit_base_url,
            settings.okx_base_url,
        ):
            assert url.startswith("http")

    def test_app_port_is_valid_integer(self):
        """Verify app port is a valid integer"""
        assert isinstance(settings.app_port, int)
        assert 1 <= settings.app_port <= 65535

    def test_request_timeout_is_positive(self):
        """Verify request timeout is a positive number"""
        assert settings.request_timeout > 0

    def test_stream_defaults(self):
        """Verify live stream defaults"""
        fresh = Settings(_env_file=None)
        assert fresh.sse_heartbeat_interval == 20.0
        assert fresh.premium_channel == "kimchi:premium"
        assert fresh.premium_rate_strategy == "first"

    def test_premium_channel_accepts_legacy_env_name(self, monkeypatch):
        """Verify REDIS_KIMCHI_CHANNEL populates premium_channel"""
        monkeypatch.setenv("REDIS_KIMCHI_CHANNEL", "premium:test")
        assert Settings(_env_file=None).premium_channel == "premium:test"


class TestIntervalsParsing:
    """Test that intervals are parsed correctly"""

    def test_intervals_list_not_empty(self):
        """Verify at least one interval is configured"""
        assert len(settings.intervals_list) > 0

    def test_minute_and_month_are_distinct(self):
        """Verify case is preserved so 1m and 1M both survive"""
        fresh = Settings(_env_file=None)
        assert "1m" in fresh.intervals_list
        assert "1M" in fresh.intervals_list

    def test_whitespace_is_stripped(self):
        """Verify intervals don't keep surrounding whitespace"""
        fresh = Settings(_env_file=None, supported_intervals=" 1m , 5m ,,1h ")
        assert fresh.intervals_list == ["1m", "5m", "1h"]


class TestConfigurationProperties:
    """Test property methods and computed values"""

    def test_cors_origins_list(self):
        """Verify CORS origins are split on commas"""
        fresh = Settings(_env_file=None, cors_origins="http://a.test, http://b.test")
        assert fresh.cors_origins_list == ["http://a.test", "http://b.test"]

    def test_redis_dsn_from_parts(self):
        """Verify the broker URL is assembled from host/port/db"""
        fresh = Settings(_env_file=None, redis_url="", redis_host="cache", redis_port=6380, redis_db=2)
        assert fresh.redis_dsn == "redis://cache:6380/2"

    def test_redis_dsn_quotes_password(self):
        """Verify special characters in the password are escaped"""
        fresh = Settings(_env_file=None, redis_url="", redis_password="p@ss/word")
        assert fresh.redis_dsn == "redis://:p%40ss%2Fword@127.0.0.1:6379/0"

    def test_redis_url_takes_precedence(self):
        """Verify REDIS_URL wins over the individual parts"""
        fresh = Settings(_env_file=None, redis_url="rediss://remote:6379/1", redis_host="ignored")
        assert fresh.redis_dsn == "rediss://remote:6379/1"


class TestConfigurationValidation:
    """Test configuration validation function"""

    def test_validate_configuration_succeeds(self):
        """Verify validation passes with default configuration"""
        try:
            validate_configuration()
        except ValueError as e:
            pytest.fail(f"Configuration validation failed: {e}")

    def test_configured_intervals_are_known(self):
        """Verify every configured interval is in the supported vocabulary"""
        for interval in settings.intervals_list:
            assert interval in VALID_INTERVALS

    @pytest.mark.parametrize("overrides", [
        {"supported_intervals": "1m,2m"},
        {"supported_intervals": ""},
        {"request_timeout": 0},
        {"candle_count": 0},
        {"sse_heartbeat_interval": 0},
        {"sse_queue_size": 0},
        {"premium_rate_strategy": "median"},
        {"app_port": 70000},
        {"log_level": "LOUD"},
    ])
    def test_validation_rejects_invalid_values(self, monkeypatch, overrides):
        """Verify each invalid setting is caught"""
        monkeypatch.setattr(config_module, "settings", Settings(_env_file=None, **overrides))
        with pytest.raises(ValueError):
            config_module.validate_configuration()


# ============================================
# Run Tests
# ============================================

if __name__ == "__main__":
    pytest.main([__file__, "-v"])
