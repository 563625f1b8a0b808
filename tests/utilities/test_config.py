"""
Test cases for settings and logging helpers.
"""

import pytest
import structlog
from pydantic import ValidationError
from structlog.testing import capture_logs

from utilities.config import MonitorSettings
from utilities.logger import MonitorLogger, null_logger


class TestMonitorSettings:
    """Test cases for MonitorSettings."""

    def test_defaults(self):
        settings = MonitorSettings(_env_file=None)
        assert settings.poll_interval_seconds == 300.0
        assert settings.max_concurrent_checks == 3
        assert settings.timezone == "Asia/Tokyo"
        assert settings.telegram_enabled() is False

    def test_monitoring_urls(self):
        settings = MonitorSettings(_env_file=None, monitoring_urls=" https://a.example.com, ,https://b.example.com,")
        assert settings.get_monitoring_urls() == ["https://a.example.com", "https://b.example.com"]

    def test_environment_variables(self, monkeypatch):
        monkeypatch.setenv("POLL_INTERVAL_SECONDS", "60")
        monkeypatch.setenv("TELEGRAM_BOT_TOKEN", "123:abc")
        monkeypatch.setenv("TELEGRAM_CHAT_ID", "42")
        settings = MonitorSettings(_env_file=None)
        assert settings.poll_interval_seconds == 60
        assert settings.telegram_enabled() is True

    def test_log_settings_are_normalized(self):
        settings = MonitorSettings(_env_file=None, log_level="debug", log_format="CONSOLE")
        assert settings.log_level == "DEBUG"
        assert settings.log_format == "console"

    @pytest.mark.parametrize("field,value", [
        ("max_concurrent_checks", 0),
        ("request_timeout", 1),
        ("max_retries", 11),
        ("poll_interval_seconds", 0),
        ("retry_jitter", 1.5),
        ("log_level", "VERBOSE"),
        ("operating_start_hour", 24),
    ])
    def test_invalid_values(self, field, value):
        with pytest.raises(ValidationError):
            MonitorSettings(_env_file=None, **{field: value})

    def test_check_timeout_must_cover_every_strategy(self):
        with pytest.raises(ValidationError, match="check_timeout_seconds"):
            MonitorSettings(_env_file=None, check_timeout_seconds=120)

        settings = MonitorSettings(
            _env_file=None, check_timeout_seconds=40, enable_dom_fallback=False, enable_browser_fallback=False
        )
        assert settings.strategy_timeouts() == [30.0]

    def test_default_check_timeout_covers_the_chain(self):
        settings = MonitorSettings(_env_file=None)
        assert settings.strategy_timeouts() == [30.0, 30.0, 60.0]
        assert settings.chain_time_budget() >= sum(settings.strategy_timeouts())
        assert settings.chain_time_budget() < settings.check_timeout_seconds

    def test_headers(self):
        headers = MonitorSettings(_env_file=None).get_headers()
        assert headers["User-Agent"].startswith("Mozilla/5.0")
        assert "ja" in headers["Accept-Language"]


class TestMonitorLogger:
    """Test cases for MonitorLogger."""

    def test_check_events(self):
        with capture_logs() as logs:
            monitor_logger = MonitorLogger(logger=structlog.get_logger("test"))
            monitor_logger.log_check_complete("target-1", "http", True, 0.12345, has_new_content=True)
            monitor_logger.log_check_complete("target-1", "http", False, 1.0)
            monitor_logger.log_error("boom", url="https://example.com", classification="network")

        assert logs[0]["event"] == "Check completed"
        assert logs[0]["log_level"] == "info"
        assert logs[0]["elapsed_seconds"] == 0.123
        assert logs[1]["log_level"] == "warning"
        assert logs[2]["classification"] == "network"

    def test_null_logger_is_silent(self):
        logger = null_logger().bind(component="test")
        assert logger.error("ignored") is None
