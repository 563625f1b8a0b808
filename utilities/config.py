"""
Configuration management using environment variables.
Handles all monitor settings with proper validation and defaults.
"""

from typing import List, Optional
from pathlib import Path

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# Share of check_timeout_seconds available to the fetch chain
CHAIN_BUDGET_RATIO = 0.9


class MonitorSettings(BaseSettings):
    """
    Configuration class for the listing monitor.
    Uses pydantic BaseSettings for environment variable management.
    """

    # MongoDB Configuration
    mongodb_url: Optional[str] = Field(default=None)
    mongodb_database: str = Field(default="listing_watch")
    mongodb_collection: str = Field(default="targets")

    # Monitored targets
    monitoring_urls: str = Field(default="", description="Comma-separated list of URLs")
    default_selector: Optional[str] = Field(default=None)

    # Scheduling
    poll_interval_seconds: float = Field(default=300.0)
    tick_interval_seconds: float = Field(default=5.0)
    check_timeout_seconds: float = Field(default=180.0)
    max_concurrent_checks: int = Field(default=3)
    stop_grace_period_seconds: float = Field(default=30.0)
    report_interval_seconds: float = Field(default=3600.0)
    target_refresh_interval_seconds: Optional[float] = Field(default=None)
    suppress_low_confidence: bool = Field(default=False)
    failure_backoff_seconds: float = Field(default=30.0)

    # Retry configuration
    max_retries: int = Field(default=3)
    retry_base_delay: float = Field(default=2.0)
    retry_max_delay: float = Field(default=30.0)
    retry_backoff_multiplier: float = Field(default=2.0)
    retry_jitter: float = Field(default=0.0)

    # Fetching
    request_timeout: int = Field(default=30)
    rate_limit_per_second: float = Field(default=0.5)
    browser_pool_size: int = Field(default=2)
    browser_headless: bool = Field(default=True)
    enable_dom_fallback: bool = Field(default=True)
    enable_browser_fallback: bool = Field(default=True)

    # Telegram
    telegram_bot_token: Optional[str] = Field(default=None)
    telegram_chat_id: Optional[str] = Field(default=None)

    # Alerting
    alert_cooldown_minutes: int = Field(default=30)
    max_alerts_per_hour: int = Field(default=20)

    # Operating hours
    operating_hours_enabled: bool = Field(default=False)
    operating_start_hour: int = Field(default=6, ge=0, le=23)
    operating_end_hour: int = Field(default=22, ge=1, le=24)
    timezone: str = Field(default="Asia/Tokyo")

    # Circuit breaker
    circuit_breaker_enabled: bool = Field(default=True)
    circuit_max_consecutive_errors: int = Field(default=10)
    circuit_error_rate_threshold: float = Field(default=0.8)
    circuit_window_seconds: float = Field(default=3600.0)
    circuit_recovery_seconds: float = Field(default=1800.0)

    # API
    api_host: str = Field(default="0.0.0.0")
    api_port: int = Field(default=8000)

    # Logging Configuration
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json")
    log_file: Optional[str] = Field(default="logs/monitor.log")

    # Development/Testing
    debug: bool = Field(default=False)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator('max_concurrent_checks')
    @classmethod
    def validate_concurrency(cls, v):
        """Ensure the concurrency limit is reasonable."""
        if v < 1 or v > 100:
            raise ValueError('max_concurrent_checks must be between 1 and 100')
        return v

    @field_validator('request_timeout')
    @classmethod
    def validate_timeout(cls, v):
        """Ensure timeout is reasonable."""
        if v < 5 or v > 300:
            raise ValueError('request_timeout must be between 5 and 300 seconds')
        return v

    @field_validator('max_retries')
    @classmethod
    def validate_retry_attempts(cls, v):
        """Ensure retry attempts is reasonable."""
        if v < 0 or v > 10:
            raise ValueError('max_retries must be between 0 and 10')
        return v

    @field_validator('poll_interval_seconds', 'tick_interval_seconds', 'check_timeout_seconds', 'failure_backoff_seconds')
    @classmethod
    def validate_positive_interval(cls, v):
        if v <= 0:
            raise ValueError('intervals must be positive')
        return v

    @field_validator('retry_jitter', 'circuit_error_rate_threshold')
    @classmethod
    def validate_ratio(cls, v):
        if v < 0 or v > 1:
            raise ValueError('value must be between 0 and 1')
        return v

    @model_validator(mode='after')
    def validate_check_timeout_covers_chain(self):
        """Ensure one attempt of every enabled strategy fits inside a check."""
        needed = sum(self.strategy_timeouts())
        if self.chain_time_budget() < needed:
            raise ValueError(
                f'check_timeout_seconds must be at least {needed / CHAIN_BUDGET_RATIO:.0f}s '
                f'to give each enabled fetch strategy one full attempt'
            )
        return self

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v):
        """Ensure log level is valid."""
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in valid_levels:
            raise ValueError(f'log_level must be one of: {valid_levels}')
        return v.upper()

    @field_validator('log_format')
    @classmethod
    def validate_log_format(cls, v):
        """Ensure log format is valid."""
        valid_formats = ['json', 'console']
        if v.lower() not in valid_formats:
            raise ValueError(f'log_format must be one of: {valid_formats}')
        return v.lower()

    def get_monitoring_urls(self) -> List[str]:
        """Split MONITORING_URLS into a clean list."""
        return [url.strip() for url in self.monitoring_urls.split(',') if url.strip()]

    def get_log_file_path(self) -> Optional[Path]:
        """Get log file path as Path object."""
        if self.log_file:
            return Path(self.log_file)
        return None

    def strategy_timeouts(self) -> List[float]:
        """Single-attempt timeout of each enabled fetch strategy, in escalation order."""
        timeouts = [float(self.request_timeout)]
        if self.enable_dom_fallback:
            timeouts.append(float(self.request_timeout))
        if self.enable_browser_fallback:
            timeouts.append(float(self.request_timeout * 2))
        return timeouts

    def chain_time_budget(self) -> float:
        return self.check_timeout_seconds * CHAIN_BUDGET_RATIO

    def telegram_enabled(self) -> bool:
        return bool(self.telegram_bot_token and self.telegram_chat_id)

    def get_user_agent(self) -> str:
        """Get user agent string for requests."""
        return (
            "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) "
            "AppleWebKit/537.36 (KHTML, like Gecko) "
            "Chrome/127.0.0.0 Safari/537.36"
        )

    def get_headers(self) -> dict:
        """Get default headers for HTTP requests."""
        return {
            "User-Agent": self.get_user_agent(),
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
            "Accept-Language": "ja,en-US;q=0.9,en;q=0.8",
            "Accept-Encoding": "gzip, deflate",
            "Connection": "keep-alive",
            "Upgrade-Insecure-Requests": "1",
        }


def get_settings() -> MonitorSettings:
    """Build settings from the environment and `.env`."""
    return MonitorSettings()
