"""
Models for monitoring and change detection.

This module defines Pydantic models for:
- Monitored targets and their durable state
- Diff results and confidence levels
- Error reports sent to notification sinks
- Per-target and global statistics
- Scheduler and alert configuration
"""

import hashlib
from datetime import datetime
from enum import Enum
from typing import Optional
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator

from fetcher.errors import ErrorClassification
from fetcher.models import FetchMethod


def make_target_id(url: str) -> str:
    """Stable target id derived from the URL."""
    return f"target_{hashlib.md5(url.encode()).hexdigest()[:16]}"


class Confidence(str, Enum):
    """How much a diff result can be trusted."""
    VERY_HIGH = "very_high"
    HIGH = "high"
    LOW = "low"


class MonitoredTarget(BaseModel):
    """A URL watched for new listings, plus its last-known state."""
    id: str = Field(..., description="Unique target identifier")
    url: str = Field(..., description="Listing page URL")
    name: str = Field(default="", description="Display name")
    owner_id: Optional[str] = Field(default=None, description="Owning subscriber")
    selector: Optional[str] = Field(default=None, description="CSS selector for listing items")

    is_active: bool = Field(default=True)
    is_paused: bool = Field(default=False)

    # Last-known state
    last_fingerprint: Optional[str] = Field(default=None)
    last_checked_at: Optional[datetime] = Field(default=None)
    last_new_listing_at: Optional[datetime] = Field(default=None)

    # Counters
    new_listings_count: int = Field(default=0, ge=0)
    total_checks: int = Field(default=0, ge=0)
    error_count: int = Field(default=0, ge=0)
    consecutive_failures: int = Field(default=0, ge=0)

    @field_validator('url')
    @classmethod
    def validate_url(cls, v):
        """Only absolute http(s) URLs can be monitored."""
        parsed = urlparse(v)
        if parsed.scheme not in ('http', 'https') or not parsed.netloc:
            raise ValueError(f'url must be an absolute http(s) URL: {v}')
        return v

    @property
    def monitoring_enabled(self) -> bool:
        return self.is_active and not self.is_paused

    @classmethod
    def from_url(cls, url: str, selector: Optional[str] = None, **kwargs) -> "MonitoredTarget":
        """Create a target whose id is derived from its URL."""
        return cls(id=make_target_id(url), url=url, name=kwargs.pop("name", url), selector=selector, **kwargs)


class DiffResult(BaseModel):
    """Outcome of comparing two fingerprints."""
    model_config = ConfigDict(frozen=True)

    has_new_content: bool
    confidence: Confidence
    previous_fingerprint: Optional[str] = None
    new_fingerprint: Optional[str] = None
    method: FetchMethod = FetchMethod.HTTP


class ErrorReport(BaseModel):
    """Structured failure event for notification sinks."""
    model_config = ConfigDict(frozen=True)

    classification: ErrorClassification
    message: str
    attempts: int = 0
    consecutive_failures: int = 0
    elapsed_seconds: float = 0.0
    method: Optional[FetchMethod] = None

    @property
    def severity(self) -> str:
        """Detail level grows with repeated failures."""
        if self.classification == ErrorClassification.FATAL_CONFIG or self.consecutive_failures >= 10:
            return "critical"
        if self.consecutive_failures >= 3:
            return "high"
        return "low"


class TargetStatistics(BaseModel):
    """Per-target execution numbers."""
    target_id: str
    total_checks: int = 0
    error_count: int = 0
    new_listings_count: int = 0
    consecutive_failures: int = 0
    success_rate: float = 100.0
    average_execution_time: float = 0.0
    last_checked_at: Optional[datetime] = None
    last_new_listing_at: Optional[datetime] = None


class CycleStatistics(BaseModel):
    """Global execution numbers derived from the tracker counters."""
    total_checks: int = 0
    new_property_detections: int = 0
    error_count: int = 0
    last_check_at: Optional[datetime] = None
    last_new_property_at: Optional[datetime] = None
    average_execution_time: float = 0.0
    success_rate: float = 100.0
    monitored_targets: int = 0
    started_at: Optional[datetime] = None
    uptime_seconds: float = 0.0

    @property
    def error_rate(self) -> float:
        return round(100.0 - self.success_rate, 2)


class AlertConfig(BaseModel):
    """Configuration for error alert rate limiting."""
    enabled: bool = Field(default=True)
    max_alerts_per_hour: int = Field(default=20, ge=1)
    alert_cooldown_minutes: int = Field(default=30, ge=0)


class MonitorConfig(BaseModel):
    """Configuration for the monitoring scheduler."""
    poll_interval_seconds: float = Field(default=300.0, gt=0)
    tick_interval_seconds: float = Field(default=5.0, gt=0)
    check_timeout_seconds: float = Field(default=180.0, gt=0)
    max_concurrent_checks: int = Field(default=3, ge=1, le=100)
    stop_grace_period_seconds: float = Field(default=30.0, ge=0)
    report_interval_seconds: Optional[float] = Field(default=3600.0, gt=0)
    target_refresh_interval_seconds: Optional[float] = Field(default=None, gt=0)
    suppress_low_confidence: bool = Field(default=False)

    # Backoff after failed checks
    failure_backoff_base_seconds: float = Field(default=30.0, gt=0)
    failure_backoff_multiplier: float = Field(default=2.0, ge=1)

    alert_config: AlertConfig = Field(default_factory=AlertConfig)

    @classmethod
    def from_settings(cls, settings) -> "MonitorConfig":
        return cls(
            poll_interval_seconds=settings.poll_interval_seconds,
            tick_interval_seconds=settings.tick_interval_seconds,
            check_timeout_seconds=settings.check_timeout_seconds,
            max_concurrent_checks=settings.max_concurrent_checks,
            stop_grace_period_seconds=settings.stop_grace_period_seconds,
            report_interval_seconds=settings.report_interval_seconds,
            target_refresh_interval_seconds=settings.target_refresh_interval_seconds,
            suppress_low_confidence=settings.suppress_low_confidence,
            failure_backoff_base_seconds=settings.failure_backoff_seconds,
            failure_backoff_multiplier=settings.retry_backoff_multiplier,
            alert_config=AlertConfig(
                max_alerts_per_hour=settings.max_alerts_per_hour,
                alert_cooldown_minutes=settings.alert_cooldown_minutes,
            ),
        )
