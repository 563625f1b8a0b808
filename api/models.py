"""
API models and schemas for the status API.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from fetcher.models import ScrapeOutcome
from monitor.models import CycleStatistics, MonitoredTarget, TargetStatistics


class TargetResponse(BaseModel):
    """Monitored target as exposed by the API."""
    id: str = Field(..., description="Unique target identifier")
    url: str = Field(..., description="Listing page URL")
    name: str = Field(..., description="Display name")
    owner_id: Optional[str] = Field(None, description="Owning subscriber")
    selector: Optional[str] = Field(None, description="CSS selector for listing items")
    is_active: bool
    is_paused: bool
    state: Optional[str] = Field(None, description="Scheduler state of the target")
    in_flight: bool = Field(default=False, description="Whether a check is running")
    last_checked_at: Optional[datetime] = None
    last_new_listing_at: Optional[datetime] = None
    new_listings_count: int = 0
    total_checks: int = 0
    error_count: int = 0
    consecutive_failures: int = 0
    statistics: Optional[TargetStatistics] = None

    @classmethod
    def from_target(
        cls,
        target: MonitoredTarget,
        state: Optional[str] = None,
        in_flight: bool = False,
        statistics: Optional[TargetStatistics] = None,
    ) -> "TargetResponse":
        data = target.model_dump(exclude={"last_fingerprint"})
        return cls(state=state, in_flight=in_flight, statistics=statistics, **data)


class TargetListResponse(BaseModel):
    """List of monitored targets."""
    targets: List[TargetResponse]
    total: int


class CheckResponse(BaseModel):
    """Result of a manual check."""
    target_id: str
    performed: bool = Field(..., description="False when the target is disabled")
    outcome: Optional[ScrapeOutcome] = None


class StatisticsResponse(BaseModel):
    """Global statistics with derived error rate."""
    statistics: CycleStatistics
    error_rate: float


class HealthResponse(BaseModel):
    """Health check response model."""
    status: str = Field(..., description="Overall service status")
    timestamp: datetime = Field(..., description="Check timestamp")
    version: str = Field(..., description="API version")
    scheduler: Dict[str, Any] = Field(default_factory=dict, description="Scheduler status")


class ErrorResponse(BaseModel):
    """Error response model."""
    error: str = Field(..., description="Error message")
    detail: Optional[str] = Field(None, description="Error details")
    status_code: int = Field(..., description="HTTP status code")
