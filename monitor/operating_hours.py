"""
Daily operating window for monitoring.
"""

from dataclasses import dataclass
from typing import Optional
from zoneinfo import ZoneInfo

import structlog

from monitor.clock import Clock

logger = structlog.get_logger(__name__)


@dataclass
class OperatingHoursStatus:
    is_operating: bool
    current_hour: int
    next_change_hour: Optional[int]


class OperatingHours:
    """
    Allows checks only between start_hour (inclusive) and end_hour (exclusive)
    in the given timezone. A window with start > end wraps past midnight.
    """

    def __init__(
        self,
        enabled: bool = False,
        start_hour: int = 6,
        end_hour: int = 22,
        timezone: str = "Asia/Tokyo",
        clock: Optional[Clock] = None,
    ):
        if not 0 <= start_hour <= 23 or not 1 <= end_hour <= 24:
            raise ValueError("start_hour must be 0-23 and end_hour 1-24")
        self.enabled = enabled
        self.start_hour = start_hour
        self.end_hour = end_hour
        self.timezone = ZoneInfo(timezone)
        self.clock = clock or Clock()

    @classmethod
    def from_settings(cls, settings, clock: Optional[Clock] = None) -> "OperatingHours":
        return cls(
            enabled=settings.operating_hours_enabled,
            start_hour=settings.operating_start_hour,
            end_hour=settings.operating_end_hour,
            timezone=settings.timezone,
            clock=clock,
        )

    def _in_window(self, hour: int) -> bool:
        if self.start_hour < self.end_hour:
            return self.start_hour <= hour < self.end_hour
        return hour >= self.start_hour or hour < self.end_hour

    def status(self) -> OperatingHoursStatus:
        current_hour = self.clock.now().astimezone(self.timezone).hour
        if not self.enabled:
            return OperatingHoursStatus(is_operating=True, current_hour=current_hour, next_change_hour=None)

        is_operating = self._in_window(current_hour)
        next_change = self.end_hour % 24 if is_operating else self.start_hour
        return OperatingHoursStatus(is_operating=is_operating, current_hour=current_hour, next_change_hour=next_change)

    def is_operating(self) -> bool:
        return self.status().is_operating
