"""
Execution statistics for monitored targets.

This module provides:
- StatisticsTracker applying one atomic update per completed check
- Per-target and global success rates
- Snapshots for periodic reports and the status API
"""

import threading
from typing import Dict, Optional

import structlog

from fetcher.models import ScrapeOutcome
from monitor.clock import Clock
from monitor.models import CycleStatistics, DiffResult, MonitoredTarget, TargetStatistics

logger = structlog.get_logger(__name__)


def _success_rate(total_checks: int, error_count: int) -> float:
    if total_checks == 0:
        return 100.0
    return round((total_checks - error_count) / total_checks * 100, 2)


class StatisticsTracker:
    """Counters for checks, errors and detections, updated under a lock."""

    def __init__(self, clock: Optional[Clock] = None, logger=None):
        """
        Initialize the tracker.

        Args:
            clock: Time source for timestamps and uptime
            logger: structlog logger
        """
        self.clock = clock or Clock()
        self.logger = (logger or structlog.get_logger(__name__)).bind(component="statistics")
        self._lock = threading.Lock()

        self.started_at = self.clock.now()
        self._started_monotonic = self.clock.time()

        self.total_checks = 0
        self.error_count = 0
        self.new_property_detections = 0
        self.last_check_at = None
        self.last_new_property_at = None
        self._total_elapsed = 0.0
        self.monitored_targets = 0

        self._targets: Dict[str, TargetStatistics] = {}
        self._elapsed_by_target: Dict[str, float] = {}

    def set_monitored_targets(self, count: int) -> None:
        with self._lock:
            self.monitored_targets = count

    def record(self, target: MonitoredTarget, outcome: ScrapeOutcome, diff: Optional[DiffResult] = None) -> None:
        """
        Apply the result of one check to the target and the global counters.

        Args:
            target: Target that was checked; its counters are updated in place
            outcome: Fetch outcome
            diff: Diff result, None when the fetch failed
        """
        now = self.clock.now()
        has_new_content = bool(diff and diff.has_new_content)

        with self._lock:
            target.total_checks += 1
            target.last_checked_at = now
            if outcome.success:
                target.consecutive_failures = 0
            else:
                target.error_count += 1
                target.consecutive_failures += 1
            if has_new_content:
                target.new_listings_count += 1
                target.last_new_listing_at = now

            self.total_checks += 1
            self.last_check_at = now
            self._total_elapsed += outcome.elapsed_seconds
            if not outcome.success:
                self.error_count += 1
            if has_new_content:
                self.new_property_detections += 1
                self.last_new_property_at = now

            elapsed = self._elapsed_by_target.get(target.id, 0.0) + outcome.elapsed_seconds
            self._elapsed_by_target[target.id] = elapsed
            self._targets[target.id] = TargetStatistics(
                target_id=target.id,
                total_checks=target.total_checks,
                error_count=target.error_count,
                new_listings_count=target.new_listings_count,
                consecutive_failures=target.consecutive_failures,
                success_rate=_success_rate(target.total_checks, target.error_count),
                average_execution_time=round(elapsed / target.total_checks, 3),
                last_checked_at=target.last_checked_at,
                last_new_listing_at=target.last_new_listing_at,
            )

    def success_rate(self, target_id: Optional[str] = None) -> float:
        """
        Success rate as a percentage.

        Args:
            target_id: Restrict to one target, global when None

        Returns:
            100.0 when nothing was checked yet
        """
        with self._lock:
            if target_id is None:
                return _success_rate(self.total_checks, self.error_count)
            stats = self._targets.get(target_id)
            if stats is None:
                return 100.0
            return stats.success_rate

    def target_statistics(self, target_id: str) -> Optional[TargetStatistics]:
        with self._lock:
            stats = self._targets.get(target_id)
            return stats.model_copy() if stats is not None else None

    def snapshot(self) -> CycleStatistics:
        """Current global statistics."""
        with self._lock:
            average = self._total_elapsed / self.total_checks if self.total_checks else 0.0
            return CycleStatistics(
                total_checks=self.total_checks,
                new_property_detections=self.new_property_detections,
                error_count=self.error_count,
                last_check_at=self.last_check_at,
                last_new_property_at=self.last_new_property_at,
                average_execution_time=round(average, 3),
                success_rate=_success_rate(self.total_checks, self.error_count),
                monitored_targets=self.monitored_targets,
                started_at=self.started_at,
                uptime_seconds=round(self.clock.time() - self._started_monotonic, 3),
            )
