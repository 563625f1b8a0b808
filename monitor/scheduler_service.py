"""
Main scheduler service for listing change detection.

This module provides:
- Per-target polling driven by a clock ticker
- Bounded concurrency with at most one in-flight check per target
- Per-check timeouts, failure backoff and graceful shutdown
- Diffing, statistics, persistence and notification for every check
- Periodic statistics reports, target refresh, operating hours and circuit breaking
"""

import asyncio
import math
from enum import Enum
from typing import Dict, List, Optional, Set, Tuple
from urllib.parse import urlparse

import structlog

from fetcher.errors import ErrorClassification, FatalConfigError
from fetcher.hashing import ContentHasher
from fetcher.models import FetchMethod, ScrapeOutcome
from monitor.alerting import NotificationSink
from monitor.circuit_breaker import TargetCircuitBreakers
from monitor.clock import Clock
from monitor.diff import DiffDetector
from monitor.models import (
    Confidence,
    CycleStatistics,
    DiffResult,
    ErrorReport,
    MonitorConfig,
    MonitoredTarget,
)
from monitor.operating_hours import OperatingHours
from monitor.statistics import StatisticsTracker
from storage.base import TargetStore
from utilities.logger import MonitorLogger

logger = structlog.get_logger(__name__)


class TargetState(str, Enum):
    """Lifecycle of a single target inside the scheduler."""
    IDLE = "idle"
    CHECKING = "checking"
    NOTIFY_PENDING = "notify_pending"
    FAILED = "failed"
    BACKOFF_WAIT = "backoff_wait"


class SchedulerState(str, Enum):
    """Lifecycle of the scheduler itself."""
    STOPPED = "stopped"
    RUNNING = "running"
    STOPPING = "stopping"


class MonitoringScheduler:
    """Polls every enabled target on its own cadence and reports new listings."""

    def __init__(
        self,
        config: MonitorConfig,
        store: TargetStore,
        chain,
        notifier: NotificationSink,
        diff_detector: Optional[DiffDetector] = None,
        statistics: Optional[StatisticsTracker] = None,
        clock: Optional[Clock] = None,
        circuit_breakers: Optional[TargetCircuitBreakers] = None,
        operating_hours: Optional[OperatingHours] = None,
        logger=None,
    ):
        """
        Initialize the scheduler.

        Args:
            config: Scheduler configuration
            store: Target persistence
            chain: Fetch chain with async fetch(target) and close()
            notifier: Notification sink
            diff_detector: Fingerprint comparison
            statistics: Statistics tracker
            clock: Time source driving the ticker
            circuit_breakers: Optional per-target breakers pausing targets that keep failing
            operating_hours: Optional daily operating window
            logger: structlog logger
        """
        self.config = config
        self.store = store
        self.chain = chain
        self.notifier = notifier
        self.clock = clock or Clock()
        self.diff_detector = diff_detector or DiffDetector(logger=logger)
        self.statistics = statistics or StatisticsTracker(clock=self.clock, logger=logger)
        self.circuit_breakers = circuit_breakers
        self.operating_hours = operating_hours
        self.logger = (logger or structlog.get_logger(__name__)).bind(component="monitoring_scheduler")
        self.monitor_logger = MonitorLogger(logger=self.logger)

        self.state = SchedulerState.STOPPED
        self.targets: Dict[str, MonitoredTarget] = {}
        self.target_states: Dict[str, TargetState] = {}
        self._next_due: Dict[str, float] = {}
        self._in_flight: Dict[str, asyncio.Task] = {}
        self._pending_low_confidence: Dict[str, DiffResult] = {}
        self._invalid_targets: Set[str] = set()
        self._background: Set[asyncio.Task] = set()
        self._loop_task: Optional[asyncio.Task] = None
        self._last_report_at: Optional[float] = None
        self._last_refresh_at: Optional[float] = None
        self._closed = False

    @property
    def in_flight_count(self) -> int:
        return len(self._in_flight)

    def is_in_flight(self, target_id: str) -> bool:
        return target_id in self._in_flight

    def next_due(self, target_id: str) -> Optional[float]:
        return self._next_due.get(target_id)

    # Target loading

    @staticmethod
    def validate_target(target: MonitoredTarget) -> None:
        """
        Check that a target can be fetched at all.

        Raises:
            FatalConfigError: URL or selector is unusable
        """
        parsed = urlparse(target.url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise FatalConfigError(f"Invalid target URL: {target.url}", context={"target_id": target.id})
        ContentHasher.validate_selector(target.selector)

    async def load_targets(self) -> int:
        """
        Load targets from the store and merge them into the schedule.

        Invalid targets are skipped and reported once. Targets that are
        currently being checked keep their in-memory state.

        Returns:
            Number of scheduled targets
        """
        loaded = await self.store.load_targets()
        now = self.clock.time()
        seen = set()

        for target in loaded:
            seen.add(target.id)
            try:
                self.validate_target(target)
            except FatalConfigError as e:
                self.targets.pop(target.id, None)
                self._next_due.pop(target.id, None)
                self.target_states[target.id] = TargetState.FAILED
                if target.id not in self._invalid_targets:
                    self._invalid_targets.add(target.id)
                    self.monitor_logger.log_error(e.message, url=target.url, classification=e.classification.value)
                    await self._notify_error(target, ErrorReport(
                        classification=e.classification,
                        message=e.message,
                    ))
                continue

            self._invalid_targets.discard(target.id)
            current = self.targets.get(target.id)
            if current is None:
                self.targets[target.id] = target
                self.target_states[target.id] = TargetState.IDLE
                self._next_due[target.id] = now
            elif target.id not in self._in_flight:
                for field in ("url", "name", "owner_id", "selector", "is_active", "is_paused"):
                    setattr(current, field, getattr(target, field))

        for target_id in list(self.targets):
            if target_id not in seen and target_id not in self._in_flight:
                self.targets.pop(target_id)
                self.target_states.pop(target_id, None)
                self._next_due.pop(target_id, None)
                if self.circuit_breakers is not None:
                    self.circuit_breakers.forget(target_id)

        self.statistics.set_monitored_targets(len(self.targets))
        self.logger.info(
            "Targets loaded",
            scheduled=len(self.targets),
            enabled=sum(1 for t in self.targets.values() if t.monitoring_enabled),
            invalid=len(self._invalid_targets)
        )
        return len(self.targets)

    # Lifecycle

    async def start(self) -> None:
        """Load targets and start the ticker loop."""
        if self.state != SchedulerState.STOPPED or self._closed:
            raise RuntimeError(f"Scheduler cannot start from state {self.state.value}")

        await self.load_targets()
        now = self.clock.time()
        self._last_report_at = now
        self._last_refresh_at = now
        self.state = SchedulerState.RUNNING
        self._loop_task = asyncio.create_task(self._run_loop(), name="monitor-ticker")

        self.logger.info(
            "Monitoring scheduler started",
            targets=len(self.targets),
            poll_interval_seconds=self.config.poll_interval_seconds,
            max_concurrent_checks=self.config.max_concurrent_checks
        )

    async def _run_loop(self) -> None:
        while self.state == SchedulerState.RUNNING:
            try:
                await self.tick()
            except Exception as e:
                self.logger.error("Scheduler tick failed", error=str(e))
            await self.clock.sleep(self.config.tick_interval_seconds)

    async def stop(self, grace_period: Optional[float] = None) -> None:
        """
        Stop the ticker and shut down in-flight checks.

        Args:
            grace_period: Seconds to wait for in-flight checks before
                cancelling them; the configured value when None
        """
        if self._closed:
            return
        grace = self.config.stop_grace_period_seconds if grace_period is None else grace_period
        self.state = SchedulerState.STOPPING
        self.logger.info("Stopping monitoring scheduler", in_flight=len(self._in_flight), grace_period=grace)

        if self._loop_task is not None:
            self._loop_task.cancel()
            await asyncio.gather(self._loop_task, return_exceptions=True)
            self._loop_task = None

        in_flight = list(self._in_flight.values())
        if in_flight:
            done, pending = await asyncio.wait(in_flight, timeout=grace)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
                self.logger.warning("Cancelled checks after grace period", cancelled=len(pending))

        background = list(self._background)
        for task in background:
            task.cancel()
        if background:
            await asyncio.gather(*background, return_exceptions=True)

        try:
            await self.chain.close()
        except Exception as e:
            self.logger.error("Failed to close fetch chain", error=str(e))
        try:
            await self.notifier.close()
        except Exception as e:
            self.logger.error("Failed to close notifier", error=str(e))

        self._closed = True
        self.state = SchedulerState.STOPPED
        self.logger.info("Monitoring scheduler stopped")

    # Dispatch

    def due_targets(self, now: Optional[float] = None) -> List[MonitoredTarget]:
        """Enabled, idle targets whose due time has passed and whose breaker is closed, earliest first."""
        now = self.clock.time() if now is None else now
        due = [
            target for target_id, target in self.targets.items()
            if target.monitoring_enabled
            and target_id not in self._in_flight
            and self._next_due.get(target_id, math.inf) <= now
            and (self.circuit_breakers is None or self.circuit_breakers.can_execute(target_id))
        ]
        due.sort(key=lambda t: self._next_due[t.id])
        return due

    def _can_dispatch(self) -> bool:
        if self._closed or self.state == SchedulerState.STOPPING:
            return False
        if self.operating_hours is not None:
            status = self.operating_hours.status()
            if not status.is_operating:
                self.logger.debug(
                    "Outside operating hours",
                    current_hour=status.current_hour,
                    next_change_hour=status.next_change_hour
                )
                return False
        return True

    async def tick(self) -> List[asyncio.Task]:
        """
        Run one scheduling round.

        Returns:
            Tasks dispatched in this round
        """
        now = self.clock.time()

        refresh = self.config.target_refresh_interval_seconds
        if refresh and self._last_refresh_at is not None and now - self._last_refresh_at >= refresh:
            self._last_refresh_at = now
            try:
                await self.load_targets()
            except Exception as e:
                self.logger.error("Failed to refresh targets", error=str(e))

        report = self.config.report_interval_seconds
        if report and self._last_report_at is not None and now - self._last_report_at >= report:
            self._last_report_at = now
            self._spawn(self.send_periodic_report())

        if not self._can_dispatch():
            return []

        capacity = self.config.max_concurrent_checks - len(self._in_flight)
        if capacity <= 0:
            return []

        return [self._dispatch(target) for target in self.due_targets(now)[:capacity]]

    async def run_due_checks(self) -> List[ScrapeOutcome]:
        """Dispatch every due target allowed by the concurrency limit and wait for them."""
        tasks = await self.tick()
        if not tasks:
            return []
        results = await asyncio.gather(*tasks, return_exceptions=True)
        return [result for result in results if isinstance(result, ScrapeOutcome)]

    def _dispatch(self, target: MonitoredTarget) -> asyncio.Task:
        self.target_states[target.id] = TargetState.CHECKING
        task = asyncio.create_task(self._run_check(target), name=f"check:{target.id}")
        self._in_flight[target.id] = task

        def _release(finished: asyncio.Task, target_id: str = target.id) -> None:
            if self._in_flight.get(target_id) is finished:
                del self._in_flight[target_id]

        task.add_done_callback(_release)
        return task

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def check_now(self, target_id: str) -> Optional[ScrapeOutcome]:
        """
        Check a target immediately, sharing any check already in flight.

        Args:
            target_id: Target to check

        Returns:
            Outcome of the check, None when the target is disabled

        Raises:
            KeyError: Unknown target
            RuntimeError: Scheduler already stopped
        """
        if self._closed or self.state == SchedulerState.STOPPING:
            raise RuntimeError("Scheduler is stopped")
        target = self.targets[target_id]

        task = self._in_flight.get(target_id)
        if task is None:
            if not target.monitoring_enabled:
                self.logger.info("Manual check skipped for disabled target", target_id=target_id)
                return None
            task = self._dispatch(target)
        return await asyncio.shield(task)

    async def pause_target(self, target_id: str) -> MonitoredTarget:
        """Pause monitoring of a target and persist the flag."""
        target = self.targets[target_id]
        target.is_paused = True
        await self._persist(target)
        self.logger.info("Target paused", target_id=target_id)
        return target

    async def resume_target(self, target_id: str) -> MonitoredTarget:
        """Resume monitoring of a target; it becomes due immediately."""
        target = self.targets[target_id]
        target.is_paused = False
        self._next_due[target_id] = self.clock.time()
        await self._persist(target)
        self.logger.info("Target resumed", target_id=target_id)
        return target

    # Check cycle

    async def _fetch(self, target: MonitoredTarget) -> ScrapeOutcome:
        timeout = self.config.check_timeout_seconds
        reached: List[FetchMethod] = []
        try:
            return await asyncio.wait_for(self.chain.fetch(target, on_strategy=reached.append), timeout=timeout)
        except asyncio.TimeoutError:
            method = reached[-1] if reached else self._first_method()
            return ScrapeOutcome.failed(
                method=method,
                error=ErrorClassification.TIMEOUT,
                error_message=f"Check exceeded {timeout}s during {method.value}",
                elapsed_seconds=timeout,
            )
        except FatalConfigError:
            raise
        except Exception as e:
            self.logger.error("Unexpected fetch failure", target_id=target.id, error=str(e))
            return ScrapeOutcome.failed(
                method=self._first_method(),
                error=ErrorClassification.UNKNOWN,
                error_message=str(e) or type(e).__name__,
            )

    def _first_method(self) -> FetchMethod:
        methods = getattr(self.chain, "methods", None)
        return methods[0] if methods else FetchMethod.HTTP

    async def _run_check(self, target: MonitoredTarget) -> ScrapeOutcome:
        self.monitor_logger.log_check_start(target.id, target.url)

        try:
            outcome = await self._fetch(target)
        except FatalConfigError as e:
            return await self._reject_target(target, e)

        diff = None
        notify = False
        update_baseline = False
        if outcome.success:
            diff = self.diff_detector.compare(target.last_fingerprint, outcome.fingerprint, outcome.method)
            diff, notify, update_baseline = self._resolve_confidence(target, diff)
        self.statistics.record(target, outcome, diff)

        if self.circuit_breakers is not None:
            if outcome.success:
                self.circuit_breakers.record_success(target.id)
            else:
                self.circuit_breakers.record_error(target.id, outcome.error_message or "")

        now = self.clock.time()
        if outcome.success:
            if update_baseline:
                target.last_fingerprint = outcome.fingerprint
            if notify:
                self.target_states[target.id] = TargetState.NOTIFY_PENDING
                await self._notify_new_content(target, diff)
            self.target_states[target.id] = TargetState.IDLE
            self._next_due[target.id] = now + self.config.poll_interval_seconds
        else:
            self.target_states[target.id] = TargetState.FAILED
            await self._notify_error(target, ErrorReport(
                classification=outcome.error or ErrorClassification.UNKNOWN,
                message=outcome.error_message or "fetch failed",
                attempts=outcome.attempts,
                consecutive_failures=target.consecutive_failures,
                elapsed_seconds=outcome.elapsed_seconds,
                method=outcome.method,
            ))
            self.target_states[target.id] = TargetState.BACKOFF_WAIT
            self._next_due[target.id] = now + self.failure_backoff(target.consecutive_failures)

        await self._persist(target)
        self.monitor_logger.log_check_complete(
            target.id,
            outcome.method.value,
            outcome.success,
            outcome.elapsed_seconds,
            has_new_content=notify,
        )
        return outcome

    def _resolve_confidence(self, target: MonitoredTarget, diff: DiffResult) -> Tuple[DiffResult, bool, bool]:
        """
        Apply the low-confidence corroboration rule.

        Returns:
            (diff to record, whether to notify, whether to move the baseline)
        """
        if not self.config.suppress_low_confidence:
            return diff, diff.has_new_content, True

        pending = self._pending_low_confidence.pop(target.id, None)
        if not diff.has_new_content:
            return diff, False, True

        if pending is not None and pending.new_fingerprint == diff.new_fingerprint:
            self.logger.info("Low-confidence change corroborated", target_id=target.id)
            return diff, True, True

        if diff.confidence == Confidence.LOW:
            self._pending_low_confidence[target.id] = diff
            self.logger.info("Holding low-confidence change for corroboration", target_id=target.id)
            return diff.model_copy(update={"has_new_content": False}), False, False

        return diff, True, True

    def failure_backoff(self, consecutive_failures: int) -> float:
        """Delay before the next check after a failure, capped at the poll interval."""
        exponent = max(consecutive_failures - 1, 0)
        delay = self.config.failure_backoff_base_seconds * (self.config.failure_backoff_multiplier ** exponent)
        return min(delay, self.config.poll_interval_seconds)

    async def _reject_target(self, target: MonitoredTarget, error: FatalConfigError) -> ScrapeOutcome:
        self.target_states[target.id] = TargetState.FAILED
        self._next_due[target.id] = math.inf
        self._invalid_targets.add(target.id)
        self.monitor_logger.log_error(error.message, url=target.url, classification=error.classification.value)
        await self._notify_error(target, ErrorReport(classification=error.classification, message=error.message))
        return ScrapeOutcome.failed(
            method=self._first_method(),
            error=error.classification,
            error_message=error.message,
        )

    # Collaborators

    async def _persist(self, target: MonitoredTarget) -> None:
        try:
            await self.store.save_target_state(target)
        except Exception as e:
            self.logger.error("Failed to persist target state", target_id=target.id, error=str(e))

    async def _notify_new_content(self, target: MonitoredTarget, diff: DiffResult) -> None:
        try:
            await self.notifier.notify_new_content(target, diff)
        except Exception as e:
            self.logger.error("Failed to send new content notification", target_id=target.id, error=str(e))

    async def _notify_error(self, target: MonitoredTarget, report: ErrorReport) -> None:
        try:
            await self.notifier.notify_error(target, report)
        except Exception as e:
            self.logger.error("Failed to send error notification", target_id=target.id, error=str(e))

    async def send_periodic_report(self) -> CycleStatistics:
        """Send the current statistics to the notifier."""
        snapshot = self.statistics.snapshot()
        self.logger.info(
            "Periodic report",
            total_checks=snapshot.total_checks,
            error_rate=snapshot.error_rate,
            new_property_detections=snapshot.new_property_detections,
            uptime_seconds=snapshot.uptime_seconds
        )
        try:
            await self.notifier.notify_periodic_report(snapshot)
        except Exception as e:
            self.logger.error("Failed to send periodic report", error=str(e))
        return snapshot

    def status(self) -> Dict[str, object]:
        """Scheduler status for health checks."""
        return {
            "state": self.state.value,
            "targets": len(self.targets),
            "enabled_targets": sum(1 for t in self.targets.values() if t.monitoring_enabled),
            "in_flight": len(self._in_flight),
            "invalid_targets": sorted(self._invalid_targets),
            "circuit_breakers": self.circuit_breakers.get_stats() if self.circuit_breakers else None,
            "operating": self.operating_hours.is_operating() if self.operating_hours else True,
        }
