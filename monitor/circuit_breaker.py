"""
Circuit breakers pausing targets whose checks keep failing.

This module provides:
- CircuitBreaker tripping on consecutive errors or a windowed error rate
- Time-based recovery through a half-open state
- TargetCircuitBreakers keeping one breaker per target
"""

from collections import deque
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

import structlog

from monitor.clock import Clock

logger = structlog.get_logger(__name__)

MIN_CHECKS_FOR_ERROR_RATE = 10


class CircuitState(str, Enum):
    """Breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Stops monitoring after repeated failures and retries after a recovery period."""

    def __init__(
        self,
        max_consecutive_errors: int = 10,
        error_rate_threshold: float = 0.8,
        window_seconds: float = 3600.0,
        recovery_seconds: float = 1800.0,
        auto_recovery: bool = True,
        clock: Optional[Clock] = None,
        logger=None,
    ):
        """
        Initialize the breaker.

        Args:
            max_consecutive_errors: Consecutive failures that trip the breaker
            error_rate_threshold: Failure ratio inside the window that trips it (0-1)
            window_seconds: Length of the error-rate window
            recovery_seconds: Time spent open before a half-open trial
            auto_recovery: Move to half-open automatically after recovery_seconds
            clock: Time source
            logger: structlog logger
        """
        self.max_consecutive_errors = max_consecutive_errors
        self.error_rate_threshold = error_rate_threshold
        self.window_seconds = window_seconds
        self.recovery_seconds = recovery_seconds
        self.auto_recovery = auto_recovery
        self.clock = clock or Clock()
        self.logger = (logger or structlog.get_logger(__name__)).bind(component="circuit_breaker")

        self.state = CircuitState.CLOSED
        self.consecutive_errors = 0
        self.opened_at: Optional[float] = None
        self.trip_reason: Optional[str] = None
        self._history: Deque[Tuple[float, bool]] = deque()

    @classmethod
    def from_settings(cls, settings, clock: Optional[Clock] = None, logger=None) -> "CircuitBreaker":
        return cls(
            max_consecutive_errors=settings.circuit_max_consecutive_errors,
            error_rate_threshold=settings.circuit_error_rate_threshold,
            window_seconds=settings.circuit_window_seconds,
            recovery_seconds=settings.circuit_recovery_seconds,
            clock=clock,
            logger=logger,
        )

    def _prune(self, now: float) -> None:
        window_start = now - self.window_seconds
        while self._history and self._history[0][0] < window_start:
            self._history.popleft()

    def error_rate(self) -> float:
        """Failure ratio inside the window; 0 until enough checks were seen."""
        self._prune(self.clock.time())
        if len(self._history) < MIN_CHECKS_FOR_ERROR_RATE:
            return 0.0
        failures = sum(1 for _, failed in self._history if failed)
        return failures / len(self._history)

    def record_success(self) -> None:
        now = self.clock.time()
        self._history.append((now, False))
        self._prune(now)
        self.consecutive_errors = 0
        if self.state == CircuitState.HALF_OPEN:
            self.state = CircuitState.CLOSED
            self.opened_at = None
            self.trip_reason = None
            self.logger.info("Circuit breaker recovered")

    def record_error(self, message: str = "") -> bool:
        """
        Record a failed check.

        Returns:
            True when this error tripped the breaker
        """
        now = self.clock.time()
        self._history.append((now, True))
        self._prune(now)
        self.consecutive_errors += 1

        if self.state == CircuitState.HALF_OPEN:
            return self._trip("failure during recovery trial", message)
        if self.consecutive_errors >= self.max_consecutive_errors:
            return self._trip("consecutive error limit reached", message)
        rate = self.error_rate()
        if rate >= self.error_rate_threshold:
            return self._trip(f"error rate {rate:.0%} over threshold", message)
        return False

    def _trip(self, reason: str, message: str) -> bool:
        if self.state == CircuitState.OPEN:
            return False
        self.state = CircuitState.OPEN
        self.opened_at = self.clock.time()
        self.trip_reason = reason
        self.logger.error(
            "Circuit breaker tripped",
            reason=reason,
            consecutive_errors=self.consecutive_errors,
            error_rate=round(self.error_rate(), 3),
            last_error=message,
            recovery_seconds=self.recovery_seconds
        )
        return True

    def can_execute(self) -> bool:
        """Whether checks may be dispatched now. Moves open to half-open once recovery time has passed."""
        if self.state == CircuitState.OPEN and self.auto_recovery and self.opened_at is not None:
            if self.clock.time() - self.opened_at >= self.recovery_seconds:
                self.state = CircuitState.HALF_OPEN
                self.consecutive_errors = 0
                self.logger.info("Circuit breaker attempting recovery")
        return self.state != CircuitState.OPEN

    def reset(self) -> None:
        self.state = CircuitState.CLOSED
        self.consecutive_errors = 0
        self.opened_at = None
        self.trip_reason = None
        self._history.clear()
        self.logger.info("Circuit breaker reset")

    def get_stats(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "consecutive_errors": self.consecutive_errors,
            "error_rate": round(self.error_rate(), 3),
            "recent_checks": len(self._history),
            "trip_reason": self.trip_reason,
        }


class TargetCircuitBreakers:
    """
    One breaker per target.

    A target whose breaker is open is skipped on its own; every other
    target keeps its polling cadence.
    """

    def __init__(self, factory: Callable[[str], CircuitBreaker]):
        """
        Args:
            factory: Builds the breaker for a target id on first use
        """
        self.factory = factory
        self._breakers: Dict[str, CircuitBreaker] = {}

    @classmethod
    def from_settings(cls, settings, clock: Optional[Clock] = None, logger=None) -> "TargetCircuitBreakers":
        base_logger = logger or structlog.get_logger(__name__)

        def factory(target_id: str) -> CircuitBreaker:
            return CircuitBreaker.from_settings(settings, clock=clock, logger=base_logger.bind(target_id=target_id))

        return cls(factory)

    def get(self, target_id: str) -> CircuitBreaker:
        breaker = self._breakers.get(target_id)
        if breaker is None:
            breaker = self._breakers[target_id] = self.factory(target_id)
        return breaker

    def can_execute(self, target_id: str) -> bool:
        breaker = self._breakers.get(target_id)
        return breaker is None or breaker.can_execute()

    def record_success(self, target_id: str) -> None:
        self.get(target_id).record_success()

    def record_error(self, target_id: str, message: str = "") -> bool:
        return self.get(target_id).record_error(message)

    def forget(self, target_id: str) -> None:
        self._breakers.pop(target_id, None)

    def open_targets(self) -> List[str]:
        return sorted(
            target_id for target_id, breaker in self._breakers.items()
            if breaker.state == CircuitState.OPEN
        )

    def get_stats(self) -> Dict[str, Any]:
        return {
            "open_targets": self.open_targets(),
            "targets": {target_id: breaker.get_stats() for target_id, breaker in sorted(self._breakers.items())},
        }
