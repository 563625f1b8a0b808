"""
Notification sinks for monitoring events.

This module provides:
- NotificationSink interface (new content, errors, periodic reports)
- Log-based alerting; error alerts are rate limited per hour and per target
- Telegram Bot API alerting over httpx
- Fan-out to several sinks
"""

from collections import deque
from datetime import timedelta
from typing import Deque, Dict, List, Optional

import httpx
import structlog

from monitor.clock import Clock
from monitor.models import AlertConfig, CycleStatistics, DiffResult, ErrorReport, MonitoredTarget

logger = structlog.get_logger(__name__)

TELEGRAM_API_URL = "https://api.telegram.org/bot{token}/sendMessage"
MAX_MESSAGE_LENGTH = 4000


class NotificationSink:
    """Receives structured monitoring events."""

    async def notify_new_content(self, target: MonitoredTarget, diff: DiffResult) -> None:
        raise NotImplementedError

    async def notify_error(self, target: MonitoredTarget, report: ErrorReport) -> None:
        raise NotImplementedError

    async def notify_periodic_report(self, statistics: CycleStatistics) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class AlertRateLimiter:
    """Hourly limit on error alerts plus a per-target cooldown. New-content alerts are never limited."""

    def __init__(self, config: AlertConfig, clock: Optional[Clock] = None):
        self.config = config
        self.clock = clock or Clock()
        self.alert_history: Deque[float] = deque()
        self.last_alert_times: Dict[str, float] = {}

    def _prune(self, now: float) -> None:
        while self.alert_history and now - self.alert_history[0] >= 3600:
            self.alert_history.popleft()

    def allow(self, key: Optional[str] = None) -> bool:
        """Check if an alert is within the hourly limit and outside its cooldown."""
        now = self.clock.time()
        self._prune(now)
        if len(self.alert_history) >= self.config.max_alerts_per_hour:
            return False
        if key is not None and key in self.last_alert_times:
            cooldown = timedelta(minutes=self.config.alert_cooldown_minutes).total_seconds()
            if now - self.last_alert_times[key] < cooldown:
                return False
        return True

    def record(self, key: Optional[str] = None) -> None:
        now = self.clock.time()
        self.alert_history.append(now)
        if key is not None:
            self.last_alert_times[key] = now


def format_new_content(target: MonitoredTarget, diff: DiffResult) -> str:
    return (
        f"New listings detected\n"
        f"{target.name or target.url}\n"
        f"{target.url}\n"
        f"confidence: {diff.confidence.value}, method: {diff.method.value}"
    )


def format_error(target: MonitoredTarget, report: ErrorReport) -> str:
    lines = [
        f"Monitoring error ({report.severity})",
        f"{target.name or target.url}",
        f"{report.classification.value}: {report.message}",
    ]
    if report.severity != "low":
        lines.append(
            f"consecutive failures: {report.consecutive_failures}, "
            f"attempts: {report.attempts}, elapsed: {report.elapsed_seconds:.1f}s"
        )
    return "\n".join(lines)


def format_report(statistics: CycleStatistics) -> str:
    uptime_hours = statistics.uptime_seconds / 3600
    last_check = statistics.last_check_at.isoformat() if statistics.last_check_at else "never"
    return (
        f"Monitoring report\n"
        f"targets: {statistics.monitored_targets}\n"
        f"checks: {statistics.total_checks}, errors: {statistics.error_count} "
        f"(error rate {statistics.error_rate:.1f}%)\n"
        f"new listings: {statistics.new_property_detections}\n"
        f"average check time: {statistics.average_execution_time:.2f}s\n"
        f"last check: {last_check}\n"
        f"uptime: {uptime_hours:.1f}h"
    )


class LogNotifier(NotificationSink):
    """Writes alerts to the structured log."""

    def __init__(self, alert_config: Optional[AlertConfig] = None, clock: Optional[Clock] = None, logger=None):
        """
        Initialize the log notifier.

        Args:
            alert_config: Error alert rate limiting configuration
            clock: Time source for rate limiting
            logger: structlog logger
        """
        self.config = alert_config or AlertConfig()
        self.limiter = AlertRateLimiter(self.config, clock)
        self.logger = (logger or structlog.get_logger(__name__)).bind(component="log_notifier")

    async def notify_new_content(self, target: MonitoredTarget, diff: DiffResult) -> None:
        if not self.config.enabled:
            return
        self.logger.warning(
            "New listings detected",
            target_id=target.id,
            url=target.url,
            confidence=diff.confidence.value,
            method=diff.method.value,
            new_fingerprint=(diff.new_fingerprint or "")[:16]
        )

    async def notify_error(self, target: MonitoredTarget, report: ErrorReport) -> None:
        if not self.config.enabled:
            return
        key = f"error:{target.id}"
        if not self.limiter.allow(key):
            self.logger.debug("Error alert suppressed", target_id=target.id)
            return
        self.logger.error(
            "Monitoring error",
            target_id=target.id,
            url=target.url,
            severity=report.severity,
            **report.model_dump(mode="json")
        )
        self.limiter.record(key)

    async def notify_periodic_report(self, statistics: CycleStatistics) -> None:
        self.logger.info("Periodic monitoring report", error_rate=statistics.error_rate, **statistics.model_dump(mode="json"))


class TelegramNotifier(NotificationSink):
    """Sends alerts through the Telegram Bot API."""

    def __init__(
        self,
        bot_token: str,
        chat_id: str,
        alert_config: Optional[AlertConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
        clock: Optional[Clock] = None,
        timeout: float = 10,
        logger=None,
    ):
        """
        Initialize the Telegram notifier.

        Args:
            bot_token: Bot API token
            chat_id: Destination chat
            alert_config: Error alert rate limiting configuration
            client: Pre-built httpx client, mainly for tests
            clock: Time source for rate limiting
            timeout: Request timeout in seconds
            logger: structlog logger
        """
        if not bot_token or not chat_id:
            raise ValueError("bot_token and chat_id are required")
        self.bot_token = bot_token
        self.chat_id = chat_id
        self.config = alert_config or AlertConfig()
        self.limiter = AlertRateLimiter(self.config, clock)
        self._client = client
        self._owns_client = client is None
        self.timeout = timeout
        self.logger = (logger or structlog.get_logger(__name__)).bind(component="telegram_notifier")

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def send_message(self, text: str) -> None:
        """
        Post a message to the configured chat.

        Raises:
            httpx.HTTPError: The Bot API call failed
        """
        if len(text) > MAX_MESSAGE_LENGTH:
            text = text[:MAX_MESSAGE_LENGTH - 3] + "..."
        response = await self.client.post(
            TELEGRAM_API_URL.format(token=self.bot_token),
            json={"chat_id": self.chat_id, "text": text, "disable_web_page_preview": True},
        )
        response.raise_for_status()

    async def notify_new_content(self, target: MonitoredTarget, diff: DiffResult) -> None:
        if not self.config.enabled:
            return
        await self.send_message(format_new_content(target, diff))

    async def notify_error(self, target: MonitoredTarget, report: ErrorReport) -> None:
        if not self.config.enabled or report.severity == "low":
            return
        key = f"error:{target.id}"
        if not self.limiter.allow(key):
            return
        await self.send_message(format_error(target, report))
        self.limiter.record(key)

    async def notify_periodic_report(self, statistics: CycleStatistics) -> None:
        if not self.config.enabled:
            return
        await self.send_message(format_report(statistics))

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None


class CompositeNotifier(NotificationSink):
    """Forwards every event to each sink; one failing sink does not block the others."""

    def __init__(self, sinks: List[NotificationSink], logger=None):
        self.sinks = list(sinks)
        self.logger = (logger or structlog.get_logger(__name__)).bind(component="composite_notifier")

    async def _dispatch(self, method: str, *args) -> None:
        for sink in self.sinks:
            try:
                await getattr(sink, method)(*args)
            except Exception as e:
                self.logger.error(
                    "Notification sink failed",
                    sink=type(sink).__name__,
                    event=method,
                    error=str(e)
                )

    async def notify_new_content(self, target: MonitoredTarget, diff: DiffResult) -> None:
        await self._dispatch("notify_new_content", target, diff)

    async def notify_error(self, target: MonitoredTarget, report: ErrorReport) -> None:
        await self._dispatch("notify_error", target, report)

    async def notify_periodic_report(self, statistics: CycleStatistics) -> None:
        await self._dispatch("notify_periodic_report", statistics)

    async def close(self) -> None:
        for sink in self.sinks:
            await sink.close()
