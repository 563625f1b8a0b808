"""
Top-level wiring of the monitoring system from MonitorSettings.
"""

from typing import List, Optional

import structlog
from pydantic import ValidationError

from fetcher.chain import FetchStrategyChain
from monitor.alerting import CompositeNotifier, LogNotifier, NotificationSink, TelegramNotifier
from monitor.circuit_breaker import TargetCircuitBreakers
from monitor.clock import Clock
from monitor.models import MonitorConfig, MonitoredTarget
from monitor.operating_hours import OperatingHours
from monitor.scheduler_service import MonitoringScheduler
from storage.base import InMemoryTargetStore, TargetStore
from storage.mongo_store import MongoTargetStore
from utilities.config import MonitorSettings

logger = structlog.get_logger(__name__)


def build_store(settings: MonitorSettings) -> TargetStore:
    """MongoDB store when a URL is configured, in-memory otherwise."""
    if settings.mongodb_url:
        return MongoTargetStore(settings.mongodb_url, settings.mongodb_database, settings.mongodb_collection)
    logger.warning("MONGODB_URL not set, target state will not survive restarts")
    return InMemoryTargetStore()


def build_notifier(settings: MonitorSettings, clock: Optional[Clock] = None) -> NotificationSink:
    """Log notifier, plus Telegram when a bot token and chat id are configured."""
    alert_config = MonitorConfig.from_settings(settings).alert_config
    sinks: List[NotificationSink] = [LogNotifier(alert_config, clock=clock)]
    if settings.telegram_enabled():
        sinks.append(TelegramNotifier(
            settings.telegram_bot_token,
            settings.telegram_chat_id,
            alert_config=alert_config,
            clock=clock,
        ))
    return CompositeNotifier(sinks)


async def seed_targets(store: TargetStore, settings: MonitorSettings) -> int:
    """
    Register the targets listed in MONITORING_URLS.

    Args:
        store: Connected target store
        settings: Monitor settings

    Returns:
        Number of targets upserted
    """
    count = 0
    for url in settings.get_monitoring_urls():
        try:
            target = MonitoredTarget.from_url(url, selector=settings.default_selector)
        except ValidationError as e:
            logger.error("Skipping invalid monitoring URL", url=url, error=str(e))
            continue
        await store.upsert_target(target)
        count += 1
    logger.info("Seeded targets from configuration", count=count)
    return count


def build_scheduler(
    settings: MonitorSettings,
    store: Optional[TargetStore] = None,
    notifier: Optional[NotificationSink] = None,
    clock: Optional[Clock] = None,
    chain=None,
    logger=None,
) -> MonitoringScheduler:
    """
    Compose the scheduler and its collaborators.

    Args:
        settings: Monitor settings
        store: Target store, built from settings when None
        notifier: Notification sink, built from settings when None
        clock: Time source shared by every component
        chain: Fetch chain, the standard HTTP/DOM/browser chain when None
        logger: structlog logger passed to every component

    Returns:
        MonitoringScheduler ready to start
    """
    clock = clock or Clock()
    circuit_breakers = None
    if settings.circuit_breaker_enabled:
        circuit_breakers = TargetCircuitBreakers.from_settings(settings, clock=clock, logger=logger)

    return MonitoringScheduler(
        config=MonitorConfig.from_settings(settings),
        store=store or build_store(settings),
        chain=chain or FetchStrategyChain.from_settings(settings, sleep=clock.sleep, logger=logger),
        notifier=notifier or build_notifier(settings, clock=clock),
        clock=clock,
        circuit_breakers=circuit_breakers,
        operating_hours=OperatingHours.from_settings(settings, clock=clock),
        logger=logger,
    )
