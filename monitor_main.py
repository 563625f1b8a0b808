"""
Main entry point for the listing monitor.

Usage: python monitor_main.py [--once|--daemon]
"""

import asyncio
import signal
import sys
from pathlib import Path

# Add project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

import structlog
from utilities.logger import setup_logging
from utilities.config import get_settings
from monitor.assembly import build_scheduler, build_store, seed_targets


async def run_once(scheduler) -> int:
    """Check every enabled target once and print a summary."""
    await scheduler.load_targets()
    outcomes = []
    # Each round dispatches up to the concurrency limit
    while scheduler.due_targets():
        batch = await scheduler.run_due_checks()
        if not batch:
            break
        outcomes.extend(batch)
    snapshot = await scheduler.send_periodic_report()
    print("\n" + "=" * 60)
    print("Single monitoring cycle completed")
    print("=" * 60)
    print(f"Targets checked: {len(outcomes)}")
    print(f"Successful: {sum(1 for outcome in outcomes if outcome.success)}")
    print(f"New listings: {snapshot.new_property_detections}")
    print("=" * 60)
    return 0 if all(outcome.success for outcome in outcomes) else 1


async def run_daemon(scheduler) -> int:
    """Run until SIGINT or SIGTERM."""
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    await scheduler.start()
    await stop_event.wait()
    return 0


async def main(argv) -> int:
    """Main function to start the monitor."""
    settings = get_settings()
    setup_logging(
        log_level=settings.log_level,
        log_format=settings.log_format,
        log_file=settings.log_file,
        debug=settings.debug
    )
    logger = structlog.get_logger(__name__)

    mode = argv[1] if len(argv) > 1 else "--daemon"
    if mode not in ("--once", "--daemon"):
        print(f"Unknown argument: {mode}")
        print("Usage: python monitor_main.py [--once|--daemon]")
        return 2

    store = build_store(settings)
    scheduler = None
    try:
        await store.connect()
        await seed_targets(store, settings)
        scheduler = build_scheduler(settings, store=store)

        logger.info(
            "Monitor configured",
            mode=mode,
            poll_interval_seconds=settings.poll_interval_seconds,
            max_concurrent_checks=settings.max_concurrent_checks,
            telegram_enabled=settings.telegram_enabled()
        )

        if mode == "--once":
            return await run_once(scheduler)
        return await run_daemon(scheduler)

    except Exception as e:
        logger.error("Monitor failed", error=str(e))
        return 1
    finally:
        if scheduler is not None:
            await scheduler.stop()
        await store.disconnect()


def cli():
    sys.exit(asyncio.run(main(sys.argv)))


if __name__ == "__main__":
    cli()
