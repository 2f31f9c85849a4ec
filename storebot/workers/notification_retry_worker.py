"""
Notification retry background worker.

Resends failed notifications every few minutes.
"""
import asyncio
import signal
from typing import Any, Optional

import structlog

from storebot.config import get_settings
from storebot.database import close_db
from storebot.monitoring.logging import bind_worker_context, setup_logging
from storebot.notifications.retry import NotificationRetrier

logger = structlog.get_logger(__name__)


async def run_retry_sweep(retrier: NotificationRetrier) -> int:
    """Run one sweep, logging instead of raising so the worker keeps going."""
    try:
        return await retrier.retry_failed_notifications()
    except Exception as e:
        logger.error("notification_retry_sweep_failed", error=str(e))
        return 0


async def start_notification_retry_worker(interval_seconds: Optional[int] = None) -> None:
    """
    Start the notification retry worker.

    Args:
        interval_seconds: Time between sweeps (defaults to notification_retry_interval)
    """
    setup_logging()
    bind_worker_context("notification_retry")
    settings = get_settings()
    interval = interval_seconds or settings.notification_retry_interval

    logger.info("notification_retry_worker_starting", interval_seconds=interval)

    running = True

    def signal_handler(sig: int, frame: Any) -> None:
        nonlocal running
        logger.info("notification_retry_worker_shutdown_signal_received", signal=sig)
        running = False

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    retrier = NotificationRetrier(settings=settings)
    try:
        while running:
            delivered = await run_retry_sweep(retrier)
            if delivered:
                logger.info("notification_retry_sweep_delivered", delivered=delivered)

            # Sleep in short steps so a shutdown signal is noticed quickly
            remaining = float(interval)
            while remaining > 0 and running:
                step = min(remaining, 1.0)
                await asyncio.sleep(step)
                remaining -= step
    finally:
        await close_db()
        logger.info("notification_retry_worker_stopped")


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(description="Notification retry worker")
    parser.add_argument(
        "--interval", type=int, default=None, help="Seconds between retry sweeps"
    )
    args = parser.parse_args()

    asyncio.run(start_notification_retry_worker(interval_seconds=args.interval))


if __name__ == "__main__":
    main()
