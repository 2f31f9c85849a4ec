"""
Checkout timeout background worker.

Cancels pending orders nobody paid for and releases their stock
reservations.
"""
import asyncio
import signal
from datetime import timedelta
from typing import Any, Optional

import structlog

from storebot.config import get_settings
from storebot.core.orders import OrderService
from storebot.database import close_db
from storebot.monitoring.logging import bind_worker_context, setup_logging

logger = structlog.get_logger(__name__)


async def run_checkout_sweep(order_service: OrderService, max_age: timedelta) -> int:
    """Run one sweep, logging instead of raising so the worker keeps going."""
    try:
        return await order_service.expire_abandoned_orders(max_age)
    except Exception as e:
        logger.error("checkout_sweep_failed", error=str(e))
        return 0


async def start_checkout_timeout_worker(
    interval_seconds: Optional[int] = None,
    timeout_minutes: Optional[int] = None,
) -> None:
    """
    Start the checkout timeout worker.

    Args:
        interval_seconds: Time between sweeps (defaults to checkout_sweep_interval)
        timeout_minutes: Order age before cancellation (defaults to checkout_timeout_minutes)
    """
    setup_logging()
    bind_worker_context("checkout_timeout")
    settings = get_settings()
    interval = interval_seconds or settings.checkout_sweep_interval
    max_age = timedelta(minutes=timeout_minutes or settings.checkout_timeout_minutes)

    logger.info(
        "checkout_timeout_worker_starting",
        interval_seconds=interval,
        timeout_minutes=max_age.total_seconds() / 60,
    )

    running = True

    def signal_handler(sig: int, frame: Any) -> None:
        nonlocal running
        logger.info("checkout_timeout_worker_shutdown_signal_received", signal=sig)
        running = False

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    order_service = OrderService()
    try:
        while running:
            await run_checkout_sweep(order_service, max_age)

            remaining = float(interval)
            while remaining > 0 and running:
                step = min(remaining, 1.0)
                await asyncio.sleep(step)
                remaining -= step
    finally:
        await close_db()
        logger.info("checkout_timeout_worker_stopped")


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(description="Checkout timeout worker")
    parser.add_argument(
        "--interval", type=int, default=None, help="Seconds between sweeps"
    )
    parser.add_argument(
        "--timeout", type=int, default=None, help="Minutes before a pending order is cancelled"
    )
    args = parser.parse_args()

    asyncio.run(
        start_checkout_timeout_worker(interval_seconds=args.interval, timeout_minutes=args.timeout)
    )


if __name__ == "__main__":
    main()
