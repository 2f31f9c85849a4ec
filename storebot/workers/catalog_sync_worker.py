"""
Catalog sync background worker.

Subscribes to stock updates and keeps product availability in line with
the ledger until SIGINT/SIGTERM.
"""
import asyncio
import signal
from typing import Any

import structlog

from storebot.database import close_db
from storebot.monitoring.logging import bind_worker_context, setup_logging
from storebot.realtime.catalog_sync import CatalogSync

logger = structlog.get_logger(__name__)


async def start_catalog_sync_worker(check_interval: float = 1.0) -> None:
    """
    Start the catalog sync worker.

    Runs a full catalog sync first to catch up on events missed while the
    worker was down, then listens until stopped or until the subscription
    gives up reconnecting.

    Args:
        check_interval: How often the shutdown flag is checked (seconds)
    """
    setup_logging()
    bind_worker_context("catalog_sync")
    logger.info("catalog_sync_worker_starting")

    running = True

    def signal_handler(sig: int, frame: Any) -> None:
        nonlocal running
        logger.info("catalog_sync_worker_shutdown_signal_received", signal=sig)
        running = False

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    sync = CatalogSync()
    try:
        flipped = await sync.sync_catalog()
        logger.info("catalog_sync_worker_caught_up", flipped=flipped)

        subscription = sync.start_listening()
        while running:
            await asyncio.sleep(check_interval)
            if subscription.gave_up:
                logger.error("catalog_sync_worker_subscription_lost")
                break
    except Exception as e:
        logger.error("catalog_sync_worker_error", error=str(e))
        raise
    finally:
        await sync.stop_listening()
        await sync.notifier.close()
        await sync.cache.close()
        await close_db()
        logger.info("catalog_sync_worker_stopped")


def main() -> None:
    asyncio.run(start_catalog_sync_worker())


if __name__ == "__main__":
    main()
