"""
Catalog synchronizer.

Listens for stock update events and keeps the catalog in line with the
ledger: cached product entries are dropped and the product's stock mirror
and availability status are re-derived from the database.
"""
from typing import Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storebot.core.side_effects import run_best_effort
from storebot.core.stock_ledger import lock_ledger_row, sync_product_mirror
from storebot.database import StockLedger, get_session_factory
from storebot.monitoring.metrics import metrics
from storebot.realtime.events import StockUpdateEvent
from storebot.realtime.product_cache import ProductCache
from storebot.realtime.stock_notifier import StockUpdateNotifier, StockUpdateSubscription

logger = structlog.get_logger(__name__)


class CatalogSync:
    """Applies stock update events to the product catalog."""

    def __init__(
        self,
        notifier: Optional[StockUpdateNotifier] = None,
        cache: Optional[ProductCache] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    ):
        self.notifier = notifier or StockUpdateNotifier()
        self.cache = cache or ProductCache(session_factory=session_factory)
        self._session_factory = session_factory
        self.subscription: Optional[StockUpdateSubscription] = None

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory or get_session_factory()

    @property
    def listening(self) -> bool:
        return self.subscription is not None and self.subscription.active

    async def _sync_product(self, db: AsyncSession, product_id: int, fallback_quantity: int) -> bool:
        # Ledger row lock first, same order as every ledger writer
        ledger = await lock_ledger_row(db, product_id)
        quantity = ledger.current_quantity if ledger is not None else fallback_quantity

        product, flipped = await sync_product_mirror(db, product_id, quantity)
        if product is None:
            logger.warning("catalog_sync_unknown_product", product_id=product_id)
        return flipped

    async def handle_stock_update(self, event: StockUpdateEvent) -> bool:
        """
        Apply one stock update event.

        The database is re-read rather than trusting the event's quantity,
        since events may arrive out of order.

        Returns:
            bool: Whether the product's availability status flipped
        """
        await run_best_effort(
            "product_cache_invalidate",
            self.cache.invalidate_product(event.product_id),
            product_id=event.product_id,
        )

        try:
            async with self.session_factory() as db:
                async with db.begin():
                    flipped = await self._sync_product(db, event.product_id, event.new_quantity)
        except Exception:
            metrics.record_catalog_sync("failed")
            raise

        metrics.record_catalog_sync("flipped" if flipped else "synced")
        logger.info(
            "catalog_synced",
            product_id=event.product_id,
            new_quantity=event.new_quantity,
            flipped=flipped,
        )
        return flipped

    async def sync_catalog(self) -> int:
        """
        Re-derive the stock mirror and status of every product with a ledger row.

        Returns:
            int: Number of products whose availability flipped
        """
        flipped_count = 0
        async with self.session_factory() as db:
            async with db.begin():
                product_ids = (
                    await db.execute(select(StockLedger.product_id).order_by(StockLedger.product_id))
                ).scalars().all()
                for product_id in product_ids:
                    if await self._sync_product(db, product_id, 0):
                        flipped_count += 1

        logger.info("catalog_full_sync_completed", products=len(product_ids), flipped=flipped_count)
        return flipped_count

    def start_listening(self) -> StockUpdateSubscription:
        """Subscribe to stock updates. A second call returns the live subscription."""
        if self.subscription is None or not self.subscription.active:
            self.subscription = self.notifier.subscribe_to_updates(self.handle_stock_update)
            logger.info("catalog_sync_listening")
        return self.subscription

    async def stop_listening(self) -> None:
        if self.subscription is not None:
            await self.subscription.stop()
            self.subscription = None
            logger.info("catalog_sync_stopped")
