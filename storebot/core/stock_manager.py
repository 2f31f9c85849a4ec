"""
Admin-facing stock management.

Wraps the ledger's absolute set in its own transaction and, after commit,
broadcasts the change and invalidates cached product entries.
"""
import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storebot.core import stock_ledger
from storebot.core.records import StockChange, StockHistoryRecord, StockInfo
from storebot.core.side_effects import run_best_effort
from storebot.database import get_session_factory
from storebot.realtime.product_cache import ProductCache
from storebot.realtime.stock_notifier import StockUpdateNotifier

logger = structlog.get_logger(__name__)


class StockManager:
    """Stock updates and queries for admins and the query API."""

    def __init__(
        self,
        notifier: StockUpdateNotifier | None = None,
        cache: ProductCache | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ):
        self.notifier = notifier or StockUpdateNotifier()
        self.cache = cache or ProductCache(session_factory=session_factory)
        self._session_factory = session_factory

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory or get_session_factory()

    async def update_stock(self, product_id: int, new_quantity: int, admin_id: int) -> StockChange:
        """
        Set a product's stock as an admin restock.

        The caller has already authorized the admin. Publishing and cache
        invalidation happen after commit and cannot fail the update.

        Args:
            product_id: Product to restock
            new_quantity: New absolute quantity
            admin_id: Admin performing the update

        Returns:
            StockChange: Previous and new quantity

        Raises:
            ConflictError: If new_quantity is negative
            NotFoundError: If the product does not exist
        """
        change = await stock_ledger.update_quantity(
            product_id, new_quantity, admin_id, session_factory=self.session_factory
        )

        await run_best_effort(
            "stock_update_publish",
            self.notifier.notify_stock_update(
                product_id, change.previous_quantity, change.new_quantity, admin_id
            ),
            product_id=product_id,
        )
        await run_best_effort(
            "product_cache_invalidate",
            self.cache.invalidate_product(product_id),
            product_id=product_id,
        )
        return change

    async def initialize_stock(
        self, product_id: int, initial_quantity: int, admin_id: int | None = None
    ) -> StockInfo:
        """Create the ledger row for a newly created product."""
        async with self.session_factory() as db:
            async with db.begin():
                await stock_ledger.create_for_product(product_id, initial_quantity, db, admin_id)
            info = await stock_ledger.get_stock_info(product_id, db)

        await run_best_effort(
            "product_cache_invalidate",
            self.cache.invalidate_product(product_id),
            product_id=product_id,
        )
        return info

    async def get_stock_info(self, product_id: int) -> StockInfo:
        """
        Current, reserved and available stock.

        Raises:
            NotFoundError: If the product does not exist
        """
        async with self.session_factory() as db:
            return await stock_ledger.get_stock_info(product_id, db)

    async def get_history(self, product_id: int, limit: int = 50) -> list[StockHistoryRecord]:
        async with self.session_factory() as db:
            return await stock_ledger.get_history(product_id, db, limit)
