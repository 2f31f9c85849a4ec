"""
Read-through product cache in Redis.

Catalog readers go through get_product; the catalog synchronizer and the
stock manager invalidate entries after stock changes. Redis being down
only costs a database read.
"""
import redis.asyncio as aioredis
import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storebot.config import Settings, get_settings
from storebot.core.records import ProductSnapshot
from storebot.core.side_effects import SideEffectResult
from storebot.database import Product, get_session_factory

logger = structlog.get_logger(__name__)

PRODUCT_LIST_KEY = "products:list"
PRODUCT_CATALOG_KEY = "products:catalog"


def product_key(product_id: int) -> str:
    return f"product:{product_id}"


def product_details_key(product_id: int) -> str:
    return f"product:{product_id}:details"


class ProductCache:
    """Redis-backed product cache with TTL."""

    def __init__(
        self,
        redis_client: aioredis.Redis | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        settings: Settings | None = None,
    ):
        self.settings = settings or get_settings()
        self.redis_client = redis_client
        self._session_factory = session_factory

    def _ensure_redis(self) -> aioredis.Redis:
        if self.redis_client is None:
            self.redis_client = aioredis.from_url(
                self.settings.redis_url, encoding="utf-8", decode_responses=True
            )
        return self.redis_client

    async def invalidate_product(self, product_id: int) -> SideEffectResult:
        """
        Drop cached entries for a product and the catalog listings.

        Each key is deleted separately; a failing key is logged and the
        rest are still attempted.
        """
        keys = [
            product_key(product_id),
            product_details_key(product_id),
            PRODUCT_LIST_KEY,
            PRODUCT_CATALOG_KEY,
        ]
        failed: list[str] = []
        for key in keys:
            try:
                await self._ensure_redis().delete(key)
            except Exception as e:
                failed.append(key)
                logger.warning("cache_invalidation_failed", key=key, error=str(e))

        if failed:
            return SideEffectResult.failure(
                "product_cache_invalidate", f"failed keys: {', '.join(failed)}"
            )
        logger.debug("product_cache_invalidated", product_id=product_id)
        return SideEffectResult.success("product_cache_invalidate")

    async def get_product(self, product_id: int) -> ProductSnapshot | None:
        """
        Get a product, reading through the cache.

        Args:
            product_id: Product to load

        Returns:
            ProductSnapshot or None if the product does not exist
        """
        key = product_key(product_id)
        try:
            cached = await self._ensure_redis().get(key)
        except Exception as e:
            logger.warning("cache_read_failed", key=key, error=str(e))
            cached = None

        if cached is not None:
            return ProductSnapshot.model_validate_json(cached)

        session_factory = self._session_factory or get_session_factory()
        async with session_factory() as db:
            product = await db.get(Product, product_id)
            if product is None:
                return None
            snapshot = ProductSnapshot.model_validate(product)

        try:
            await self._ensure_redis().set(
                key, snapshot.model_dump_json(), ex=self.settings.product_cache_ttl
            )
        except Exception as e:
            logger.warning("cache_write_failed", key=key, error=str(e))
        return snapshot

    async def close(self) -> None:
        if self.redis_client is not None:
            await self.redis_client.aclose()
            self.redis_client = None
