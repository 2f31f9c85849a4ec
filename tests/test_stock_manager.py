"""
Tests for admin stock management and settings validation.
"""
import json

import pytest
from pydantic import ValidationError
from redis.exceptions import ConnectionError as RedisConnectionError

from storebot.config import Settings
from storebot.core.errors import ConflictError
from storebot.core.stock_manager import StockManager
from storebot.database import Product


@pytest.fixture
def stock_manager(stock_notifier, product_cache, session_factory) -> StockManager:
    return StockManager(notifier=stock_notifier, cache=product_cache, session_factory=session_factory)


class TestStockManager:
    """Test suite for StockManager."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_update_publishes_and_invalidates(self, stock_manager, seed, mock_redis) -> None:
        product_id = await seed.product(quantity=2)

        change = await stock_manager.update_stock(product_id, 6, admin_id=4)

        assert change.previous_quantity == 2
        assert change.new_quantity == 6
        payload = json.loads(mock_redis.publish.await_args.args[1])
        assert payload["productId"] == product_id
        assert payload["actorId"] == 4
        assert mock_redis.delete.await_count == 4

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_redis_outage_does_not_fail_update(
        self, stock_manager, session_factory, seed, mock_redis
    ) -> None:
        mock_redis.publish.side_effect = RedisConnectionError("redis down")
        mock_redis.delete.side_effect = RedisConnectionError("redis down")
        product_id = await seed.product(quantity=2)

        await stock_manager.update_stock(product_id, 0, admin_id=4)

        info = await stock_manager.get_stock_info(product_id)
        assert info.current_quantity == 0
        assert info.availability_status == "out_of_stock"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_negative_update_publishes_nothing(self, stock_manager, seed, mock_redis) -> None:
        product_id = await seed.product(quantity=2)

        with pytest.raises(ConflictError):
            await stock_manager.update_stock(product_id, -3, admin_id=4)

        mock_redis.publish.assert_not_awaited()

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_initialize_stock(self, stock_manager, session_factory) -> None:
        async with session_factory() as db:
            async with db.begin():
                product = Product(name="Disney+", price=30000, stock_quantity=0)
                db.add(product)
            product_id = product.id

        info = await stock_manager.initialize_stock(product_id, 5, admin_id=1)
        history = await stock_manager.get_history(product_id)

        assert info.current_quantity == 5
        assert info.availability_status == "available"
        assert [entry.reason for entry in history] == ["initial"]
        assert history[0].actor_id == 1


class TestSettings:
    """Test suite for settings validation."""

    @pytest.mark.unit
    @pytest.mark.parametrize("timeout", [0, 1.0, 2.5])
    def test_publish_timeout_must_be_sub_second(self, timeout: float) -> None:
        with pytest.raises(ValidationError):
            Settings(stock_publish_timeout=timeout)

    @pytest.mark.unit
    def test_defaults(self) -> None:
        settings = Settings()

        assert settings.stock_publish_timeout == 0.5
        assert settings.stock_update_channel == "stock:updated"
