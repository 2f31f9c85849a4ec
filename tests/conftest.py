"""
Pytest configuration and fixtures.

Database tests run against TEST_DATABASE_URL when it is set (PostgreSQL)
and against a fresh SQLite file per test otherwise.
"""
import asyncio
import os
from decimal import Decimal
from typing import Any, AsyncGenerator, Dict, List, Optional
from unittest.mock import AsyncMock

# Settings are read at import time by the API module
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./storebot-test.db")
os.environ.setdefault("BOT_TOKEN", "123456:test-token")

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool

from storebot.config import Settings
from storebot.core import stock_ledger
from storebot.core.errors import TransientDeliveryFailure
from storebot.core.payments import PaymentService
from storebot.database import (
    Admin,
    AvailabilityStatus,
    Base,
    Customer,
    Product,
    create_engine_from_url,
    create_session_factory,
)
from storebot.notifications.admin_dispatcher import AdminNotificationDispatcher
from storebot.notifications.customer import CustomerNotifier
from storebot.notifications.read_status import InMemoryReadStatusStore
from storebot.notifications.transport import SentMessage
from storebot.realtime.product_cache import ProductCache
from storebot.realtime.stock_notifier import StockUpdateNotifier


class FakeSender:
    """In-memory chat transport that can fail or stall for chosen chats."""

    def __init__(self) -> None:
        self.sent: List[Dict[str, Any]] = []
        self.fail_for: set[int] = set()
        self.delay_for: Dict[int, float] = {}
        self._next_message_id = 1000

    async def send_message(
        self,
        chat_id: int,
        text: str,
        *,
        parse_mode: Optional[str] = None,
        reply_markup: Optional[Dict[str, Any]] = None,
    ) -> SentMessage:
        if chat_id in self.delay_for:
            await asyncio.sleep(self.delay_for[chat_id])
        if chat_id in self.fail_for:
            raise TransientDeliveryFailure(f"chat {chat_id} unreachable")
        self._next_message_id += 1
        self.sent.append(
            {
                "chat_id": chat_id,
                "text": text,
                "parse_mode": parse_mode,
                "reply_markup": reply_markup,
                "message_id": self._next_message_id,
            }
        )
        return SentMessage(chat_id=chat_id, message_id=self._next_message_id)

    def sent_to(self, chat_id: int) -> List[Dict[str, Any]]:
        return [message for message in self.sent if message["chat_id"] == chat_id]


class Seeder:
    """Creates catalog, customer and admin rows for tests."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory
        self._next_chat_id = 5000

    def _chat_id(self) -> int:
        self._next_chat_id += 1
        return self._next_chat_id

    async def product(
        self,
        quantity: int = 10,
        price: str = "50000",
        name: str = "Netflix Premium 1 Bulan",
        status: AvailabilityStatus = AvailabilityStatus.AVAILABLE,
        product_id: Optional[int] = None,
    ) -> int:
        async with self.session_factory() as db:
            async with db.begin():
                product = Product(
                    name=name,
                    description="Akun premium",
                    price=Decimal(price),
                    category="streaming",
                    stock_quantity=0,
                    availability_status=status.value,
                )
                if product_id is not None:
                    product.id = product_id
                db.add(product)
                await db.flush()
                await stock_ledger.create_for_product(product.id, quantity, db)
                return product.id

    async def customer(self, name: str = "Budi", username: Optional[str] = "budi") -> Customer:
        async with self.session_factory() as db:
            async with db.begin():
                customer = Customer(
                    telegram_user_id=self._chat_id(), name=name, username=username
                )
                db.add(customer)
            return customer

    async def admin(
        self, name: str = "Admin", preferences: Optional[Dict[str, Any]] = None
    ) -> Admin:
        async with self.session_factory() as db:
            async with db.begin():
                admin = Admin(
                    telegram_user_id=self._chat_id(),
                    name=name,
                    permissions=["manage_stock", "verify_payment"],
                    notification_preferences=preferences,
                )
                db.add(admin)
            return admin


@pytest.fixture
def database_url(tmp_path: Any) -> str:
    return os.environ.get("TEST_DATABASE_URL") or f"sqlite+aiosqlite:///{tmp_path / 'storebot.db'}"


@pytest.fixture
def test_settings(database_url: str) -> Settings:
    """Create test settings."""
    return Settings(
        database_url=database_url,
        redis_url="redis://localhost:6379/15",
        app_name="storebot-engine-test",
        app_env="test",
        log_level="DEBUG",
        bot_token="123456:test-token",
        stock_publish_timeout=0.2,
        subscriber_max_retries=3,
        subscriber_retry_base_delay=0.01,
        subscriber_retry_max_delay=0.05,
        admin_delivery_timeout=0.2,
        customer_delivery_timeout=0.2,
    )


@pytest_asyncio.fixture
async def engine(database_url: str) -> AsyncGenerator[AsyncEngine, Any]:
    """Create a test engine with a fresh schema."""
    engine = create_engine_from_url(database_url, poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest.fixture
def seed(session_factory: async_sessionmaker[AsyncSession]) -> Seeder:
    return Seeder(session_factory)


@pytest.fixture
def fake_sender() -> FakeSender:
    return FakeSender()


@pytest.fixture
def mock_redis() -> AsyncMock:
    """Redis client double: publish reports one receiver, cache ops succeed."""
    client = AsyncMock()
    client.publish.return_value = 1
    client.get.return_value = None
    client.delete.return_value = 1
    return client


@pytest.fixture
def stock_notifier(mock_redis: AsyncMock, test_settings: Settings) -> StockUpdateNotifier:
    return StockUpdateNotifier(redis_client=mock_redis, settings=test_settings)


@pytest.fixture
def product_cache(
    mock_redis: AsyncMock,
    session_factory: async_sessionmaker[AsyncSession],
    test_settings: Settings,
) -> ProductCache:
    return ProductCache(
        redis_client=mock_redis, session_factory=session_factory, settings=test_settings
    )


@pytest.fixture
def admin_dispatcher(
    fake_sender: FakeSender,
    session_factory: async_sessionmaker[AsyncSession],
    test_settings: Settings,
) -> AdminNotificationDispatcher:
    return AdminNotificationDispatcher(
        sender=fake_sender,
        read_status_store=InMemoryReadStatusStore(),
        session_factory=session_factory,
        settings=test_settings,
    )


@pytest.fixture
def customer_notifier(
    fake_sender: FakeSender,
    session_factory: async_sessionmaker[AsyncSession],
    test_settings: Settings,
) -> CustomerNotifier:
    return CustomerNotifier(
        sender=fake_sender, session_factory=session_factory, settings=test_settings
    )


@pytest.fixture
def payment_service(
    stock_notifier: StockUpdateNotifier,
    admin_dispatcher: AdminNotificationDispatcher,
    customer_notifier: CustomerNotifier,
    product_cache: ProductCache,
    session_factory: async_sessionmaker[AsyncSession],
) -> PaymentService:
    return PaymentService(
        notifier=stock_notifier,
        admin_dispatcher=admin_dispatcher,
        customer_notifier=customer_notifier,
        cache=product_cache,
        session_factory=session_factory,
    )
