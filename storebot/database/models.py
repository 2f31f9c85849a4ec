"""SQLAlchemy database models for the store bot engine."""
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# SQLite only autoincrements INTEGER PRIMARY KEY columns
BigIntId = BigInteger().with_variant(Integer(), "sqlite")
JsonColumn = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    """Timezone-aware current time used for column defaults."""
    return datetime.now(timezone.utc)


class AvailabilityStatus(str, Enum):
    """Catalog availability of a product."""

    AVAILABLE = "available"
    OUT_OF_STOCK = "out_of_stock"
    DISCONTINUED = "discontinued"


class PaymentMethod(str, Enum):
    """Payment rails supported at checkout."""

    QRIS = "qris"
    MANUAL_BANK_TRANSFER = "manual_bank_transfer"


class PaymentStatus(str, Enum):
    """Payment states. VERIFIED and FAILED are terminal."""

    PENDING = "pending"
    VERIFIED = "verified"
    FAILED = "failed"


class VerificationMethod(str, Enum):
    """How a payment was verified."""

    AUTOMATIC = "automatic"
    MANUAL = "manual"


class OrderStatus(str, Enum):
    """Order lifecycle states."""

    PENDING_PAYMENT = "pending_payment"
    PAYMENT_RECEIVED = "payment_received"
    PROCESSING = "processing"
    ACCOUNT_DELIVERED = "account_delivered"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class StockChangeReason(str, Enum):
    """Why a ledger quantity changed."""

    INITIAL = "initial"
    RESTOCK = "restock"
    PAYMENT_VERIFIED = "payment_verified"


class RecipientType(str, Enum):
    CUSTOMER = "customer"
    ADMIN = "admin"


class NotificationStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class Product(Base):
    """
    Catalog products.

    stock_quantity mirrors the ledger and availability_status is driven by
    the engine only.
    """

    __tablename__ = "products"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    category: Mapped[str | None] = mapped_column(String(100), nullable=True)
    stock_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    availability_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=AvailabilityStatus.AVAILABLE.value
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint("price >= 0", name="non_negative_price"),
        CheckConstraint("stock_quantity >= 0", name="non_negative_stock_mirror"),
        CheckConstraint(
            "availability_status IN ('available', 'out_of_stock', 'discontinued')",
            name="valid_availability_status",
        ),
    )

    def __repr__(self) -> str:
        """String representation of Product."""
        return (
            f"<Product(id={self.id}, name={self.name!r}, stock={self.stock_quantity}, "
            f"status={self.availability_status})>"
        )


class StockLedger(Base):
    """
    Authoritative stock quantity per product.

    Mutated only through the locked operations in storebot.core.stock_ledger.
    """

    __tablename__ = "stock"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    product_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("products.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    current_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reserved_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_updated_by: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    last_updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (
        CheckConstraint("current_quantity >= 0", name="non_negative_current_quantity"),
        CheckConstraint("reserved_quantity >= 0", name="non_negative_reserved_quantity"),
    )

    @property
    def available_quantity(self) -> int:
        """Units that can still be reserved."""
        return self.current_quantity - self.reserved_quantity

    def __repr__(self) -> str:
        """String representation of StockLedger."""
        return (
            f"<StockLedger(product_id={self.product_id}, current={self.current_quantity}, "
            f"reserved={self.reserved_quantity})>"
        )


class StockHistoryEntry(Base):
    """
    Stock update audit trail.

    Append-only: one row per ledger quantity change.
    """

    __tablename__ = "stock_update_history"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    product_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    previous_quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    new_quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    actor_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    reason: Mapped[str] = mapped_column(String(50), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )

    __table_args__ = (
        Index("idx_stock_history_product_created", "product_id", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation of StockHistoryEntry."""
        return (
            f"<StockHistoryEntry(product_id={self.product_id}, "
            f"{self.previous_quantity}->{self.new_quantity}, reason={self.reason})>"
        )


class Customer(Base):
    """Customers known to the bot."""

    __tablename__ = "customers"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    telegram_user_id: Mapped[int] = mapped_column(BigInteger, nullable=False, unique=True)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    username: Mapped[str | None] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )


class Admin(Base):
    """Store administrators receiving business notifications."""

    __tablename__ = "admins"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    telegram_user_id: Mapped[int] = mapped_column(BigInteger, nullable=False, unique=True)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    username: Mapped[str | None] = mapped_column(String(100), nullable=True)
    permissions: Mapped[List[str]] = mapped_column(JsonColumn, nullable=False, default=list)
    notification_preferences: Mapped[Dict[str, Any] | None] = mapped_column(
        JsonColumn, nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )


class Order(Base):
    """
    Customer orders.

    order_status is advanced by payment transitions through
    OrderService.update_payment_status.
    """

    __tablename__ = "orders"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    customer_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("customers.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    product_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("products.id", ondelete="RESTRICT"), nullable=False
    )
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    payment_method: Mapped[str] = mapped_column(String(30), nullable=False)
    payment_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PaymentStatus.PENDING.value
    )
    order_status: Mapped[str] = mapped_column(
        String(30), nullable=False, default=OrderStatus.PENDING_PAYMENT.value, index=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    payment_verified_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint("quantity > 0", name="positive_order_quantity"),
        CheckConstraint("total_amount >= 0", name="non_negative_total"),
        CheckConstraint(
            "payment_method IN ('qris', 'manual_bank_transfer')",
            name="valid_order_payment_method",
        ),
    )

    def __repr__(self) -> str:
        """String representation of Order."""
        return (
            f"<Order(id={self.id}, product_id={self.product_id}, qty={self.quantity}, "
            f"payment_status={self.payment_status}, order_status={self.order_status})>"
        )


class Payment(Base):
    """
    Payment records, one per order.

    Status moves pending -> verified or pending -> failed, never back.
    """

    __tablename__ = "payments"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    payment_method: Mapped[str] = mapped_column(String(30), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PaymentStatus.PENDING.value, index=True
    )
    verification_method: Mapped[str | None] = mapped_column(String(20), nullable=True)
    admin_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    gateway_transaction_id: Mapped[str | None] = mapped_column(
        String(255), nullable=True, index=True
    )
    payment_proof: Mapped[str | None] = mapped_column(Text, nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    verified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="positive_payment_amount"),
        CheckConstraint(
            "status IN ('pending', 'verified', 'failed')",
            name="valid_payment_status",
        ),
        CheckConstraint(
            "payment_method IN ('qris', 'manual_bank_transfer')",
            name="valid_payment_method",
        ),
    )

    def __repr__(self) -> str:
        """String representation of Payment."""
        return (
            f"<Payment(id={self.id}, order_id={self.order_id}, "
            f"method={self.payment_method}, status={self.status})>"
        )


class Notification(Base):
    """
    Outgoing chat notifications.

    Failed rows are picked up by the retry sweep.
    """

    __tablename__ = "notifications"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    recipient_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    recipient_type: Mapped[str] = mapped_column(String(20), nullable=False)
    type: Mapped[str] = mapped_column(String(30), nullable=False)
    notification_type: Mapped[str] = mapped_column(String(50), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    reply_markup: Mapped[Dict[str, Any] | None] = mapped_column(JsonColumn, nullable=True)
    order_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True, index=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=NotificationStatus.PENDING.value
    )
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    read_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (
        Index("idx_notifications_status_retry", "status", "retry_count"),
    )

    def __repr__(self) -> str:
        """String representation of Notification."""
        return (
            f"<Notification(id={self.id}, type={self.notification_type}, "
            f"status={self.status}, retries={self.retry_count})>"
        )
