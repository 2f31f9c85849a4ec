"""Database package for the store bot engine."""
from .connection import (
    close_db,
    create_engine_from_url,
    create_session_factory,
    get_db,
    get_engine,
    get_session_factory,
    init_db,
)
from .models import (
    Admin,
    AvailabilityStatus,
    Base,
    Customer,
    Notification,
    NotificationStatus,
    Order,
    OrderStatus,
    Payment,
    PaymentMethod,
    PaymentStatus,
    Product,
    RecipientType,
    StockChangeReason,
    StockHistoryEntry,
    StockLedger,
    VerificationMethod,
    utcnow,
)

__all__ = [
    "Admin",
    "AvailabilityStatus",
    "Base",
    "Customer",
    "Notification",
    "NotificationStatus",
    "Order",
    "OrderStatus",
    "Payment",
    "PaymentMethod",
    "PaymentStatus",
    "Product",
    "RecipientType",
    "StockChangeReason",
    "StockHistoryEntry",
    "StockLedger",
    "VerificationMethod",
    "close_db",
    "create_engine_from_url",
    "create_session_factory",
    "get_db",
    "get_engine",
    "get_session_factory",
    "init_db",
    "utcnow",
]
