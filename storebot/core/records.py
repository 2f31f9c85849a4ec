"""
Read-only snapshots returned by the engine services.

Services commit and close their sessions before returning, so they hand
back frozen pydantic copies of the rows instead of live ORM objects.
"""
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict


class _Record(BaseModel):
    model_config = ConfigDict(from_attributes=True, frozen=True)


class StockInfo(_Record):
    """Stock query result."""

    product_id: int
    product_name: str
    current_quantity: int
    reserved_quantity: int
    available_quantity: int
    availability_status: str


class ProductSnapshot(_Record):
    """Catalog view of a product, as cached."""

    id: int
    name: str
    description: str | None = None
    price: Decimal
    category: str | None = None
    stock_quantity: int
    availability_status: str


class StockChange(_Record):
    """One applied ledger change."""

    product_id: int
    previous_quantity: int
    new_quantity: int
    actor_id: int | None = None
    availability_status: str | None = None


class StockHistoryRecord(_Record):
    id: int
    product_id: int
    previous_quantity: int
    new_quantity: int
    actor_id: int | None = None
    reason: str
    created_at: datetime


class OrderRecord(_Record):
    id: int
    customer_id: int
    product_id: int
    quantity: int
    total_amount: Decimal
    payment_method: str
    payment_status: str
    order_status: str
    created_at: datetime
    payment_verified_at: datetime | None = None
    updated_at: datetime | None = None


class PaymentRecord(_Record):
    id: int
    order_id: int
    payment_method: str
    amount: Decimal
    status: str
    verification_method: str | None = None
    admin_id: int | None = None
    gateway_transaction_id: str | None = None
    payment_proof: str | None = None
    failure_reason: str | None = None
    created_at: datetime
    verified_at: datetime | None = None
    updated_at: datetime | None = None


class CheckoutResult(_Record):
    """Order and pending payment created by one checkout."""

    order: OrderRecord
    payment: PaymentRecord
