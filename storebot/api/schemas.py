"""
Pydantic schemas for API responses.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class StockResponse(BaseModel):
    """Response schema for a stock query."""

    model_config = ConfigDict(
        from_attributes=True,
        json_schema_extra={
            "examples": [
                {
                    "product_id": 42,
                    "product_name": "Netflix Premium 1 Bulan",
                    "current_quantity": 3,
                    "reserved_quantity": 1,
                    "available_quantity": 2,
                    "availability_status": "available",
                }
            ]
        },
    )

    product_id: int = Field(..., description="Product ID")
    product_name: str = Field(..., description="Product name")
    current_quantity: int = Field(..., description="Units in stock")
    reserved_quantity: int = Field(..., description="Units held by unpaid orders")
    available_quantity: int = Field(..., description="Units that can still be ordered")
    availability_status: str = Field(..., description="available, out_of_stock or discontinued")


class StockHistoryItem(BaseModel):
    """One stock change."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    previous_quantity: int = Field(..., description="Quantity before the change")
    new_quantity: int = Field(..., description="Quantity after the change")
    actor_id: Optional[int] = Field(default=None, description="Admin who made the change")
    reason: str = Field(..., description="initial, restock or payment_verified")
    created_at: datetime


class StockHistoryResponse(BaseModel):
    product_id: int
    entries: List[StockHistoryItem]


class PaymentResponse(BaseModel):
    """Response schema for a payment."""

    model_config = ConfigDict(from_attributes=True)

    id: int = Field(..., description="Payment ID")
    order_id: int = Field(..., description="Order ID")
    payment_method: str = Field(..., description="qris or manual_bank_transfer")
    amount: Decimal = Field(..., description="Amount in rupiah")
    status: str = Field(..., description="pending, verified or failed")
    verification_method: Optional[str] = Field(default=None, description="automatic or manual")
    admin_id: Optional[int] = Field(default=None, description="Verifying admin")
    gateway_transaction_id: Optional[str] = Field(
        default=None, description="Payment gateway transaction ID"
    )
    failure_reason: Optional[str] = Field(default=None, description="Why the payment failed")
    created_at: datetime
    verified_at: Optional[datetime] = None


class OrderResponse(BaseModel):
    """Response schema for an order."""

    model_config = ConfigDict(from_attributes=True)

    id: int = Field(..., description="Order ID")
    customer_id: int
    product_id: int
    quantity: int
    total_amount: Decimal = Field(..., description="Total in rupiah")
    payment_method: str
    payment_status: str = Field(..., description="pending, verified or failed")
    order_status: str = Field(..., description="Order lifecycle status")
    created_at: datetime
    payment_verified_at: Optional[datetime] = None


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall status")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual checks")
    message: Optional[str] = Field(default=None, description="Status message")


class ErrorResponse(BaseModel):
    error: str
    message: str
